import pytest

from soarpy.providers import (
    DirectProvider,
    DownloadTarget,
    RegistryProvider,
    ReleaseHost,
    ReleaseHostProvider,
    asset_name_from_url,
    parse_registry_reference,
    provider_for_origin,
)


@pytest.mark.parametrize(
    "ref, expected",
    [
        ("ghcr.io/owner/app:1.0", ("ghcr.io", "owner/app", "1.0")),
        ("oci://ghcr.io/owner/app", ("ghcr.io", "owner/app", "latest")),
        ("owner/app:edge", ("ghcr.io", "owner/app", "edge")),
        ("localhost:5000/team/app@sha256:abc", ("localhost:5000", "team/app", "sha256:abc")),
    ],
)
def test_parse_registry_reference(ref, expected):
    assert parse_registry_reference(ref) == expected


def test_parse_registry_reference_rejects_bare_name():
    with pytest.raises(ValueError):
        parse_registry_reference("app")


def test_release_spec_parsing():
    p = ReleaseHostProvider.parse(ReleaseHost.GITHUB, "sharkdp/bat@v0.24.0")
    assert (p.project, p.tag) == ("sharkdp/bat", "v0.24.0")
    assert p.describe() == "github:sharkdp/bat@v0.24.0"
    assert ReleaseHostProvider.parse(ReleaseHost.GITLAB, "group/sub/proj").tag is None
    with pytest.raises(ValueError):
        ReleaseHostProvider.parse(ReleaseHost.GITHUB, "justone")


def test_origin_descriptor_maps_to_provider():
    assert isinstance(provider_for_origin("https://dl.example/x"), DirectProvider)
    reg = provider_for_origin("ghcr.io/owner/app:1.0")
    assert isinstance(reg, RegistryProvider)
    assert reg.describe() == "ghcr.io/owner/app:1.0"


def test_asset_name_from_url():
    assert asset_name_from_url("https://dl.example/a/b%20c.tar.gz?x=1") == "b c.tar.gz"
    assert asset_name_from_url("https://dl.example/") == "download"


def test_github_newest_stable_release(downloader, session):
    session.add_json(
        "https://api.github.com/repos/o/r/releases",
        [
            {"tag_name": "v3-rc", "prerelease": True, "assets": [{"name": "rc", "browser_download_url": "u"}]},
            {
                "tag_name": "v2",
                "assets": [
                    {"name": "r-x86_64", "browser_download_url": "https://dl.example/r-x86_64",
                     "size": 10, "digest": "sha256:ABC"},
                    {"name": "r-arm64", "browser_download_url": "https://dl.example/r-arm64"},
                ],
            },
        ],
    )
    assets = ReleaseHostProvider(ReleaseHost.GITHUB, "o/r").list_assets(downloader)
    assert [a.name for a in assets] == ["r-x86_64", "r-arm64"]
    assert assets[0].checksum == "abc"
    assert assets[0].size == 10


def test_github_tagged_release_with_filters(downloader, session):
    session.add_json(
        "https://api.github.com/repos/o/r/releases/tags/v1",
        {"assets": [
            {"name": "r-x86_64", "browser_download_url": "https://dl.example/1"},
            {"name": "r-x86_64.sha256", "browser_download_url": "https://dl.example/2"},
        ]},
    )
    target = DownloadTarget(
        ReleaseHostProvider(ReleaseHost.GITHUB, "o/r", "v1"),
        regex_filters=["x86_64"],
        exclude_keywords=["sha256"],
    )
    assert [a.name for a in target.resolve(downloader)] == ["r-x86_64"]


def test_direct_url_ignores_request_filters(downloader):
    target = DownloadTarget(DirectProvider("https://dl.example/tool.tar.gz"), glob_filters=["*.AppImage"])
    assert [a.name for a in target.resolve(downloader)] == ["tool.tar.gz"]
    assert [a.name for a in DownloadTarget(DirectProvider("https://dl.example/tool")).resolve(downloader)] == ["tool"]


def test_gitlab_assets(downloader, session):
    session.add_json(
        "https://gitlab.com/api/v4/projects/g%2Fp/releases",
        [
            {"tag_name": "v2", "upcoming_release": True, "assets": {"links": []}},
            {"tag_name": "v1", "assets": {"links": [
                {"name": "p.AppImage", "url": "https://gl.example/p", "direct_asset_url": "https://gl.example/d"},
            ]}},
        ],
    )
    (asset,) = ReleaseHostProvider(ReleaseHost.GITLAB, "g/p").list_assets(downloader)
    assert asset.url == "https://gl.example/d"


def test_registry_layers(downloader, session):
    session.add_json("https://ghcr.io/token?scope=repository:owner/app:pull", {"token": "t0k"})
    session.add_json(
        "https://ghcr.io/v2/owner/app/manifests/1.0",
        {"layers": [
            {"digest": "sha256:aa", "size": 3, "annotations": {"org.opencontainers.image.title": "app"}},
            {"digest": "sha256:bb", "annotations": {}},
            {"digest": "sha256:cc", "annotations": {"org.opencontainers.image.title": "app.png"}},
        ]},
    )
    assets = RegistryProvider("ghcr.io/owner/app:1.0").list_assets(downloader)
    assert [a.name for a in assets] == ["app", "app.png"]
    assert assets[0].url == "https://ghcr.io/v2/owner/app/blobs/sha256:aa"
    assert assets[0].checksum == "aa"
    assert assets[0].headers == {"Authorization": "Bearer t0k"}
    manifest_call = session.calls[1]
    assert manifest_call[1]["Authorization"] == "Bearer t0k"
