"""
Origin providers.

The set of providers is closed: DirectProvider, ReleaseHostProvider and
RegistryProvider. Each one knows how to list its candidate assets; callers
never branch on the kind of provider.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote, unquote, urlparse

from .errors import SoarError
from .filters import filter_assets
from .logger import setup_logger
from .models import Asset
from .utils import normalize_checksum

if TYPE_CHECKING:
    from .downloader import Downloader

_logger = setup_logger()

OCI_MANIFEST_TYPES = ", ".join(
    (
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    )
)
OCI_TITLE_ANNOTATION = "org.opencontainers.image.title"


class Provider:
    """Base of the provider variants."""

    # whether request filters narrow this provider's asset list
    filterable = True

    def describe(self) -> str:
        raise NotImplementedError

    def list_assets(self, client: "Downloader") -> List[Asset]:
        raise NotImplementedError


@dataclass(frozen=True)
class DirectProvider(Provider):
    url: str

    # the URL names exactly one file
    filterable = False

    def describe(self) -> str:
        return self.url

    def list_assets(self, client: "Downloader") -> List[Asset]:
        return [Asset(name=asset_name_from_url(self.url), url=self.url)]


class ReleaseHost(Enum):
    GITHUB = "github"
    GITLAB = "gitlab"


@dataclass(frozen=True)
class ReleaseHostProvider(Provider):
    """Assets of one release (default: newest) of a GitHub/GitLab project."""

    host: ReleaseHost
    project: str
    tag: Optional[str] = None

    @staticmethod
    def parse(host: ReleaseHost, spec: str) -> "ReleaseHostProvider":
        project, _, tag = spec.strip().partition("@")
        project = project.strip("/")
        if project.count("/") < 1 or not all(project.split("/")):
            raise ValueError(f"Expected owner/repo[@tag], got {spec!r}")
        return ReleaseHostProvider(host=host, project=project, tag=tag or None)

    def describe(self) -> str:
        suffix = f"@{self.tag}" if self.tag else ""
        return f"{self.host.value}:{self.project}{suffix}"

    def list_assets(self, client: "Downloader") -> List[Asset]:
        if self.host is ReleaseHost.GITHUB:
            return self._github_assets(client)
        return self._gitlab_assets(client)

    def _github_assets(self, client: "Downloader") -> List[Asset]:
        base = f"https://api.github.com/repos/{self.project}/releases"
        headers = {"Accept": "application/vnd.github+json"}
        if self.tag:
            release = client.get_json(f"{base}/tags/{quote(self.tag, safe='')}", headers=headers)
        else:
            releases = client.get_json(base, headers=headers)
            release = _newest_release(releases, draft_key="draft", prerelease_key="prerelease")
            if release is None:
                raise SoarError(f"No releases found for {self.describe()}")
        _logger.debug("Using release %s of %s", release.get("tag_name"), self.project)
        return [
            Asset(
                name=a["name"],
                url=a["browser_download_url"],
                size=int(a.get("size") or 0),
                checksum=normalize_checksum(a.get("digest")),
            )
            for a in release.get("assets", [])
        ]

    def _gitlab_assets(self, client: "Downloader") -> List[Asset]:
        base = f"https://gitlab.com/api/v4/projects/{quote(self.project, safe='')}/releases"
        if self.tag:
            release = client.get_json(f"{base}/{quote(self.tag, safe='')}")
        else:
            releases = client.get_json(base)
            release = _newest_release(releases, draft_key=None, prerelease_key="upcoming_release")
            if release is None:
                raise SoarError(f"No releases found for {self.describe()}")
        links = (release.get("assets") or {}).get("links", [])
        return [Asset(name=link["name"], url=link.get("direct_asset_url") or link["url"]) for link in links]


def _newest_release(releases: Any, draft_key: Optional[str], prerelease_key: str) -> Optional[Dict[str, Any]]:
    """Releases are listed newest first; prefer the newest stable one."""
    if not isinstance(releases, list):
        return None
    published = [r for r in releases if not (draft_key and r.get(draft_key))]
    stable = [r for r in published if not r.get(prerelease_key)]
    if stable:
        return stable[0]
    return published[0] if published else None


@dataclass(frozen=True)
class RegistryProvider(Provider):
    """Layers of an OCI artifact, e.g. ghcr.io/owner/name:tag."""

    reference: str
    registry: str = field(init=False)
    repository: str = field(init=False)
    tag: str = field(init=False)

    def __post_init__(self) -> None:
        registry, repository, tag = parse_registry_reference(self.reference)
        object.__setattr__(self, "registry", registry)
        object.__setattr__(self, "repository", repository)
        object.__setattr__(self, "tag", tag)

    def describe(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"

    def list_assets(self, client: "Downloader") -> List[Asset]:
        token = self._token(client)
        auth = {"Authorization": f"Bearer {token}"} if token else {}
        manifest = client.get_json(
            f"https://{self.registry}/v2/{self.repository}/manifests/{quote(self.tag, safe=':')}",
            headers={"Accept": OCI_MANIFEST_TYPES, **auth},
        )
        assets = []
        for layer in manifest.get("layers", []):
            digest = layer.get("digest", "")
            title = (layer.get("annotations") or {}).get(OCI_TITLE_ANNOTATION)
            if not title or not digest:
                continue
            assets.append(
                Asset(
                    name=title,
                    url=f"https://{self.registry}/v2/{self.repository}/blobs/{digest}",
                    size=int(layer.get("size") or 0),
                    checksum=normalize_checksum(digest),
                    headers=auth,
                )
            )
        return assets

    def _token(self, client: "Downloader") -> Optional[str]:
        scope = f"repository:{self.repository}:pull"
        doc = client.get_json(f"https://{self.registry}/token?scope={quote(scope, safe=':/')}")
        return doc.get("token") or doc.get("access_token")


def parse_registry_reference(reference: str) -> Tuple[str, str, str]:
    ref = reference.strip()
    for prefix in ("oci://", "https://", "http://"):
        if ref.startswith(prefix):
            ref = ref[len(prefix):]
    if "/" not in ref:
        raise ValueError(f"Invalid registry reference: {reference!r}")
    registry, _, rest = ref.partition("/")
    if "." not in registry and ":" not in registry and registry != "localhost":
        # bare owner/name defaults to ghcr.io
        registry, rest = "ghcr.io", ref
    tag = "latest"
    last = rest.rsplit("/", 1)[-1]
    if "@" in last:
        rest, _, tag = rest.rpartition("@")
    elif ":" in last:
        rest, _, tag = rest.rpartition(":")
    if not rest:
        raise ValueError(f"Invalid registry reference: {reference!r}")
    return registry, rest, tag


def asset_name_from_url(url: str) -> str:
    path = urlparse(url).path
    name = unquote(path.rstrip("/").rsplit("/", 1)[-1])
    return name or "download"


def provider_for_origin(descriptor: str) -> Provider:
    """Map a package's origin descriptor onto its provider."""
    scheme = urlparse(descriptor).scheme.lower()
    if scheme in ("http", "https"):
        return DirectProvider(descriptor)
    return RegistryProvider(descriptor)


@dataclass(frozen=True)
class DownloadTarget:
    """Per-request selection policy over one provider's assets."""

    provider: Provider
    regex_filters: Sequence[str] = ()
    glob_filters: Sequence[str] = ()
    match_keywords: Sequence[str] = ()
    exclude_keywords: Sequence[str] = ()
    exact_case: bool = False

    def resolve(self, client: "Downloader") -> List[Asset]:
        """Ordered candidate assets after filtering."""
        assets = self.provider.list_assets(client)
        if not self.provider.filterable:
            return assets
        return filter_assets(
            assets,
            regexes=self.regex_filters,
            globs=self.glob_filters,
            match_keywords=self.match_keywords,
            exclude_keywords=self.exclude_keywords,
            exact_case=self.exact_case,
        )
