import pytest

from soarpy.db_manager import PackageFilter
from soarpy.errors import DatabaseError
from soarpy.models import InstalledPackage, PackageRecord


def _rec(pkg_id, name, version, repo="main", **kw):
    return PackageRecord(repo_name=repo, pkg_id=pkg_id, name=name, version=version,
                         origin_descriptor=f"https://dl.example/{pkg_id}-{version}", **kw)


def _installed(config, pkg_id="bat.upstream", repo="main", version="1.0"):
    path = config.packages_path / pkg_id / version
    return InstalledPackage(
        pkg_id=pkg_id, repo_name=repo, name="bat", version=version,
        install_path=path, bin_symlink_path=config.bin_path / "bat",
        installed_at="2026-01-01T00:00:00+00:00",
    )


def test_query_orders_by_name_then_version_desc(db):
    db.upsert_repo_packages("main", [
        _rec("bat.a", "bat", "1.9"),
        _rec("bat.a", "bat", "1.10"),
        _rec("ash.a", "ash", "0.1"),
        _rec("bat.a", "bat", "1.2"),
    ])
    got = [(r.name, r.version) for r in db.query()]
    assert got == [("ash", "0.1"), ("bat", "1.10"), ("bat", "1.9"), ("bat", "1.2")]


def test_query_is_lazy_and_restartable(db):
    db.upsert_repo_packages("main", [_rec("bat.a", "bat", "1.0")])
    result = db.query(PackageFilter(name="bat"))
    assert [r.pkg_id for r in result] == ["bat.a"]
    db.upsert_repo_packages("main", [_rec("bat.a", "bat", "1.0"), _rec("bat.b", "bat", "1.0")])
    assert sorted(r.pkg_id for r in result) == ["bat.a", "bat.b"]


def test_search_and_limit(db):
    db.upsert_repo_packages("main", [
        _rec("bat.a", "bat", "1.0", description="A cat clone with WINGS"),
        _rec("fd.a", "fd", "1.0", description="find alternative"),
        _rec("ripgrep.a", "ripgrep", "1.0"),
    ])
    assert [r.name for r in db.query(PackageFilter(search="wings"))] == ["bat"]
    assert db.query(PackageFilter(search="wings", case_sensitive=True)).all() == []
    assert [r.name for r in db.query(PackageFilter(search="WINGS", case_sensitive=True))] == ["bat"]
    assert len(db.query(PackageFilter(search="a", limit=2)).all()) == 2
    # LIKE wildcards are literal
    assert db.query(PackageFilter(search="%")).all() == []


def test_upsert_replaces_wholesale_per_repo(db):
    db.upsert_repo_packages("main", [_rec("bat.a", "bat", "1.0"), _rec("fd.a", "fd", "1.0")])
    db.upsert_repo_packages("extra", [_rec("bat.x", "bat", "2.0", repo="extra")])
    db.upsert_repo_packages("main", [_rec("fd.a", "fd", "1.1")])
    assert db.count_packages("main") == 1
    assert db.count_packages("extra") == 1
    assert db.query(PackageFilter(repo_name="main")).first().version == "1.1"


def test_failed_upsert_rolls_back(db):
    db.upsert_repo_packages("main", [_rec("bat.a", "bat", "1.0")])
    with pytest.raises(DatabaseError):
        db.upsert_repo_packages("main", [_rec("fd.a", "fd", "1.0"), _rec("fd.a", "fd", "1.0")])
    assert [r.pkg_id for r in db.query()] == ["bat.a"]


def test_upsert_rejects_foreign_records(db):
    with pytest.raises(DatabaseError):
        db.upsert_repo_packages("main", [_rec("bat.x", "bat", "1.0", repo="extra")])


def test_install_records(db, config):
    assert db.get_installed("bat.upstream", "main") is None
    db.record_install(_installed(config))
    row = db.get_installed("bat.upstream", "main")
    assert row.version == "1.0"
    assert row.install_path == config.packages_path / "bat.upstream" / "1.0"
    assert row.portable_mode is False

    # upsert keeps one row per (repo, pkg_id)
    db.record_install(_installed(config, version="2.0"))
    assert [r.version for r in db.query_installed()] == ["2.0"]

    assert db.remove_install("bat.upstream", "main") == 1
    assert db.query_installed().all() == []
    assert db.remove_install("bat.upstream", "main") == 0


def test_repo_bookkeeping(db, config):
    repo = config.repositories[0]
    db.set_repo_synced(repo, "2026-01-01T00:00:00+00:00", "abc")
    state = db.get_repo_state("main")
    assert state["content_hash"] == "abc"
    assert [r["name"] for r in db.list_repos()] == ["main"]
