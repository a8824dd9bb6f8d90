import os
import shutil
from unittest import mock

from soarpy.errors import DatabaseError, FilesystemError
from soarpy.health import HealthStatus
from soarpy.locking import PackageLock


def _status(ops, **kw):
    (row,) = ops.health.check(**kw).rows_for("hello.upstream")
    return row.status


def test_fresh_install_is_healthy(ops, hello):
    ops.install(["hello"])
    report = ops.health.check()
    assert report.healthy
    assert _status(ops) is HealthStatus.OK
    assert ops.check_health().success


def test_missing_install_path_is_repaired(ops, config, hello):
    ops.install(["hello"])
    shutil.rmtree(config.packages_path / "hello.upstream")

    assert _status(ops) is HealthStatus.MISSING_INSTALL_PATH
    assert not ops.check_health().success

    repaired = ops.health.repair()
    assert repaired.removed_rows == ["hello#hello.upstream:main"]
    assert config.bin_path / "hello" in repaired.removed_symlinks
    assert ops.db.query_installed().all() == []
    assert ops.health.check().healthy


def test_missing_symlink(ops, config, hello):
    ops.install(["hello"])
    (config.bin_path / "hello").unlink()
    assert _status(ops) is HealthStatus.BROKEN_SYMLINK

    assert ops.use_package("hello").success
    assert _status(ops) is HealthStatus.OK


def test_symlink_pointing_elsewhere(ops, config, tmp_path, hello):
    ops.install(["hello"])
    other = tmp_path / "other"
    other.write_text("x")
    link = config.bin_path / "hello"
    link.unlink()
    os.symlink(other, link)
    assert _status(ops) is HealthStatus.BROKEN_SYMLINK


def test_checksum_drift(ops, config, hello):
    ops.install(["hello"])
    (config.packages_path / "hello.upstream" / "1.0" / "hello").write_bytes(b"changed")
    assert _status(ops) is HealthStatus.CHECKSUM_DRIFT
    assert _status(ops, verify_checksums=False) is HealthStatus.OK


def test_stray_bin_links_and_orphans(ops, config, tmp_path):
    ghost = config.bin_path / "ghost"
    os.symlink(tmp_path / "nowhere", ghost)
    orphan = config.packages_path / "stray.pkg" / "1.0"
    orphan.mkdir(parents=True)

    report = ops.health.check()
    assert report.broken_symlinks == [ghost]
    assert report.orphaned_dirs == [config.packages_path / "stray.pkg"]
    assert not report.healthy

    repaired = ops.health.repair()
    assert ghost in repaired.removed_symlinks
    assert repaired.removed_dirs == [config.packages_path / "stray.pkg"]
    assert ops.health.check().healthy


def test_staging_leftovers_respect_running_operations(ops, config):
    leftover = config.staging_path / "hello.upstream~0123abcd"
    leftover.mkdir(parents=True)
    assert ops.health.check().staging_leftovers == [leftover]

    with PackageLock(config.locks_path, "hello.upstream"):
        repaired = ops.health.repair()
    assert repaired.skipped == [leftover]
    assert leftover.exists()

    assert ops.health.repair().removed_staging == [leftover]
    assert not leftover.exists()


def test_repair_outcomes(ops, config):
    (config.staging_path / "x~1").mkdir(parents=True)
    result = ops.repair()
    assert result.success
    assert [i.message for i in result.items] == ["removed"]


def test_repair_reports_undeletable_leftovers(ops, config):
    (config.packages_path / "stray.pkg").mkdir(parents=True)
    (config.staging_path / "x~1").mkdir(parents=True)

    with mock.patch("soarpy.health.remove_path", side_effect=PermissionError("denied")):
        result = ops.repair()
    assert not result.success
    assert [type(i.error) for i in result.items] == [FilesystemError, FilesystemError]
    assert "denied" in result.items[0].message
    assert (config.packages_path / "stray.pkg").exists()

    with mock.patch("soarpy.health.remove_path", side_effect=PermissionError("denied")):
        broken = ops.clean(broken=True)
    assert not broken.success
    assert broken.items[0].message == "0 removed, 2 failed"


def test_database_failure_is_a_failed_result(ops):
    with mock.patch.object(ops.db, "query_installed", side_effect=DatabaseError("database is locked")):
        for result in (ops.check_health(), ops.repair(), ops.list_installed(count=True)):
            assert not result.success
            assert isinstance(result.items[0].error, DatabaseError)


def test_clean_selects_everything_by_default(ops, config, tmp_path):
    cached = config.downloads_cache_path / "hello.upstream" / "1.0" / "hello"
    cached.parent.mkdir(parents=True)
    cached.write_bytes(b"x")
    os.symlink(tmp_path / "nowhere", config.bin_path / "ghost")

    result = ops.clean()
    assert [i.item for i in result.items] == ["cache", "broken-symlinks", "broken"]
    assert result.items[1].message == "1 removed"
    assert not config.downloads_cache_path.exists()

    only_cache = ops.clean(cache=True)
    assert [(i.item, i.message) for i in only_cache.items] == [("cache", "already clean")]
