import errno
import os
import threading
from pathlib import Path
from unittest import mock

import pytest

from conftest import hello_release, pkg_entry
from soarpy.errors import (
    AmbiguousPackageError,
    ChecksumMismatchError,
    FilesystemError,
    LockContentionError,
    PackageNotFoundError,
    PortableConflictError,
)
from soarpy.install import InstallOptions, pick_binary_asset, resolve_package, staging_name, staging_owner
from soarpy.locking import PackageLock
from soarpy.models import Asset, PackageRecord

HELLO_URL = "https://dl.example/hello-1.0"


def _staging(config):
    return list(config.staging_path.glob("*"))


def _downloads(session, url=HELLO_URL):
    return session.urls().count(url)


def test_install_then_remove(ops, config, hello):
    result = ops.install(["hello"])
    assert result.success
    inst = result.items[0].data.installed

    assert inst.install_path == config.packages_path / "hello.upstream" / "1.0"
    assert (inst.install_path / "hello").read_bytes() == hello
    link = config.bin_path / "hello"
    assert link.resolve() == (inst.install_path / "hello").resolve()
    assert os.access(link, os.X_OK)
    assert ops.db.get_installed("hello.upstream", "main").version == "1.0"
    assert _staging(config) == []

    assert ops.remove(["hello"]).success
    assert not link.is_symlink()
    assert not (config.packages_path / "hello.upstream").exists()
    assert ops.db.query_installed().all() == []


def test_failed_removal_keeps_the_record(ops, config, hello):
    ops.install(["hello"])
    with mock.patch("soarpy.remove.remove_path", side_effect=PermissionError("denied")):
        result = ops.remove(["hello"])
    assert isinstance(result.items[0].error, FilesystemError)
    assert ops.db.get_installed("hello.upstream", "main") is not None

    assert ops.remove(["hello"]).success
    assert not (config.packages_path / "hello.upstream").exists()


def test_already_installed_short_circuits(ops, session, hello):
    ops.install(["hello"])
    again = ops.install(["hello"])
    assert again.success
    assert again.items[0].message == "already installed"
    assert _downloads(session) == 1

    forced = ops.install(["hello"], InstallOptions(force=True))
    assert forced.items[0].message == "installed"
    assert _downloads(session) == 2
    assert len(ops.db.query_installed().all()) == 1


def test_equivalent_references_install_once(ops, session, hello):
    result = ops.install(["hello", "hello#hello.upstream", "hello:main", "#hello.upstream"])
    assert len(result.items) == 1
    assert _downloads(session) == 1
    assert len(ops.db.query_installed().all()) == 1


def test_ambiguous_across_repositories(ops, publish):
    entry, payloads = hello_release("1.0")
    publish("main", [entry], payloads)
    publish("extra", [entry])
    ops.sync()

    result = ops.install(["hello"])
    error = result.items[0].error
    assert isinstance(error, AmbiguousPackageError)
    assert sorted(error.candidates) == ["hello#hello.upstream:extra", "hello#hello.upstream:main"]
    assert ops.db.query_installed().all() == []

    assert ops.install(["hello:main"]).success
    assert ops.db.get_installed("hello.upstream", "main") is not None


def test_interactive_choice_resolves_ambiguity(ops, publish):
    entry, payloads = hello_release("1.0")
    publish("main", [entry], payloads)
    publish("extra", [entry])
    ops.sync()

    pick_main = InstallOptions(select=lambda cands: next(c for c in cands if c.repo_name == "main"))
    assert ops.install(["hello"], pick_main).success
    # --yes never prompts
    pick_main.yes = True
    pick_main.force = True
    assert isinstance(ops.install(["hello"], pick_main).items[0].error, AmbiguousPackageError)


def test_bare_word_falls_back_to_pkg_id(ops, hello):
    assert resolve_package(ops.db, "hello.upstream").name == "hello"


def test_unknown_package(ops, hello):
    result = ops.install(["nope", "hello"])
    assert isinstance(result.items[0].error, PackageNotFoundError)
    assert result.items[1].ok
    assert result.status.value == "partial"


def test_portable_conflict_rejected_before_any_work(ops, session, hello):
    result = ops.install(["hello"], InstallOptions(portable="", portable_home="/tmp/h"))
    assert isinstance(result.items[0].error, PortableConflictError)
    assert _downloads(session) == 0
    assert ops.db.query_installed().all() == []


def test_portable_directories(ops, config, tmp_path, hello):
    inst = ops.install(["hello"], InstallOptions(portable="")).items[0].data.installed
    pkg_dir = config.packages_path / "hello.upstream"
    assert inst.portable_mode
    assert inst.portable_home == pkg_dir / "hello.home"
    assert inst.portable_share.is_dir()

    ops.remove(["hello"])
    assert not pkg_dir.exists()

    inst = ops.install(["hello"], InstallOptions(portable_home=str(tmp_path / "h"))).items[0].data.installed
    assert not inst.portable_mode
    assert inst.portable_home == tmp_path / "h" / "hello.home"
    assert inst.portable_config is None
    row = ops.db.get_installed("hello.upstream", "main")
    assert row.portable_home == inst.portable_home


def test_checksum_mismatch_leaves_nothing(ops, config, publish):
    publish("main", [pkg_entry("hello.upstream", "hello", "1.0", HELLO_URL, b"expected")],
            {HELLO_URL: b"tampered"})
    ops.sync()

    result = ops.install(["hello"])
    assert isinstance(result.items[0].error, ChecksumMismatchError)
    assert ops.db.query_installed().all() == []
    assert not (config.packages_path / "hello.upstream").exists()
    assert not (config.bin_path / "hello").is_symlink()
    assert _staging(config) == []


def test_interrupted_commit_rolls_back(ops, config, hello, monkeypatch):
    def crash(installed):
        raise KeyboardInterrupt

    monkeypatch.setattr(ops.db, "record_install", crash)
    record = resolve_package(ops.db, "hello")
    with pytest.raises(KeyboardInterrupt):
        ops.installer.install_record(record, InstallOptions())

    report = ops.health.check()
    assert report.packages == []
    assert report.healthy
    assert not (config.bin_path / "hello").is_symlink()
    assert not (config.packages_path / "hello.upstream").exists()
    assert _staging(config) == []


def test_interrupted_reinstall_keeps_previous(ops, config, hello, monkeypatch):
    ops.install(["hello"])
    binary = config.packages_path / "hello.upstream" / "1.0" / "hello"

    def crash(installed):
        raise KeyboardInterrupt

    monkeypatch.setattr(ops.db, "record_install", crash)
    with pytest.raises(KeyboardInterrupt):
        ops.installer.install_record(resolve_package(ops.db, "hello"), InstallOptions(force=True))

    assert binary.read_bytes() == hello
    assert (config.bin_path / "hello").resolve() == binary.resolve()
    assert _staging(config) == []
    monkeypatch.undo()
    assert ops.health.check().healthy


def test_interrupted_upgrade_restores_symlink(ops, config, publish, hello, monkeypatch):
    ops.install(["hello"])
    entry, payloads = hello_release("1.1")
    publish("main", [entry], payloads)
    ops.sync()

    def crash(installed):
        raise KeyboardInterrupt

    monkeypatch.setattr(ops.db, "record_install", crash)
    with pytest.raises(KeyboardInterrupt):
        ops.installer.install_record(resolve_package(ops.db, "hello"), InstallOptions(force=True))

    pkg_dir = config.packages_path / "hello.upstream"
    assert [d.name for d in pkg_dir.iterdir()] == ["1.0"]
    assert (config.bin_path / "hello").resolve() == (pkg_dir / "1.0" / "hello").resolve()


def test_failed_swap_restores_displaced_version(ops, config, hello, monkeypatch):
    ops.install(["hello"])
    final_dir = config.packages_path / "hello.upstream" / "1.0"
    real_replace = os.replace

    def replace(src, dst):
        src = Path(src)
        if Path(dst) == final_dir and src.parent == config.staging_path and src.suffix != ".old":
            raise OSError(errno.ENOSPC, "No space left on device")
        return real_replace(src, dst)

    monkeypatch.setattr(os, "replace", replace)
    result = ops.install(["hello"], InstallOptions(force=True))
    monkeypatch.undo()

    assert isinstance(result.items[0].error, FilesystemError)
    row = ops.db.get_installed("hello.upstream", "main")
    assert row.install_path == final_dir
    assert (final_dir / "hello").read_bytes() == hello
    assert (config.bin_path / "hello").resolve() == (final_dir / "hello").resolve()
    assert _staging(config) == []
    assert ops.health.check().healthy


def test_held_lock_fails_the_install(ops, config, hello):
    with PackageLock(config.locks_path, "hello.upstream"):
        result = ops.install(["hello"])
    assert isinstance(result.items[0].error, LockContentionError)
    assert ops.db.query_installed().all() == []


def test_concurrent_installs_yield_one_row(ops, config, hello):
    results = []
    start = threading.Barrier(2)

    def worker():
        start.wait()
        results.append(ops.install(["hello"]))

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert any(r.success for r in results)
    assert len(ops.db.query_installed().all()) == 1
    assert ops.health.check().healthy


def test_confirmation_can_skip(ops, session, hello):
    asked = []
    options = InstallOptions(ask=True, confirm=lambda rec: asked.append(rec.name) or False)
    result = ops.install(["hello"], options)
    assert asked == ["hello"]
    assert result.items[0].message == "skipped"
    assert _downloads(session) == 0


def test_notes_and_auxiliary_files(ops, config, publish, session):
    entry, payloads = hello_release(
        "1.0",
        notes=["Run hello --init first"],
        icon="https://dl.example/hello.png",
        desktop="https://dl.example/hello.desktop",
    )
    payloads["https://dl.example/hello.png"] = b"PNG"
    publish("main", [entry], payloads)
    ops.sync()

    report = ops.install(["hello"]).items[0].data
    assert report.notes == "Run hello --init first"
    install_dir = report.installed.install_path
    assert (install_dir / "hello.png").read_bytes() == b"PNG"
    # a missing desktop file is reported, not fatal
    assert not (install_dir / "hello.desktop").exists()
    assert any("hello.desktop" in w for w in report.warnings)

    quiet = ops.install(["hello"], InstallOptions(force=True, no_notes=True, binary_only=True)).items[0].data
    assert quiet.notes is None
    assert not (quiet.installed.install_path / "hello.png").exists()


def test_staging_names_carry_the_package_key():
    name = staging_name("hello.upstream", ".old")
    assert staging_owner(name) == "hello.upstream"
    assert name.endswith(".old")


def test_pick_binary_asset():
    rec = PackageRecord("main", "app.x", "app", "1.0", "ghcr.io/o/app:1.0", bin_name="app-bin")
    assets = [Asset("app-bin", "u1"), Asset("app.png", "u2")]
    assert pick_binary_asset(rec, assets).name == "app-bin"
    assert pick_binary_asset(rec, assets[1:]).name == "app.png"
