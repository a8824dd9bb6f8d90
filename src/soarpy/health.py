from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Set, Tuple

from .config import Config
from .db_manager import DbManager
from .errors import FilesystemError, LockContentionError
from .install import staging_owner
from .locking import PackageLock
from .logger import setup_logger
from .models import InstalledPackage, ItemOutcome, OperationResult
from .utils import is_broken_symlink, normalize_checksum, remove_path, sha256_file, symlink_points_into

_logger = setup_logger()


class HealthStatus(Enum):
    OK = "ok"
    BROKEN_SYMLINK = "broken-symlink"
    MISSING_INSTALL_PATH = "missing-install-path"
    CHECKSUM_DRIFT = "checksum-drift"


@dataclass
class PackageHealth:
    installed: InstalledPackage
    status: HealthStatus
    detail: str = ""


@dataclass
class HealthReport:
    packages: List[PackageHealth] = field(default_factory=list)
    broken_symlinks: List[Path] = field(default_factory=list)
    orphaned_dirs: List[Path] = field(default_factory=list)
    staging_leftovers: List[Path] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return (
            all(p.status is HealthStatus.OK for p in self.packages)
            and not self.broken_symlinks
            and not self.orphaned_dirs
            and not self.staging_leftovers
        )

    def rows_for(self, pkg_id: str) -> List[PackageHealth]:
        return [p for p in self.packages if p.installed.pkg_id == pkg_id]


@dataclass
class RepairReport:
    removed_rows: List[str] = field(default_factory=list)
    removed_symlinks: List[Path] = field(default_factory=list)
    removed_dirs: List[Path] = field(default_factory=list)
    removed_staging: List[Path] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)
    failed: List[Tuple[Path, FilesystemError]] = field(default_factory=list)


class HealthChecker:
    """
    Reconciles installed rows with the filesystem.

    The only component that deletes rows outside an explicit remove: a row
    whose install path is gone describes nothing and is dropped by repair().
    """

    def __init__(self, config: Config, db: DbManager) -> None:
        self.config = config
        self.db = db

    # -------------------------
    # Check
    # -------------------------
    def check(self, verify_checksums: bool = True) -> HealthReport:
        report = HealthReport()
        owned: Set[Path] = set()
        for inst in self.db.query_installed():
            owned.add(inst.install_path.parent)
            report.packages.append(self._classify(inst, verify_checksums))

        report.broken_symlinks = self._broken_bin_links()
        report.orphaned_dirs = self._orphaned_dirs(owned)
        report.staging_leftovers = self._staging_entries()

        bad = sum(1 for p in report.packages if p.status is not HealthStatus.OK)
        _logger.debug(
            "Health: %d rows (%d unhealthy), %d broken links, %d orphans, %d staging leftovers",
            len(report.packages), bad, len(report.broken_symlinks),
            len(report.orphaned_dirs), len(report.staging_leftovers),
        )
        return report

    def _classify(self, inst: InstalledPackage, verify_checksums: bool) -> PackageHealth:
        if not inst.install_path.is_dir():
            return PackageHealth(inst, HealthStatus.MISSING_INSTALL_PATH, str(inst.install_path))

        link = inst.bin_symlink_path
        binary = inst.binary_path
        if link is None or not link.is_symlink() or not binary.is_file():
            return PackageHealth(inst, HealthStatus.BROKEN_SYMLINK, str(link))
        if link.resolve() != binary.resolve():
            return PackageHealth(inst, HealthStatus.BROKEN_SYMLINK, f"{link} -> {link.resolve()}")

        expected = normalize_checksum(inst.checksum)
        if verify_checksums and expected:
            actual = sha256_file(binary)
            if actual != expected:
                return PackageHealth(inst, HealthStatus.CHECKSUM_DRIFT, f"expected {expected}, got {actual}")
        return PackageHealth(inst, HealthStatus.OK)

    def _broken_bin_links(self) -> List[Path]:
        if not self.config.bin_path.is_dir():
            return []
        return sorted(p for p in self.config.bin_path.iterdir() if is_broken_symlink(p))

    def _orphaned_dirs(self, owned: Set[Path]) -> List[Path]:
        root = self.config.packages_path
        if not root.is_dir():
            return []
        return sorted(
            d for d in root.iterdir()
            if d.is_dir() and not d.name.startswith(".") and d not in owned
        )

    def _staging_entries(self) -> List[Path]:
        staging = self.config.staging_path
        if not staging.is_dir():
            return []
        return sorted(staging.iterdir())

    # -------------------------
    # Repair
    # -------------------------
    def repair(self) -> RepairReport:
        """Remove dangling rows, broken links, orphans and staging leftovers."""
        report = self.check(verify_checksums=False)
        out = RepairReport()

        for ph in report.packages:
            if ph.status is not HealthStatus.MISSING_INSTALL_PATH:
                continue
            inst = ph.installed
            link = inst.bin_symlink_path
            if link is not None and (is_broken_symlink(link) or symlink_points_into(link, inst.install_path.parent)):
                _unlink(link)
                out.removed_symlinks.append(link)
            self.db.remove_install(inst.pkg_id, inst.repo_name)
            out.removed_rows.append(f"{inst.name}#{inst.pkg_id}:{inst.repo_name}")
            _logger.info("Dropped record of %s (install path missing)", inst.pkg_id)

        out.removed_symlinks.extend(self.remove_broken_symlinks())

        leftovers = [(orphan.name, orphan, out.removed_dirs) for orphan in report.orphaned_dirs]
        leftovers += [(staging_owner(e.name), e, out.removed_staging) for e in report.staging_leftovers]
        for key, path, removed in leftovers:
            try:
                if self._remove_unlocked(key, path):
                    removed.append(path)
                else:
                    out.skipped.append(path)
            except FilesystemError as e:
                _logger.error("%s", e)
                out.failed.append((path, e))
        return out

    def remove_broken_symlinks(self) -> List[Path]:
        removed = []
        for link in self._broken_bin_links():
            _unlink(link)
            removed.append(link)
            _logger.info("Removed broken symlink %s", link)
        return removed

    def _remove_unlocked(self, key: str, path: Path) -> bool:
        """Remove `path` unless an operation on `key` is running right now."""
        try:
            with PackageLock(self.config.locks_path, key):
                remove_path(path)
        except OSError as e:
            raise FilesystemError("remove", path, e) from e
        except LockContentionError:
            _logger.warning("Skipping %s: an operation on %s is in progress", path, key)
            return False
        _logger.info("Removed %s", path)
        return True

    # -------------------------
    # Clean
    # -------------------------
    def clean(self, cache: bool = False, broken_symlinks: bool = False, broken: bool = False) -> OperationResult:
        """No flags selects all three."""
        if not (cache or broken_symlinks or broken):
            cache = broken_symlinks = broken = True
        result = OperationResult("clean")

        if cache:
            result.add(self._clean_cache(self.config.downloads_cache_path))
        if broken_symlinks:
            links = self.remove_broken_symlinks()
            result.add(ItemOutcome("broken-symlinks", True, f"{len(links)} removed", data=links))
        if broken:
            repaired = self.repair()
            removed = len(repaired.removed_rows) + len(repaired.removed_dirs) + len(repaired.removed_staging)
            message = f"{removed} removed" + (f", {len(repaired.failed)} failed" if repaired.failed else "")
            result.add(ItemOutcome("broken", not repaired.failed, message, data=repaired))
        return result

    @staticmethod
    def _clean_cache(path: Path) -> ItemOutcome:
        try:
            removed = remove_path(path)
        except OSError as e:
            _logger.error("Failed to clean cache %s: %s", path, e)
            return ItemOutcome("cache", False, str(e), error=e)
        return ItemOutcome("cache", True, "removed" if removed else "already clean", data=path)


def _unlink(link: Path) -> None:
    try:
        link.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        raise FilesystemError("remove", link, e) from e
