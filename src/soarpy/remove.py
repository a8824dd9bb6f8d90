from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence

from .config import Config
from .db_manager import DbManager, PackageFilter
from .errors import AmbiguousPackageError, FilesystemError, PackageNotFoundError, SoarError
from .locking import PackageLock
from .logger import setup_logger
from .models import InstalledPackage, ItemOutcome, OperationResult
from .utils import remove_path, symlink_points_into
from .version import PackageRef

_logger = setup_logger()


@dataclass
class RemovalReport:
    pkg_id: str
    repo_name: str
    version: str
    removed_paths: List[Path] = field(default_factory=list)


def installed_matching(db: DbManager, reference: str) -> List[InstalledPackage]:
    """Installed rows for `reference` (version is ignored); never empty."""
    ref = PackageRef.parse(reference)
    filters = ref.as_db_filters()
    filters.pop("version", None)
    rows = db.query_installed(PackageFilter(**filters)).all()
    if not rows and ref.name and not ref.pkg_id:
        filters["pkg_id"] = filters.pop("name")
        rows = db.query_installed(PackageFilter(**filters)).all()
    if not rows:
        raise PackageNotFoundError(f"{reference} (not installed)")
    return rows


def find_installed(db: DbManager, reference: str) -> InstalledPackage:
    """Exactly one installed row for `reference`, or an error."""
    rows = installed_matching(db, reference)
    if len(rows) > 1:
        raise AmbiguousPackageError(reference, [f"{r.name}#{r.pkg_id}:{r.repo_name}" for r in rows])
    return rows[0]


class RemovalEngine:
    """
    Removes installed packages.

    Filesystem first, row last: an interrupted removal leaves an orphaned
    directory for the health checker, never a row pointing at nothing.
    """

    def __init__(self, config: Config, db: DbManager) -> None:
        self.config = config
        self.db = db

    def remove(self, refs: Sequence[str]) -> OperationResult:
        result = OperationResult("remove")
        for ref in refs:
            try:
                installed = find_installed(self.db, ref)
                with PackageLock(self.config.locks_path, installed.pkg_id):
                    report = self.remove_installed(installed)
            except (SoarError, ValueError) as e:
                _logger.error("Failed to remove %s: %s", ref, e)
                result.add(ItemOutcome(ref, False, str(e), error=e))
                continue
            result.add(ItemOutcome(ref, True, "removed", data=report))
        return result

    def remove_installed(self, installed: InstalledPackage) -> RemovalReport:
        """Caller holds the package lock."""
        report = RemovalReport(installed.pkg_id, installed.repo_name, installed.version)
        pkg_dir = installed.install_path.parent

        link = installed.bin_symlink_path
        try:
            if link is not None and symlink_points_into(link, pkg_dir):
                link.unlink()
                report.removed_paths.append(link)
            elif link is not None and link.is_symlink():
                _logger.debug("Leaving %s: it belongs to another package", link)

            if remove_path(pkg_dir):
                report.removed_paths.append(pkg_dir)

            for portable in (installed.portable_home, installed.portable_config, installed.portable_share):
                if portable is not None and remove_path(portable):
                    report.removed_paths.append(portable)
        except OSError as e:
            # row stays; a later remove or repair finishes the job
            raise FilesystemError("remove", e.filename or pkg_dir, e) from e

        self.db.remove_install(installed.pkg_id, installed.repo_name)
        _logger.info("Removed %s %s (%s)", installed.name, installed.version, installed.repo_name)
        return report
