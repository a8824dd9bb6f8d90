from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Collection, List, Optional, Sequence, Tuple

from .config import Config
from .db_manager import DbManager, PackageFilter
from .errors import PackageNotFoundError, SoarError
from .install import ConfirmCallback, InstallEngine, InstallOptions
from .locking import PackageLock
from .logger import setup_logger
from .models import InstalledPackage, ItemOutcome, OperationResult, PackageRecord
from .progress import ProgressCallback, ProgressChannel
from .remove import installed_matching
from .utils import remove_path
from .version import Version, vercmp

_logger = setup_logger()


@dataclass
class UpdateReport:
    pkg_id: str
    old_version: str
    new_version: str
    pruned: List[Path] = field(default_factory=list)


def prune_versions(pkg_dir: Path, current: Path, keep: int, protected: Collection[Path] = ()) -> List[Path]:
    """
    Remove version directories under `pkg_dir` beyond the `keep` newest
    previous ones. `current` and `protected` paths are never touched.
    """
    if keep < 0:
        raise ValueError("keep must be >= 0")
    if not pkg_dir.is_dir():
        return []
    skip = {current, *protected}
    previous = [d for d in pkg_dir.iterdir() if d.is_dir() and not d.is_symlink() and d not in skip]
    previous.sort(key=lambda d: Version(d.name), reverse=True)

    removed = []
    for old in previous[keep:]:
        _logger.debug("Pruning %s", old)
        try:
            remove_path(old)
        except OSError as e:
            _logger.warning("Could not prune %s: %s", old, e)
            continue
        removed.append(old)
    return removed


class UpdateEngine:
    """Moves installed packages to the newest version their repository offers."""

    def __init__(self, config: Config, db: DbManager, installer: InstallEngine) -> None:
        self.config = config
        self.db = db
        self.installer = installer

    def update(
        self,
        refs: Optional[Sequence[str]] = None,
        keep: int = 1,
        ask: bool = False,
        yes: bool = False,
        confirm: Optional[ConfirmCallback] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> OperationResult:
        if keep < 0:
            raise ValueError("keep must be >= 0")
        result = OperationResult("update")

        targets: List[Tuple[str, InstalledPackage]] = []
        if refs is None:
            targets = [(i.pkg_id, i) for i in self.db.query_installed()]
        else:
            seen = set()
            for ref in refs:
                try:
                    matches = installed_matching(self.db, ref)
                except (SoarError, ValueError) as e:
                    result.add(ItemOutcome(ref, False, str(e), error=e))
                    continue
                for inst in matches:
                    # equivalent references name the same package once
                    if (inst.repo_name, inst.pkg_id) in seen:
                        continue
                    seen.add((inst.repo_name, inst.pkg_id))
                    targets.append((ref, inst))

        planned: List[Tuple[str, InstalledPackage, PackageRecord]] = []
        for ref, inst in targets:
            latest = self.db.query(PackageFilter(pkg_id=inst.pkg_id, repo_name=inst.repo_name)).first()
            if latest is None:
                err = PackageNotFoundError(f"{inst.name}#{inst.pkg_id}:{inst.repo_name}")
                result.add(ItemOutcome(ref, False, f"{err} (no longer offered)", error=err))
                continue
            if vercmp(latest.version, inst.version) <= 0:
                result.add(ItemOutcome(ref, True, "up to date",
                                       data=UpdateReport(inst.pkg_id, inst.version, inst.version)))
                continue
            if ask and not yes and (confirm is None or not confirm(latest)):
                result.add(ItemOutcome(ref, True, "skipped"))
                continue
            planned.append((ref, inst, latest))

        if planned:
            options = InstallOptions(force=True, yes=True, progress=progress)
            with ProgressChannel(progress) as channel:
                with ThreadPoolExecutor(max_workers=min(self.config.parallel_limit, len(planned))) as pool:
                    outcomes = list(pool.map(lambda p: self._update_one(*p, keep, options, channel), planned))
            for outcome in outcomes:
                result.add(outcome)
        return result

    def _update_one(self, ref: str, inst: InstalledPackage, record: PackageRecord, keep: int,
                    options: InstallOptions, channel: ProgressChannel) -> ItemOutcome:
        try:
            with PackageLock(self.config.locks_path, inst.pkg_id):
                report = self.installer.install_record(record, options, channel, previous=inst)
                new = report.installed
                protected = [p for p in (new.portable_home, new.portable_config, new.portable_share) if p]
                # only after the new row is committed
                pruned = prune_versions(new.install_path.parent, new.install_path, keep, protected)
        except SoarError as e:
            _logger.error("Failed to update %s: %s", ref, e)
            return ItemOutcome(ref, False, str(e), error=e)

        _logger.info("Updated %s %s -> %s", inst.name, inst.version, record.version)
        return ItemOutcome(
            ref, True, f"{inst.version} -> {record.version}",
            data=UpdateReport(inst.pkg_id, inst.version, record.version, pruned),
        )
