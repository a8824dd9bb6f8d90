from __future__ import annotations

import os
import shutil
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from .config import Config
from .db_manager import DbManager, PackageFilter
from .downloader import Downloader, FetchOptions
from .errors import (
    AlreadyInstalledError,
    AmbiguousPackageError,
    AmbiguousSelectionError,
    FilesystemError,
    NoMatchingAssetError,
    PackageNotFoundError,
    PortableConflictError,
    SoarError,
)
from .locking import PackageLock
from .logger import setup_logger
from .models import Asset, InstalledPackage, ItemOutcome, OperationResult, PackageRecord
from .progress import ProgressCallback, ProgressChannel
from .providers import asset_name_from_url, provider_for_origin
from .utils import atomic_symlink, make_executable, remove_path, safe_component, utcnow_iso
from .version import PackageRef, vercmp

_logger = setup_logger()

ConfirmCallback = Callable[[PackageRecord], bool]
ChooseCallback = Callable[[Sequence[PackageRecord]], Optional[PackageRecord]]

AUX_SUFFIXES = (".png", ".svg", ".desktop", ".DirIcon")
STAGING_SEP = "~"


def staging_name(pkg_id: str, suffix: str = "") -> str:
    """<pkg key>~<uuid>; the key lets cleanup check the package lock first."""
    return f"{safe_component(pkg_id)}{STAGING_SEP}{uuid.uuid4().hex}{suffix}"


def staging_owner(name: str) -> str:
    return name.split(STAGING_SEP, 1)[0]


@dataclass
class InstallOptions:
    force: bool = False
    yes: bool = False
    portable: Optional[str] = None
    portable_home: Optional[str] = None
    portable_config: Optional[str] = None
    portable_share: Optional[str] = None
    no_notes: bool = False
    binary_only: bool = False
    ask: bool = False
    confirm: Optional[ConfirmCallback] = None
    select: Optional[ChooseCallback] = None
    progress: Optional[ProgressCallback] = None

    def validate(self) -> None:
        """Generic portable mode excludes the individual overrides."""
        if self.portable is not None and any(
            p is not None for p in (self.portable_home, self.portable_config, self.portable_share)
        ):
            raise PortableConflictError()


@dataclass
class InstallReport:
    record: PackageRecord
    status: str
    installed: Optional[InstalledPackage] = None
    notes: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


# -------------------------
# Resolution
# -------------------------
def resolve_package(
    db: DbManager,
    reference: Union[str, PackageRef],
    yes: bool = True,
    select: Optional[ChooseCallback] = None,
) -> PackageRecord:
    """
    Resolve a reference to the newest matching PackageRecord.

    Several (repo, pkg_id) candidates are never auto-resolved: without an
    interactive `select` they raise AmbiguousPackageError.
    """
    ref = PackageRef.parse(reference) if isinstance(reference, str) else reference
    records = db.query(PackageFilter(**ref.as_db_filters())).all()
    if not records and ref.name and not ref.pkg_id:
        # a bare word may also be a pkg_id
        filters = ref.as_db_filters()
        filters["pkg_id"] = filters.pop("name")
        records = db.query(PackageFilter(**filters)).all()
    if not records:
        raise PackageNotFoundError(str(ref))

    # rows are ordered version-descending: first per key is the newest
    latest: Dict[Tuple[str, str], PackageRecord] = {}
    for rec in records:
        latest.setdefault((rec.repo_name, rec.pkg_id), rec)
    candidates = list(latest.values())
    if len(candidates) == 1:
        return candidates[0]

    if not yes and select is not None:
        chosen = select(candidates)
        if chosen is not None:
            return chosen
    raise AmbiguousPackageError(str(ref), [f"{c.name}#{c.pkg_id}:{c.repo_name}" for c in candidates])


def pick_binary_asset(record: PackageRecord, assets: Sequence[Asset]) -> Asset:
    if not assets:
        raise NoMatchingAssetError(record.origin_descriptor)
    if len(assets) == 1:
        return assets[0]
    named = [a for a in assets if a.name in (record.binary_name, record.name)]
    if len(named) == 1:
        return named[0]
    raise AmbiguousSelectionError([a.name for a in assets])


class InstallEngine:
    """
    Turns PackageRecords into committed installations.

    Layout: <packages_root>/<pkg_id>/<version>/<bin_name>, symlinked from
    <bin_dir>/<bin_name>. Work happens in <packages_root>/.staging/<uuid>
    (same filesystem, so the final move is a rename) and the database row
    is written last.
    """

    def __init__(self, config: Config, db: DbManager, downloader: Downloader) -> None:
        self.config = config
        self.db = db
        self.downloader = downloader

    def install(self, refs: Sequence[str], options: Optional[InstallOptions] = None) -> OperationResult:
        options = options or InstallOptions()
        options.validate()
        result = OperationResult("install")

        # Interactive phase: resolve, short-circuit, confirm
        planned: List[Tuple[str, PackageRecord]] = []
        seen = set()
        for ref in refs:
            try:
                record = resolve_package(self.db, ref, yes=options.yes, select=options.select)
            except (SoarError, ValueError) as e:
                result.add(ItemOutcome(ref, False, str(e), error=e))
                continue
            key = (record.repo_name, record.pkg_id)
            if key in seen:
                continue
            seen.add(key)

            existing = self.db.get_installed(record.pkg_id, record.repo_name)
            if existing and not options.force and vercmp(existing.version, record.version) == 0:
                result.add(self._already_installed(ref, record, existing))
                continue
            if options.ask and not options.yes:
                if options.confirm is None or not options.confirm(record):
                    result.add(ItemOutcome(ref, True, "skipped", data=InstallReport(record, "skipped")))
                    continue
            planned.append((ref, record))

        # Transfer phase
        if planned:
            with ProgressChannel(options.progress) as channel:
                with ThreadPoolExecutor(max_workers=min(self.config.parallel_limit, len(planned))) as pool:
                    outcomes = list(pool.map(lambda item: self._install_ref(item[0], item[1], options, channel), planned))
            for outcome in outcomes:
                result.add(outcome)
        return result

    def _install_ref(self, ref: str, record: PackageRecord, options: InstallOptions,
                     channel: ProgressChannel) -> ItemOutcome:
        try:
            with PackageLock(self.config.locks_path, record.pkg_id):
                report = self.install_record(record, options, channel)
            return ItemOutcome(ref, True, report.status, data=report)
        except AlreadyInstalledError:
            existing = self.db.get_installed(record.pkg_id, record.repo_name)
            return self._already_installed(ref, record, existing)
        except SoarError as e:
            _logger.error("Failed to install %s: %s", ref, e)
            return ItemOutcome(ref, False, str(e), error=e)

    @staticmethod
    def _already_installed(ref: str, record: PackageRecord, existing: Optional[InstalledPackage]) -> ItemOutcome:
        _logger.info("%s %s is already installed", record.name, record.version)
        return ItemOutcome(ref, True, "already installed", data=InstallReport(record, "already-installed", existing))

    # -------------------------
    # Pipeline (caller holds the package lock)
    # -------------------------
    def install_record(self, record: PackageRecord, options: InstallOptions,
                       channel: Optional[ProgressChannel] = None,
                       previous: Optional[InstalledPackage] = None) -> InstallReport:
        channel = channel or ProgressChannel(None)
        existing = self.db.get_installed(record.pkg_id, record.repo_name)
        if existing and not options.force and vercmp(existing.version, record.version) == 0:
            raise AlreadyInstalledError(record.pkg_id, record.version)
        previous = previous or existing

        pkg_dir = self.config.packages_path / safe_component(record.pkg_id)
        final_dir = pkg_dir / safe_component(record.version)
        bin_name = record.binary_name
        bin_link = self.config.bin_path / bin_name
        report = InstallReport(record, "installed")

        staging = self.config.staging_path / staging_name(record.pkg_id)
        staging.mkdir(parents=True)
        displaced: Optional[Path] = None
        old_link_target = os.readlink(bin_link) if bin_link.is_symlink() else None
        created_pkg_dir = not pkg_dir.exists()
        moved = committed = False
        try:
            self._stage(record, staging, options, channel, report)

            pkg_dir.mkdir(parents=True, exist_ok=True)
            if final_dir.exists():
                displaced = self.config.staging_path / staging_name(record.pkg_id, ".old")
                os.replace(final_dir, displaced)
            os.replace(staging, final_dir)
            moved = True

            atomic_symlink(final_dir / bin_name, bin_link)
            portable = self._setup_portable(record, pkg_dir, options, previous)

            installed = InstalledPackage(
                pkg_id=record.pkg_id,
                repo_name=record.repo_name,
                name=record.name,
                version=record.version,
                install_path=final_dir,
                bin_symlink_path=bin_link,
                checksum=record.checksum,
                profile=self.config.profile.name,
                portable_mode=portable[0],
                portable_home=portable[1],
                portable_config=portable[2],
                portable_share=portable[3],
                installed_at=utcnow_iso(),
                bin_name=bin_name,
            )
            self.db.record_install(installed)
            committed = True
        except OSError as e:
            raise FilesystemError("install into", final_dir, e) from e
        finally:
            if not committed:
                self._rollback(staging, final_dir, displaced, moved, bin_link, old_link_target,
                               pkg_dir if created_pkg_dir else None)
            elif displaced is not None:
                remove_path(displaced)

        _logger.info("Installed %s %s (%s)", record.name, record.version, record.repo_name)
        report.installed = installed
        if not options.no_notes:
            report.notes = record.notes
        return report

    def _stage(self, record: PackageRecord, staging: Path, options: InstallOptions,
               channel: ProgressChannel, report: InstallReport) -> None:
        provider = provider_for_origin(record.origin_descriptor)
        assets = provider.list_assets(self.downloader)
        binary = pick_binary_asset(record, assets)

        binary_path = staging / record.binary_name
        self.downloader.fetch(binary, binary_path, FetchOptions(expected_checksum=record.checksum), channel)
        make_executable(binary_path)

        if options.binary_only:
            return
        aux = [a for a in assets if a is not binary and a.name.endswith(AUX_SUFFIXES)]
        for url in (record.icon_url, record.desktop_url):
            if url:
                aux.append(Asset(name=asset_name_from_url(url), url=url))
        for asset in aux:
            try:
                self.downloader.fetch(asset, staging / asset.name, FetchOptions(force_overwrite=True), channel)
            except SoarError as e:
                _logger.warning("Skipping auxiliary file %s: %s", asset.name, e)
                report.warnings.append(f"{asset.name}: {e}")

    def _setup_portable(self, record: PackageRecord, pkg_dir: Path, options: InstallOptions,
                        previous: Optional[InstalledPackage]):
        """Returns (portable_mode, home, config, share); creates the directories."""
        requested = any(
            v is not None
            for v in (options.portable, options.portable_home, options.portable_config, options.portable_share)
        )
        if not requested and previous is not None:
            # updates keep the package's existing portable layout
            paths = (previous.portable_home, previous.portable_config, previous.portable_share)
            for p in paths:
                if p is not None:
                    p.mkdir(parents=True, exist_ok=True)
            return (previous.portable_mode,) + paths
        if not requested:
            return (False, None, None, None)

        def _dir(base: Optional[str], kind: str) -> Optional[Path]:
            if base is None:
                return None
            root = Path(base).expanduser() if base else pkg_dir
            path = root / f"{record.name}.{kind}"
            path.mkdir(parents=True, exist_ok=True)
            return path

        if options.portable is not None:
            return (
                True,
                _dir(options.portable, "home"),
                _dir(options.portable, "config"),
                _dir(options.portable, "share"),
            )
        return (
            False,
            _dir(options.portable_home, "home"),
            _dir(options.portable_config, "config"),
            _dir(options.portable_share, "share"),
        )

    def _rollback(self, staging: Path, final_dir: Path, displaced: Optional[Path], moved: bool,
                  bin_link: Path, old_link_target: Optional[str], created_pkg_dir: Optional[Path]) -> None:
        _logger.debug("Rolling back install into %s", final_dir)
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)
        if moved:
            shutil.rmtree(final_dir, ignore_errors=True)
        # the displaced copy goes back whether or not the new tree made it into place
        if displaced is not None and displaced.exists():
            shutil.rmtree(final_dir, ignore_errors=True)
            os.replace(displaced, final_dir)
        if moved:
            if old_link_target is not None:
                atomic_symlink(Path(old_link_target), bin_link)
            elif bin_link.is_symlink():
                bin_link.unlink()
        if created_pkg_dir is not None:
            # nothing but this install's own portable dirs can live here
            shutil.rmtree(created_pkg_dir, ignore_errors=True)
