from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .config import Config
from .db_manager import DbManager, PackageFilter
from .downloader import Downloader, FetchOptions
from .errors import DownloadError, FilesystemError, PackageNotFoundError, SoarError
from .filters import SelectCallback, select_asset
from .health import HealthChecker, HealthStatus
from .install import ConfirmCallback, InstallEngine, InstallOptions, pick_binary_asset, resolve_package
from .logger import setup_logger
from .metadata_manager import MetadataManager
from .models import Asset, ItemOutcome, OperationResult
from .progress import ProgressCallback, ProgressChannel
from .providers import (
    DirectProvider,
    DownloadTarget,
    Provider,
    RegistryProvider,
    ReleaseHost,
    ReleaseHostProvider,
    provider_for_origin,
)
from .remove import RemovalEngine, find_installed
from .run import RunExecutor
from .update import UpdateEngine
from .utils import atomic_symlink
from .version import PackageRef

_logger = setup_logger()

DownloadJob = Tuple[Asset, Path, FetchOptions]


@dataclass
class DownloadContext:
    """Options shared by every source of one download request."""

    output_dir: Optional[Path] = None
    regex_filters: Sequence[str] = ()
    glob_filters: Sequence[str] = ()
    match_keywords: Sequence[str] = ()
    exclude_keywords: Sequence[str] = ()
    exact_case: bool = False
    yes: bool = False
    skip_existing: bool = False
    force_overwrite: bool = False
    extract: bool = False
    extract_dir: Optional[Path] = None
    select: Optional[SelectCallback] = None
    progress: Optional[ProgressCallback] = None

    def fetch_options(self, expected_checksum: Optional[str] = None) -> FetchOptions:
        return FetchOptions(
            skip_existing=self.skip_existing,
            force_overwrite=self.force_overwrite,
            extract=self.extract,
            extract_dir=self.extract_dir,
            expected_checksum=expected_checksum,
        )

    def target(self, provider: Provider) -> DownloadTarget:
        return DownloadTarget(
            provider,
            regex_filters=tuple(self.regex_filters),
            glob_filters=tuple(self.glob_filters),
            match_keywords=tuple(self.match_keywords),
            exclude_keywords=tuple(self.exclude_keywords),
            exact_case=self.exact_case,
        )


def _failed(operation: str, item: str, error: Exception) -> OperationResult:
    result = OperationResult(operation)
    result.add(ItemOutcome(item, False, str(error), error=error))
    return result


class Operations:
    """
    Entry points used by the CLI.

    One instance per resolved Config; every call returns an OperationResult
    and nothing here prints or reads stdin.
    """

    def __init__(self, config: Config, downloader: Optional[Downloader] = None) -> None:
        self.config = config
        config.setup_required_paths()
        self.db = DbManager(config)
        self.downloader = downloader or Downloader(config)
        self.metadata = MetadataManager(config, self.db, self.downloader)
        self.installer = InstallEngine(config, self.db, self.downloader)
        self.updater = UpdateEngine(config, self.db, self.installer)
        self.remover = RemovalEngine(config, self.db)
        self.health = HealthChecker(config, self.db)
        self.runner = RunExecutor(config, self.db, self.downloader)
        _logger.debug("operations initialized with DB=%s", self.db.db_path)

    def close(self) -> None:
        self.downloader.close()
        self.db.close()

    def __enter__(self) -> "Operations":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _guarded(self, operation: str, item: str, fn: Callable[[], OperationResult]) -> OperationResult:
        """Turn an operation-level error into a failed result."""
        try:
            return fn()
        except (SoarError, ValueError) as e:
            _logger.error("%s failed: %s", operation, e)
            return _failed(operation, item, e)

    # -------------------------
    # Repositories
    # -------------------------
    def sync(self, force: bool = False, repos: Optional[Sequence[str]] = None) -> OperationResult:
        def _run() -> OperationResult:
            selected = [self.config.get_repository(n) for n in repos] if repos else None
            return self.metadata.sync(selected, force=force)

        return self._guarded("sync", ",".join(repos or ()) or "all", _run)

    # -------------------------
    # Package lifecycle
    # -------------------------
    def install(self, refs: Sequence[str], options: Optional[InstallOptions] = None) -> OperationResult:
        return self._guarded("install", " ".join(refs), lambda: self.installer.install(refs, options))

    def update(
        self,
        refs: Optional[Sequence[str]] = None,
        keep: int = 1,
        ask: bool = False,
        yes: bool = False,
        confirm: Optional[ConfirmCallback] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> OperationResult:
        return self._guarded(
            "update",
            " ".join(refs or ()) or "all",
            lambda: self.updater.update(refs, keep=keep, ask=ask, yes=yes, confirm=confirm, progress=progress),
        )

    def remove(self, refs: Sequence[str]) -> OperationResult:
        return self._guarded("remove", " ".join(refs), lambda: self.remover.remove(refs))

    def use_package(self, ref: str) -> OperationResult:
        """Point the package's bin-dir symlink back at this installation."""
        result = OperationResult("use")
        try:
            installed = find_installed(self.db, ref)
            if not installed.binary_path.is_file():
                raise PackageNotFoundError(f"{ref} (binary missing at {installed.binary_path})")
            link = installed.bin_symlink_path or (self.config.bin_path / installed.binary_path.name)
            atomic_symlink(installed.binary_path, link)
        except (SoarError, ValueError) as e:
            result.add(ItemOutcome(ref, False, str(e), error=e))
            return result
        _logger.info("%s now points at %s", link, installed.binary_path)
        result.add(ItemOutcome(ref, True, str(link), data=installed))
        return result

    def run(self, ref: str, command: Sequence[str] = (), yes: bool = True,
            select: Optional[Callable] = None, progress: Optional[ProgressCallback] = None) -> OperationResult:
        def _run() -> OperationResult:
            result = OperationResult("run")
            outcome = self.runner.run(ref, command, yes=yes, select=select, progress=progress)
            result.add(ItemOutcome(ref, True, f"exit code {outcome.exit_code}", data=outcome))
            result.data = outcome
            return result

        return self._guarded("run", ref, _run)

    # -------------------------
    # Queries
    # -------------------------
    def list_installed(self, repo: Optional[str] = None, count: bool = False) -> OperationResult:
        def _run() -> OperationResult:
            result = OperationResult("list-installed")
            rows = self.db.query_installed(PackageFilter(repo_name=repo))
            result.data = len(rows.all()) if count else rows
            return result

        return self._guarded("list-installed", repo or "all", _run)

    def list_available(self, repo: Optional[str] = None) -> OperationResult:
        def _run() -> OperationResult:
            result = OperationResult("list")
            result.data = self.db.query(PackageFilter(repo_name=repo))
            return result

        return self._guarded("list", repo or "all", _run)

    def query(self, ref: str) -> OperationResult:
        """Every known version of the packages matching `ref`."""
        result = OperationResult("query")
        try:
            filters = PackageRef.parse(ref).as_db_filters()
            records = self.db.query(PackageFilter(**filters)).all()
            if not records:
                raise PackageNotFoundError(ref)
        except (SoarError, ValueError) as e:
            result.add(ItemOutcome(ref, False, str(e), error=e))
            return result
        for rec in records:
            installed = self.db.get_installed(rec.pkg_id, rec.repo_name)
            result.add(ItemOutcome(rec.qualified, True, data=(rec, installed)))
        result.data = records
        return result

    def search(self, query: str, case_sensitive: bool = False, limit: Optional[int] = None) -> OperationResult:
        def _run() -> OperationResult:
            result = OperationResult("search")
            result.data = self.db.query(PackageFilter(search=query, case_sensitive=case_sensitive, limit=limit)).all()
            return result

        return self._guarded("search", query, _run)

    def inspect(self, ref: str, kind: str = "log") -> OperationResult:
        """Fetch a package's build log or build script as text."""
        def _run() -> OperationResult:
            if kind not in ("log", "script"):
                raise ValueError(f"Unknown inspect kind: {kind}")
            record = resolve_package(self.db, ref)
            url = record.build_log if kind == "log" else record.build_script
            if not url:
                raise SoarError(f"{record.name} has no build {kind}")
            text = self.downloader.download_to_memory(url).decode("utf-8", errors="replace")
            result = OperationResult("inspect")
            result.add(ItemOutcome(ref, True, url, data=text))
            result.data = text
            return result

        return self._guarded("inspect", ref, _run)

    # -------------------------
    # Health
    # -------------------------
    def check_health(self) -> OperationResult:
        return self._guarded("health", "all", self._check_health)

    def _check_health(self) -> OperationResult:
        result = OperationResult("health")
        report = self.health.check()
        for ph in report.packages:
            item = f"{ph.installed.name}#{ph.installed.pkg_id}:{ph.installed.repo_name}"
            result.add(ItemOutcome(item, ph.status is HealthStatus.OK, ph.status.value, data=ph))
        for link in report.broken_symlinks:
            result.add(ItemOutcome(str(link), False, "broken symlink"))
        for orphan in report.orphaned_dirs:
            result.add(ItemOutcome(str(orphan), False, "orphaned package directory"))
        for entry in report.staging_leftovers:
            result.add(ItemOutcome(str(entry), False, "staging leftover"))
        result.data = report
        return result

    def repair(self) -> OperationResult:
        return self._guarded("repair", "all", self._repair)

    def _repair(self) -> OperationResult:
        result = OperationResult("repair")
        report = self.health.repair()
        for row in report.removed_rows:
            result.add(ItemOutcome(row, True, "record removed"))
        for path in report.removed_symlinks + report.removed_dirs + report.removed_staging:
            result.add(ItemOutcome(str(path), True, "removed"))
        for path in report.skipped:
            result.add(ItemOutcome(str(path), False, "in use; skipped"))
        for path, error in report.failed:
            result.add(ItemOutcome(str(path), False, str(error), error=error))
        result.data = report
        return result

    def clean(self, cache: bool = False, broken_symlinks: bool = False, broken: bool = False) -> OperationResult:
        return self._guarded(
            "clean", "all",
            lambda: self.health.clean(cache=cache, broken_symlinks=broken_symlinks, broken=broken),
        )

    def env(self) -> OperationResult:
        result = OperationResult("env")
        result.data = self.config.env()
        return result

    # -------------------------
    # Ad-hoc downloads
    # -------------------------
    def download(
        self,
        context: Optional[DownloadContext] = None,
        links: Sequence[str] = (),
        github: Sequence[str] = (),
        gitlab: Sequence[str] = (),
        ghcr: Sequence[str] = (),
    ) -> OperationResult:
        """
        Download from URLs, release hosts, registries or package references.

        Sources are resolved one by one (selection may be interactive), then
        every chosen asset is fetched concurrently.
        """
        context = context or DownloadContext()
        output_dir = Path(context.output_dir) if context.output_dir else Path.cwd()
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            error = FilesystemError("create", output_dir, e)
            _logger.error("download failed: %s", error)
            return _failed("download", str(output_dir), error)
        result = OperationResult("download")
        jobs: List[DownloadJob] = []

        sources: List[Tuple[str, Callable[[], Provider]]] = []
        for link in links:
            if link.startswith(("http://", "https://")):
                sources.append((link, lambda l=link: DirectProvider(l)))
            else:
                self._plan_package(link, output_dir, context, jobs, result)
        for spec in github:
            sources.append((spec, lambda s=spec: ReleaseHostProvider.parse(ReleaseHost.GITHUB, s)))
        for spec in gitlab:
            sources.append((spec, lambda s=spec: ReleaseHostProvider.parse(ReleaseHost.GITLAB, s)))
        for spec in ghcr:
            sources.append((spec, lambda s=spec: RegistryProvider(s)))

        for item, make_provider in sources:
            try:
                provider = make_provider()
                candidates = context.target(provider).resolve(self.downloader)
                asset = select_asset(candidates, provider.describe(), yes=context.yes, select=context.select)
            except (SoarError, ValueError) as e:
                _logger.error("Cannot resolve %s: %s", item, e)
                result.add(ItemOutcome(item, False, str(e), error=e))
                continue
            jobs.append((asset, output_dir / asset.name, context.fetch_options()))

        claimed = set()
        unique: List[DownloadJob] = []
        for job in jobs:
            if job[1] in claimed:
                error = DownloadError(f"{job[1]} is already the target of another download in this request")
                result.add(ItemOutcome(job[0].name, False, str(error), error=error))
                continue
            claimed.add(job[1])
            unique.append(job)

        with ProgressChannel(context.progress) as channel:
            for outcome in self.downloader.fetch_many(unique, channel):
                result.add(outcome)
        return result

    def _plan_package(self, ref: str, output_dir: Path, context: DownloadContext,
                      jobs: List[DownloadJob], result: OperationResult) -> None:
        try:
            record = resolve_package(self.db, ref, yes=context.yes)
            assets = provider_for_origin(record.origin_descriptor).list_assets(self.downloader)
            asset = pick_binary_asset(record, assets)
        except (SoarError, ValueError) as e:
            _logger.error("Cannot resolve %s: %s", ref, e)
            result.add(ItemOutcome(ref, False, str(e), error=e))
            return
        jobs.append((asset, output_dir / record.binary_name, context.fetch_options(record.checksum)))