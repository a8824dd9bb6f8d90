from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence

from .config import Config
from .db_manager import DbManager
from .downloader import Downloader, FetchOptions
from .errors import SoarError
from .install import ChooseCallback, pick_binary_asset, resolve_package
from .logger import setup_logger
from .models import InstalledPackage, PackageRecord
from .progress import ProgressCallback, ProgressChannel
from .providers import provider_for_origin
from .utils import make_executable, safe_component

_logger = setup_logger()


@dataclass(frozen=True)
class RunResult:
    exit_code: int
    binary: Path
    installed: bool = False


def portable_env(installed: InstalledPackage) -> Dict[str, str]:
    """Environment overrides for a package's portable directories."""
    env = {}
    if installed.portable_home:
        env["HOME"] = str(installed.portable_home)
    if installed.portable_config:
        env["XDG_CONFIG_HOME"] = str(installed.portable_config)
    if installed.portable_share:
        env["XDG_DATA_HOME"] = str(installed.portable_share)
    return env


class RunExecutor:
    """Runs a package binary without installing it."""

    def __init__(self, config: Config, db: DbManager, downloader: Downloader) -> None:
        self.config = config
        self.db = db
        self.downloader = downloader

    def run(self, ref: str, command: Sequence[str] = (), yes: bool = True,
            select: Optional[ChooseCallback] = None,
            progress: Optional[ProgressCallback] = None) -> RunResult:
        record = resolve_package(self.db, ref, yes=yes, select=select)

        installed = self.db.get_installed(record.pkg_id, record.repo_name)
        if installed is not None and installed.binary_path.is_file():
            _logger.debug("Running installed %s", installed.binary_path)
            code = self._execute(installed.binary_path, command, portable_env(installed))
            return RunResult(code, installed.binary_path, installed=True)

        cached = self.cached_binary(record, progress)
        with tempfile.TemporaryDirectory(prefix="soarpy-run-") as tmp:
            ephemeral = Path(tmp) / record.binary_name
            shutil.copy2(cached, ephemeral)
            make_executable(ephemeral)
            code = self._execute(ephemeral, command)
        return RunResult(code, cached)

    def cached_binary(self, record: PackageRecord, progress: Optional[ProgressCallback] = None) -> Path:
        """Fetch (or reuse) the verified binary under <cache>/downloads/<pkg_id>/<version>/."""
        cache_dir = self.config.downloads_cache_path / safe_component(record.pkg_id) / safe_component(record.version)
        target = cache_dir / record.binary_name
        if target.is_file() and target.stat().st_size > 0:
            _logger.debug("Using cached %s", target)
            return target
        assets = provider_for_origin(record.origin_descriptor).list_assets(self.downloader)
        asset = pick_binary_asset(record, assets)
        with ProgressChannel(progress) as channel:
            result = self.downloader.fetch(
                asset,
                target,
                FetchOptions(skip_existing=True, expected_checksum=record.checksum),
                channel,
            )
        return result.path

    @staticmethod
    def _execute(binary: Path, command: Sequence[str], env: Optional[Dict[str, str]] = None) -> int:
        full_env = dict(os.environ, **env) if env else None
        try:
            proc = subprocess.run([str(binary), *command], env=full_env)
        except OSError as e:
            raise SoarError(f"Cannot execute {binary.name}: {e}") from e
        _logger.debug("%s exited with %d", binary.name, proc.returncode)
        return proc.returncode
