from __future__ import annotations

import hashlib
import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence

from .config import Config
from .db_manager import DbManager
from .downloader import Downloader
from .errors import MetadataValidationError, SoarError, SyncError
from .logger import setup_logger
from .models import ItemOutcome, OperationResult, PackageRecord, Repository
from .utils import atomic_write_bytes, normalize_checksum, utcnow_iso

_logger = setup_logger()

REQUIRED_KEYS = ("pkg_id", "version")


class MetadataManager:
    """
    Repository metadata syncing.

    Pipeline per repository:
      1. Download the metadata document (in-memory)
      2. Parse and validate every package entry
      3. Write the shard next to the live one and rename it into place
      4. Replace the repository's rows in the database in one transaction
    Repositories sync concurrently and independently.
    """

    def __init__(self, config: Config, db_manager: DbManager, downloader: Downloader, max_workers: Optional[int] = None):
        self.config = config
        self.db = db_manager
        self.downloader = downloader
        self.max_workers = max_workers or config.parallel_limit

    # --------------------------------------------------------
    # Main entry
    # --------------------------------------------------------

    def sync(self, repos: Optional[Sequence[Repository]] = None, force: bool = False) -> OperationResult:
        """Sync `repos` (default: every enabled repository); report in input order."""
        repos = list(repos) if repos is not None else self.config.enabled_repositories()
        result = OperationResult("sync")
        if not repos:
            return result

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(repos))) as pool:
            futures = [pool.submit(self._sync_one, repo, force) for repo in repos]
            for future in futures:
                result.add(future.result())
        return result

    def _sync_one(self, repo: Repository, force: bool) -> ItemOutcome:
        try:
            message = self.sync_repo(repo, force=force)
            return ItemOutcome(repo.name, True, message)
        except SoarError as e:
            _logger.error("Failed to sync '%s': %s", repo.name, e)
            return ItemOutcome(repo.name, False, str(e), error=e)

    def sync_repo(self, repo: Repository, force: bool = False) -> str:
        """Sync one repository. Returns a short status message; raises SoarError on failure."""
        if not force and self._is_fresh(repo):
            _logger.debug("Repository '%s' synced recently; skipping", repo.name)
            return "up to date"

        _logger.info("Syncing repo '%s'...", repo.name)
        data = self.downloader.download_to_memory(repo.metadata_url)
        content_hash = hashlib.sha256(data).hexdigest()

        # Validate before touching anything local
        records = self.parse_metadata(repo.name, data)

        if self._is_unchanged(repo, data, content_hash):
            _logger.info("Repository '%s' unchanged.", repo.name)
            return "unchanged"

        try:
            atomic_write_bytes(repo.local_shard_path, data)
        except OSError as e:
            raise SyncError(f"Cannot write shard for '{repo.name}': {e}") from e

        count = self.db.upsert_repo_packages(repo.name, records)
        self.db.set_repo_synced(repo, utcnow_iso(), content_hash)
        _logger.info("Sync complete for '%s' (%d packages).", repo.name, count)
        return f"{count} packages"

    def _is_fresh(self, repo: Repository) -> bool:
        if self.config.sync_interval <= 0:
            return False
        state = self.db.get_repo_state(repo.name)
        if not state or not state.get("last_sync_time"):
            return False
        last = datetime.fromisoformat(state["last_sync_time"])
        age = (datetime.now(timezone.utc) - last).total_seconds()
        return age < self.config.sync_interval

    def _is_unchanged(self, repo: Repository, data: bytes, content_hash: str) -> bool:
        state = self.db.get_repo_state(repo.name)
        if not state or state.get("content_hash") != content_hash:
            return False
        try:
            return repo.local_shard_path.read_bytes() == data
        except OSError:
            return False

    # --------------------------------------------------------
    # Logic: Parse metadata document
    # --------------------------------------------------------

    def parse_metadata(self, repo_name: str, data: bytes) -> List[PackageRecord]:
        """Validate the whole document; a single bad entry rejects it."""
        try:
            doc = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MetadataValidationError(f"Metadata for '{repo_name}' is not valid JSON: {e}") from e

        entries = doc.get("packages") if isinstance(doc, dict) else doc
        if not isinstance(entries, list):
            raise MetadataValidationError(f"Metadata for '{repo_name}' has no package list")

        records = []
        seen = set()
        for index, entry in enumerate(entries):
            rec = self._record_from_entry(repo_name, index, entry)
            key = (rec.pkg_id, rec.version)
            if key in seen:
                raise MetadataValidationError(
                    f"Duplicate package {rec.pkg_id} {rec.version} in metadata for '{repo_name}'"
                )
            seen.add(key)
            records.append(rec)
        return records

    @staticmethod
    def _record_from_entry(repo_name: str, index: int, entry: Any) -> PackageRecord:
        where = f"'{repo_name}' entry #{index}"
        if not isinstance(entry, dict):
            raise MetadataValidationError(f"{where} is not an object")

        for key in REQUIRED_KEYS:
            if not _text(entry.get(key)):
                raise MetadataValidationError(f"{where} is missing '{key}'")
        name = _text(entry.get("pkg_name")) or _text(entry.get("name"))
        if not name:
            raise MetadataValidationError(f"{where} is missing 'pkg_name'")
        origin = _text(entry.get("ghcr_pkg")) or _text(entry.get("download_url"))
        if not origin:
            raise MetadataValidationError(f"{where} has neither 'download_url' nor 'ghcr_pkg'")

        size = entry.get("size", entry.get("size_raw", 0)) or 0
        try:
            size = int(size)
        except (TypeError, ValueError):
            raise MetadataValidationError(f"{where} has a non-numeric size: {size!r}") from None

        notes = entry.get("notes")
        if isinstance(notes, list):
            notes = "\n".join(str(n) for n in notes)

        return PackageRecord(
            repo_name=repo_name,
            pkg_id=_text(entry["pkg_id"]),
            name=name,
            version=_text(entry["version"]),
            origin_descriptor=origin,
            checksum=normalize_checksum(_text(entry.get("shasum")) or _text(entry.get("checksum"))),
            size=size,
            bin_name=_text(entry.get("bin_name")),
            description=_text(entry.get("description")),
            notes=_text(notes),
            icon_url=_text(entry.get("icon")),
            desktop_url=_text(entry.get("desktop")),
            build_log=_text(entry.get("build_log")),
            build_script=_text(entry.get("build_script")),
        )


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None
