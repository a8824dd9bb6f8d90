from __future__ import annotations

import bz2
import gzip
import hashlib
import json
import lzma
import os
import shutil
import tarfile
import time
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

import requests
import urllib3
from requests.adapters import HTTPAdapter, Retry

from .config import Config
from .errors import (
    ChecksumMismatchError,
    DestinationExistsError,
    DownloadError,
    ExtractionError,
    HttpStatusError,
    NetworkError,
    SoarError,
)
from .logger import setup_logger
from .models import Asset, ItemOutcome
from .progress import ProgressChannel, ProgressEvent, ProgressState
from .utils import CHUNK_SIZE, normalize_checksum

_logger = setup_logger()

T = TypeVar("T")

TRANSIENT_EXCEPTIONS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


@dataclass(frozen=True)
class FetchOptions:
    skip_existing: bool = False
    force_overwrite: bool = False
    extract: bool = False
    extract_dir: Optional[Path] = None
    expected_checksum: Optional[str] = None


@dataclass(frozen=True)
class FetchResult:
    path: Path
    skipped: bool = False
    checksum: Optional[str] = None
    size: int = 0
    extracted_to: Optional[Path] = None


class Downloader:
    """
    HTTP transfer layer.

    Owns the retry policy: connection errors, timeouts and 5xx replies are
    retried with capped exponential backoff; 4xx replies and checksum
    mismatches fail immediately.
    """

    def __init__(self, config: Config, session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.config = config
        self.network = config.network
        self.retries = self.network.retries
        self.timeout = self.network.timeout
        self._sleep = sleep
        self.session = session if session is not None else self._init_session()

    def _init_session(self) -> requests.Session:
        session = requests.Session()

        # 1. Proxy Setup
        if self.network.proxy_url:
            # Explicit config wins over environment proxies
            session.trust_env = False
            session.proxies.update({"http": self.network.proxy_url, "https": self.network.proxy_url})

        # 2. Headers
        session.headers["User-Agent"] = self.network.user_agent
        session.headers.update(dict(self.network.headers))

        # 3. Connection pool; retries are handled by _with_retries
        adapter = HTTPAdapter(
            pool_connections=10,
            pool_maxsize=max(10, self.config.parallel_limit * 2),
            max_retries=Retry(total=0, raise_on_status=False),
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        # 4. SSL Logic
        if not self.network.verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            session.verify = False
            _logger.warning("SSL verification disabled (Insecure).")
        else:
            session.verify = self.network.ca_bundle if self.network.ca_bundle else True
        return session

    def close(self) -> None:
        self.session.close()

    # --------------------------------------------------------
    # Retry policy
    # --------------------------------------------------------

    def backoff(self, attempt: int) -> float:
        return min(self.network.max_backoff, self.network.backoff_factor * (2 ** attempt))

    def _with_retries(self, what: str, fn: Callable[[], T]) -> T:
        attempts = self.retries + 1
        for attempt in range(attempts):
            try:
                return fn()
            except NetworkError as e:
                if attempt + 1 >= attempts:
                    _logger.error("Failed %s after %d attempts.", what, attempts)
                    raise
                delay = self.backoff(attempt)
                _logger.warning("%s failed (%s); retrying in %.1fs", what, e, delay)
                self._sleep(delay)
        raise RuntimeError("Unreachable")

    @staticmethod
    def _check_status(resp: requests.Response, url: str) -> None:
        if resp.status_code >= 500:
            raise NetworkError(f"HTTP {resp.status_code} for {url}")
        if resp.status_code >= 400:
            raise HttpStatusError(url, resp.status_code, resp.reason or "")

    def _get(self, url: str, headers: Optional[Mapping[str, str]] = None, stream: bool = False) -> requests.Response:
        try:
            resp = self.session.get(url, headers=dict(headers or {}), stream=stream, timeout=self.timeout)
        except TRANSIENT_EXCEPTIONS as e:
            raise NetworkError(f"{url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise SoarError(f"Request to {url} failed: {e}") from e
        try:
            self._check_status(resp, url)
        except SoarError:
            resp.close()
            raise
        return resp

    # --------------------------------------------------------
    # Small documents
    # --------------------------------------------------------

    def download_to_memory(self, url: str, headers: Optional[Mapping[str, str]] = None,
                           max_size_mb: int = 256) -> bytes:
        """Fetch a small document (metadata, API replies) into memory."""

        def attempt() -> bytes:
            _logger.debug("Downloading %s to memory", url)
            with self._get(url, headers=headers, stream=True) as resp:
                content_len = int(resp.headers.get("content-length", 0) or 0)
                if content_len > max_size_mb * 1024 * 1024:
                    raise SoarError(f"{url} is too large ({content_len} bytes) for memory download")
                try:
                    return resp.content
                except TRANSIENT_EXCEPTIONS as e:
                    raise NetworkError(f"{url}: {e}") from e

        return self._with_retries(f"download of {url}", attempt)

    def get_json(self, url: str, headers: Optional[Mapping[str, str]] = None) -> Any:
        data = self.download_to_memory(url, headers=headers)
        try:
            return json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise SoarError(f"Invalid JSON from {url}: {e}") from e

    # --------------------------------------------------------
    # Verified, resumable file transfer
    # --------------------------------------------------------

    def fetch(self, asset: Asset, output_path: Union[str, Path], options: Optional[FetchOptions] = None,
              progress: Optional[ProgressChannel] = None) -> FetchResult:
        """
        Transfer `asset` to `output_path`.

        Bytes land in `<output>.part` and are hashed as they arrive; the
        final name only appears once the transfer is complete and the
        checksum (if known) matches. An interrupted `.part` is resumed with
        an HTTP Range request on the next attempt.
        """
        options = options or FetchOptions()
        progress = progress or ProgressChannel(None)
        output_path = Path(output_path)
        if output_path.is_dir():
            output_path = output_path / asset.name
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DownloadError(f"Cannot create {output_path.parent}: {e}") from e

        if output_path.exists() and not options.force_overwrite:
            if options.skip_existing and output_path.stat().st_size > 0:
                _logger.info("Skipping %s (already exists)", output_path)
                progress.emit(ProgressEvent(asset.name, ProgressState.SKIPPED))
                return FetchResult(path=output_path, skipped=True, size=output_path.stat().st_size)
            if not options.skip_existing:
                raise DestinationExistsError(output_path)

        part = output_path.with_name(output_path.name + ".part")
        expected = normalize_checksum(options.expected_checksum or asset.checksum)
        progress.emit(ProgressEvent(asset.name, ProgressState.STARTED, 0, asset.size))
        high_water = [0]

        def report(downloaded: int, total: int) -> None:
            # a restarted transfer stays quiet until it passes the last count shown
            if downloaded > high_water[0]:
                high_water[0] = downloaded
                progress.emit(ProgressEvent(asset.name, ProgressState.PROGRESS, downloaded, total))

        try:
            digest, size = self._with_retries(
                f"download of {asset.name}", lambda: self._transfer(asset, part, report)
            )
            if expected and digest != expected:
                part.unlink(missing_ok=True)
                raise ChecksumMismatchError(asset.name, expected, digest)
            os.replace(part, output_path)
        except OSError as e:
            progress.emit(ProgressEvent(asset.name, ProgressState.FAILED))
            raise DownloadError(f"Download of {asset.name} to {output_path} failed: {e}") from e
        except BaseException:
            progress.emit(ProgressEvent(asset.name, ProgressState.FAILED))
            raise

        _logger.debug("Downloaded %s -> %s", asset.url, output_path)
        progress.emit(ProgressEvent(asset.name, ProgressState.FINISHED, size, size))

        extracted = None
        if options.extract:
            extracted = options.extract_dir or default_extract_dir(output_path)
            extract_archive(output_path, extracted)
        return FetchResult(path=output_path, checksum=digest, size=size, extracted_to=extracted)

    def _transfer(self, asset: Asset, part: Path, report: Callable[[int, int], None]) -> Tuple[str, int]:
        hasher = hashlib.sha256()
        offset = 0
        if part.exists():
            with open(part, "rb") as fh:
                for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
                    hasher.update(chunk)
                    offset += len(chunk)

        headers = dict(asset.headers)
        if offset:
            headers["Range"] = f"bytes={offset}-"

        try:
            resp = self.session.get(asset.url, headers=headers, stream=True, timeout=self.timeout)
        except TRANSIENT_EXCEPTIONS as e:
            raise NetworkError(f"{asset.url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise SoarError(f"Request to {asset.url} failed: {e}") from e

        with resp:
            if offset and resp.status_code == 416:
                # Stale partial; start over on the next attempt
                part.unlink(missing_ok=True)
                raise NetworkError(f"Range not satisfiable for {asset.url}; restarting")
            self._check_status(resp, asset.url)

            mode = "ab"
            if offset and resp.status_code != 206:
                _logger.debug("Server ignored Range for %s; restarting transfer", asset.url)
                hasher = hashlib.sha256()
                offset = 0
                mode = "wb"
            elif not offset:
                mode = "wb"

            total = int(resp.headers.get("content-length", 0) or 0) + offset or asset.size
            downloaded = offset
            try:
                with open(part, mode) as fh:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        fh.write(chunk)
                        hasher.update(chunk)
                        downloaded += len(chunk)
                        report(downloaded, total)
            except TRANSIENT_EXCEPTIONS as e:
                raise NetworkError(f"{asset.url}: {e}") from e

        return hasher.hexdigest(), downloaded

    def fetch_many(self, jobs: Sequence[Tuple[Asset, Path, FetchOptions]],
                   progress: Optional[ProgressChannel] = None) -> List[ItemOutcome]:
        """Run fetches concurrently (bounded by parallel_limit); outcomes in input order."""

        def run(job: Tuple[Asset, Path, FetchOptions]) -> ItemOutcome:
            asset, output, opts = job
            try:
                result = self.fetch(asset, output, opts, progress)
                return ItemOutcome(asset.name, True, str(result.path), data=result)
            except SoarError as e:
                _logger.error("Download of %s failed: %s", asset.name, e)
                return ItemOutcome(asset.name, False, str(e), error=e)

        if not jobs:
            return []
        with ThreadPoolExecutor(max_workers=min(self.config.parallel_limit, len(jobs))) as pool:
            return list(pool.map(run, jobs))


# --------------------------------------------------------
# Extraction
# --------------------------------------------------------

_SINGLE_FILE_OPENERS: Dict[str, Callable[..., Any]] = {
    ".gz": gzip.open,
    ".bz2": bz2.open,
    ".xz": lzma.open,
}


def default_extract_dir(archive: Path) -> Path:
    name = archive.name
    for suffix in (".tar.gz", ".tar.xz", ".tar.bz2", ".tgz", ".tar", ".zip", ".gz", ".xz", ".bz2"):
        if name.endswith(suffix):
            return archive.with_name(name[: -len(suffix)] or name)
    return archive.with_name(name + ".d")


def extract_archive(archive: Path, dest: Path) -> Path:
    """Unpack tar/zip archives or single compressed files into `dest`."""
    dest.mkdir(parents=True, exist_ok=True)
    try:
        if tarfile.is_tarfile(archive):
            with tarfile.open(archive) as tf:
                tf.extractall(dest, filter="data")
        elif zipfile.is_zipfile(archive):
            with zipfile.ZipFile(archive) as zf:
                root = dest.resolve()
                for member in zf.namelist():
                    target = (dest / member).resolve()
                    if root != target and root not in target.parents:
                        raise ExtractionError(f"Unsafe path in {archive.name}: {member}")
                zf.extractall(dest)
        elif archive.suffix in _SINGLE_FILE_OPENERS:
            opener = _SINGLE_FILE_OPENERS[archive.suffix]
            with opener(archive, "rb") as f_in, open(dest / archive.stem, "wb") as f_out:
                shutil.copyfileobj(f_in, f_out)
        else:
            raise ExtractionError(f"Unsupported archive format: {archive.name}")
    except (OSError, EOFError, tarfile.TarError, zipfile.BadZipFile, lzma.LZMAError) as e:
        raise ExtractionError(f"Extraction of {archive.name} failed: {e}") from e
    _logger.debug("Extracted %s -> %s", archive, dest)
    return dest
