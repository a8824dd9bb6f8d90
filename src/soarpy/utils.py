import hashlib
import os
import re
import shutil
import stat
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

CHUNK_SIZE = 65536

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._+\-]")


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def safe_component(value: str) -> str:
    """Map an id or version onto a single safe path component."""
    cleaned = _UNSAFE_RE.sub("_", value).strip(".")
    return cleaned or "_"


def sha256_file(path: Union[str, Path]) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


def normalize_checksum(value: Optional[str]) -> Optional[str]:
    """Strip an optional 'sha256:' prefix and lowercase."""
    if not value:
        return None
    value = value.strip().lower()
    if ":" in value:
        algo, _, value = value.partition(":")
        if algo != "sha256":
            return None
    return value or None


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write via a temp file in the same directory, then rename over `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def atomic_symlink(target: Path, link: Path) -> None:
    """Create or replace `link` -> `target` without a window where `link` is missing."""
    link.parent.mkdir(parents=True, exist_ok=True)
    tmp = link.parent / f".{link.name}.{os.getpid()}.{uuid.uuid4().hex}.tmp"
    os.symlink(target, tmp)
    try:
        os.replace(tmp, link)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def is_broken_symlink(path: Path) -> bool:
    return path.is_symlink() and not path.exists()


def symlink_points_into(link: Path, root: Path) -> bool:
    if not link.is_symlink():
        return False
    target = Path(os.readlink(link))
    if not target.is_absolute():
        target = link.parent / target
    try:
        Path(os.path.normpath(target)).relative_to(os.path.normpath(root))
        return True
    except ValueError:
        return False


def make_executable(path: Path) -> None:
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def remove_path(path: Path) -> bool:
    """Remove a file, symlink or tree. Returns False if nothing was there."""
    if path.is_symlink() or path.is_file():
        path.unlink()
        return True
    if path.is_dir():
        shutil.rmtree(path)
        return True
    return False


def format_size(num: float) -> str:
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(num) < 1024:
            return f"{num:.1f} {unit}" if unit != "B" else f"{int(num)} B"
        num /= 1024
    return f"{num:.1f} TiB"
