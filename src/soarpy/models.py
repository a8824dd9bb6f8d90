from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional


@dataclass(frozen=True)
class Repository:
    name: str
    metadata_url: str
    local_shard_path: Path
    enabled: bool = True
    last_sync_time: Optional[str] = None


@dataclass(frozen=True)
class Profile:
    name: str
    root_path: Path
    packages_path: Optional[Path] = None

    @property
    def packages_root(self) -> Path:
        return self.packages_path or (self.root_path / "packages")

    @property
    def db_dir(self) -> Path:
        return self.root_path / "db"


@dataclass(frozen=True)
class PackageRecord:
    """A package as published by a synced repository."""

    repo_name: str
    pkg_id: str
    name: str
    version: str
    origin_descriptor: str
    checksum: Optional[str] = None
    size: int = 0
    bin_name: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    icon_url: Optional[str] = None
    desktop_url: Optional[str] = None
    build_log: Optional[str] = None
    build_script: Optional[str] = None

    @property
    def binary_name(self) -> str:
        return self.bin_name or self.name

    @property
    def qualified(self) -> str:
        return f"{self.name}#{self.pkg_id}@{self.version}:{self.repo_name}"

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "PackageRecord":
        return PackageRecord(
            repo_name=row["repo_name"],
            pkg_id=row["pkg_id"],
            name=row["name"],
            version=row["version"],
            origin_descriptor=row["origin_descriptor"],
            checksum=row["checksum"],
            size=int(row["size"] or 0),
            bin_name=row["bin_name"],
            description=row["description"],
            notes=row["notes"],
            icon_url=row["icon_url"],
            desktop_url=row["desktop_url"],
            build_log=row["build_log"],
            build_script=row["build_script"],
        )

    def as_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class InstalledPackage:
    """A committed local installation."""

    pkg_id: str
    repo_name: str
    name: str
    version: str
    install_path: Path
    bin_symlink_path: Optional[Path]
    checksum: Optional[str] = None
    profile: str = "default"
    portable_mode: bool = False
    portable_home: Optional[Path] = None
    portable_config: Optional[Path] = None
    portable_share: Optional[Path] = None
    installed_at: Optional[str] = None
    bin_name: Optional[str] = None

    @property
    def binary_path(self) -> Path:
        return self.install_path / (self.bin_name or self.name)

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "InstalledPackage":
        def _path(key: str) -> Optional[Path]:
            value = row[key]
            return Path(value) if value else None

        return InstalledPackage(
            pkg_id=row["pkg_id"],
            repo_name=row["repo_name"],
            name=row["name"],
            version=row["version"],
            install_path=Path(row["install_path"]),
            bin_symlink_path=_path("bin_symlink_path"),
            checksum=row["checksum"],
            profile=row["profile"],
            portable_mode=bool(row["portable_mode"]),
            portable_home=_path("portable_home"),
            portable_config=_path("portable_config"),
            portable_share=_path("portable_share"),
            installed_at=row["installed_at"],
            bin_name=row["bin_name"],
        )

    def as_row(self) -> Dict[str, Any]:
        row = asdict(self)
        for key, value in row.items():
            if isinstance(value, Path):
                row[key] = str(value)
        row["portable_mode"] = int(self.portable_mode)
        return row


@dataclass(frozen=True)
class Asset:
    """One downloadable candidate produced by a provider."""

    name: str
    url: str
    size: int = 0
    checksum: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)


# -------------------------
# Operation results
# -------------------------
class Status(Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


@dataclass
class ItemOutcome:
    """Per-item result; `error` is set when the item failed."""

    item: str
    ok: bool
    message: str = ""
    error: Optional[Exception] = None
    data: Any = None


@dataclass
class OperationResult:
    operation: str
    items: List[ItemOutcome] = field(default_factory=list)
    data: Any = None

    def add(self, outcome: ItemOutcome) -> ItemOutcome:
        self.items.append(outcome)
        return outcome

    @property
    def failures(self) -> List[ItemOutcome]:
        return [i for i in self.items if not i.ok]

    @property
    def status(self) -> Status:
        failed = len(self.failures)
        if failed == 0:
            return Status.SUCCESS
        if failed == len(self.items):
            return Status.FAILURE
        return Status.PARTIAL

    @property
    def success(self) -> bool:
        return self.status is Status.SUCCESS
