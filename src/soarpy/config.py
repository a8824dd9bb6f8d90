import configparser
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from .errors import ConfigError
from .logger import setup_logger
from .models import Profile, Repository

_logger = setup_logger()

CONFIG_ENV = "SOARPY_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "soarpy" / "soarpy.conf"
DEFAULT_ROOT = Path.home() / ".local" / "share" / "soarpy"
DEFAULT_PROFILE = "default"
DB_FILENAME = "soarpy.db"


def _platform_triple() -> str:
    return f"{platform.machine() or 'x86_64'}-{platform.system() or 'Linux'}"


DEFAULT_REPOSITORIES = {
    "bincache": f"https://meta.pkgforge.dev/bincache/{_platform_triple()}.json",
    "pkgcache": f"https://meta.pkgforge.dev/pkgcache/{_platform_triple()}.json",
}


@dataclass(frozen=True)
class NetworkSettings:
    timeout_connect: float = 10
    timeout_read: float = 60
    retries: int = 3
    backoff_factor: float = 0.5
    max_backoff: float = 30
    verify_ssl: bool = True
    ca_bundle: Optional[str] = None
    proxy_url: Optional[str] = None
    user_agent: str = "soarpy/0.1"
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def timeout(self):
        return (self.timeout_connect, self.timeout_read)


class Config:
    """
    Resolved configuration, built once at startup and then read-only.

    Every engine receives the same instance; nothing in soarpy keeps
    process-wide mutable settings.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        profile: Optional[str] = None,
        create_default: bool = True,
    ) -> None:
        env_path = os.environ.get(CONFIG_ENV)
        self.config_path = Path(config_path or env_path or DEFAULT_CONFIG_PATH)

        # Default values
        self.root_path: Path = DEFAULT_ROOT
        self.bin_path: Path = DEFAULT_ROOT / "bin"
        self.cache_path: Path = DEFAULT_ROOT / "cache"
        self.repositories_path: Path = DEFAULT_ROOT / "repos"
        self.parallel_limit: int = 4
        self.sync_interval: int = 0
        self.default_profile: str = DEFAULT_PROFILE
        self.network = NetworkSettings()
        self.repositories: List[Repository] = []
        self.profiles: Dict[str, Profile] = {}

        self.load(create_default)

        active = profile or self.default_profile
        if active not in self.profiles:
            raise ConfigError(f"Profile '{active}' is not defined in {self.config_path}")
        self.profile: Profile = self.profiles[active]
        self._frozen = True

    def __setattr__(self, key, value):
        if getattr(self, "_frozen", False):
            raise AttributeError(f"Config is read-only (tried to set '{key}')")
        super().__setattr__(key, value)

    def load(self, create_default: bool = True) -> None:
        parser = configparser.ConfigParser(interpolation=None)
        if not self.config_path.exists():
            if not create_default:
                raise ConfigError(f"Config file {self.config_path} not found")
            _logger.warning(f"Config file {self.config_path} not found. Creating default config.")
            write_default_config(self.config_path)

        try:
            parser.read(self.config_path, encoding="utf-8")
        except configparser.Error as e:
            raise ConfigError(f"Invalid config file {self.config_path}: {e}") from e

        try:
            self._load_general(parser)
            self._load_network(parser)
        except ValueError as e:
            raise ConfigError(f"Invalid value in {self.config_path}: {e}") from e
        self._load_repositories(parser)
        self._load_profiles(parser)

    # -------------------------
    # Sections
    # -------------------------
    def _load_general(self, parser: configparser.ConfigParser) -> None:
        root = _expand(parser.get("general", "root_path", fallback=str(self.root_path)))
        self.root_path = root
        self.bin_path = _expand(parser.get("general", "bin_path", fallback=str(root / "bin")))
        self.cache_path = _expand(parser.get("general", "cache_path", fallback=str(root / "cache")))
        self.repositories_path = _expand(
            parser.get("general", "repositories_path", fallback=str(root / "repos"))
        )
        self.parallel_limit = parser.getint("general", "parallel_limit", fallback=self.parallel_limit)
        if self.parallel_limit < 1:
            raise ValueError("parallel_limit must be >= 1")
        self.sync_interval = parser.getint("general", "sync_interval", fallback=self.sync_interval)
        self.default_profile = parser.get("general", "default_profile", fallback=self.default_profile)

    def _load_network(self, parser: configparser.ConfigParser) -> None:
        headers = dict(parser.items("headers")) if parser.has_section("headers") else {}
        if not parser.has_section("network"):
            self.network = NetworkSettings(headers=headers)
            return

        # Handle empty strings mapping to None
        ca_bundle = parser.get("network", "ca_bundle", fallback=None) or None
        proxy_url = parser.get("network", "proxy_url", fallback=None) or None
        retries = parser.getint("network", "retries", fallback=3)
        if retries < 0:
            raise ValueError("retries must be >= 0")

        self.network = NetworkSettings(
            timeout_connect=parser.getfloat("network", "timeout_connect", fallback=10),
            timeout_read=parser.getfloat("network", "timeout_read", fallback=60),
            retries=retries,
            backoff_factor=parser.getfloat("network", "backoff_factor", fallback=0.5),
            max_backoff=parser.getfloat("network", "max_backoff", fallback=30),
            verify_ssl=parser.getboolean("network", "verify_ssl", fallback=True),
            ca_bundle=ca_bundle,
            proxy_url=proxy_url,
            user_agent=parser.get("network", "user_agent", fallback="soarpy/0.1") or "soarpy/0.1",
            headers=headers,
        )

    def _load_repositories(self, parser: configparser.ConfigParser) -> None:
        seen = set()
        repos = []
        for section in parser.sections():
            if not section.startswith("repository."):
                continue
            name = section.split(".", 1)[1].strip()
            if not name:
                raise ConfigError(f"Repository section '{section}' has no name")
            if name in seen:
                raise ConfigError(f"Duplicate repository name '{name}'")
            seen.add(name)
            url = parser.get(section, "url", fallback="").strip()
            if not url:
                raise ConfigError(f"Repository '{name}' has no url")
            repos.append(
                Repository(
                    name=name,
                    metadata_url=url,
                    local_shard_path=self.repositories_path / f"{name}.json",
                    enabled=parser.getboolean(section, "enabled", fallback=True),
                )
            )
        self.repositories = repos

    def _load_profiles(self, parser: configparser.ConfigParser) -> None:
        profiles = {}
        for section in parser.sections():
            if not section.startswith("profile."):
                continue
            name = section.split(".", 1)[1].strip()
            root = _expand(parser.get(section, "root_path", fallback=str(self.root_path)))
            pkgs = parser.get(section, "packages_path", fallback="")
            profiles[name] = Profile(name=name, root_path=root, packages_path=_expand(pkgs) if pkgs else None)
        if DEFAULT_PROFILE not in profiles:
            profiles[DEFAULT_PROFILE] = Profile(name=DEFAULT_PROFILE, root_path=self.root_path)
        self.profiles = profiles

    # -------------------------
    # Path accessors
    # -------------------------
    def get_profile(self, name: Optional[str] = None) -> Profile:
        if name is None:
            return self.profile
        try:
            return self.profiles[name]
        except KeyError:
            raise ConfigError(f"Profile '{name}' is not defined") from None

    def get_packages_path(self, profile: Optional[str] = None) -> Path:
        return self.get_profile(profile).packages_root

    @property
    def packages_path(self) -> Path:
        return self.profile.packages_root

    @property
    def db_path(self) -> Path:
        return self.profile.db_dir / DB_FILENAME

    @property
    def staging_path(self) -> Path:
        return self.packages_path / ".staging"

    @property
    def locks_path(self) -> Path:
        return self.cache_path / "locks"

    @property
    def downloads_cache_path(self) -> Path:
        return self.cache_path / "downloads"

    def enabled_repositories(self) -> List[Repository]:
        return [r for r in self.repositories if r.enabled]

    def get_repository(self, name: str) -> Repository:
        for repo in self.repositories:
            if repo.name == name:
                return repo
        raise ConfigError(f"Repository '{name}' is not configured")

    def setup_required_paths(self) -> None:
        for path in (
            self.bin_path,
            self.cache_path,
            self.repositories_path,
            self.packages_path,
            self.profile.db_dir,
            self.locks_path,
        ):
            path.mkdir(parents=True, exist_ok=True)

    def env(self) -> Dict[str, str]:
        return {
            "SOARPY_CONFIG": str(self.config_path),
            "SOARPY_BIN": str(self.bin_path),
            "SOARPY_DB": str(self.profile.db_dir),
            "SOARPY_CACHE": str(self.cache_path),
            "SOARPY_PACKAGES": str(self.packages_path),
            "SOARPY_REPOSITORIES": str(self.repositories_path),
        }


def _expand(value: str) -> Path:
    return Path(os.path.expandvars(os.path.expanduser(value)))


def write_default_config(path: Path, repositories: Optional[Sequence[str]] = None) -> None:
    """Write a default config; `repositories` limits which default repos are enabled."""
    net = NetworkSettings()
    parser = configparser.ConfigParser(interpolation=None)
    parser["general"] = {
        "root_path": str(DEFAULT_ROOT),
        "parallel_limit": "4",
        "sync_interval": "0",
        "default_profile": DEFAULT_PROFILE,
    }
    parser["network"] = {
        "timeout_connect": str(net.timeout_connect),
        "timeout_read": str(net.timeout_read),
        "retries": str(net.retries),
        "backoff_factor": str(net.backoff_factor),
        "max_backoff": str(net.max_backoff),
        "verify_ssl": str(net.verify_ssl).lower(),
        "ca_bundle": "",
        "proxy_url": "",
        "user_agent": net.user_agent,
    }
    for name, url in DEFAULT_REPOSITORIES.items():
        if repositories and name not in repositories:
            continue
        parser[f"repository.{name}"] = {"url": url, "enabled": "true"}
    parser[f"profile.{DEFAULT_PROFILE}"] = {"root_path": str(DEFAULT_ROOT)}

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        parser.write(f)
    _logger.info(f"Default config written to {path}")
