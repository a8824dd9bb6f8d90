import configparser

import pytest

from conftest import write_config
from soarpy.config import CONFIG_ENV, Config, write_default_config
from soarpy.errors import ConfigError


def test_paths_derive_from_root(config, tmp_path):
    root = tmp_path / "root"
    assert config.bin_path == root / "bin"
    assert config.packages_path == root / "packages"
    assert config.db_path == root / "db" / "soarpy.db"
    assert config.staging_path == root / "packages" / ".staging"
    assert config.locks_path == root / "cache" / "locks"
    assert config.repositories[0].local_shard_path == root / "repos" / "main.json"
    assert [r.name for r in config.enabled_repositories()] == ["main", "extra"]


def test_network_settings(config):
    assert config.network.retries == 2
    assert config.network.timeout == (10, 60)
    assert config.parallel_limit == 2


def test_config_is_read_only(config):
    with pytest.raises(AttributeError):
        config.parallel_limit = 10


def test_missing_repository_url_rejected(tmp_path):
    path = write_config(tmp_path, "[repository.broken]\nenabled = true\n")
    with pytest.raises(ConfigError):
        Config(path)


def test_duplicate_repository_rejected(tmp_path):
    path = write_config(tmp_path, "[repository.main]\nurl = https://other.example/x.json\n")
    with pytest.raises(ConfigError):
        Config(path)


def test_invalid_values_rejected(tmp_path):
    path = write_config(tmp_path)
    text = path.read_text().replace("parallel_limit = 2", "parallel_limit = zero")
    path.write_text(text)
    with pytest.raises(ConfigError):
        Config(path)


def test_unknown_profile_rejected(tmp_path):
    with pytest.raises(ConfigError):
        Config(write_config(tmp_path), profile="nope")


def test_profile_packages_path(tmp_path):
    extra = f"[profile.work]\nroot_path = {tmp_path / 'work'}\npackages_path = {tmp_path / 'pkgs'}\n"
    cfg = Config(write_config(tmp_path, extra), profile="work")
    assert cfg.packages_path == tmp_path / "pkgs"
    assert cfg.db_path == tmp_path / "work" / "db" / "soarpy.db"
    assert cfg.get_packages_path("default") == tmp_path / "root" / "packages"


def test_env_variable_selects_config(tmp_path, monkeypatch):
    path = write_config(tmp_path)
    monkeypatch.setenv(CONFIG_ENV, str(path))
    assert Config().config_path == path


def test_missing_config_without_default(tmp_path):
    with pytest.raises(ConfigError):
        Config(tmp_path / "absent.conf", create_default=False)


def test_write_default_config(tmp_path):
    path = tmp_path / "conf" / "soarpy.conf"
    write_default_config(path, repositories=["bincache"])
    parser = configparser.ConfigParser(interpolation=None)
    parser.read(path)
    assert parser.has_section("repository.bincache")
    assert not parser.has_section("repository.pkgcache")
    assert parser.getint("general", "parallel_limit") == 4


def test_env_lists_paths(config):
    env = config.env()
    assert env["SOARPY_BIN"] == str(config.bin_path)
    assert env["SOARPY_PACKAGES"] == str(config.packages_path)
