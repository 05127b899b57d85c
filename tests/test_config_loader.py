"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from mcsctl.config import AppConfig, ConfigError, load_config
from mcsctl.models import ServerType


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    base = tmp_path / "mc"
    config = load_config(env={"MCSCTL_BASE_DIR": str(base)})

    assert isinstance(config, AppConfig)
    assert config.base_dir == base
    assert config.config_file == base / "config.yml"
    assert config.registry_file == base / "servers.yml"
    assert config.servers_dir == base / "servers"
    assert config.runtime_dir == base / "run"
    assert config.logs_dir == base / "logs"
    assert config.backups.root == base / "backups"
    assert config.backups.index == base / "backups" / "backups.json"
    assert config.backups.compression == "gzip"
    assert config.resolver.cache_file == base / "versions.json"
    assert config.container.image == "itzg/minecraft-server"
    assert config.container.name_prefix == "mc-"
    assert config.defaults.port == 25565
    assert config.data_dir("alpha") == base / "servers" / "alpha" / "data"


def test_default_base_dir_is_in_home() -> None:
    """Without overrides the base directory lives in the user's home."""
    config = load_config(env={})

    assert config.base_dir == Path("~/.mc-servers").expanduser()


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "mcsctl.yml"
    cfg.write_text(
        "base_dir: {base}\n"
        "lock_timeout: 5\n"
        "backups:\n"
        "  compression:\n"
        "    algorithm: xz\n"
        "    level: 9\n"
        "container:\n"
        "  image: itzg/minecraft-server:java21\n"
        "  stop_timeout: 120\n"
        "resolver:\n"
        "  manifests:\n"
        "    paper: https://mirror.test/paper/\n"
        "defaults:\n"
        "  memory: 4G\n"
        "  port: 25600\n".format(base=tmp_path / "srv")
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.base_dir == tmp_path / "srv"
    assert config.registry_file == tmp_path / "srv" / "servers.yml"
    assert config.lock_timeout == 5.0
    assert config.backups.compression == "xz"
    assert config.backups.compression_level == 9
    assert config.container.image == "itzg/minecraft-server:java21"
    assert config.container.stop_timeout == 120.0
    assert config.resolver.manifests == {ServerType.PAPER: "https://mirror.test/paper"}
    assert config.defaults.memory == "4G"
    assert config.defaults.port == 25600


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("container:\n  stop_timeout: 10\n")
    env = {
        "MCSCTL_CONFIG_FILE": str(cfg),
        "MCSCTL_BASE_DIR": str(tmp_path / "base"),
        "MCSCTL_CONTAINER__STOP_TIMEOUT": "45",
        "MCSCTL_CONTAINER__RESTART_POLICY": "always",
        "MCSCTL_HEALTH__START_TIMEOUT": "30",
        "MCSCTL_BACKUPS__ROOT": str(tmp_path / "bk"),
        "MCSCTL_BACKUPS__COMPRESSION__ALGORITHM": "none",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.base_dir == tmp_path / "base"
    assert config.container.stop_timeout == 45.0
    assert config.container.restart_policy == "always"
    assert config.health.start_timeout == 30.0
    assert config.backups.root == tmp_path / "bk"
    assert config.backups.index == tmp_path / "bk" / "backups.json"
    assert config.backups.compression == "none"


def test_overrides_beat_environment(tmp_path: Path) -> None:
    """Programmatic overrides (CLI flags) win over the environment."""
    env = {"MCSCTL_BASE_DIR": str(tmp_path), "MCSCTL_LOCK_TIMEOUT": "45"}

    config = load_config(env=env, overrides={"lock_timeout": 2.5})

    assert config.lock_timeout == 2.5


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A YAML document that is not a mapping raises ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_section_key_raises(tmp_path: Path) -> None:
    """Unexpected keys inside a section trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("container:\n  cpus: 2\n")

    with pytest.raises(ConfigError, match="Unknown container configuration keys"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("document", "message"),
    [
        ("backups:\n  compression:\n    algorithm: zstd\n", "Unsupported backup compression"),
        ("backups:\n  compression:\n    level: 12\n", "between 1 and 9"),
        ("container:\n  restart_policy: sometimes\n", "Unsupported restart policy"),
        ("defaults:\n  port: 70000\n", "between 1 and 65535"),
        ("health:\n  multiplier: 0.5\n", "at least 1"),
        ("lock_timeout: -1\n", "greater than zero"),
        ("resolver:\n  manifests:\n    bukkit: https://x.test\n", "Unknown server types"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, document: str, message: str) -> None:
    """Out-of-range values are rejected with a descriptive error."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(document)

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})
