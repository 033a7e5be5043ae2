from pathlib import Path

import pytest

from cloudsync.core import config as config_module
from cloudsync.core.errors import UsageError


def test_load_config_creates_from_template(monkeypatch, tmp_path: Path):
    template = tmp_path / "config.yaml.example"
    target = tmp_path / "conf" / "config.yaml"
    template.write_text(
        "\n".join(
            [
                "remote_connector: local",
                "passphrase: tpl_secret",
                "remote_local:",
                f"  target_folder: {tmp_path / 'nas'}",
                "sync:",
                "  history: 3",
                "  exclude: ['.*\\.tmp']",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", template)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.passphrase == "tpl_secret"
    assert cfg.sync.history == 3
    assert cfg.sync.exclude == [".*\\.tmp"]
    assert cfg.remote_local.target_folder == str(tmp_path / "nas")


def test_load_config_creates_defaults_when_template_missing(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", tmp_path / "missing-template.yaml")

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.remote_connector == "local"
    assert cfg.sync.retries == 6
    assert cfg.sync.existing == "stop"
    assert config_module.load_config(target) == cfg


def test_load_config_falls_back_when_template_invalid(monkeypatch, tmp_path: Path):
    template = tmp_path / "config.yaml.example"
    target = tmp_path / "config.yaml"
    template.write_text("sync: [invalid\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", template)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.sync.followlinks == "external"


def test_shipped_template_is_valid(monkeypatch, tmp_path: Path):
    assert config_module.DEFAULT_CONFIG_TEMPLATE_PATH.exists()
    cfg = config_module.load_config(tmp_path / "config.yaml")
    assert cfg == config_module.AppConfig()


def test_invalid_values_are_usage_errors(tmp_path: Path):
    target = tmp_path / "config.yaml"
    target.write_text("sync:\n  existing: overwrite\n", encoding="utf-8")

    with pytest.raises(UsageError, match="invalid config"):
        config_module.load_config(target)


def test_negative_history_is_rejected(tmp_path: Path):
    target = tmp_path / "config.yaml"
    target.write_text("sync:\n  history: -1\n", encoding="utf-8")

    with pytest.raises(UsageError):
        config_module.load_config(target)


def test_non_mapping_is_rejected(tmp_path: Path):
    target = tmp_path / "config.yaml"
    target.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(UsageError, match="must be a mapping"):
        config_module.load_config(target)


def test_runtime_paths_expand_backup_name(tmp_path: Path):
    cfg = config_module.AppConfig.model_validate({"runtime": {"cache_file": f"{tmp_path}/{{name}}/state.cache"}})

    cache, lock, pid = config_module.runtime_paths(cfg, "photos")

    assert cache == tmp_path / "photos" / "state.cache"
    assert lock == tmp_path / "photos" / "state.lock"
    assert pid == tmp_path / "photos" / "state.pid"


def test_passphrase_required_unless_unencrypted():
    with pytest.raises(UsageError, match="passphrase"):
        config_module.require_passphrase(config_module.AppConfig())
    config_module.require_passphrase(config_module.AppConfig(noencryption=True))
    config_module.require_passphrase(config_module.AppConfig(passphrase="x"))
