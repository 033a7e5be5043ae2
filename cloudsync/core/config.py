from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from cloudsync.core.errors import UsageError

DEFAULT_CONFIG_PATH = Path("~/.config/cloudsync/config.yaml").expanduser()
DEFAULT_CONFIG_TEMPLATE_PATH = Path(__file__).resolve().parents[2] / "config.yaml.example"


class RemoteLocalConfig(BaseModel):
    # mounted target folder; each backup name gets its own subfolder
    target_folder: str = ""


class GoogleDriveConfig(BaseModel):
    client_id: str = ""
    client_secret: str = ""
    token_file: str = "~/.config/cloudsync/gdrive_{name}.json"
    base_path: str = "/cloudsync"
    timeout_sec: int = 60


class FeishuConfig(BaseModel):
    app_id: str = ""
    app_secret: str = ""
    user_token_file: str = "~/.config/cloudsync/feishu_tokens.json"
    # empty means the drive's root folder
    base_folder_token: str = ""
    timeout_sec: int = 60


class SyncConfig(BaseModel):
    followlinks: Literal["none", "external", "all"] = "external"
    existing: Literal["stop", "update", "skip", "rename"] = "stop"
    permissions: Literal["set", "ignore", "try"] = "set"
    # number of history containers to keep, 0 disables history
    history: int = Field(default=0, ge=0)
    retries: int = Field(default=6, ge=0)
    waitretry: int = Field(default=10, ge=0)
    file_error: Literal["exception", "message"] = "exception"
    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    # encrypted payloads above this size are spooled to a temp file
    min_tmp_file_size: int = Field(default=1024 * 1024 * 128, ge=0)


class RuntimeConfig(BaseModel):
    # lock and pid files sit next to the cache with .lock/.pid suffixes
    cache_file: str = "~/.cache/cloudsync/{name}.cache"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = ""


class AppConfig(BaseModel):
    remote_connector: Literal["local", "gdrive", "feishu"] = "local"
    passphrase: str = ""
    noencryption: bool = False
    remote_local: RemoteLocalConfig = Field(default_factory=RemoteLocalConfig)
    gdrive: GoogleDriveConfig = Field(default_factory=GoogleDriveConfig)
    feishu: FeishuConfig = Field(default_factory=FeishuConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def prepare_path(template: str, name: str) -> Path:
    return Path(template.replace("{name}", name)).expanduser()


def runtime_paths(cfg: AppConfig, name: str) -> tuple[Path, Path, Path]:
    """Cache, lock and pid file of backup `name`."""
    cache = prepare_path(cfg.runtime.cache_file, name)
    return cache, cache.with_suffix(".lock"), cache.with_suffix(".pid")


def require_passphrase(cfg: AppConfig) -> None:
    if not cfg.noencryption and not cfg.passphrase:
        raise UsageError("passphrase is not configured (set 'passphrase' or 'noencryption: true')")


def _validate(data: dict, source: Path) -> AppConfig:
    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise UsageError(f"invalid config '{source}': {e}") from e


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                cfg = AppConfig.model_validate(yaml.safe_load(template_text) or {})
                path.write_text(template_text, encoding="utf-8")
            except (yaml.YAMLError, ValidationError):
                cfg = AppConfig()
                save_config(cfg, path)
        else:
            cfg = AppConfig()
            save_config(cfg, path)
        return cfg

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise UsageError(f"can't parse config '{path}': {e}") from e
    if not isinstance(data, dict):
        raise UsageError(f"config '{path}' must be a mapping")
    return _validate(data, path)


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
