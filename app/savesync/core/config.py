from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

APPNAME = "SaveSync"


def _app_home() -> Path:
    override = os.environ.get("SAVESYNC_HOME", "").strip()
    if override:
        return Path(override).expanduser()

    system = platform.system()
    if system == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home()))
    elif system == "Darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path.home() / ".local" / "share"
    return base / APPNAME


PROJECT_ROOT = _app_home()
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"


class RcloneConfig(BaseModel):
    binary: str = "rclone"
    config_path: str = str(PROJECT_ROOT / "rclone.conf")
    # Default provider; a game may override it.
    provider: Literal["gdrive", "onedrive", "dropbox", "pcloud", "box"] = "gdrive"
    remote_base_folder: str = "SaveSyncCloudSave"
    performance_flags: list[str] = Field(default_factory=lambda: [
        "--timeout", "10s",
        "--contimeout", "5s",
        "--retries", "1",
        "--low-level-retries", "1",
    ])


class TransferConfig(BaseModel):
    # Upper bound for a single copy/upload subprocess.
    process_timeout_sec: float = Field(default=600, gt=0)
    # Upper bound for listing calls (lsd/lsf).
    list_timeout_sec: float = Field(default=30, gt=0)
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_delay_sec: float = Field(default=2.0, ge=0)
    batch_transfers: int = Field(default=8, ge=1)
    batch_checkers: int = Field(default=16, ge=1)


class SyncConfig(BaseModel):
    # 0 keeps play-time comparison exact; positive values treat small gaps as in sync.
    similar_threshold_sec: int = Field(default=0, ge=0)
    auto_action_sec: int = Field(default=5, ge=1, le=60)
    name_check_debounce_sec: float = Field(default=0.5, ge=0)
    name_check_cooldown_sec: float = Field(default=5.0, ge=0)
    quarantine_dir: str = ".savesync_quarantine"
    record_max_age_days: int = Field(default=0, ge=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "service.db")


class AppConfig(BaseModel):
    rclone: RcloneConfig = Field(default_factory=RcloneConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    web_bind_host: str = "127.0.0.1"
    web_port: int = 8766
    # Client networks allowed to reach the web API; SAVESYNC_ALLOWED_NETS overrides.
    allowed_nets: list[str] = Field(default_factory=lambda: ["127.0.0.1/32", "::1/128"])


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                data = yaml.safe_load(template_text) or {}
                cfg = AppConfig.model_validate(data)
                path.write_text(template_text, encoding="utf-8")
            except Exception:
                cfg = AppConfig()
                path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        else:
            cfg = AppConfig()
            path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = AppConfig.model_validate(data)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
