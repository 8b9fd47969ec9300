from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

DB_PATH_ENV_VAR = "LOCAL_CHAT_STORE_DB"


@dataclass
class AppConfig:
    db_path: str
    allow_destructive_migration: bool
    busy_timeout_ms: int
    busy_retry_attempts: int
    offline_retention_days: int
    prune_interval_hours: float
    log_level: str
    log_consumers: list | None


def load_json_config(path: Path | None = None) -> dict:
    config_path = path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def parse_app_config(config: dict) -> AppConfig:
    db_path = os.environ.get(DB_PATH_ENV_VAR, "").strip() or str(config.get("DbPath", ".local_chat_store/chat.db"))
    return AppConfig(
        db_path=db_path,
        allow_destructive_migration=_to_bool(config.get("AllowDestructiveMigration", True), default=True),
        busy_timeout_ms=int(config.get("BusyTimeoutMs", 5000)),
        busy_retry_attempts=int(config.get("BusyRetryAttempts", 5)),
        offline_retention_days=int(config.get("OfflineRetentionDays", 90)),
        prune_interval_hours=float(config.get("PruneIntervalHours", 24)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_db_path(app: AppConfig) -> str:
    if app.db_path == ":memory:":
        return app.db_path
    db_path = Path(app.db_path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    return str(db_path)
