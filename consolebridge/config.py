import os
from dataclasses import dataclass
from pathlib import Path

import yaml

CONFIG_ENV_KEY = "CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.yml"


@dataclass
class BotConfig:
    token: str
    log_level: str = "INFO"
    data_dir: str = "data"
    binds_file: str = "binds.json"
    cooldowns_file: str = "cooldowns.json"
    queue_interval_ms: int = 500
    spam_window_seconds: float = 5.0
    position_timeout_seconds: float = 5.0
    command_delay_seconds: float = 0.5
    teleport_cooldown_seconds: float = 5.0
    error_webhook_url: str | None = None

    def data_path(self, name: str) -> Path:
        path = Path(name)
        if path.is_absolute():
            return path
        return Path(self.data_dir) / path

    @property
    def binds_path(self) -> Path:
        return self.data_path(self.binds_file)

    @property
    def cooldowns_path(self) -> Path:
        return self.data_path(self.cooldowns_file)


def _positive_number(data: dict, key: str, default: float) -> float:
    raw = data.get(key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Config '{key}' must be a number, got {raw!r}")
    if value < 0:
        raise ValueError(f"Config '{key}' must not be negative")
    return value


def load_config(path: str | None = None) -> BotConfig:
    config_path = path or os.environ.get(CONFIG_ENV_KEY, DEFAULT_CONFIG_PATH)
    with open(config_path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    token = str(data.get("token") or "").strip()
    if not token:
        raise ValueError("Config missing 'token'")

    log_level = str(data.get("log_level") or "INFO").upper()
    valid_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
    if log_level not in valid_levels:
        raise ValueError(
            f"Invalid log_level '{log_level}'. Must be one of {sorted(valid_levels)}"
        )

    data_dir = str(data.get("data_dir") or "data")
    queue_interval_ms = int(_positive_number(data, "queue_interval_ms", 500))
    if queue_interval_ms < 50:
        raise ValueError("Config 'queue_interval_ms' must be at least 50")

    webhook_url = data.get("error_webhook_url")
    if webhook_url is not None:
        webhook_url = str(webhook_url).strip() or None
    if webhook_url and not webhook_url.startswith(("https://", "http://")):
        raise ValueError("Config 'error_webhook_url' must be an http(s) URL")

    return BotConfig(
        token=token,
        log_level=log_level,
        data_dir=data_dir,
        binds_file=str(data.get("binds_file") or "binds.json"),
        cooldowns_file=str(data.get("cooldowns_file") or "cooldowns.json"),
        queue_interval_ms=queue_interval_ms,
        spam_window_seconds=_positive_number(data, "spam_window_seconds", 5.0),
        position_timeout_seconds=_positive_number(
            data, "position_timeout_seconds", 5.0
        ),
        command_delay_seconds=_positive_number(data, "command_delay_seconds", 0.5),
        teleport_cooldown_seconds=_positive_number(
            data, "teleport_cooldown_seconds", 5.0
        ),
        error_webhook_url=webhook_url,
    )
