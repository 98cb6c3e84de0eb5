"""Application configuration utilities for the outbox pipeline."""
from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict


DEFAULT_CONFIG_LOCATIONS = (
    Path("outbox.ini"),
    Path("config/outbox.ini"),
)


@dataclass
class AppConfig:
    database_path: Path
    log_level: str = "INFO"
    task_queue_url: str | None = None
    structured_logging: bool = False
    local_address: str | None = None
    unidentified_delivery_enabled: bool = True
    transport_url: str = "http://localhost:8080"
    transport_timeout: float = 30.0
    config_source: Path | None = None

    @property
    def queue_target(self) -> str:
        """Task queue location; defaults to the message database itself."""
        return self.task_queue_url or str(self.database_path)


def _load_config_file(config_path: Path | None) -> Dict[str, Any]:
    if config_path is None:
        for candidate in DEFAULT_CONFIG_LOCATIONS:
            if candidate.exists():
                config_path = candidate
                break
    if config_path is None or not config_path.exists():
        return {}

    parser = configparser.ConfigParser()
    parser.read(config_path)
    data: Dict[str, Any] = {"__path__": config_path}
    if parser.has_section("database"):
        data["database_path"] = parser.get("database", "path", fallback=None)
    if parser.has_section("queue"):
        data["task_queue_url"] = parser.get("queue", "task_queue_url", fallback=None)
    if parser.has_section("logging"):
        data["log_level"] = parser.get("logging", "level", fallback=None)
        structured = parser.get("logging", "structured", fallback=None)
        if structured is not None:
            data["structured_logging"] = parser.getboolean("logging", "structured", fallback=False)
    if parser.has_section("account"):
        data["local_address"] = parser.get("account", "local_address", fallback=None)
        unidentified = parser.get("account", "unidentified_delivery", fallback=None)
        if unidentified is not None:
            data["unidentified_delivery_enabled"] = parser.getboolean(
                "account", "unidentified_delivery", fallback=True
            )
    if parser.has_section("transport"):
        data["transport_url"] = parser.get("transport", "url", fallback=None)
        timeout = parser.get("transport", "timeout", fallback=None)
        if timeout is not None:
            data["transport_timeout"] = parser.getfloat("transport", "timeout")
    return data


def _normalize_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return None


def load_settings(database: str | None = None) -> AppConfig:
    """Resolve application configuration from config files, env vars, and overrides."""
    config_file_env = os.getenv("OUTBOX_CONFIG_FILE")
    config_data = _load_config_file(Path(config_file_env)) if config_file_env else _load_config_file(None)

    database_path = database or os.getenv("OUTBOX_DATABASE") or config_data.get("database_path") or "data/outbox.db"
    log_level = (
        os.getenv("OUTBOX_LOG_LEVEL")
        or config_data.get("log_level")
        or "INFO"
    )
    task_queue_url = os.getenv("OUTBOX_TASK_QUEUE") or config_data.get("task_queue_url")
    structured_logging_env = _normalize_bool(os.getenv("OUTBOX_STRUCTURED_LOGGING"))
    if structured_logging_env is None:
        structured_logging = bool(config_data.get("structured_logging", False))
    else:
        structured_logging = structured_logging_env

    local_address = os.getenv("OUTBOX_LOCAL_ADDRESS") or config_data.get("local_address")
    unidentified_env = _normalize_bool(os.getenv("OUTBOX_UNIDENTIFIED_DELIVERY"))
    if unidentified_env is None:
        unidentified_delivery_enabled = bool(config_data.get("unidentified_delivery_enabled", True))
    else:
        unidentified_delivery_enabled = unidentified_env

    transport_url = (
        os.getenv("OUTBOX_TRANSPORT_URL")
        or config_data.get("transport_url")
        or "http://localhost:8080"
    )
    timeout_env = os.getenv("OUTBOX_TRANSPORT_TIMEOUT")
    transport_timeout = float(timeout_env) if timeout_env else float(config_data.get("transport_timeout", 30.0))

    return AppConfig(
        database_path=Path(database_path),
        log_level=log_level.upper(),
        task_queue_url=task_queue_url,
        structured_logging=structured_logging,
        local_address=local_address,
        unidentified_delivery_enabled=unidentified_delivery_enabled,
        transport_url=transport_url.rstrip("/"),
        transport_timeout=transport_timeout,
        config_source=config_data.get("__path__") if config_data else None,
    )
