from __future__ import annotations

from pathlib import Path

from outbox.cli.runtime import configure_runtime
from outbox.config import load_settings


def test_load_settings_uses_env(monkeypatch, tmp_path):
    db_path = tmp_path / "env.db"
    monkeypatch.setenv("OUTBOX_DATABASE", str(db_path))
    monkeypatch.delenv("OUTBOX_TASK_QUEUE", raising=False)
    monkeypatch.delenv("OUTBOX_STRUCTURED_LOGGING", raising=False)
    monkeypatch.setenv("OUTBOX_LOCAL_ADDRESS", "+15550000000")
    monkeypatch.setenv("OUTBOX_UNIDENTIFIED_DELIVERY", "off")
    monkeypatch.setenv("OUTBOX_TRANSPORT_URL", "https://relay.example/")
    config = load_settings()
    assert config.database_path == db_path
    assert config.task_queue_url is None
    assert config.queue_target == str(db_path)
    assert config.structured_logging is False
    assert config.local_address == "+15550000000"
    assert config.unidentified_delivery_enabled is False
    assert config.transport_url == "https://relay.example"


def test_configure_runtime_overrides(monkeypatch, tmp_path):
    db_path = tmp_path / "runtime.db"
    config = configure_runtime(str(db_path), "debug", structured=True)
    assert config.database_path == db_path


def test_load_settings_reads_redis_queue(monkeypatch):
    redis_url = "redis://localhost:6379/0"
    monkeypatch.setenv("OUTBOX_TASK_QUEUE", redis_url)
    config = load_settings()
    assert config.task_queue_url == redis_url
    assert config.queue_target == redis_url


def test_load_settings_from_ini(monkeypatch, tmp_path):
    config_file = tmp_path / "outbox.ini"
    config_file.write_text(
        """
[database]
path = data/custom.db

[queue]
task_queue_url = redis://example:6379/1

[logging]
level = WARNING
structured = true

[account]
local_address = +15550001111
unidentified_delivery = false

[transport]
url = https://relay.internal:8443
timeout = 12.5
"""
    )
    monkeypatch.setenv("OUTBOX_CONFIG_FILE", str(config_file))
    for name in (
        "OUTBOX_DATABASE",
        "OUTBOX_TASK_QUEUE",
        "OUTBOX_LOG_LEVEL",
        "OUTBOX_STRUCTURED_LOGGING",
        "OUTBOX_LOCAL_ADDRESS",
        "OUTBOX_UNIDENTIFIED_DELIVERY",
        "OUTBOX_TRANSPORT_URL",
        "OUTBOX_TRANSPORT_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    config = load_settings()
    assert config.database_path == Path("data/custom.db")
    assert config.task_queue_url == "redis://example:6379/1"
    assert config.log_level == "WARNING"
    assert config.structured_logging is True
    assert config.local_address == "+15550001111"
    assert config.unidentified_delivery_enabled is False
    assert config.transport_url == "https://relay.internal:8443"
    assert config.transport_timeout == 12.5
    assert config.config_source == config_file
