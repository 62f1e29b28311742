"""Tests for loading engine settings from config.ini and MM_* variables."""

import pytest

from mail_mirror.config_loader import SyncConfig, load_sync_config

ENV_VARS = (
    "MM_CONFIG", "MM_DB_PATH", "MM_REQUEST_TIMEOUT", "MM_PRINCIPAL", "MM_API_ENDPOINT",
    "MM_VERIFY_SSL", "MM_SYNC_CONCURRENT", "MM_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults_without_file():
    config = load_sync_config()

    assert config == SyncConfig()
    assert config.request_timeout == 30.0
    assert config.principal == "admin"
    assert config.concurrent is True


def test_file_values(tmp_path):
    config_file = tmp_path / "mirror.ini"
    config_file.write_text("""
[storage]
db_path = /var/lib/mirror.db

[remote]
timeout_seconds = 12.5
principal = ops
api_endpoint = /api
verify_ssl = no

[sync]
concurrent = false

[logging]
level = debug
""")

    config = load_sync_config(str(config_file))

    assert config.db_path == "/var/lib/mirror.db"
    assert config.request_timeout == 12.5
    assert config.principal == "ops"
    assert config.default_api_endpoint == "/api"
    assert config.verify_ssl is False
    assert config.concurrent is False
    assert config.log_level == "DEBUG"


def test_environment_fallbacks(monkeypatch):
    monkeypatch.setenv("MM_DB_PATH", "/tmp/env.db")
    monkeypatch.setenv("MM_REQUEST_TIMEOUT", "5")
    monkeypatch.setenv("MM_SYNC_CONCURRENT", "0")

    config = load_sync_config()

    assert config.db_path == "/tmp/env.db"
    assert config.request_timeout == 5.0
    assert config.concurrent is False


def test_file_wins_over_environment(monkeypatch, tmp_path):
    config_file = tmp_path / "config.ini"
    config_file.write_text("[storage]\ndb_path = /from/file.db\n")
    monkeypatch.setenv("MM_DB_PATH", "/from/env.db")

    # config.ini in the working directory is picked up by default.
    assert load_sync_config().db_path == "/from/file.db"


def test_mm_config_points_to_file(monkeypatch, tmp_path):
    config_file = tmp_path / "other.ini"
    config_file.write_text("[remote]\nprincipal = robot\n")
    monkeypatch.setenv("MM_CONFIG", str(config_file))

    assert load_sync_config().principal == "robot"


@pytest.mark.parametrize("value", ["soon", "0", "-3"])
def test_invalid_timeout_falls_back_to_default(monkeypatch, value):
    monkeypatch.setenv("MM_REQUEST_TIMEOUT", value)

    assert load_sync_config().request_timeout == 30.0


def test_invalid_boolean_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("MM_VERIFY_SSL", "maybe")

    assert load_sync_config().verify_ssl is True


def test_missing_explicit_file_uses_defaults(tmp_path):
    config = load_sync_config(str(tmp_path / "absent.ini"))

    assert config.db_path == "/data/mail_mirror.db"
