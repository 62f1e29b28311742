# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the mail mirror engine.

Settings come from an INI file with environment variables as fallbacks.
Values in the file win over the environment.

Environment variables (all prefixed with MM_):
    MM_CONFIG - Path to the config file (default: config.ini)
    MM_DB_PATH - Mirror database path (default: /data/mail_mirror.db)
    MM_REQUEST_TIMEOUT - Remote request timeout in seconds (default: 30)
    MM_PRINCIPAL - Basic auth user for remote admin APIs (default: admin)
    MM_API_ENDPOINT - Default admin API path prefix (default: /admin)
    MM_VERIFY_SSL - Verify remote TLS certificates (default: true)
    MM_SYNC_CONCURRENT - Run resource syncs concurrently (default: true)
    MM_LOG_LEVEL - Logging level (default: INFO)

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /var/lib/mail-mirror/mirror.db

        [remote]
        timeout_seconds = 20
        principal = admin
        api_endpoint = /admin
        verify_ssl = true

        [sync]
        concurrent = true

        [logging]
        level = DEBUG
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path

from .client import DEFAULT_PRINCIPAL, DEFAULT_TIMEOUT
from .logger import get_logger
from .models import DEFAULT_API_ENDPOINT

DEFAULT_DB_PATH = "/data/mail_mirror.db"

logger = get_logger("SyncConfigLoader")


@dataclass
class SyncConfig:
    """Runtime settings of the engine.

    Attributes:
        db_path: SQLite database path of the local mirror.
        request_timeout: Total timeout in seconds for one remote request.
        principal: Basic auth user name for remote admin APIs.
        default_api_endpoint: Admin API prefix for servers without one.
        verify_ssl: Whether remote TLS certificates are verified.
        concurrent: Whether the orchestrator runs resource syncs concurrently.
        log_level: Logging level name.
    """

    db_path: str = DEFAULT_DB_PATH
    request_timeout: float = DEFAULT_TIMEOUT
    principal: str = DEFAULT_PRINCIPAL
    default_api_endpoint: str = DEFAULT_API_ENDPOINT
    verify_ssl: bool = True
    concurrent: bool = True
    log_level: str = "INFO"


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    logger.warning(f"Invalid boolean {value!r}, using default {default}")
    return default


def load_sync_config(config_path: str | None = None) -> SyncConfig:
    """Load settings from an INI file with ``MM_*`` environment fallbacks.

    A missing config file is not an error: defaults and environment
    variables apply.

    Args:
        config_path: Path to the INI file. Defaults to ``$MM_CONFIG`` or
            ``config.ini``.

    Returns:
        SyncConfig with parsed settings.
    """
    path = Path(config_path or os.getenv("MM_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
    elif config_path:
        logger.info(f"Config file {path} not found, using environment and defaults")

    def get(section: str, option: str, env: str) -> str | None:
        if parser.has_option(section, option):
            value = parser.get(section, option).strip()
            return value or None
        return os.getenv(env)

    def get_float(section: str, option: str, env: str, default: float) -> float:
        value = get(section, option, env)
        if value is None:
            return default
        try:
            parsed = float(value)
        except ValueError:
            logger.warning(f"Invalid float for {section}.{option}, using default {default}")
            return default
        if parsed <= 0:
            logger.warning(f"Non-positive {section}.{option}, using default {default}")
            return default
        return parsed

    return SyncConfig(
        db_path=get("storage", "db_path", "MM_DB_PATH") or DEFAULT_DB_PATH,
        request_timeout=get_float("remote", "timeout_seconds", "MM_REQUEST_TIMEOUT", DEFAULT_TIMEOUT),
        principal=get("remote", "principal", "MM_PRINCIPAL") or DEFAULT_PRINCIPAL,
        default_api_endpoint=get("remote", "api_endpoint", "MM_API_ENDPOINT") or DEFAULT_API_ENDPOINT,
        verify_ssl=_parse_bool(get("remote", "verify_ssl", "MM_VERIFY_SSL"), True),
        concurrent=_parse_bool(get("sync", "concurrent", "MM_SYNC_CONCURRENT"), True),
        log_level=(get("logging", "level", "MM_LOG_LEVEL") or "INFO").upper(),
    )
