"""Logging utilities for the mail mirror engine.

This module provides a centralized logging helper. The actual logging setup
(level, handlers, format) is configured via ``logging.basicConfig()`` in the
entry point (see ``mail_mirror.cli``) to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from mail_mirror.logger import get_logger

        logger = get_logger("SyncEngine")
        logger.info("Server 3 DNS records synced")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "MailMirror") -> logging.Logger:
    """Retrieve a logger instance.

    Returns a standard library logger with the specified name. It does not
    configure handlers or formatters; that responsibility lies with the
    application entry point.

    Args:
        name: The logger name. Defaults to "MailMirror".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for command-line entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
