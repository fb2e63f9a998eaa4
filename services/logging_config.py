"""Logging setup for processes that embed the authentication core."""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Loggers that are too chatty at INFO
NOISY_LOGGERS = ("aiosqlite", "sqlalchemy.engine", "httpx", "httpcore")


def configure_logging(log_level: str = "INFO") -> None:
    """
    Configure the root logger with a single stream handler.

    Call this once at process startup. Calling it again only adjusts the level.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Create a handler if none exists
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
