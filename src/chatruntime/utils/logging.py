"""Logging setup shared by the runtime and its host processes."""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Iterable

__all__ = ["setup_logging", "configure_from_settings", "get_log_path"]

_DEFAULT_LOG_DIR = Path.home() / ".chatruntime" / "logs"
_LOG_FILE_NAME = "chatruntime.log"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai", "faiss")
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_LOG_PATH: Path | None = None


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    quiet_loggers: Iterable[str] = _NOISY_LOGGERS,
    force: bool = False,
) -> Path:
    """Install a rotating file handler (and optionally a console handler) on the root logger.

    Calling this again is a no-op unless ``force`` is set, so library code can
    call it without clobbering a host's configuration.
    """

    global _LOG_PATH
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    target_dir = Path(log_dir or os.environ.get("CHATRUNTIME_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILE_NAME

    formatter = logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)

    # Third-party chatter stays at WARNING unless the root is already stricter.
    quiet_level = max(level, logging.WARNING)
    for name in quiet_loggers:
        logging.getLogger(name).setLevel(quiet_level)

    _LOG_PATH = log_path
    return log_path


def configure_from_settings(settings, *, console: bool = True) -> Path:
    """Configure logging from a :class:`~chatruntime.services.settings.Settings` instance."""

    level = logging.DEBUG if getattr(settings, "debug_logging", False) else logging.INFO
    return setup_logging(level, log_dir=getattr(settings, "log_dir", None), console=console, force=True)


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH
