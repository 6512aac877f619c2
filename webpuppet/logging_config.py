"""Logging bootstrap for the puppet service."""
from __future__ import annotations

import logging
from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict, Optional

# transport libraries log every frame and request line at DEBUG/INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "websockets", "uvicorn.access")


def _rotating(filename: Path, level: str, retention_days: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.TimedRotatingFileHandler",
        "formatter": "default",
        "level": level,
        "filename": str(filename),
        "when": "midnight",
        "backupCount": max(int(retention_days), 1),
        "utc": True,
        "delay": True,
        "encoding": "utf-8",
    }


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None, retention_days: int = 14) -> None:
    """Console, a daily rotating runtime log, and a separate log of warnings.

    Watchdog resets and recovery attempts log at WARNING and above, so
    ``puppet-warnings.log`` is the short history of a session's trouble.
    """

    if log_dir is None:
        log_dir = Path(__file__).resolve().parents[1] / "logs"
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": level,
                },
                "runtime_file": _rotating(log_dir / "puppet-runtime.log", level, retention_days),
                "warnings_file": _rotating(log_dir / "puppet-warnings.log", "WARNING", retention_days),
            },
            "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
            "root": {"level": level, "handlers": ["console", "runtime_file", "warnings_file"]},
        }
    )
    logging.getLogger(__name__).debug("logging configured: level=%s dir=%s", level, log_dir)


__all__ = ["configure_logging"]
