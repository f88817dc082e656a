"""Project-wide logging utilities."""

from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path
from typing import Any, Dict, Optional

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_AREAS = ("ipc", "jobs", "bridge")


def ensure_log_directories(base_dir: Path) -> None:
    """Ensure that the per-area log directories exist."""

    for area in _AREAS:
        (base_dir / area).mkdir(parents=True, exist_ok=True)


def build_default_dict(log_root: Path, *, level: str = "INFO") -> Dict[str, Any]:
    """Create a dictConfig-compatible logging configuration."""

    ensure_log_directories(log_root)

    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "standard",
            # stdout may carry protocol traffic in the front-end
            "stream": "ext://sys.stderr",
        },
    }
    loggers: Dict[str, Any] = {}
    for area in _AREAS:
        handlers[f"{area}_file"] = {
            "class": "logging.FileHandler",
            "level": level,
            "formatter": "standard",
            "filename": str(log_root / area / f"{area}.log"),
            "encoding": "utf-8",
        }
        loggers[area] = {
            "level": level,
            "handlers": [f"{area}_file", "console"],
            "propagate": False,
        }
    # The external service client logs alongside jobs.
    loggers["comfyui"] = {
        "level": level,
        "handlers": ["jobs_file", "console"],
        "propagate": False,
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": _DEFAULT_FORMAT,
            },
        },
        "handlers": handlers,
        "root": {
            "level": level,
            "handlers": ["console"],
        },
        "loggers": loggers,
    }


def setup_logging(log_root: Optional[str | os.PathLike[str]] = None, *,
                  config: Optional[Dict[str, Any]] = None, level: Optional[str] = None) -> None:
    """Initialise the logging subsystem.

    Args:
        log_root: Optional override for the root directory. Defaults to ``./logs``.
        config: Optional dictConfig mapping. When omitted, a pragmatic default is used.
        level: Log level name; falls back to ``MAPBRIDGE_LOG_LEVEL`` then ``INFO``.
    """

    resolved_root = Path(log_root or "logs")
    resolved_root.mkdir(parents=True, exist_ok=True)
    resolved_level = (level or os.getenv("MAPBRIDGE_LOG_LEVEL") or "INFO").upper()

    logging_config = config or build_default_dict(resolved_root, level=resolved_level)
    logging.config.dictConfig(logging_config)


__all__ = ["setup_logging", "ensure_log_directories", "build_default_dict"]
