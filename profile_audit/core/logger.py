from __future__ import annotations

import logging
import logging.config
import sys
from datetime import datetime
from os import makedirs
from os.path import join
from typing import Any


class UnicodeSafeFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        stream_encoding = getattr(sys.stderr, "encoding", None) or "utf-8"
        return message.encode(stream_encoding, errors="backslashreplace").decode(
            stream_encoding, errors="strict"
        )


def build_log_config(level: str = "INFO", logs_path: str | None = None) -> dict[str, Any]:
    handlers: dict[str, dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": level.upper(),
            "formatter": "minimal",
        },
    }
    if logs_path:
        makedirs(logs_path, exist_ok=True)
        current_timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        handlers["file"] = {
            "class": "logging.FileHandler",
            "level": "DEBUG",
            "formatter": "default",
            "filename": join(logs_path, f"profile_audit_{current_timestamp}.log"),
            "mode": "a",
            "encoding": "utf-8",
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%d-%m-%Y %H:%M:%S",
            },
            "minimal": {
                "()": UnicodeSafeFormatter,
                "format": "%(levelname)s - %(message)s",
            },
        },
        "handlers": handlers,
        "loggers": {
            "httpx": {"level": "WARNING"},
            "httpcore": {"level": "WARNING"},
            "profile_audit": {"level": "DEBUG"},
        },
        "root": {
            "level": level.upper(),
            "handlers": list(handlers),
        },
    }


def configure_logging(level: str = "INFO", logs_path: str | None = None) -> None:
    """Install the process-wide logging configuration."""

    logging.config.dictConfig(build_log_config(level, logs_path))


logger = logging.getLogger("profile_audit")
