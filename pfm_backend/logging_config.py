from __future__ import annotations

import logging.config
from typing import Any


def build_logging_config(level: str) -> dict[str, Any]:
    """dictConfig mapping: one stdout handler on the root logger.

    SQLAlchemy's engine logger stays at WARNING so statement echo never
    follows ``LOG_LEVEL=DEBUG``.
    """
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "line": {
                "format": (
                    '{"level":"%(levelname)s","ts":"%(asctime)s",'
                    '"logger":"%(name)s","msg":"%(message)s"}'
                ),
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "line",
            },
        },
        "loggers": {
            "sqlalchemy.engine": {"level": "WARNING"},
        },
        "root": {
            "level": level.upper(),
            "handlers": ["stdout"],
        },
    }


def setup_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(build_logging_config(level))
