from __future__ import annotations

import logging
import logging.config

_NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3", "nats")


def configure_logging(level: str = "INFO") -> None:
    """
    Process-wide logging setup. Library modules only ever call `logging.getLogger(__name__)`;
    services call this once at startup.
    """
    level = (level or "INFO").upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "root": {"level": level, "handlers": ["console"]},
        }
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
