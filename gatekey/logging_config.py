"""
Logging configuration with secret redaction
"""

import logging
import logging.config
import re
from typing import Any, Dict

# Issued secrets are "<prefix><64 hex chars>"; anything that long and hex-shaped is masked
_SECRET_PATTERN = re.compile(r"\b([A-Za-z0-9_]{1,16}-)?[0-9a-f]{32,}\b")


class SecretRedactionFilter(logging.Filter):
    """Filter that masks anything shaped like an issued secret or raw digest."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _SECRET_PATTERN.sub(_mask, message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True  # Never drop records, only rewrite them


def _mask(match: re.Match) -> str:
    prefix = match.group(1) or ""
    return f"{prefix}***"


def get_logging_config(level: str = "INFO") -> Dict[str, Any]:
    """Get logging configuration with secret redaction on every handler."""
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "secret_redaction": {
                "()": SecretRedactionFilter
            }
        },
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            },
            "security": {
                "format": "%(asctime)s - SECURITY - %(levelname)s - %(message)s"
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
                "filters": ["secret_redaction"]
            },
            "security": {
                "class": "logging.StreamHandler",
                "formatter": "security",
                "stream": "ext://sys.stdout",
                "filters": ["secret_redaction"]
            }
        },
        "loggers": {
            "gatekey": {
                "handlers": ["default"],
                "level": level,
                "propagate": False
            },
            "gatekey.security": {
                "handlers": ["security"],
                "level": "INFO",
                "propagate": False
            }
        },
        "root": {
            "level": level,
            "handlers": ["default"]
        }
    }


def configure_logging(level: str = "INFO") -> None:
    """Apply the logging configuration."""
    logging.config.dictConfig(get_logging_config(level))
