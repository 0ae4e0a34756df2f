"""
Logging configuration with masking of requester contact details.

Audit events go to the 'triagebot.audit' child logger as one JSON object per
line so they can be shipped and queried separately from application logs.
"""
import json
import logging
import re
from typing import Any, Dict, Optional

from app.core.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Contact details must never reach the logs in clear text
MASK_PATTERNS = [
    (r'"(reporter_)?email":\s*"[^"]*"', r'"\1email": "***@***"'),
    (r'"(reporter_)?phone":\s*"[^"]*"', r'"\1phone": "***"'),
    (r'"(reporter_)?name":\s*"[^"]*"', r'"\1name": "***"'),
    (r'[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}', '***@***'),
    (r'\(?\b\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b', '***-***-****'),
]


class MaskingFormatter(logging.Formatter):
    """Formatter that masks contact details after formatting."""

    def format(self, record: logging.LogRecord) -> str:
        return mask(super().format(record))


def mask(message: str) -> str:
    for pattern, replacement in MASK_PATTERNS:
        message = re.sub(pattern, replacement, message, flags=re.IGNORECASE)
    return message


def setup_logging() -> logging.Logger:
    """Configure the application logger once."""
    level = logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    app_logger = logging.getLogger("triagebot")
    app_logger.setLevel(level)

    if not app_logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(MaskingFormatter(LOG_FORMAT))
        app_logger.addHandler(handler)

    return app_logger


# Global logger instance
logger = setup_logging()
audit_logger = logger.getChild("audit")


def get_logger(name: str) -> logging.Logger:
    """Child logger under the application logger, sharing its masking handler."""
    return logger.getChild(name.replace("app.", "", 1))


def log_audit_event(
    event_type: str,
    actor_id: Optional[str],
    actor_type: str,
    details: Dict[str, Any],
) -> None:
    """Emit one audit line; case-level history lives in the case's own audit trail."""
    audit_logger.info(
        json.dumps(
            {
                "event": event_type,
                "actor_id": actor_id,
                "actor_type": actor_type,
                "details": details,
            },
            default=str,
            sort_keys=True,
        )
    )
