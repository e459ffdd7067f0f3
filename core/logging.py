"""
Logging configuration
"""

import logging
import re
import sys
from typing import Any
from core.config import settings


NOISY_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "snowflake.connector",
    "google",
    "urllib3",
    "apscheduler",
)

REDACTED = "***"

# Keys whose values never reach a log line
SECRET_KEYS = frozenset({
    "password",
    "private_key",
    "private_key_passphrase",
    "token",
    "secret",
    "credentials",
    "internal_credentials",
    "link_credentials",
    "destination_credentials",
    "service_account_info",
})

SECRET_PATTERN = re.compile(r"\b(password|passwd|secret|token|private_key)=([^\s,;&]+)", re.IGNORECASE)


def redact(value: Any) -> Any:
    """Copy of `value` with secret-keyed entries replaced, recursively."""
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower() in SECRET_KEYS else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


class SecretRedactionFilter(logging.Filter):
    """Scrubs `key=value` secrets from messages and secret keys from error_context"""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = SECRET_PATTERN.sub(lambda m: f"{m.group(1)}={REDACTED}", record.msg)

        context = getattr(record, "error_context", None)
        if isinstance(context, dict):
            record.error_context = redact(context)
        return True


def setup_logging(redact_secrets: bool = True):
    """Configure application logging"""

    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if redact_secrets:
        handler.addFilter(SecretRedactionFilter())

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[handler]
    )

    # Vendor SDKs are chatty at INFO
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {settings.LOG_LEVEL} level (redaction {'on' if redact_secrets else 'off'})")
