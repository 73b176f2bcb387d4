from __future__ import annotations

import logging
import re

_TOKEN = re.compile(r"\b[a-zA-Z0-9]{20,}\b")


class SecretRedactingFilter(logging.Filter):
    """Mask long token-like strings so run secrets never reach log output."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _TOKEN.sub("[REDACTED]", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(
    level: int | str = logging.INFO,
    logger_name: str = "runbox",
    redact_secrets: bool = True,
) -> logging.Logger:
    """Configure and return the logger handed to runbox components.

    Calling it again reuses the handler installed by the first call.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    if getattr(logger, "_runbox_configured", False):
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(fmt="%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    if redact_secrets:
        handler.addFilter(SecretRedactingFilter())
    logger.addHandler(handler)
    setattr(logger, "_runbox_configured", True)
    return logger
