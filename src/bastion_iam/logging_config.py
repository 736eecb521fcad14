"""Operational logging for Bastion-IAM.

Everything under the ``bastion_iam`` logger is emitted as one JSON object per
line on stderr, optionally mirrored to a size-bounded rotating file for
``serve`` deployments:

    {"ts": "2026-10-18T09:12:44.031Z", "level": "WARNING",
     "logger": "bastion_iam.auth.lockout",
     "message": "Principal p-1a2b locked for 1800s after 5 failed attempt(s)"}

This log is separate from the tamper-evident audit trail in
``bastion_iam.audit``. Credential material must never reach it; as a backstop
``_RedactSecrets`` masks ``password=``/``token=``/``secret=``/``code=`` style
pairs that slip into a formatted message.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import re
import sys
from pathlib import Path

LOGGER_NAME = "bastion_iam"

_SECRET_PAIR = re.compile(
    r"(?i)\b(password|passwd|token|secret|otp|code|authorization)(\s*[=:]\s*)(\"[^\"]*\"|'[^']*'|\S+)"
)


class _RedactSecrets(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _SECRET_PAIR.sub(lambda m: f"{m.group(1)}{m.group(2)}***", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S") + f".{record.msecs:03.0f}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """Install JSON handlers on the ``bastion_iam`` logger and return it.

    Calling it again replaces the previous handlers, so the CLI can run it once
    per invocation. Unknown level names fall back to INFO.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = False

    formatter = _JsonFormatter()
    redact = _RedactSecrets()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        )
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(redact)
        logger.addHandler(handler)

    if log_file:
        logger.info("Writing operational log to %s (rotate at %d bytes)", log_file, max_bytes)
    return logger
