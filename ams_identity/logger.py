"""
Structured JSON Logging Module.

Every identity operation writes one JSON object per line.  The ``event``
and ``user_id`` fields are lifted to the top level so audit-grade lines
can be filtered without parsing ``extra``.  Credential-bearing fields
(passwords, TOTP codes and secrets, tokens, enrollment URIs) are masked
before they reach any handler.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, TextIO, Union

REDACTED: str = "***"

_CORRELATION_KEYS: tuple[str, ...] = ("event", "user_id")

_SENSITIVE_KEYS: frozenset[str] = frozenset({
    "password",
    "new_password",
    "totp_code",
    "secret",
    "qr_code",
    "uri",
    "access_token",
    "refresh_token",
    "token",
})


class JSONFormatter(logging.Formatter):
    """Formats log records as structured JSON objects.

    Each log entry contains:
        - timestamp  (ISO-8601, UTC)
        - level
        - logger_name
        - message
        - event / user_id  (when the caller supplied them)
        - extra      (remaining caller fields, sensitive values masked)
        - exception  (formatted traceback, when present)
    """

    _STANDARD_ATTRS: frozenset[str] = frozenset(
        logging.LogRecord(
            name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
        ).__dict__.keys()
    ) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Union[str, dict[str, str]]] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
            "message": record.getMessage(),
        }

        extra_fields: dict[str, str] = {}
        for key, value in record.__dict__.items():
            if key in self._STANDARD_ATTRS:
                continue
            if key in _CORRELATION_KEYS:
                entry[key] = str(value)
            elif key.lower() in _SENSITIVE_KEYS:
                extra_fields[key] = REDACTED
            else:
                extra_fields[key] = str(value)
        if extra_fields:
            entry["extra"] = extra_fields

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, ensure_ascii=False)


class StructuredLogger:
    """Injectable logger.

    Services receive one of these through their constructor.  The wrapped
    ``logging.Logger`` is reachable via ``.logger``.

    Usage::

        log = StructuredLogger(name="auth")
        log.info("User signed in", extra={"event": "LOGIN", "user_id": "u-1"})
    """

    def __init__(
        self,
        name: str = "ams_identity",
        level: Optional[int] = None,
        stream: Union[TextIO, None] = None,
        log_file: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
    ) -> None:
        # Deferred so importing this module never loads settings.
        from ams_identity.config import get_config
        cfg = get_config()

        resolved_level: int = level if level is not None else logging.getLevelName(cfg.LOG_LEVEL.upper())
        if not isinstance(resolved_level, int):
            resolved_level = logging.INFO

        self._logger: logging.Logger = logging.getLogger(name)
        self._logger.setLevel(resolved_level)

        if self._logger.handlers:
            return

        formatter = JSONFormatter()
        console = logging.StreamHandler(stream or sys.stdout)
        console.setFormatter(formatter)
        self._logger.addHandler(console)

        target: str = log_file if log_file is not None else cfg.LOG_FILE
        if not target:
            return
        try:
            path = Path(target)
            path.parent.mkdir(parents=True, exist_ok=True)
            rotating = RotatingFileHandler(
                filename=str(path),
                maxBytes=max_bytes if max_bytes is not None else cfg.LOG_MAX_BYTES,
                backupCount=backup_count if backup_count is not None else cfg.LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        except OSError as exc:
            self._logger.warning(
                "Could not open log file '%s': %s. Logging to console only.",
                target,
                exc,
            )
            return
        rotating.setFormatter(formatter)
        self._logger.addHandler(rotating)

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.critical(msg, *args, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Return a ``StructuredLogger`` under the ``ams_identity`` namespace."""
    qualified = name if name.startswith("ams_identity") else f"ams_identity.{name}"
    return StructuredLogger(name=qualified)
