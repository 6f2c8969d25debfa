"""Process-wide logging configuration with secret redaction."""

from __future__ import annotations

import logging
import re
import sys
from typing import Any, Callable, Optional, TextIO

REDACTED = "***REDACTED***"

_SENSITIVE_KEYS = (
    r"x-mbx-apikey|api[_-]?key|api[_-]?secret|secret|password|passphrase|token|signature"
)
_SENSITIVE_PATTERN = re.compile(
    rf"(?P<prefix>[\"']?(?:{_SENSITIVE_KEYS})[\"']?\s*[:=]\s*)"
    r"(?P<quote>[\"']?)(?P<value>[^\"'&,\s}]+)(?P=quote)",
    re.IGNORECASE,
)

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_HANDLER_MARKER = "_margin_guard_handler"

_original_factory: Optional[Callable[..., logging.LogRecord]] = None


def redact(text: str) -> str:
    """Mask the values of sensitive keys in ``text``."""

    return _SENSITIVE_PATTERN.sub(
        lambda match: f"{match.group('prefix')}{match.group('quote')}{REDACTED}{match.group('quote')}",
        text,
    )


def debug_to_logging_level(debug: int) -> int:
    if debug <= 0:
        return logging.WARNING
    if debug == 1:
        return logging.INFO
    return logging.DEBUG


class RedactingFilter(logging.Filter):
    """Rewrite a record's message so sensitive values never reach a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        _redact_record(record)
        return True


def _redact_record(record: logging.LogRecord) -> None:
    if getattr(record, "_redacted", False):
        return
    try:
        message = record.getMessage()
    except Exception:  # pragma: no cover - malformed format arguments
        return
    record.msg = redact(message)
    record.args = None
    record._redacted = True  # type: ignore[attr-defined]


def _install_record_factory() -> None:
    """Redact at record creation so handlers attached later are covered too."""

    global _original_factory
    if _original_factory is not None:
        return
    _original_factory = logging.getLogRecordFactory()
    base_factory = _original_factory

    def _factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = base_factory(*args, **kwargs)
        _redact_record(record)
        return record

    logging.setLogRecordFactory(_factory)


def configure_logging(debug: int = 1, stream_target: Optional[TextIO] = None) -> logging.Logger:
    """Install a redacting stream handler on the root logger.

    Calling this again replaces the handler installed by a previous call.
    """

    level = debug_to_logging_level(debug)
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(stream_target or sys.stderr)
    handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
    handler.addFilter(RedactingFilter())
    setattr(handler, _HANDLER_MARKER, True)
    root.addHandler(handler)
    root.setLevel(level)

    for existing in root.handlers:
        if not any(isinstance(f, RedactingFilter) for f in existing.filters):
            existing.addFilter(RedactingFilter())

    _install_record_factory()
    logging.getLogger("margin_guard").setLevel(level)
    return root


__all__ = ["REDACTED", "RedactingFilter", "configure_logging", "debug_to_logging_level", "redact"]
