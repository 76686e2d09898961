"""Structured logging for dslr-photobooth.

Thin layer over the standard logging module that lets every call site
attach key/value data to a record:

    logger = get_logger(__name__)
    logger.info("Device opened", device_id="usb:001,004", model="EOS 2000D")

Key/value data is rendered as ``message | key=value`` by default, or as
one JSON object per line with ``configure_logging(json_format=True)``.

Security Note:
    Pass untrusted values (file names reported by the camera, client
    addresses) as keyword arguments, never interpolated into the message,
    so a crafted value cannot forge extra log lines.

Session scoping:
    The session controller wraps each acquisition in a ``LogContext`` so
    every record emitted while the device is held carries the device id
    and acquisition attempt without threading them through every call.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import Any, cast

ROOT_LOGGER_NAME = "dslr_photobooth"

_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "log_context", default={}
)


# =============================================================================
# Structured Log Record / Logger
# =============================================================================


class StructuredLogRecord(logging.LogRecord):
    """LogRecord carrying a ``structured_data`` dict alongside the message."""

    structured_data: dict[str, Any]

    def __init__(
        self,
        name: str,
        level: int,
        pathname: str,
        lineno: int,
        msg: object,
        args: tuple[Any, ...] | MutableMapping[str, Any] | None,
        exc_info: Any,
        func: str | None = None,
        sinfo: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            name, level, pathname, lineno, msg, args, exc_info, func, sinfo
        )
        self.structured_data = kwargs.get("structured_data", {})


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept arbitrary keyword arguments.

    ``Logger.info`` and friends forward unknown keyword arguments straight
    to ``_log``; this class collects them, merges them over the active
    ``LogContext`` and stores the result on the record as
    ``structured_data``.

    Usage:
        logger = get_logger("dslr_photobooth.devices.session")
        logger.warning("Acquisition failed", attempt=2, error="no device")
    """

    def _log(
        self,
        level: int,
        msg: object,
        args: tuple[Any, ...] | MutableMapping[str, Any] | None = None,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **kwargs: Any,
    ) -> None:
        """Merge context and keyword arguments into the record's extra dict.

        Merge order is LogContext values first, explicit kwargs second, so
        a call site can override an ambient key for a single record.

        Args:
            level: Numeric log level.
            msg: Log message, may contain % placeholders.
            args: Arguments for % formatting.
            exc_info: Exception info, True for the current exception.
            extra: Extra LogRecord attributes; ``structured_data`` is set.
            stack_info: Include a stack trace.
            stacklevel: Frames to skip when resolving the caller.
            **kwargs: Structured key/value data for this record.
        """
        structured_data = {**_log_context.get(), **kwargs}
        extra = dict(extra) if extra else {}
        extra["structured_data"] = structured_data
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


# =============================================================================
# Formatters
# =============================================================================


class StructuredFormatter(logging.Formatter):
    """Human-readable formatter: ``timestamp - name - level - msg | k=v``."""

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        include_structured: bool = True,
    ) -> None:
        if fmt is None:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        super().__init__(fmt, datefmt)
        self.include_structured = include_structured

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.include_structured:
            return base
        structured = getattr(record, "structured_data", {})
        if not structured:
            return base
        pairs = " ".join(f"{k}={_format_value(v)}" for k, v in structured.items())
        return f"{base} | {pairs}"


class JSONFormatter(logging.Formatter):
    """NDJSON formatter for log shippers.

    Emits ``timestamp`` (UTC ISO 8601), ``level``, ``logger``, ``message``,
    ``exception`` when present, and every structured key at top level.
    Values that are not JSON serializable fall back to ``str()``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_dict: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_dict.update(getattr(record, "structured_data", {}))
        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_dict, default=str)


def _format_value(value: Any) -> str:
    """Render one structured value for the key=value text format.

    None becomes ``null``, strings containing spaces are quoted, dicts and
    lists are JSON encoded and everything else goes through ``str()``.

    Example:
        >>> _format_value("EOS 2000D")
        '"EOS 2000D"'
        >>> _format_value(["save-destination"])
        '["save-destination"]'
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        if " " in value:
            return f'"{value}"'
        return value
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return str(value)


# =============================================================================
# Context Management
# =============================================================================


class LogContext:
    """Context manager adding key/value pairs to every record in its scope.

    Backed by a ContextVar, so values follow asyncio tasks spawned inside
    the scope and never leak between threads. Nested contexts merge, the
    innermost value winning.

    Usage:
        with LogContext(device_id="usb:001,004", attempt=1):
            logger.info("Opening device")
    """

    def __init__(self, **kwargs: Any) -> None:
        self._kwargs = kwargs
        self._token: contextvars.Token[dict[str, Any]] | None = None

    def __repr__(self) -> str:
        return f"LogContext({self._kwargs!r})"

    def __enter__(self) -> LogContext:
        self._token = _log_context.set({**_log_context.get(), **self._kwargs})
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


# =============================================================================
# Configuration
# =============================================================================

_configured = False
_config_lock = threading.Lock()


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    include_structured: bool = True,
    force: bool = False,
) -> None:
    """Configure the ``dslr_photobooth`` logger hierarchy.

    Idempotent: later calls are ignored unless ``force=True``, which drops
    the existing handlers first. Called by the CLI at startup; modules
    that log before that get the defaults through ``get_logger``.

    Args:
        level: Minimum level, as int or name ('DEBUG', 'INFO', ...).
        json_format: Emit NDJSON instead of key=value text.
        stream: Destination stream, ``sys.stderr`` when None.
        include_structured: Append ``| key=value`` in text mode.
        force: Reconfigure even if already configured.

    Example:
        >>> buffer = io.StringIO()
        >>> configure_logging(level="DEBUG", stream=buffer, force=True)
    """
    with _config_lock:
        if force:
            _reset_logging_impl()
        _configure_logging_impl(level, json_format, stream, include_structured)


def _configure_logging_impl(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    include_structured: bool = True,
) -> None:
    """Install handler and formatter (lock must be held)."""
    global _configured

    if _configured:
        return

    logging.setLoggerClass(StructuredLogger)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = StructuredFormatter(include_structured=include_structured)
    handler.setFormatter(formatter)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    if isinstance(level, str):
        level = level.upper()
    root.setLevel(level)
    root.addHandler(handler)
    # Own handler only; avoid duplicates through the root logger.
    root.propagate = False

    _configured = True


def _reset_logging_impl() -> None:
    """Drop our handlers (lock must be held)."""
    global _configured

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    _configured = False


def reset_logging() -> None:
    """Return logging to the unconfigured state. Intended for tests."""
    with _config_lock:
        _reset_logging_impl()


def get_logger(name: str) -> StructuredLogger:
    """Return the structured logger for ``name``, configuring on first use.

    Args:
        name: Dotted logger name, normally ``__name__``.

    Returns:
        StructuredLogger accepting ``logger.info("msg", key=value)``.
    """
    if not _configured:
        with _config_lock:
            if not _configured:  # pragma: no branch
                _configure_logging_impl()

    # setLoggerClass() in configure makes this a StructuredLogger.
    return cast(StructuredLogger, logging.getLogger(name))
