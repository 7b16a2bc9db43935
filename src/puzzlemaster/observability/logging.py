"""Structured logging for puzzlemaster.

Gateways, the API and the importer emit events through ``structlog``.
:func:`configure_structlog` hands those events to the standard-library
``puzzlemaster`` logger, whose records travel through a bounded queue to a
listener thread that formats, redacts and writes them (JSON lines by default).

Correlation keys (``method``, ``import_id``, ``request_id``,
``correlation_id``) bound with :func:`correlation_scope` land at the top level
of every record emitted inside the scope; other event keys go under
``"fields"``.
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Final

import structlog

from puzzlemaster.constants import LOG_DIR

JSONValue = str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]

REDACTED: Final[str] = "***REDACTED***"
ROOT_LOGGER_NAME: Final[str] = "puzzlemaster"

CORRELATION_KEYS: Final[frozenset[str]] = frozenset(
    {"correlation_id", "request_id", "method", "import_id"}
)

_SECRET_KEY_RE: Final[re.Pattern[str]] = re.compile(
    r"(?i)secret|token|passw(?:or)?d|passphrase|api_?key|authorization|credential|cookie|private_key"
)
_INLINE_SECRET_RE: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_RE: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")

# Attribute names every LogRecord carries; anything else arrived via ``extra``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "correlation"}

_CORRELATION: ContextVar[Mapping[str, str]] = ContextVar(
    "puzzlemaster_log_correlation", default=MappingProxyType({})
)

_ACTIVE_LOCK = threading.Lock()
_ACTIVE: StructuredLoggingHandle | None = None
_ATEXIT_REGISTERED = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Resolved settings for one logging setup."""

    base_log_dir: Path | str | None = Path(LOG_DIR)
    logger_name: str = ROOT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    log_to_stderr: bool = False
    json_lines: bool = True
    redact_secrets: bool = True

    @property
    def log_filename(self) -> str:
        return "puzzlemaster.jsonl" if self.json_lines else "puzzlemaster.log"


def setup_logging(
    logging_settings: Mapping[str, object] | None = None,
    *,
    log_dir: Path | str | None = None,
    logger_name: str = ROOT_LOGGER_NAME,
) -> logging.Logger:
    """Configure logging from the ``[logging]`` config table and return the logger.

    ``log_dir`` overrides ``logging_settings["log_dir"]``; when both are unset
    no file is written.
    """

    settings = dict(logging_settings or {})
    raw_dir = log_dir if log_dir is not None else settings.get("log_dir")
    raw_level = settings.get("level", "INFO")
    handle = setup_structured_logging(
        LoggingConfig(
            base_log_dir=raw_dir if isinstance(raw_dir, (str, Path)) and raw_dir else None,
            logger_name=logger_name,
            level=raw_level if isinstance(raw_level, (int, str)) else "INFO",
            log_to_stderr=bool(settings.get("log_to_stderr", False)),
            json_lines=bool(settings.get("json", True)),
            redact_secrets=bool(settings.get("redact_secrets", True)),
        )
    )
    return handle.logger


def configure_structlog() -> None:
    """Send ``structlog`` events to the standard-library logger of the same name."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


class _CorrelatingQueueHandler(logging.handlers.QueueHandler):
    """Enqueues without blocking and counts what a full queue turns away."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener thread cannot see this context; copy it onto the record.
        scope = _CORRELATION.get()
        if scope:
            record.correlation = dict(scope)
        prepared: logging.LogRecord = super().prepare(record)
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            # emit() runs under the handler lock.
            self.dropped += 1


class _PlanningFormatter(logging.Formatter):
    def __init__(self, *, redact: bool) -> None:
        super().__init__()
        self._redact = redact

    def _scrub(self, value: JSONValue) -> JSONValue:
        return default_log_redactor(value) if self._redact else value

    def _parts(self, record: logging.LogRecord) -> tuple[str, dict[str, str], dict[str, JSONValue]]:
        message = self._scrub(record.getMessage())
        correlation = dict(getattr(record, "correlation", None) or {})
        fields: dict[str, JSONValue] = {}
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_"):
                continue
            if key in CORRELATION_KEYS and isinstance(value, str) and value.strip():
                correlation[key] = value.strip()
            else:
                fields[key] = _jsonable(value)
        return _as_text(message), correlation, fields


class _JsonLineFormatter(_PlanningFormatter):
    def format(self, record: logging.LogRecord) -> str:
        message, correlation, fields = self._parts(record)
        event: dict[str, JSONValue] = {
            "timestamp": _timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
            **correlation,
        }
        if fields:
            event["fields"] = self._scrub(fields)
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class _TextLineFormatter(_PlanningFormatter):
    """``time level logger message key=value ...`` on one line."""

    def format(self, record: logging.LogRecord) -> str:
        message, correlation, fields = self._parts(record)
        pairs = self._scrub({**fields, **correlation})
        line = [_timestamp(record.created), record.levelname, record.name, message]
        if isinstance(pairs, dict):
            line.extend(f"{key}={_as_text(pairs[key])}" for key in sorted(pairs))
        return " ".join(line)


class StructuredLoggingHandle:
    """A running logging setup: the logger, its queue and the listener draining it."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        log_path: Path | None,
        log_queue: queue.Queue[logging.LogRecord],
        queue_handler: _CorrelatingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._queue = log_queue
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            deadline = time.monotonic() + max(timeout_seconds, 0.0)
            while self._queue.unfinished_tasks and time.monotonic() < deadline:
                time.sleep(0.01)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.flush()
                sink.close()
            self._closed = True


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Install a queue-backed handler chain on ``config.logger_name``.

    Any previously active setup is shut down first.
    """

    level = _level(config.level)
    if not isinstance(config.queue_size, int) or config.queue_size <= 0:
        raise ValueError(f"queue_size must be a positive integer, got {config.queue_size!r}")

    shutdown_logging()

    formatter_type = _JsonLineFormatter if config.json_lines else _TextLineFormatter
    formatter = formatter_type(redact=config.redact_secrets)

    sinks: list[logging.Handler] = []
    log_path: Path | None = None
    if config.base_log_dir is not None:
        log_dir = Path(config.base_log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / config.log_filename
        sinks.append(logging.FileHandler(log_path, encoding="utf-8"))
    if config.log_to_stderr:
        sinks.append(logging.StreamHandler())
    if not sinks:
        sinks.append(logging.NullHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(config.logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _CorrelatingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        log_path=log_path,
        log_queue=log_queue,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    global _ACTIVE, _ATEXIT_REGISTERED
    with _ACTIVE_LOCK:
        _ACTIVE = handle
        if not _ATEXIT_REGISTERED:
            atexit.register(shutdown_logging)
            _ATEXIT_REGISTERED = True
    return handle


def shutdown_logging(handle: StructuredLoggingHandle | None = None) -> None:
    """Drain and close ``handle`` (default: the active setup)."""

    global _ACTIVE
    with _ACTIVE_LOCK:
        target = handle if handle is not None else _ACTIVE
        if target is _ACTIVE:
            _ACTIVE = None
    if target is not None:
        target.shutdown()


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _ACTIVE_LOCK:
        return _ACTIVE


def get_correlation_context() -> dict[str, str]:
    return dict(_CORRELATION.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation keys for records logged inside the block.

    A ``None`` value unbinds that key for the duration of the scope.
    """

    scope = get_correlation_context()
    for key, value in fields.items():
        if value is None:
            scope.pop(key, None)
        elif not isinstance(value, str) or not value.strip():
            raise ValueError(f"correlation value for {key!r} must not be empty")
        else:
            scope[key] = value.strip()
    token = _CORRELATION.set(MappingProxyType(scope))
    try:
        yield
    finally:
        _CORRELATION.reset(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask values under secret-looking keys and inline credentials in strings."""

    if isinstance(value, str):
        masked = _INLINE_SECRET_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", value)
        return _BEARER_RE.sub(f"Bearer {REDACTED}", masked)
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _SECRET_KEY_RE.search(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    try:
        return logging.getLevelNamesMapping()[str(value).strip().upper()]
    except KeyError:
        raise ValueError(f"unsupported logging level {value!r}") from None


def _timestamp(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _jsonable(value: object) -> JSONValue:
    if isinstance(value, Enum):
        value = value.value
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_jsonable(item) for item in value), key=repr)
    return repr(value)


def _as_text(value: JSONValue) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "CORRELATION_KEYS",
    "JSONValue",
    "LoggingConfig",
    "REDACTED",
    "ROOT_LOGGER_NAME",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
