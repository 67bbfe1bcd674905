"""
case-forge — structured logging

File: src/case_forge/observability/logging.py
Last updated: 2026-10-18

Purpose
- Send every structlog and stdlib record of one run to
  ``<log_dir>/<run_id>/caseforge.jsonl`` through a bounded queue, optionally
  mirrored to stderr as JSON or text.

Functional requirements
- A full queue drops the record and counts it; logging never blocks a run.
- Fields bound with ``correlation_scope`` are captured on the emitting
  thread and written as top-level keys next to ``run_id``.
- Secret-looking keys and inline credentials are masked before writing.
"""

from __future__ import annotations

import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, cast

import structlog

from case_forge.constants import LOG_DIR

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

LOG_FORMATS: Final[tuple[str, ...]] = ("json", "text")
LOG_FILENAME: Final[str] = "caseforge.jsonl"
REDACTED_VALUE: Final[str] = "***REDACTED***"

_CORRELATION_FIELDS: Final[tuple[str, ...]] = (
    "run_id",
    "correlation_id",
    "case_id",
    "file_id",
    "event_id",
)
_SECRET_KEY_MARKERS: Final[tuple[str, ...]] = (
    "api_key",
    "apikey",
    "authorization",
    "cookie",
    "credential",
    "password",
    "private_key",
    "secret",
    "token",
)
_INLINE_SECRETS: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(
            r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b"
            r"\s*([:=])\s*[^\s,;]+"
        ),
        rf"\1\2{REDACTED_VALUE}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTED_VALUE}"),
    (re.compile(r"\bsk-[A-Za-z0-9_-]{12,}"), REDACTED_VALUE),
)
# Anything a bare LogRecord already carries is not a user field.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(vars(logging.makeLogRecord({}))) | {
    "asctime",
    "correlation",
    "message",
    "taskName",
}

_CORRELATION: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "caseforge_correlation", default=()
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    run_id: str
    base_log_dir: Path | str = Path(str(LOG_DIR))
    logger_name: str = "case_forge"
    level: int | str = "INFO"
    log_format: str = "json"
    queue_size: int = 4096
    log_filename: str = LOG_FILENAME
    log_to_stderr: bool = False
    redact_secrets: bool = True


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self.dropped = 0
        self._lock = threading.Lock()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener thread cannot see this thread's contextvars.
        record.correlation = get_correlation_context()
        return cast("logging.LogRecord", super().prepare(record))

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._lock:
                self.dropped += 1


class _RunFormatter(logging.Formatter):
    """One line per record: a JSON object, or ``timestamp level logger event k=v``."""

    def __init__(self, *, run_id: str, redactor: LogRedactor, as_json: bool) -> None:
        super().__init__()
        self._run_id = run_id
        self._redactor = redactor
        self._as_json = as_json

    def format(self, record: logging.LogRecord) -> str:
        timestamp = _utc_timestamp(record.created)
        message = _as_text(self._redactor(record.getMessage()))
        context = self._context(record)
        extras = self._redactor(_jsonable(_extra_fields(record)))
        fields = extras if isinstance(extras, dict) else {}
        exception = self.formatException(record.exc_info) if record.exc_info else None

        if self._as_json:
            event: dict[str, JSONValue] = {
                "timestamp": timestamp,
                "level": record.levelname,
                "logger": record.name,
                "event": message,
                **context,
            }
            if fields:
                event["fields"] = fields
            if exception is not None:
                event["exception"] = _as_text(self._redactor(exception))
            return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

        pairs = {**context, **{key: _as_text(value) for key, value in fields.items()}}
        rendered = " ".join(f"{key}={value}" for key, value in sorted(pairs.items()))
        line = f"{timestamp} {record.levelname:<7} {record.name} {message} {rendered}".rstrip()
        return line if exception is None else f"{line}\n{exception}"

    def _context(self, record: logging.LogRecord) -> dict[str, str]:
        context = {"run_id": self._run_id}
        captured = getattr(record, "correlation", None)
        candidates: list[tuple[object, object]] = (
            list(captured.items()) if isinstance(captured, Mapping) else []
        )
        candidates.extend((key, getattr(record, key, None)) for key in _CORRELATION_FIELDS)
        for key, value in candidates:
            if isinstance(key, str) and isinstance(value, str) and value.strip():
                context[key] = value.strip()
        return context


class StructuredLoggingHandle:
    """An active run log; ``shutdown`` drains the queue and closes every sink."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        run_id: str,
        log_path: Path,
        queue_handler: _DroppingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.run_id = run_id
        self.log_path = log_path
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
            # The listener's stop sentinel needs a free slot.
            pending = cast("queue.Queue[logging.LogRecord]", self._queue_handler.queue)
            deadline = time.monotonic() + max(timeout_seconds, 0.0)
            while pending.full() and time.monotonic() < deadline:
                time.sleep(0.01)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.flush()
                sink.close()
            self._closed = True


_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    log_to_stderr: bool = False,
) -> StructuredLoggingHandle:
    """Start run logging from an ``[observability]`` config section.

    ``log_dir`` overrides the section's ``log_dir``; ``log_to_stderr`` adds a
    stderr sink in the section's ``log_format``.
    """
    section = dict(observability_config or {})
    level = section.get("log_level", "INFO")
    log_format = section.get("log_format", "json")
    base_dir = log_dir if log_dir is not None else section.get("log_dir")
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base_dir if isinstance(base_dir, (Path, str)) else Path(str(LOG_DIR)),
            level=level if isinstance(level, (int, str)) else "INFO",
            log_format=log_format if isinstance(log_format, str) else "json",
            log_to_stderr=log_to_stderr,
            redact_secrets=bool(section.get("redact_secrets", True)),
        )
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Replace any active run log with one configured by ``config``."""
    global _active

    run_id = _non_empty(config.run_id, "run_id")
    if config.log_format not in LOG_FORMATS:
        raise ValueError(f"log_format must be one of {', '.join(LOG_FORMATS)}")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    filename = _non_empty(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    level = _level(config.level)

    shutdown_logging()

    log_path = Path(config.base_log_dir) / run_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)
    redactor = default_log_redactor if config.redact_secrets else _unchanged

    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    sinks[0].setFormatter(_RunFormatter(run_id=run_id, redactor=redactor, as_json=True))
    if config.log_to_stderr:
        stderr = logging.StreamHandler()
        stderr.setFormatter(
            _RunFormatter(run_id=run_id, redactor=redactor, as_json=config.log_format == "json")
        )
        sinks.append(stderr)
    for sink in sinks:
        sink.setLevel(level)

    logger = logging.getLogger(config.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    queue_handler = _DroppingQueueHandler(queue.Queue(maxsize=config.queue_size))
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(
        queue_handler.queue, *sinks, respect_handler_level=True
    )
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    with _active_lock:
        _active = handle
    return handle


def configure_structlog() -> None:
    """Route ``structlog.get_logger(...)`` calls through stdlib ``logging``."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    global _active

    target = handle if handle is not None else get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is target:
            _active = None


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def get_correlation_context() -> dict[str, str]:
    return dict(_CORRELATION.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for the block; ``None`` unbinds a field."""
    state = get_correlation_context()
    for key, value in fields.items():
        if value is None:
            state.pop(key, None)
        else:
            state[_non_empty(key, "correlation key")] = _non_empty(value, "correlation value")
    token = _CORRELATION.set(tuple(state.items()))
    try:
        yield
    finally:
        _CORRELATION.reset(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    if isinstance(value, str):
        for pattern, replacement in _INLINE_SECRETS:
            value = pattern.sub(replacement, value)
        return value
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED_VALUE if _is_secret_key(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _unchanged(value: JSONValue) -> JSONValue:
    return value


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    # Token counters such as ``total_tokens``.
    if lowered.endswith("_tokens"):
        return False
    return any(marker in lowered for marker in _SECRET_KEY_MARKERS)


def _non_empty(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string, got {type(value).__name__}")
    if not value.strip():
        raise ValueError(f"{label} must not be empty")
    return value.strip()


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    try:
        return logging.getLevelNamesMapping()[value.strip().upper()]
    except KeyError:
        raise ValueError(f"unsupported logging level {value!r}") from None


def _utc_timestamp(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _as_text(value: JSONValue) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _extra_fields(record: logging.LogRecord) -> dict[str, object]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRIBUTES
        and key not in _CORRELATION_FIELDS
        and not key.startswith("_")
    }


def _jsonable(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value) if isinstance(value, Path) else repr(value)


__all__ = [
    "JSONValue",
    "LOG_FILENAME",
    "LOG_FORMATS",
    "LogRedactor",
    "LoggingConfig",
    "REDACTED_VALUE",
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
