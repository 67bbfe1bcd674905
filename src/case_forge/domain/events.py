"""
case-forge — pipeline events

File: src/case_forge/domain/events.py
Last updated: 2026-10-18

Purpose
- The event envelope every pipeline stage publishes: ID, type, UTC time,
  run correlation and a JSON payload.

Functional requirements
- Payloads are plain JSON; non-finite floats and non-string keys are rejected.
- ``to_json`` is canonical (sorted keys, compact separators).
- Secret-looking payload keys can be masked with ``redact_sensitive``.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Final

from case_forge.domain import ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

REDACTED: Final[str] = "***REDACTED***"

_MAX_DEPTH: Final[int] = 16
_REQUIRED_FIELDS: Final[frozenset[str]] = frozenset(
    {"event_id", "event_type", "timestamp", "payload"}
)
_ALL_FIELDS: Final[frozenset[str]] = _REQUIRED_FIELDS | {"correlation_id"}
_SECRET_KEY_PARTS: Final[tuple[str, ...]] = (
    "secret",
    "password",
    "api_key",
    "apikey",
    "authorization",
)
_SECRET_KEYS: Final[frozenset[str]] = frozenset({"token", "key", "bearer"})


class EventType(StrEnum):
    RUN_STARTED = "RunStarted"
    RUN_COMPLETED = "RunCompleted"
    RUN_FAILED = "RunFailed"

    OUTLINE_GENERATED = "OutlineGenerated"
    DOCUMENT_ATTEMPT_FAILED = "DocumentAttemptFailed"
    DOCUMENT_PARSED = "DocumentParsed"

    CASE_VALIDATED = "CaseValidated"
    CASE_REPAIR_REQUESTED = "CaseRepairRequested"
    CASE_PERSISTED = "CasePersisted"

    ASSET_STARTED = "AssetStarted"
    ASSET_VALIDATED = "AssetValidated"
    ASSET_REPAIR_REQUESTED = "AssetRepairRequested"
    ASSET_PERSISTED = "AssetPersisted"
    ASSET_MIRROR_FAILED = "AssetMirrorFailed"
    ASSET_FAILED = "AssetFailed"

    GENERATION_RETRIED = "GenerationRetried"


@dataclass(slots=True)
class PipelineEvent:
    event_id: str
    event_type: EventType
    timestamp: datetime
    correlation_id: str | None
    payload: dict[str, JSONValue]

    def __post_init__(self) -> None:
        ids.validate_event_id(self.event_id)
        self.event_type = _event_type(self.event_type)
        self.timestamp = _utc(self.timestamp)
        if self.correlation_id is not None:
            self.correlation_id = _text(self.correlation_id, "correlation_id")
        self.payload = _json_object(self.payload, "payload")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(timespec="microseconds").replace("+00:00", "Z"),
            "correlation_id": self.correlation_id,
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PipelineEvent:
        if not isinstance(data, Mapping):
            raise ValueError(f"PipelineEvent: expected object, got {type(data).__name__}")
        unknown = sorted(set(data) - _ALL_FIELDS)
        missing = sorted(_REQUIRED_FIELDS - set(data))
        if unknown or missing:
            raise ValueError(
                f"PipelineEvent: unexpected fields {unknown}, missing fields {missing}"
            )
        correlation = data.get("correlation_id")
        return cls(
            event_id=_text(data["event_id"], "event_id"),
            event_type=_event_type(data["event_type"]),
            timestamp=_utc(data["timestamp"]),
            correlation_id=None if correlation is None else _text(correlation, "correlation_id"),
            payload=_json_object(data["payload"], "payload"),
        )


def redact_sensitive(event: PipelineEvent) -> PipelineEvent:
    """Copy of ``event`` with every secret-looking payload key masked, at any depth."""
    payload = _redact(event.payload)
    return replace(event, payload=payload if isinstance(payload, dict) else {})


def _redact(value: JSONValue) -> JSONValue:
    if isinstance(value, list):
        return [_redact(item) for item in value]
    if isinstance(value, dict):
        return {key: REDACTED if _is_secret(key) else _redact(item) for key, item in value.items()}
    return value


def _is_secret(key: str) -> bool:
    lowered = key.lower()
    return lowered in _SECRET_KEYS or any(part in lowered for part in _SECRET_KEY_PARTS)


def _event_type(value: object) -> EventType:
    try:
        return EventType(value)
    except ValueError:
        allowed = ", ".join(EventType)
        raise ValueError(f"unsupported event type {value!r}; allowed: {allowed}") from None


def _utc(value: object) -> datetime:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"PipelineEvent.timestamp is not ISO-8601: {value!r}") from exc
    if not isinstance(value, datetime):
        raise ValueError(f"PipelineEvent.timestamp must be a datetime, got {type(value).__name__}")
    if value.utcoffset() is None:
        raise ValueError("PipelineEvent.timestamp must be timezone-aware")
    return value.astimezone(UTC)


def _text(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"PipelineEvent.{label} must be a non-empty string")
    return value.strip()


def _json_object(value: object, path: str) -> dict[str, JSONValue]:
    checked = _json(value, path, 0)
    if not isinstance(checked, dict):
        raise ValueError(f"PipelineEvent.{path} must be a JSON object")
    return checked


def _json(value: object, path: str, depth: int) -> JSONValue:
    if depth > _MAX_DEPTH:
        raise ValueError(f"PipelineEvent.{path} nests deeper than {_MAX_DEPTH}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"PipelineEvent.{path} must be a finite number")
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (list, tuple)):
        return [_json(item, f"{path}[{index}]", depth + 1) for index, item in enumerate(value)]
    if isinstance(value, Mapping):
        if not all(isinstance(key, str) for key in value):
            raise ValueError(f"PipelineEvent.{path} keys must be strings")
        return {key: _json(item, f"{path}.{key}", depth + 1) for key, item in value.items()}
    raise ValueError(f"PipelineEvent.{path} is not JSON ({type(value).__name__})")


__all__ = ["EventType", "JSONValue", "PipelineEvent", "REDACTED", "redact_sensitive"]
