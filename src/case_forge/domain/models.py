"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import copy
import json
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, fields, is_dataclass, replace
from datetime import datetime
from enum import Enum, StrEnum
from typing import Any, NoReturn, TypeVar, cast

from case_forge.constants import CASE_DOCUMENT_VERSION, DIFFICULTY_LEVELS
from case_forge.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 512


class AssetType(StrEnum):
    FINANCIAL_DATA = "FINANCIAL_DATA"
    MEMO = "MEMO"
    REPORT = "REPORT"
    PRESENTATION_DECK = "PRESENTATION_DECK"
    LEGAL_DOCUMENT = "LEGAL_DOCUMENT"
    ORG_CHART = "ORG_CHART"
    STAKEHOLDER_PROFILES = "STAKEHOLDER_PROFILES"
    MARKET_DATASET = "MARKET_DATASET"
    PRESS_RELEASE = "PRESS_RELEASE"
    INTERNAL_MEMO = "INTERNAL_MEMO"

    @property
    def is_json(self) -> bool:
        return self in _JSON_ASSET_TYPES

    @property
    def mime_type(self) -> str:
        if self is AssetType.FINANCIAL_DATA:
            return "text/csv"
        if self.is_json:
            return "application/json"
        return "text/markdown"

    @property
    def extension(self) -> str:
        if self is AssetType.FINANCIAL_DATA:
            return "csv"
        if self.is_json:
            return "json"
        return "md"

    @property
    def output_format(self) -> str:
        """Human-readable format name used in asset prompts."""
        if self is AssetType.FINANCIAL_DATA:
            return "CSV"
        if self.is_json:
            return "JSON"
        if self is AssetType.PRESENTATION_DECK:
            return "Marp Markdown"
        return "Markdown"


_JSON_ASSET_TYPES = frozenset(
    {AssetType.ORG_CHART, AssetType.STAKEHOLDER_PROFILES, AssetType.MARKET_DATASET}
)


class GenerationPhase(StrEnum):
    OUTLINE = "outline"
    PRIMARY = "primary"
    REPAIR = "repair"
    ASSET = "asset"
    ASSET_REPAIR = "asset_repair"


class Difficulty(StrEnum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


def canonical_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class GenerationOptions(CanonicalModel):
    provider: str | None = None
    model: str | None = None
    target_word_count: int | None = None
    track_usage: bool = True

    def __post_init__(self) -> None:
        _as_optional_str(self.provider, "GenerationOptions.provider")
        _as_optional_str(self.model, "GenerationOptions.model")
        if self.target_word_count is not None:
            _as_int(self.target_word_count, "GenerationOptions.target_word_count", minimum=1)
        _as_bool(self.track_usage, "GenerationOptions.track_usage")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> GenerationOptions:
        parsed = _expect_object(
            data,
            "GenerationOptions",
            required=set(),
            optional={"provider", "model", "target_word_count", "track_usage"},
        )
        target = parsed.get("target_word_count")
        return cls(
            provider=_as_optional_str(parsed.get("provider"), "GenerationOptions.provider"),
            model=_as_optional_str(parsed.get("model"), "GenerationOptions.model"),
            target_word_count=None
            if target is None
            else _as_int(target, "GenerationOptions.target_word_count", minimum=1),
            track_usage=_as_bool(
                parsed.get("track_usage", True), "GenerationOptions.track_usage"
            ),
        )


@dataclass(frozen=True, slots=True)
class Blueprint(CanonicalModel):
    """Externally supplied scenario seed a case is generated from."""

    id: str
    title: str
    challenge_type: str = "WRITTEN_ANALYSIS"
    dilemma: str = ""
    task: str = ""
    assets: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _as_str(self.id, "Blueprint.id")
        _as_str(self.title, "Blueprint.title")
        _as_str(self.challenge_type, "Blueprint.challenge_type")
        if not isinstance(self.dilemma, str) or not isinstance(self.task, str):
            _fail("Blueprint", "dilemma and task must be strings")
        _as_str_tuple(self.assets, "Blueprint.assets")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Blueprint:
        parsed = _expect_object(
            data,
            "Blueprint",
            required={"id", "title"},
            optional={"challenge_type", "challengeType", "dilemma", "task", "assets"},
        )
        challenge_type = parsed.get("challenge_type", parsed.get("challengeType"))
        return cls(
            id=_as_str(parsed["id"], "Blueprint.id"),
            title=_as_str(parsed["title"], "Blueprint.title"),
            challenge_type=_as_str(
                challenge_type or "WRITTEN_ANALYSIS", "Blueprint.challenge_type"
            ),
            dilemma=_as_text(parsed.get("dilemma", ""), "Blueprint.dilemma"),
            task=_as_text(parsed.get("task", ""), "Blueprint.task"),
            assets=_as_str_tuple(parsed.get("assets", ()), "Blueprint.assets"),
        )


@dataclass(frozen=True, slots=True)
class GenerationRequest(CanonicalModel):
    """Immutable pipeline input; created at entry and never mutated."""

    arena_id: str
    competency_name: str
    blueprint_id: str | None = None
    blueprint_title: str | None = None
    options: GenerationOptions = field(default_factory=GenerationOptions)
    difficulty: Difficulty | None = None
    estimated_duration: int | None = None
    case_id: str | None = None
    created_by: str | None = None
    blueprint: Blueprint | None = None

    def __post_init__(self) -> None:
        _as_str(self.arena_id, "GenerationRequest.arena_id")
        _as_str(self.competency_name, "GenerationRequest.competency_name")
        _as_optional_str(self.blueprint_id, "GenerationRequest.blueprint_id")
        _as_optional_str(self.blueprint_title, "GenerationRequest.blueprint_title")
        if not self.blueprint_id and not self.blueprint_title:
            _fail("GenerationRequest", "blueprint_id or blueprint_title is required")
        if not isinstance(self.options, GenerationOptions):
            _fail("GenerationRequest.options", "expected GenerationOptions")
        if self.difficulty is not None:
            object.__setattr__(
                self,
                "difficulty",
                _as_enum(Difficulty, self.difficulty, "GenerationRequest.difficulty"),
            )
        if self.estimated_duration is not None:
            _as_int(self.estimated_duration, "GenerationRequest.estimated_duration", minimum=1)
        if self.case_id is not None:
            try:
                domain_ids.validate_case_id(self.case_id)
            except ValueError as exc:
                _fail("GenerationRequest.case_id", str(exc))
        _as_optional_str(self.created_by, "GenerationRequest.created_by")

    @property
    def duplicate_key(self) -> str:
        """Caller-supplied identifier used for duplicate-submission detection."""
        if self.blueprint_id:
            return self.blueprint_id
        return domain_ids.slugify(cast("str", self.blueprint_title)).strip("_")

    def resolved_blueprint(self) -> Blueprint:
        if self.blueprint is not None:
            return self.blueprint
        return Blueprint(
            id=self.duplicate_key,
            title=self.blueprint_title or self.duplicate_key,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> GenerationRequest:
        parsed = _expect_object(
            data,
            "GenerationRequest",
            required={"arena_id", "competency_name"},
            optional={
                "blueprint_id",
                "blueprint_title",
                "options",
                "difficulty",
                "estimated_duration",
                "case_id",
                "created_by",
                "blueprint",
            },
        )
        options_raw = parsed.get("options")
        blueprint_raw = parsed.get("blueprint")
        duration = parsed.get("estimated_duration")
        difficulty = parsed.get("difficulty")
        return cls(
            arena_id=_as_str(parsed["arena_id"], "GenerationRequest.arena_id"),
            competency_name=_as_str(
                parsed["competency_name"], "GenerationRequest.competency_name"
            ),
            blueprint_id=_as_optional_str(
                parsed.get("blueprint_id"), "GenerationRequest.blueprint_id"
            ),
            blueprint_title=_as_optional_str(
                parsed.get("blueprint_title"), "GenerationRequest.blueprint_title"
            ),
            options=GenerationOptions()
            if options_raw is None
            else GenerationOptions.from_dict(_as_mapping(options_raw, "GenerationRequest.options")),
            difficulty=None
            if difficulty is None
            else _as_enum(Difficulty, difficulty, "GenerationRequest.difficulty"),
            estimated_duration=None
            if duration is None
            else _as_int(duration, "GenerationRequest.estimated_duration", minimum=1),
            case_id=_as_optional_str(parsed.get("case_id"), "GenerationRequest.case_id"),
            created_by=_as_optional_str(parsed.get("created_by"), "GenerationRequest.created_by"),
            blueprint=None
            if blueprint_raw is None
            else Blueprint.from_dict(_as_mapping(blueprint_raw, "GenerationRequest.blueprint")),
        )


# ---------------------------------------------------------------------------
# Generator output and parse diagnostics
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TokenUsage(CanonicalModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self) -> None:
        _as_int(self.prompt_tokens, "TokenUsage.prompt_tokens", minimum=0)
        _as_int(self.completion_tokens, "TokenUsage.completion_tokens", minimum=0)
        _as_int(self.total_tokens, "TokenUsage.total_tokens", minimum=0)

    def __add__(self, other: TokenUsage) -> TokenUsage:
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass(frozen=True, slots=True)
class RawGenerationOutput(CanonicalModel):
    """Verbatim text returned by one generator call, tagged with its phase."""

    phase: GenerationPhase
    text: str
    model: str = "unknown"
    provider: str = "unknown"
    usage: TokenUsage | None = None


@dataclass(frozen=True, slots=True)
class StructuralError(CanonicalModel):
    message: str
    offset: int | None = None
    line: int | None = None
    column: int | None = None
    context: str = ""


@dataclass(frozen=True, slots=True)
class ParseAttempt(CanonicalModel):
    """One strict-parse iteration; only the last attempt decides the outcome."""

    attempt_number: int
    input_text: str
    transformation: str | None = None
    value: JSONValue = None
    error: StructuralError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class ValidationResult(CanonicalModel):
    """Verdict for one validation call; superseded, never mutated."""

    content_type: str
    valid: bool
    violations: tuple[str, ...] = ()
    content: str = ""

    @classmethod
    def from_violations(
        cls, content_type: str, violations: Sequence[str], *, content: str = ""
    ) -> ValidationResult:
        collected = tuple(violations)
        return cls(
            content_type=content_type,
            valid=not collected,
            violations=collected,
            content=content,
        )


# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CaseFileDraft(CanonicalModel):
    """Declared asset of a draft; content is empty until the asset pipeline fills it."""

    file_id: str
    file_name: str
    file_type: AssetType
    content: str = ""

    def __post_init__(self) -> None:
        _as_str(self.file_id, "CaseFileDraft.file_id")
        _as_str(self.file_name, "CaseFileDraft.file_name")
        object.__setattr__(
            self, "file_type", _as_enum(AssetType, self.file_type, "CaseFileDraft.file_type")
        )
        if not isinstance(self.content, str):
            _fail("CaseFileDraft.content", f"expected string, got {type(self.content).__name__}")

    @property
    def is_populated(self) -> bool:
        return bool(self.content)

    @property
    def base_name(self) -> str:
        stem, dot, _suffix = self.file_name.rpartition(".")
        return stem if dot and stem else self.file_name

    def with_content(self, content: str) -> CaseFileDraft:
        return replace(self, content=content)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CaseFileDraft:
        parsed = _as_mapping(data, "CaseFileDraft")
        file_name = _as_str(parsed.get("fileName"), "CaseFileDraft.fileName")
        raw_id = parsed.get("fileId")
        file_id = (
            _as_str(raw_id, "CaseFileDraft.fileId")
            if raw_id is not None
            else domain_ids.slugify_file_id(file_name)
        )
        source = parsed.get("source")
        content = ""
        if isinstance(source, Mapping) and isinstance(source.get("content"), str):
            content = cast("str", source["content"])
        return cls(
            file_id=file_id,
            file_name=file_name,
            file_type=_as_enum(AssetType, parsed.get("fileType"), "CaseFileDraft.fileType"),
            content=content,
        )


@dataclass(frozen=True, slots=True)
class CaseDraft(CanonicalModel):
    """In-flight case; a repair replaces the whole draft, never single fields.

    ``payload`` is the parsed generator document the draft was read from. The
    typed fields are lenient projections of it: substandard content is a
    validation concern, so reading a draft only fails when the root is not an
    object.
    """

    case_id: str
    title: str
    description: str
    version: str = CASE_DOCUMENT_VERSION
    competencies: tuple[str, ...] = ()
    estimated_duration: int | float | None = None
    difficulty: str | None = None
    stages: tuple[dict[str, Any], ...] = ()
    rubric_criteria: tuple[dict[str, Any], ...] = ()
    datasets: tuple[dict[str, Any], ...] = ()
    files: tuple[CaseFileDraft, ...] = ()
    status: str = "draft"
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> CaseDraft:
        if not isinstance(payload, Mapping):
            _fail("CaseDraft", f"expected JSON object, got {type(payload).__name__}")
        document = copy.deepcopy(dict(payload))
        rubric = document.get("rubric")
        criteria = rubric.get("criteria") if isinstance(rubric, Mapping) else None
        files: list[CaseFileDraft] = []
        seen: set[str] = set()
        for item in _dict_items(document.get("caseFiles")):
            try:
                case_file = CaseFileDraft.from_dict(item)
            except ValueError:
                continue
            if case_file.file_id in seen:
                continue
            seen.add(case_file.file_id)
            files.append(case_file)
        duration = document.get("estimatedDuration")
        difficulty = document.get("difficulty")
        return cls(
            case_id=_text_or_empty(document.get("caseId")),
            title=_text_or_empty(document.get("title")),
            description=_text_or_empty(document.get("description")),
            version=_text_or_empty(document.get("version")) or CASE_DOCUMENT_VERSION,
            competencies=tuple(
                item
                for item in _list_or_empty(document.get("competencies"))
                if isinstance(item, str)
            ),
            estimated_duration=duration
            if isinstance(duration, (int, float)) and not isinstance(duration, bool)
            else None,
            difficulty=difficulty if difficulty in DIFFICULTY_LEVELS else None,
            stages=_dict_items(document.get("stages")),
            rubric_criteria=_dict_items(criteria),
            datasets=_dict_items(document.get("datasets")),
            files=tuple(files),
            status=_text_or_empty(document.get("status")) or "draft",
            payload=document,
        )

    def file(self, file_id: str) -> CaseFileDraft:
        for item in self.files:
            if item.file_id == file_id:
                return item
        raise KeyError(file_id)

    def with_file_content(self, file_id: str, content: str) -> CaseDraft:
        self.file(file_id)
        updated = tuple(
            item.with_content(content) if item.file_id == file_id else item for item in self.files
        )
        return replace(self, files=updated)

    def to_document(self) -> dict[str, Any]:
        """Return the case document with populated asset content folded in."""
        document = copy.deepcopy(self.payload)
        document["caseFiles"] = [
            {
                "fileId": item.file_id,
                "fileName": item.file_name,
                "fileType": item.file_type.value,
                "source": {"type": "STATIC", "content": item.content},
            }
            for item in self.files
        ]
        return document


# ---------------------------------------------------------------------------
# Results and persisted records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AssetGenerationResult(CanonicalModel):
    file_id: str
    success: bool
    violations: tuple[str, ...] = ()
    content_length: int = 0
    error: str | None = None
    repaired: bool = False
    mirrored: bool = False
    skipped: bool = False


@dataclass(frozen=True, slots=True)
class PersistedCaseFile(CanonicalModel):
    case_id: str
    file_id: str
    file_name: str
    file_type: str
    mime_type: str
    content: str
    size: int
    violations: tuple[str, ...] = ()
    updated_at: str = ""


@dataclass(frozen=True, slots=True)
class PersistedCase(CanonicalModel):
    id: str
    blueprint_id: str
    title: str
    description: str
    arena_id: str
    competency_name: str
    storage_path: str
    difficulty: str | None
    estimated_minutes: int | None
    status: str
    created_by: str | None
    document: dict[str, Any]
    created_at: str = ""
    violations: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class CaseGenerationResult(CanonicalModel):
    case_id: str
    draft: CaseDraft
    persisted: PersistedCase
    assets: tuple[AssetGenerationResult, ...] = ()
    repaired: bool = False
    case_violations: tuple[str, ...] = ()
    storage_path: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def asset_warnings(self) -> int:
        return sum(len(item.violations) for item in self.assets)

    @property
    def failed_assets(self) -> tuple[str, ...]:
        return tuple(item.file_id for item in self.assets if not item.success)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    parsed = _as_mapping(value, path)

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_mapping(value: object, path: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item
    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_text(value: object, path: str) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    return value


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        _fail(path, f"expected array, got {type(value).__name__}")
    return tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(value))


def _text_or_empty(value: object) -> str:
    return value if isinstance(value, str) else ""


def _list_or_empty(value: object) -> list[object]:
    return list(value) if isinstance(value, list) else []


def _dict_items(value: object) -> tuple[dict[str, Any], ...]:
    return tuple(dict(item) for item in _list_or_empty(value) if isinstance(item, Mapping))


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, datetime):
        return value.isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value) and not isinstance(value, type):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "AssetGenerationResult",
    "AssetType",
    "Blueprint",
    "CanonicalModel",
    "CaseDraft",
    "CaseFileDraft",
    "CaseGenerationResult",
    "Difficulty",
    "GenerationOptions",
    "GenerationPhase",
    "GenerationRequest",
    "JSONScalar",
    "JSONValue",
    "ParseAttempt",
    "PersistedCase",
    "PersistedCaseFile",
    "RawGenerationOutput",
    "StructuralError",
    "TokenUsage",
    "ValidationResult",
    "canonical_json",
]
