"""
Row normalization for ingested task/feedback data.

Raw rows arrive as open string-keyed mappings whose column names vary by
export. Every heuristic here is a prioritized list of extractor rules that is
walked in order with early exit:

  - record type:     ``type`` column (feedback / prompt / task)
  - environment:     env_key, environment_name, environment, env
  - content:         known text columns, then the longest text cell, then JSON
  - category:        rating markers, numeric scales, then any *rating*/*score* key
  - identity:        task_id / id / uuid / record_id, and task_key
  - creator:         created_by_* or author_* columns
  - timestamps:      created/updated aliases, invalid values dropped

The open mapping never leaves this module except as the opaque ``metadata``
blob of a ``ParsedRecord``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

RECORD_TYPE_TASK = "TASK"
RECORD_TYPE_FEEDBACK = "FEEDBACK"
RECORD_TYPES = (RECORD_TYPE_TASK, RECORD_TYPE_FEEDBACK)

CATEGORY_TOP_10 = "TOP_10"
CATEGORY_BOTTOM_10 = "BOTTOM_10"
CATEGORY_STANDARD = "STANDARD"

DEFAULT_ENVIRONMENT = "default"

SKIP_KEYWORD_MISMATCH = "Keyword Mismatch"
SKIP_DUPLICATE_ID = "Duplicate ID"

MIN_CONTENT_LENGTH = 10

ENVIRONMENT_FIELDS: tuple[str, ...] = ("env_key", "environment_name", "environment", "env")
CONTENT_FIELDS: tuple[str, ...] = (
    "prompt",
    "feedback_content",
    "feedback",
    "content",
    "body",
    "task_content",
    "text",
    "message",
    "instruction",
    "response",
)
RATING_FIELDS: tuple[str, ...] = (
    "prompt_quality_rating",
    "feedback_quality_rating",
    "quality_rating",
    "rating",
    "category",
    "label",
    "score",
    "avg_score",
)
IDENTITY_ID_FIELDS: tuple[str, ...] = ("task_id", "id", "uuid", "record_id")
IDENTITY_KEY_FIELD = "task_key"
CREATED_AT_FIELDS: tuple[str, ...] = ("created_at", "createdAt", "timestamp", "date_created")
UPDATED_AT_FIELDS: tuple[str, ...] = ("updated_at", "updatedAt", "date_updated", "modified_at")

_TOP_MARKERS = frozenset({"top_10", "top10", "top", "selected", "better"})
_BOTTOM_MARKERS = frozenset({"bottom_10", "bottom10", "bottom", "rejected", "worse"})
_LEADING_NUMBER = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)")
_TIMESTAMP_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)


@dataclass
class ParsedRecord:
    metadata: dict[str, Any]
    content: str
    category: str
    type: str
    environment: str
    identity_id: str | None = None
    identity_key: str | None = None
    created_by_id: str | None = None
    created_by_name: str | None = None
    created_by_email: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_row(self, *, record_id: str, source: str, job_id: str | None) -> dict[str, Any]:
        metadata = dict(self.metadata)
        if job_id:
            metadata["ingestJobId"] = job_id
        return {
            "id": record_id,
            "environment": self.environment,
            "type": self.type,
            "category": self.category,
            "source": source,
            "content": self.content,
            "metadata": metadata,
            "created_by_id": self.created_by_id,
            "created_by_name": self.created_by_name,
            "created_by_email": self.created_by_email,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class RowOutcome:
    record: ParsedRecord | None = None
    skip_reason: str | None = None


@dataclass
class ParseDefaults:
    type: str = RECORD_TYPE_TASK
    environment: str = DEFAULT_ENVIRONMENT
    filter_keywords: list[str] = field(default_factory=list)


def _populated(value: Any) -> bool:
    return value is not None and value != "" and value is not False


def _first_populated(row: Mapping[str, Any], fields: Iterable[str]) -> Any:
    for name in fields:
        value = row.get(name)
        if _populated(value):
            return value
    return None


def _optional_str(value: Any) -> str | None:
    if not _populated(value):
        return None
    return str(value)


def detect_type(row: Mapping[str, Any], default: str) -> str:
    raw = row.get("type")
    if isinstance(raw, str):
        value = raw.strip().lower()
        if value == "feedback":
            return RECORD_TYPE_FEEDBACK
        if value in {"prompt", "task"}:
            return RECORD_TYPE_TASK
    return default


def detect_environment(row: Mapping[str, Any], default: str) -> str:
    value = _first_populated(row, ENVIRONMENT_FIELDS)
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def extract_content(row: Mapping[str, Any]) -> str:
    known = _first_populated(row, CONTENT_FIELDS)
    content = "" if known is None else str(known)
    if len(content) < MIN_CONTENT_LENGTH:
        text_cells = [value for value in row.values() if isinstance(value, str) and len(value) > MIN_CONTENT_LENGTH]
        if text_cells:
            content = max(text_cells, key=len)
    if not content:
        content = json.dumps(dict(row), ensure_ascii=False, default=str)
    return content


def _parse_leading_number(text: str) -> float | None:
    match = _LEADING_NUMBER.match(text)
    if match is None:
        return None
    try:
        return float(match.group(0))
    except ValueError:
        return None


def _marker_top_ten(raw: str) -> str | None:
    if "top" in raw and "10" in raw:
        return CATEGORY_TOP_10
    return None


def _marker_bottom_ten(raw: str) -> str | None:
    if "bottom" in raw and "10" in raw:
        return CATEGORY_BOTTOM_10
    return None


def _marker_words(raw: str) -> str | None:
    if raw in _TOP_MARKERS:
        return CATEGORY_TOP_10
    if raw in _BOTTOM_MARKERS:
        return CATEGORY_BOTTOM_10
    return None


def _numeric_scale(raw: str) -> str | None:
    num = _parse_leading_number(raw)
    if num is None:
        return None
    if num >= 4 or 0.8 < num <= 1.0:
        return CATEGORY_TOP_10
    if num <= 2 or 0 <= num < 0.2:
        return CATEGORY_BOTTOM_10
    return CATEGORY_STANDARD


# Evaluated in order against the lower-cased rating value; first non-None wins.
CATEGORY_RULES: tuple[tuple[str, Callable[[str], str | None]], ...] = (
    ("top_ten_marker", _marker_top_ten),
    ("bottom_ten_marker", _marker_bottom_ten),
    ("marker_word", _marker_words),
    ("numeric_scale", _numeric_scale),
)


def _classify_rating_key(row: Mapping[str, Any]) -> str:
    rating_key = next(
        (key for key in row if "rating" in str(key).lower() or "score" in str(key).lower()),
        None,
    )
    if rating_key is None:
        return CATEGORY_STANDARD
    value = str(row.get(rating_key)).lower()
    if "top" in value or value in {"5", "4"}:
        return CATEGORY_TOP_10
    if "bottom" in value or value in {"1", "2"}:
        return CATEGORY_BOTTOM_10
    return CATEGORY_STANDARD


def classify_category(row: Mapping[str, Any]) -> str:
    rating = _first_populated(row, RATING_FIELDS)
    raw = "" if rating is None else str(rating).lower().strip()
    if raw:
        for _name, rule in CATEGORY_RULES:
            category = rule(raw)
            if category is not None:
                return category
    # Non-numeric ratings that match no marker fall through to the key scan.
    return _classify_rating_key(row)


def extract_identity(row: Mapping[str, Any]) -> tuple[str | None, str | None]:
    return (
        _optional_str(_first_populated(row, IDENTITY_ID_FIELDS)),
        _optional_str(row.get(IDENTITY_KEY_FIELD)),
    )


def extract_creator(row: Mapping[str, Any]) -> tuple[str | None, str | None, str | None]:
    return (
        _optional_str(row.get("created_by_id")),
        _optional_str(_first_populated(row, ("author_name", "created_by_name"))),
        _optional_str(_first_populated(row, ("author_email", "created_by_email"))),
    )


def parse_timestamp(value: Any) -> datetime | None:
    if not _populated(value) or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        seconds = float(value) / 1000.0 if abs(float(value)) >= 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if not text:
        return None
    if re.fullmatch(r"-?\d+(?:\.\d+)?", text):
        return parse_timestamp(float(text))
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = None
        for fmt in _TIMESTAMP_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def matches_keywords(content: str, keywords: Iterable[str]) -> bool:
    wanted = [str(k).lower() for k in keywords if str(k).strip()]
    if not wanted:
        return True
    haystack = content.lower()
    return any(keyword in haystack for keyword in wanted)


def parse_row(row: Any, defaults: ParseDefaults) -> RowOutcome:
    if not isinstance(row, Mapping):
        content = str(row)
        metadata: dict[str, Any] = {"value": row}
        mapping: Mapping[str, Any] = {}
    else:
        mapping = row
        metadata = dict(row)
        content = extract_content(mapping)
    if not content:
        content = json.dumps(metadata, ensure_ascii=False, default=str)

    if not matches_keywords(content, defaults.filter_keywords):
        return RowOutcome(skip_reason=SKIP_KEYWORD_MISMATCH)

    identity_id, identity_key = extract_identity(mapping)
    created_by_id, created_by_name, created_by_email = extract_creator(mapping)
    return RowOutcome(
        record=ParsedRecord(
            metadata=metadata,
            content=content,
            category=classify_category(mapping),
            type=detect_type(mapping, defaults.type),
            environment=detect_environment(mapping, defaults.environment),
            identity_id=identity_id,
            identity_key=identity_key,
            created_by_id=created_by_id,
            created_by_name=created_by_name,
            created_by_email=created_by_email,
            created_at=parse_timestamp(_first_populated(mapping, CREATED_AT_FIELDS)),
            updated_at=parse_timestamp(_first_populated(mapping, UPDATED_AT_FIELDS)),
        )
    )


def infer_job_defaults(rows: list[Any]) -> tuple[str | None, str | None]:
    """Guess (environment, type) for a job from its first row."""
    if not rows or not isinstance(rows[0], Mapping):
        return None, None
    first = rows[0]
    environment_value = _first_populated(first, ("environment_name", "environment", "env_key", "env"))
    environment = str(environment_value).strip() if environment_value is not None else None
    type_value = str(_first_populated(first, ("type", "record_type")) or RECORD_TYPE_TASK).upper()
    record_type = RECORD_TYPE_FEEDBACK if type_value == RECORD_TYPE_FEEDBACK else RECORD_TYPE_TASK
    return environment or None, record_type
