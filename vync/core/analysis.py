"""
Parsing and normalization of analysis payloads.

Used on both sides of the store: the pipeline parses Gemini's free-text
response into record fields, and the status client coerces stored rows and
change notifications back into an `AnalysisRecord`.
"""

import json
import logging
import re
from typing import Any, Mapping, Optional

from vync.core.errors import MalformedAnalysisError
from vync.schemas.analysis import AnalysisRecord

logger = logging.getLogger(__name__)

ARRAY_FIELDS = ("thought_trace", "chapters", "key_insights", "timeline_data", "diagram_data")

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
PREVIEW_CHARS = 200


def extract_json_text(raw_text: str) -> str:
    """
    Pull the JSON object out of a model response.

    Gemini may wrap the object in a fenced code block or surround it with
    prose. A fenced block wins; otherwise slice from the first `{` to the
    last `}`. If neither applies the text is returned unchanged.
    """
    match = _FENCE_RE.search(raw_text)
    if match:
        return match.group(1).strip()

    start = raw_text.find("{")
    end = raw_text.rfind("}") + 1
    if start >= 0 and end > start:
        return raw_text[start:end]
    return raw_text


def _string_of(item: Any) -> str:
    if isinstance(item, str):
        return item
    try:
        return json.dumps(item)
    except (TypeError, ValueError):
        return str(item)


def _number(value: Any, default):
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
        try:
            return float(value)
        except ValueError:
            return default
    return default


def normalize_key_insights(items: Any) -> list:
    """Coerce every key insight to {timestamp, importance, text}."""
    if not isinstance(items, list):
        return []
    normalized = []
    for item in items:
        if isinstance(item, dict) and "timestamp" in item and "importance" in item:
            text = item.get("text")
            normalized.append({
                "timestamp": _number(item["timestamp"], 0),
                "importance": _number(item["importance"], 5),
                "text": "" if text is None else _string_of(text),
            })
        else:
            normalized.append({"timestamp": 0, "importance": 5, "text": _string_of(item)})
    return normalized


def parse_analysis(raw_text: str) -> dict:
    """
    Parse a Gemini response into analysis record fields.

    Raises MalformedAnalysisError if no JSON object can be decoded. Missing
    or mistyped fields fall back to empty values, so the result always has
    every field.
    """
    preview = (raw_text or "")[:PREVIEW_CHARS]
    json_str = extract_json_text(raw_text or "")
    try:
        parsed = json.loads(json_str)
    except ValueError as e:
        raise MalformedAnalysisError(detail=f"{e} (response starts with: {preview!r})",
                                     preview=preview) from e
    if not isinstance(parsed, dict):
        raise MalformedAnalysisError(
            detail=f"Expected a JSON object, got {type(parsed).__name__} "
                   f"(response starts with: {preview!r})",
            preview=preview,
        )

    summary = parsed.get("summary")
    fields = {"summary": summary if isinstance(summary, str) else ""}
    for name in ARRAY_FIELDS:
        value = parsed.get(name)
        fields[name] = list(value) if isinstance(value, list) else []
    fields["key_insights"] = normalize_key_insights(fields["key_insights"])
    return fields


def _ensure_array(value: Any) -> list:
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        # JSON columns can come back as text from older schemas
        try:
            decoded = json.loads(value)
        except ValueError:
            return []
        return decoded if isinstance(decoded, list) else []
    return []


def _ensure_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return str(value)


def record_from_row(row: Any) -> Optional[AnalysisRecord]:
    """
    Build an AnalysisRecord from a stored row, an ORM object, or a change
    notification's record. Returns None if the row identifies nothing.
    """
    if row is None:
        return None
    if isinstance(row, Mapping):
        get = row.get
    else:
        def get(key, default=None):
            return getattr(row, key, default)

    if get("id") is None and get("video_id") is None:
        return None

    return AnalysisRecord(
        video_id=get("video_id"),
        summary=_ensure_string(get("summary")),
        thought_trace=_ensure_array(get("thought_trace")),
        chapters=_ensure_array(get("chapters")),
        key_insights=normalize_key_insights(_ensure_array(get("key_insights"))),
        timeline_data=_ensure_array(get("timeline_data")),
        diagram_data=_ensure_array(get("diagram_data")),
        created_at=get("created_at"),
    )


def is_complete_row(row: Mapping) -> bool:
    """True if a notification carries the record's content, not only its keys."""
    return "summary" in row
