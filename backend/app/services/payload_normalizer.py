# backend/app/services/payload_normalizer.py
"""
Payload Normalizer - typed lookups over untrusted JSON

Webhook bodies and API responses from the messaging platform put the same
field under several aliases and nesting levels. Every consumer goes through
these helpers with an ordered list of candidate paths; the first usable value
wins. Nothing here raises on malformed input.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

JsonObject = Dict[str, Any]
Path = Tuple[str, ...]

ARRAY_WRAPPER_KEYS = (
    "items",
    "data",
    "results",
    "threads",
    "chats",
    "conversations",
    "messages",
)

PREVIEW_MAX_LENGTH = 120

_WHITESPACE = re.compile(r"\s+")


def to_json_object(value: Any) -> JsonObject:
    """Return value if it is a JSON object, else an empty dict."""
    if isinstance(value, dict):
        return value
    return {}


def get_path_value(obj: Any, path: Sequence[str]) -> Any:
    """Walk path through nested objects; None as soon as a step is not an object."""
    current = obj
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def get_first_string(obj: Any, paths: Iterable[Sequence[str]]) -> Optional[str]:
    """First non-empty (trimmed) string found along the candidate paths."""
    for path in paths:
        value = get_path_value(obj, path)
        if isinstance(value, str):
            trimmed = value.strip()
            if trimmed:
                return trimmed
    return None


def get_first_id(obj: Any, paths: Iterable[Sequence[str]]) -> Optional[str]:
    """Like get_first_string but also accepts integer ids."""
    for path in paths:
        value = get_path_value(obj, path)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return str(value)
        if isinstance(value, str):
            trimmed = value.strip()
            if trimmed:
                return trimmed
    return None


def get_first_boolean(obj: Any, paths: Iterable[Sequence[str]]) -> Optional[bool]:
    """First boolean-like value: real bools, "true"/"false" strings, 1/0."""
    for path in paths:
        value = get_path_value(obj, path)
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized == "true":
                return True
            if normalized == "false":
                return False
        if isinstance(value, (int, float)):
            if value == 1:
                return True
            if value == 0:
                return False
    return None


def extract_array_candidates(payload: Any) -> List[JsonObject]:
    """
    Normalize a collection-ish payload into a list of item objects.

    Looks for an array under one of the wrapper keys, then one level deeper
    (e.g. {"data": {"items": [...]}}), then accepts a bare array. Non-object
    items become empty dicts so callers can index them safely.
    """
    obj = to_json_object(payload)

    for key in ARRAY_WRAPPER_KEYS:
        candidate = obj.get(key)
        if isinstance(candidate, list):
            return [to_json_object(item) for item in candidate]

        if isinstance(candidate, dict):
            for inner_key in ARRAY_WRAPPER_KEYS:
                inner = candidate.get(inner_key)
                if isinstance(inner, list):
                    return [to_json_object(item) for item in inner]

    if isinstance(payload, list):
        return [to_json_object(item) for item in payload]

    return []


def merge_objects(*values: Any) -> JsonObject:
    """Shallow-merge the object values, later ones winning."""
    merged: JsonObject = {}
    for value in values:
        merged.update(to_json_object(value))
    return merged


def truncate_preview(text: Optional[str], max_length: int = PREVIEW_MAX_LENGTH) -> Optional[str]:
    """Collapse whitespace and cap length with an ellipsis."""
    if not text:
        return None
    normalized = _WHITESPACE.sub(" ", text).strip()
    if not normalized:
        return None
    if len(normalized) <= max_length:
        return normalized
    return f"{normalized[:max_length - 1]}…"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings and epoch seconds/milliseconds into aware datetimes."""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10_000_000_000 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
