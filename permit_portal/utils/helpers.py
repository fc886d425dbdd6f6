"""Shared normalisation helpers used by every store-facing service.

normalize_string:        trim; blank -> None
normalize_number:        finite int/float only
empty_to_null:           blank string / empty list / empty dict -> None
parse_numeric_id:        int ids from numbers or leading-digit strings
parse_timestamp:         ISO-8601 -> aware UTC datetime (None on bad input)
pick_latest_timestamp:   newer of two timestamp strings
compare_by_timestamp_desc: sort key helper, unparseable values last
safe_json_parse / safe_stringify_json: never raise
extract_error_detail:    best detail string from a store error body
strip_none:              drop None values from a dict
"""

from __future__ import annotations

import functools
import json
import math
import re
from datetime import datetime, timezone
from typing import Any

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")
_DELIMITED_SPLIT_RE = re.compile(r"[\r\n;,]+")


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def normalize_number(value: Any) -> int | float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value if math.isfinite(value) else None


def is_finite_number(value: Any) -> bool:
    return normalize_number(value) is not None


def is_non_empty_object(value: Any) -> bool:
    """True for a non-empty dict or a non-empty list."""
    if isinstance(value, (dict, list)):
        return len(value) > 0
    return False


def empty_to_null(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return normalize_string(value)
    if isinstance(value, (list, dict)):
        return value if value else None
    return value


def parse_delimited_list(value: Any) -> list[str]:
    """Split on newlines, semicolons and commas; trims and drops empty entries.

    >>> parse_delimited_list("A; B,\\nC")
    ['A', 'B', 'C']
    """
    normalized = normalize_string(value)
    if not normalized:
        return []
    return [entry.strip() for entry in _DELIMITED_SPLIT_RE.split(normalized) if entry.strip()]


def parse_numeric_id(value: Any) -> int | None:
    """Return an integer id from a number or a string with leading digits.

    ``"42"`` and ``"42abc"`` both give 42; ``"abc"``, ``""`` and ``None`` give None.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        match = _LEADING_INT_RE.match(value)
        return int(match.group(1)) if match else None
    return None


def extract_numeric_id(payload: Any) -> int | None:
    """First numeric ``id`` found in a row or a list of rows."""
    if isinstance(payload, list):
        for entry in payload:
            found = extract_numeric_id(entry)
            if found is not None:
                return found
        return None
    if isinstance(payload, dict):
        candidate = payload.get("id")
        if isinstance(candidate, int) and not isinstance(candidate, bool):
            return candidate
        if isinstance(candidate, float) and math.isfinite(candidate):
            return int(candidate)
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    A trailing ``Z`` is accepted; naive values are treated as UTC.
    Returns None for empty or unparseable input.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def pick_latest_timestamp(a: str | None, b: str | None) -> str | None:
    """Return whichever of two timestamp strings is later.

    Parseable values win over unparseable ones; ties favour *b*.
    """
    a_time = parse_timestamp(a)
    b_time = parse_timestamp(b)
    if a_time is not None and b_time is not None:
        return b if b_time >= a_time else a
    if b_time is not None:
        return b
    if a_time is not None:
        return a
    return b if b is not None else a


def latest_of(*values: str | None) -> str | None:
    latest: str | None = None
    for value in values:
        latest = pick_latest_timestamp(latest, value)
    return latest


def compare_by_timestamp_desc(a: str | None, b: str | None) -> int:
    """cmp-style comparator: newest first, unparseable after parseable, missing last."""
    a_time = parse_timestamp(a)
    b_time = parse_timestamp(b)
    if a_time is not None and b_time is not None:
        delta = (b_time - a_time).total_seconds()
        return (delta > 0) - (delta < 0)
    if a_time is not None:
        return -1
    if b_time is not None:
        return 1
    if a and b:
        return (b > a) - (b < a)
    if a:
        return -1
    if b:
        return 1
    return 0


def sort_by_timestamp_desc(items: list[dict], key: str) -> list[dict]:
    return sorted(
        items,
        key=functools.cmp_to_key(lambda x, y: compare_by_timestamp_desc(x.get(key), y.get(key))),
    )


def safe_json_parse(text: Any) -> Any:
    if not isinstance(text, (str, bytes)):
        return None
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return None


def safe_stringify_json(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if not isinstance(value, (dict, list)):
        return None
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return None


def extract_error_detail(response_text: str | None) -> str | None:
    """``message`` of a JSON error body, else the body re-serialised, else raw text."""
    if not response_text:
        return None
    parsed = safe_json_parse(response_text)
    if isinstance(parsed, dict):
        message = parsed.get("message")
        if isinstance(message, str):
            return message
    if isinstance(parsed, (dict, list)):
        try:
            return json.dumps(parsed)
        except (TypeError, ValueError):
            pass
    return response_text


def strip_none(value: dict) -> dict:
    return {key: item for key, item in value.items() if item is not None}


def coerce_json_object(value: Any) -> dict | None:
    """Accept a dict or a JSON-encoded object string; anything else -> None."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        parsed = safe_json_parse(value)
        if isinstance(parsed, dict):
            return parsed
    return None
