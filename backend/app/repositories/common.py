from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import cast


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def parse_timestamp(raw_value: object) -> datetime | None:
    if not isinstance(raw_value, str) or not raw_value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw_value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def to_optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def decode_str_list(raw_value: object) -> tuple[str, ...]:
    if not isinstance(raw_value, str):
        return ()
    try:
        parsed = cast(object, json.loads(raw_value))
    except json.JSONDecodeError:
        return ()
    if not isinstance(parsed, list):
        return ()

    values: list[str] = []
    for item in cast(list[object], parsed):
        if isinstance(item, str):
            values.append(item)
    return tuple(values)
