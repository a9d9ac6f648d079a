from __future__ import annotations

import logging
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import structlog

TelemetryEventName = Literal[
    "http.request.finish",
    "http.request.error",
    "youtube.oauth.connected",
    "youtube.oauth.refreshed",
    "youtube.import.completed",
    "youtube.import.task.submitted",
    "youtube.import.task.succeeded",
    "youtube.import.task.failed",
    "ai.analysis.generated",
    "ai.analysis.cache_hit",
    "ai.ideas.generated",
]

# Substring match against attribute names; "code" covers OAuth authorization codes.
_SENSITIVE_KEY_PARTS: frozenset[str] = frozenset(
    {
        "api_key",
        "authorization",
        "analysis_text",
        "code",
        "prompt",
        "secret",
        "state",
        "token",
    }
)
# Names that contain a sensitive part but only ever carry a status value.
_STATUS_KEYS: frozenset[str] = frozenset({"error_code", "status_code"})
# Google access tokens, Google refresh tokens, Stratly API keys and bearer headers.
_CREDENTIAL_VALUE = re.compile(r"(ya29\.|1//|skey_\S+\.|bearer\s)", re.IGNORECASE)
_MAX_STRING_LENGTH = 160
_REDACTED = "[redacted]"

TelemetryValue = bool | int | float | str | None


def elapsed_ms(started_at: float) -> int:
    """Milliseconds since a ``time.perf_counter()`` reading."""
    return int((time.perf_counter() - started_at) * 1000)


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        _ = (event_name, attributes)


class StructuredLogTelemetrySink:
    """Writes each event as one structlog line on the ``stratly.telemetry`` logger."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger("stratly.telemetry")

    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        area = event_name.split(".", 1)[0]
        self._logger.info(
            "telemetry",
            telemetry_event=event_name,
            telemetry_area=area,
            **dict(attributes),
        )


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def emit(self, event_name: TelemetryEventName, **attributes: Any) -> None:
        if not self.enabled:
            return
        self.sink.emit(event_name=event_name, attributes=redact_attributes(attributes))


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if not enabled or sink == "none":
        return TelemetryClient.disabled()
    if sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())

    logging.getLogger("stratly.telemetry").warning(
        "unsupported telemetry sink requested; disabling telemetry sink=%s",
        sink,
    )
    return TelemetryClient.disabled()


def redact_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    """Flatten event attributes to scalars and hide credentials and user content.

    Keys are lower-cased. A key naming a credential or free text is redacted whatever
    its value; any other string is redacted when it looks like a Google or Stratly
    credential, then whitespace-compacted and truncated.
    """
    redacted: dict[str, TelemetryValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        if _is_sensitive_key(key):
            redacted[key] = _REDACTED
            continue
        redacted[key] = _scalar(raw_value)
    return redacted


def _is_sensitive_key(key: str) -> bool:
    if key in _STATUS_KEYS:
        return False
    return any(part in key for part in _SENSITIVE_KEY_PARTS)


def _scalar(value: Any) -> TelemetryValue:
    if value is None:
        return None
    if isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        if _CREDENTIAL_VALUE.search(value):
            return _REDACTED
        compact = " ".join(value.split())
        if len(compact) <= _MAX_STRING_LENGTH:
            return compact
        return f"{compact[:_MAX_STRING_LENGTH]}..."
    return type(value).__name__
