from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

LOGGER = logging.getLogger("stratly.http")


class UpstreamError(Exception):
    pass


class UpstreamTransportError(UpstreamError):
    """The request never produced an HTTP response (DNS, reset, timeout)."""


class UpstreamHttpError(UpstreamError):
    def __init__(self, message: str, *, response: HttpResponse) -> None:
        super().__init__(message)
        self.response = response

    @property
    def status_code(self) -> int:
        return self.response.status_code


class RateLimitExceededError(UpstreamHttpError):
    pass


@dataclass(frozen=True)
class HttpRequest:
    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes | None = None

    @classmethod
    def form(cls, url: str, fields: Mapping[str, str]) -> HttpRequest:
        return cls(
            method="POST",
            url=url,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            body=urlencode(dict(fields)).encode("utf-8"),
        )

    @classmethod
    def json_post(
        cls,
        url: str,
        payload: Mapping[str, object],
        *,
        headers: Mapping[str, str] | None = None,
    ) -> HttpRequest:
        merged = {"Accept": "application/json", "Content-Type": "application/json"}
        if headers:
            merged.update(headers)
        return cls(
            method="POST",
            url=url,
            headers=merged,
            body=json.dumps(payload, ensure_ascii=True).encode("utf-8"),
        )


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json_object(self) -> dict[str, object]:
        text = self.body.decode("utf-8", errors="replace")
        if not text.strip():
            return {}
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            return {}
        if not isinstance(parsed, dict):
            return {}
        output: dict[str, object] = {}
        for key, value in cast(dict[object, object], parsed).items():
            if isinstance(key, str):
                output[key] = value
        return output


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 16000
    network_delay_ms: int = 500
    retry_statuses: frozenset[int] = frozenset({429})

    def backoff_ms(self, attempt: int) -> int:
        return min(self.base_delay_ms * (2**attempt), self.max_delay_ms)

    def network_backoff_ms(self, attempt: int) -> int:
        return self.network_delay_ms * (attempt + 1)


class UrllibTransport:
    def __init__(self, *, timeout_seconds: float) -> None:
        self._timeout_seconds = timeout_seconds

    def send(self, request: HttpRequest) -> HttpResponse:
        urllib_request = Request(
            url=request.url,
            data=request.body,
            headers=dict(request.headers),
            method=request.method,
        )
        try:
            with urlopen(urllib_request, timeout=self._timeout_seconds) as response:
                return HttpResponse(
                    status_code=int(response.status),
                    body=response.read(),
                    headers=dict(response.headers.items()),
                )
        except HTTPError as exc:
            # Non-2xx answers are responses, not transport failures; status drives retry.
            body = exc.read() if exc.fp else b""
            return HttpResponse(
                status_code=exc.code,
                body=body,
                headers=dict(exc.headers.items()) if exc.headers else {},
            )
        except URLError as exc:
            raise UpstreamTransportError(
                f"request to {_host(request.url)} failed: {exc.reason}"
            ) from exc
        except (TimeoutError, OSError) as exc:
            raise UpstreamTransportError(f"request to {_host(request.url)} failed: {exc}") from exc


def send_with_retry(
    send: Callable[[], HttpResponse],
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "upstream",
) -> HttpResponse:
    """Run ``send`` until it yields a 2xx response.

    Statuses in ``policy.retry_statuses`` back off exponentially and end in
    ``RateLimitExceededError``; any other non-2xx fails at once. Transport failures back
    off linearly and the last one is re-raised. The response body is never inspected.
    """
    attempts = max(1, policy.max_attempts)
    last_transport_error: UpstreamTransportError | None = None

    for attempt in range(attempts):
        try:
            response = send()
        except UpstreamTransportError as exc:
            last_transport_error = exc
            if attempt + 1 >= attempts:
                break
            delay_ms = policy.network_backoff_ms(attempt)
            LOGGER.warning(
                "http retry network_error label=%s attempt=%s delay_ms=%s error=%s",
                label,
                attempt + 1,
                delay_ms,
                exc,
            )
            sleep(delay_ms / 1000)
            continue

        if response.ok:
            return response

        if response.status_code in policy.retry_statuses:
            if attempt + 1 >= attempts:
                raise RateLimitExceededError(
                    f"{label} still rate limited after {attempts} attempts",
                    response=response,
                )
            delay_ms = policy.backoff_ms(attempt)
            LOGGER.warning(
                "http retry rate_limited label=%s attempt=%s status=%s delay_ms=%s",
                label,
                attempt + 1,
                response.status_code,
                delay_ms,
            )
            sleep(delay_ms / 1000)
            continue

        raise UpstreamHttpError(
            f"{label} request failed with status {response.status_code}",
            response=response,
        )

    assert last_transport_error is not None
    raise last_transport_error


def _host(url: str) -> str:
    without_scheme = url.split("://", 1)[-1]
    return without_scheme.split("/", 1)[0].split("?", 1)[0]
