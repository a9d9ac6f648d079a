from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import Any

import google.auth.exceptions
import google.auth.transport
import requests
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

from backend.app.services.http_retry import (
    HttpRequest,
    HttpResponse,
    RateLimitExceededError,
    RetryPolicy,
    UpstreamError,
    UpstreamHttpError,
    UpstreamTransportError,
    send_with_retry,
)

Send = Callable[[HttpRequest], HttpResponse]


def send_token_request(
    send: Send,
    request: HttpRequest,
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    label: str,
) -> HttpResponse:
    """Send one token endpoint request through the retry helper.

    2xx and 4xx answers are returned so google-auth and oauthlib can read the OAuth error
    payload themselves. Exhausted rate limits, 5xx answers and transport failures raise
    ``UpstreamError``; the libraries never see a status they would retry on their own.
    """
    try:
        return send_with_retry(lambda: send(request), policy=policy, sleep=sleep, label=label)
    except RateLimitExceededError:
        raise
    except UpstreamHttpError as exc:
        if exc.status_code >= 500:
            raise
        return exc.response


class _GoogleAuthResponse(google.auth.transport.Response):
    def __init__(self, response: HttpResponse) -> None:
        self._response = response

    @property
    def status(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> Mapping[str, str]:
        return self._response.headers

    @property
    def data(self) -> bytes:
        return self._response.body


class RetryingGoogleAuthRequest(google.auth.transport.Request):
    """google-auth transport that sends token requests through ``send_with_retry``."""

    def __init__(
        self,
        send: Send,
        *,
        policy: RetryPolicy,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._send = send
        self._policy = policy
        self._sleep = sleep

    def __call__(
        self,
        url: str,
        method: str = "GET",
        body: Any = None,
        headers: Mapping[str, str] | None = None,
        timeout: Any = None,
        **kwargs: Any,
    ) -> _GoogleAuthResponse:
        request = HttpRequest(
            method=method,
            url=url,
            headers=dict(headers or {}),
            body=_as_bytes(body),
        )
        try:
            response = send_token_request(
                self._send,
                request,
                policy=self._policy,
                sleep=self._sleep,
                label="oauth refresh_token",
            )
        except UpstreamError as exc:
            raise google.auth.exceptions.TransportError(str(exc)) from exc
        return _GoogleAuthResponse(response)


class RetryingSessionAdapter(BaseAdapter):
    """requests adapter mounted on the OAuth session used for the code exchange."""

    def __init__(
        self,
        send: Send,
        *,
        policy: RetryPolicy,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__()
        self._send = send
        self._policy = policy
        self._sleep = sleep

    def send(
        self,
        request: requests.PreparedRequest,
        stream: bool = False,
        timeout: Any = None,
        verify: Any = True,
        cert: Any = None,
        proxies: Any = None,
    ) -> requests.Response:
        outgoing = HttpRequest(
            method=request.method or "POST",
            url=request.url or "",
            headers=dict(request.headers),
            body=_as_bytes(request.body),
        )
        try:
            answer = send_token_request(
                self._send,
                outgoing,
                policy=self._policy,
                sleep=self._sleep,
                label="oauth authorization_code",
            )
        except UpstreamTransportError as exc:
            raise requests.exceptions.ConnectionError(str(exc), request=request) from exc
        except UpstreamHttpError as exc:
            raise requests.exceptions.HTTPError(
                str(exc),
                request=request,
                response=_requests_response(request, exc.response),
            ) from exc
        return _requests_response(request, answer)

    def close(self) -> None:
        return None


def _requests_response(
    request: requests.PreparedRequest,
    answer: HttpResponse,
) -> requests.Response:
    response = requests.Response()
    response.status_code = answer.status_code
    response.headers = CaseInsensitiveDict(dict(answer.headers))
    response._content = answer.body  # pyright: ignore[reportPrivateUsage]
    response.encoding = "utf-8"
    response.url = request.url or ""
    response.request = request
    return response


def _as_bytes(body: Any) -> bytes | None:
    if body is None:
        return None
    if isinstance(body, bytes):
        return body
    return str(body).encode("utf-8")
