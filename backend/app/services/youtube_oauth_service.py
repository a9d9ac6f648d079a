from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar, cast

import requests
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from oauthlib.oauth2.rfc6749.errors import InvalidGrantError as OAuthlibInvalidGrantError
from oauthlib.oauth2.rfc6749.errors import MissingTokenError, OAuth2Error

from backend.app.repositories.profile_repository import (
    ProfileRepository,
    UserProfile,
    YouTubeConnection,
)
from backend.app.services.google_token_transport import (
    RetryingGoogleAuthRequest,
    RetryingSessionAdapter,
)
from backend.app.services.http_retry import HttpRequest, HttpResponse, RetryPolicy
from backend.app.services.youtube_fetcher import (
    ChannelNotFoundError,
    YouTubeApiError,
    YouTubeAuthorizationError,
    YouTubeChannelFetcher,
)
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("stratly.youtube.oauth")

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

T = TypeVar("T")


class OAuthError(Exception):
    error_code = "oauth_error"
    requires_reconnect = False

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code


class AuthorizationDeniedError(OAuthError):
    """Google redirected back with ``error=...``; the code is the provider's."""

    def __init__(self, provider_error: str) -> None:
        super().__init__(
            f"Authorization was not granted: {provider_error}",
            error_code=provider_error,
        )


class MissingAuthorizationCodeError(OAuthError):
    error_code = "no_code"


class InvalidStateError(OAuthError):
    error_code = "invalid_state"


class MissingUserIdError(OAuthError):
    error_code = "no_user_id"


class InvalidTokenResponseError(OAuthError):
    error_code = "invalid_token_response"


class TokenExchangeFailedError(OAuthError):
    error_code = "token_exchange_failed"


class InvalidGrantError(OAuthError):
    error_code = "invalid_grant"
    requires_reconnect = True


class NoChannelFoundError(OAuthError):
    error_code = "no_channel_found"


class ChannelLookupFailedError(OAuthError):
    error_code = "channel_lookup_failed"


class TokenStorageError(OAuthError):
    error_code = "database_error"


class MissingRefreshTokenError(OAuthError):
    error_code = "no_refresh_token"
    requires_reconnect = True


class YouTubeNotConnectedError(OAuthError):
    error_code = "youtube_not_connected"
    requires_reconnect = True


class ReconnectRequiredError(OAuthError):
    error_code = "reconnect_required"
    requires_reconnect = True


@dataclass(frozen=True)
class OAuthClientConfig:
    client_id: str
    client_secret: str
    auth_uri: str
    token_uri: str
    redirect_uri: str
    scopes: tuple[str, ...]


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str | None
    expires_in: int
    expires_at: datetime


@dataclass(frozen=True)
class ConnectResult:
    user_id: str
    channel_id: str
    channel_title: str
    refresh_token_received: bool


def _utc_now() -> datetime:
    return datetime.now(UTC)


class YouTubeOAuthService:
    def __init__(
        self,
        *,
        client_config: OAuthClientConfig,
        profile_repository: ProfileRepository,
        fetcher: YouTubeChannelFetcher,
        send: Callable[[HttpRequest], HttpResponse],
        retry_policy: RetryPolicy,
        telemetry: TelemetryClient | None = None,
        refresh_skew_seconds: int = 60,
        now: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client_config = client_config
        self._profile_repository = profile_repository
        self._fetcher = fetcher
        self._send = send
        self._retry_policy = retry_policy
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._refresh_skew = timedelta(seconds=max(0, refresh_skew_seconds))
        self._now = now
        self._sleep = sleep

    def build_authorization_url(self, user_id: str) -> str:
        authorization_url, _state = self._build_flow().authorization_url(
            access_type="offline",
            prompt="consent",
            state=json.dumps({"userId": user_id}),
        )
        return str(authorization_url)

    def complete_authorization(
        self,
        *,
        code: str | None,
        state: str | None,
        error: str | None = None,
    ) -> ConnectResult:
        if error:
            raise AuthorizationDeniedError(error)
        if not code:
            raise MissingAuthorizationCodeError("Authorization code missing from callback")
        user_id = parse_state(state)

        grant = self._exchange_code(code)

        try:
            identity = self._fetcher.get_channel_identity(grant.access_token)
        except ChannelNotFoundError as exc:
            raise NoChannelFoundError(str(exc)) from exc
        except YouTubeApiError as exc:
            raise ChannelLookupFailedError(f"Could not read channel identity: {exc}") from exc

        try:
            self._profile_repository.apply_youtube_connection(
                user_id,
                YouTubeConnection(
                    access_token=grant.access_token,
                    refresh_token=grant.refresh_token,
                    expires_at=grant.expires_at,
                    channel_id=identity.channel_id,
                    channel_title=identity.title,
                    channel_thumbnail=identity.thumbnail_url,
                ),
            )
        except sqlite3.Error as exc:
            LOGGER.exception("youtube oauth token_store_failed user_id=%s", user_id)
            raise TokenStorageError("Failed to store YouTube tokens") from exc

        LOGGER.info(
            "youtube oauth connected user_id=%s channel_id=%s refresh_token_received=%s",
            user_id,
            identity.channel_id,
            grant.refresh_token is not None,
        )
        self._telemetry.emit(
            "youtube.oauth.connected",
            user_id=user_id,
            channel_id=identity.channel_id,
            refresh_issued=grant.refresh_token is not None,
        )
        return ConnectResult(
            user_id=user_id,
            channel_id=identity.channel_id,
            channel_title=identity.title,
            refresh_token_received=grant.refresh_token is not None,
        )

    def refresh_access_token(self, user_id: str, refresh_token: str | None = None) -> TokenGrant:
        effective_refresh_token = refresh_token
        if not effective_refresh_token:
            profile = self._load_profile(user_id)
            effective_refresh_token = profile.youtube_refresh_token if profile else None
        if not effective_refresh_token:
            raise MissingRefreshTokenError("No refresh token available; reconnect YouTube")

        credentials = Credentials(
            token=None,
            refresh_token=effective_refresh_token,
            token_uri=self._client_config.token_uri,
            client_id=self._client_config.client_id,
            client_secret=self._client_config.client_secret,
        )
        try:
            credentials.refresh(
                RetryingGoogleAuthRequest(
                    self._send,
                    policy=self._retry_policy,
                    sleep=self._sleep,
                )
            )
        except RefreshError as exc:
            LOGGER.warning("youtube oauth token_refresh_failed user_id=%s error=%s", user_id, exc)
            if _refresh_answer_lacks_access_token(exc):
                raise InvalidTokenResponseError(
                    "Token response did not include an access token"
                ) from exc
            raise InvalidGrantError(
                "Google rejected the refresh token; it has expired or was revoked"
            ) from exc
        except TransportError as exc:
            LOGGER.warning(
                "youtube oauth token_refresh_unavailable user_id=%s error=%s",
                user_id,
                exc,
            )
            raise TokenExchangeFailedError(f"Token endpoint failed: {exc}") from exc

        expires_in = _lifetime_seconds(credentials.expiry)
        expires_at = self._now() + timedelta(seconds=expires_in)

        # The stored refresh token is never rotated here.
        try:
            updated = self._profile_repository.update_access_token(
                user_id,
                access_token=str(credentials.token),
                expires_at=expires_at,
            )
        except sqlite3.Error as exc:
            LOGGER.exception("youtube oauth refresh_store_failed user_id=%s", user_id)
            raise TokenStorageError("Failed to store refreshed access token") from exc

        if not updated:
            LOGGER.warning("youtube oauth refresh_no_profile user_id=%s", user_id)
        LOGGER.info(
            "youtube oauth refreshed user_id=%s expires_in=%s",
            user_id,
            expires_in,
        )
        self._telemetry.emit(
            "youtube.oauth.refreshed",
            user_id=user_id,
            expires_in=expires_in,
        )
        return TokenGrant(
            access_token=str(credentials.token),
            refresh_token=None,
            expires_in=expires_in,
            expires_at=expires_at,
        )

    def get_valid_access_token(self, user_id: str) -> str:
        access_token, _refreshed = self._valid_access_token(user_id)
        return access_token

    def call_with_access_token(self, user_id: str, operation: Callable[[str], T]) -> T:
        """Run ``operation`` with a valid token, refreshing at most once per call.

        A token that was already refreshed because it was stale is not refreshed again when
        YouTube rejects it; the caller gets ``ReconnectRequiredError`` instead.
        """
        access_token, refreshed = self._valid_access_token(user_id)
        try:
            return operation(access_token)
        except YouTubeAuthorizationError as exc:
            if refreshed:
                raise ReconnectRequiredError(
                    "YouTube rejected a freshly refreshed token; reconnect required"
                ) from exc
            LOGGER.info("youtube oauth token_rejected user_id=%s retrying_after_refresh", user_id)

        renewed = self.refresh_access_token(user_id)
        try:
            return operation(renewed.access_token)
        except YouTubeAuthorizationError as exc:
            raise ReconnectRequiredError(
                "YouTube rejected a freshly refreshed token; reconnect required"
            ) from exc

    def _valid_access_token(self, user_id: str) -> tuple[str, bool]:
        profile = self._load_profile(user_id)
        if profile is None or not profile.youtube_connected:
            raise YouTubeNotConnectedError("YouTube channel is not connected")

        access_token = cast(str, profile.youtube_access_token)
        expires_at = profile.youtube_token_expires_at
        if expires_at is not None and expires_at - self._refresh_skew > self._now():
            return access_token, False

        LOGGER.info("youtube oauth access_token_stale user_id=%s", user_id)
        return self.refresh_access_token(user_id).access_token, True

    def _load_profile(self, user_id: str) -> UserProfile | None:
        try:
            return self._profile_repository.get(user_id)
        except sqlite3.Error as exc:
            LOGGER.exception("youtube oauth profile_read_failed user_id=%s", user_id)
            raise TokenStorageError("Failed to read YouTube tokens") from exc

    def _build_flow(self) -> Flow:
        return Flow.from_client_config(
            {
                "web": {
                    "client_id": self._client_config.client_id,
                    "client_secret": self._client_config.client_secret,
                    "auth_uri": self._client_config.auth_uri,
                    "token_uri": self._client_config.token_uri,
                    "redirect_uris": [self._client_config.redirect_uri],
                }
            },
            scopes=list(self._client_config.scopes),
            redirect_uri=self._client_config.redirect_uri,
            autogenerate_code_verifier=False,
        )

    def _exchange_code(self, code: str) -> TokenGrant:
        flow = self._build_flow()
        flow.oauth2session.mount(
            self._client_config.token_uri,
            RetryingSessionAdapter(self._send, policy=self._retry_policy, sleep=self._sleep),
        )
        try:
            token: dict[str, Any] = dict(flow.fetch_token(code=code, include_client_id=True))
        except OAuthlibInvalidGrantError as exc:
            LOGGER.warning("youtube oauth code_exchange_rejected error=%s", exc.error)
            raise InvalidGrantError(
                "Google rejected the authorization code; it has expired or was already used"
            ) from exc
        except MissingTokenError as exc:
            raise InvalidTokenResponseError(
                "Token response did not include an access token"
            ) from exc
        except OAuth2Error as exc:
            LOGGER.warning("youtube oauth code_exchange_failed error=%s", exc.error)
            raise TokenExchangeFailedError(
                f"Token endpoint rejected the code: {exc.error}"
            ) from exc
        except requests.RequestException as exc:
            LOGGER.warning("youtube oauth code_exchange_unavailable error=%s", exc)
            raise TokenExchangeFailedError(f"Token endpoint failed: {exc}") from exc

        access_token = token.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise InvalidTokenResponseError("Token response did not include an access token")

        raw_refresh = token.get("refresh_token")
        refresh_token = (
            raw_refresh if isinstance(raw_refresh, str) and raw_refresh.strip() else None
        )
        expires_in = _expires_in(token.get("expires_in"))
        return TokenGrant(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
            expires_at=self._now() + timedelta(seconds=expires_in),
        )


def parse_state(raw_state: str | None) -> str:
    if not raw_state:
        raise InvalidStateError("OAuth state parameter missing")
    try:
        parsed = json.loads(raw_state)
    except json.JSONDecodeError as exc:
        raise InvalidStateError("OAuth state parameter is not valid JSON") from exc
    if not isinstance(parsed, dict):
        raise InvalidStateError("OAuth state parameter must be a JSON object")

    user_id = cast(dict[str, object], parsed).get("userId")
    if not isinstance(user_id, str) or not user_id.strip():
        raise MissingUserIdError("OAuth state does not identify a user")
    return user_id.strip()


def _expires_in(raw_value: object) -> int:
    if isinstance(raw_value, bool):
        return DEFAULT_TOKEN_LIFETIME_SECONDS
    if isinstance(raw_value, int | float) and raw_value > 0:
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            parsed = int(raw_value)
        except ValueError:
            return DEFAULT_TOKEN_LIFETIME_SECONDS
        if parsed > 0:
            return parsed
    return DEFAULT_TOKEN_LIFETIME_SECONDS


def _lifetime_seconds(expiry: datetime | None) -> int:
    if expiry is None:
        return DEFAULT_TOKEN_LIFETIME_SECONDS
    # google-auth reports expiry as naive UTC.
    aware = expiry if expiry.tzinfo is not None else expiry.replace(tzinfo=UTC)
    return max(1, round((aware - datetime.now(UTC)).total_seconds()))


def _refresh_answer_lacks_access_token(exc: RefreshError) -> bool:
    payload = exc.args[1] if len(exc.args) > 1 else None
    return isinstance(payload, dict) and "error" not in payload
