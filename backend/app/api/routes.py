from __future__ import annotations

import logging
from typing import Annotated
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import RedirectResponse

from backend.app.config import AppSettings
from backend.app.dependencies import (
    get_api_key_repository,
    get_import_runner,
    get_import_service,
    get_insights_service,
    get_oauth_service,
    get_profile_repository,
    get_settings,
)
from backend.app.models.youtube_contracts import (
    AnalyzeRequest,
    AnalyzeResponse,
    ChannelStatsResponse,
    ConnectUrlResponse,
    ErrorDetail,
    ImportAcceptedResponse,
    ImportTaskResponse,
    RefreshTokenRequest,
    RefreshTokenResponse,
)
from backend.app.repositories.api_key_repository import ApiKeyRepository
from backend.app.repositories.import_task_repository import ImportTask
from backend.app.repositories.profile_repository import ProfileRepository
from backend.app.services.import_service import YouTubeImportService
from backend.app.services.import_task_runner import ImportTaskRunner
from backend.app.services.insights_service import InsightsService
from backend.app.services.youtube_fetcher import (
    ChannelNotFoundError,
    YouTubeApiError,
    YouTubeRateLimitedError,
)
from backend.app.services.youtube_oauth_service import (
    InvalidGrantError,
    MissingRefreshTokenError,
    OAuthError,
    TokenStorageError,
    YouTubeNotConnectedError,
    YouTubeOAuthService,
)

LOGGER = logging.getLogger("stratly.api")

router = APIRouter()


def _error(status_code: int, error_code: str, message: str) -> HTTPException:
    detail = ErrorDetail(error=error_code, message=message)
    return HTTPException(status_code=status_code, detail=detail.model_dump())


def _oauth_http_exception(exc: OAuthError) -> HTTPException:
    if isinstance(exc, MissingRefreshTokenError):
        return _error(400, exc.error_code, str(exc))
    if isinstance(exc, TokenStorageError):
        return _error(503, exc.error_code, str(exc))
    if exc.requires_reconnect:
        return _error(401, exc.error_code, str(exc))
    return _error(502, exc.error_code, str(exc))


def get_current_user_id(
    api_keys: Annotated[ApiKeyRepository, Depends(get_api_key_repository)],
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _error(401, "unauthorized", "Missing bearer token")
    user_id = api_keys.resolve_user_id(token)
    if user_id is None:
        raise _error(401, "unauthorized", "Invalid or revoked API key")
    return user_id


CurrentUserId = Annotated[str, Depends(get_current_user_id)]


@router.get(
    "/api/youtube/connect",
    response_model=ConnectUrlResponse,
    tags=["youtube"],
    operation_id="youtube_connect",
)
def youtube_connect(
    user_id: CurrentUserId,
    oauth_service: Annotated[YouTubeOAuthService, Depends(get_oauth_service)],
) -> ConnectUrlResponse:
    return ConnectUrlResponse(authorization_url=oauth_service.build_authorization_url(user_id))


@router.get(
    "/api/youtube/callback",
    response_class=RedirectResponse,
    tags=["youtube"],
    operation_id="youtube_oauth_callback",
)
def youtube_oauth_callback(
    oauth_service: Annotated[YouTubeOAuthService, Depends(get_oauth_service)],
    settings: Annotated[AppSettings, Depends(get_settings)],
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
) -> RedirectResponse:
    try:
        oauth_service.complete_authorization(code=code, state=state, error=error)
    except OAuthError as exc:
        LOGGER.warning("youtube callback failed error_code=%s", exc.error_code)
        query = urlencode({"error": exc.error_code})
        return RedirectResponse(f"{settings.dashboard_base_url}/dashboard/connect?{query}")
    return RedirectResponse(f"{settings.dashboard_base_url}/dashboard?success=youtube_connected")


@router.post(
    "/api/youtube/refresh-token",
    response_model=RefreshTokenResponse,
    tags=["youtube"],
    operation_id="youtube_refresh_token",
)
def youtube_refresh_token(
    user_id: CurrentUserId,
    oauth_service: Annotated[YouTubeOAuthService, Depends(get_oauth_service)],
    payload: RefreshTokenRequest | None = None,
) -> RefreshTokenResponse:
    try:
        grant = oauth_service.refresh_access_token(
            user_id,
            payload.refresh_token if payload is not None else None,
        )
    except InvalidGrantError as exc:
        raise _error(401, exc.error_code, str(exc)) from exc
    except OAuthError as exc:
        raise _oauth_http_exception(exc) from exc
    return RefreshTokenResponse(
        success=True,
        access_token=grant.access_token,
        expires_in=grant.expires_in,
        expires_at=grant.expires_at,
    )


@router.post(
    "/api/youtube/import",
    response_model=ImportAcceptedResponse,
    status_code=202,
    tags=["youtube"],
    operation_id="youtube_import",
)
def youtube_import(
    user_id: CurrentUserId,
    profiles: Annotated[ProfileRepository, Depends(get_profile_repository)],
    runner: Annotated[ImportTaskRunner, Depends(get_import_runner)],
) -> ImportAcceptedResponse:
    profile = profiles.get(user_id)
    channel_id = profile.youtube_channel_id if profile is not None else None
    if channel_id is None:
        raise _error(400, "youtube_not_connected", "No YouTube channel connected")

    task = runner.submit(user_id, channel_id)
    return ImportAcceptedResponse(
        success=True,
        message="Import started in background",
        task=_task_response(task),
    )


@router.get(
    "/api/youtube/import/{task_id}",
    response_model=ImportTaskResponse,
    tags=["youtube"],
    operation_id="youtube_import_status",
)
def youtube_import_status(
    task_id: str,
    user_id: CurrentUserId,
    runner: Annotated[ImportTaskRunner, Depends(get_import_runner)],
) -> ImportTaskResponse:
    task = runner.get(task_id, user_id)
    if task is None:
        raise _error(404, "task_not_found", f"Import task {task_id} not found")
    return _task_response(task)


@router.get(
    "/api/youtube/channel-stats",
    response_model=ChannelStatsResponse,
    tags=["youtube"],
    operation_id="youtube_channel_stats",
)
def youtube_channel_stats(
    user_id: CurrentUserId,
    import_service: Annotated[YouTubeImportService, Depends(get_import_service)],
    channel_id: Annotated[str, Query(alias="channelId", min_length=1, max_length=128)],
) -> ChannelStatsResponse:
    try:
        statistics = import_service.get_live_channel_statistics(user_id, channel_id)
    except ChannelNotFoundError as exc:
        raise _error(404, "channel_not_found", str(exc)) from exc
    except YouTubeRateLimitedError as exc:
        raise _error(429, "rate_limited", str(exc)) from exc
    except YouTubeApiError as exc:
        raise _error(502, "youtube_api_error", str(exc)) from exc
    except OAuthError as exc:
        raise _oauth_http_exception(exc) from exc

    return ChannelStatsResponse(
        success=True,
        subscribers=statistics.subscribers,
        views=statistics.views,
        videos=statistics.videos,
        hidden_subscriber_count=statistics.hidden_subscriber_count,
        title=statistics.title,
        description=statistics.description,
        thumbnail=statistics.thumbnail_url,
    )


@router.post(
    "/api/ai/analyze",
    response_model=AnalyzeResponse,
    response_model_exclude_none=True,
    tags=["ai"],
    operation_id="ai_analyze",
)
def ai_analyze(
    request: AnalyzeRequest,
    user_id: CurrentUserId,
    insights: Annotated[InsightsService, Depends(get_insights_service)],
) -> AnalyzeResponse:
    try:
        result = insights.analyze(user_id, request)
    except YouTubeNotConnectedError as exc:
        raise _error(400, exc.error_code, str(exc)) from exc
    return AnalyzeResponse(
        analysis=result.analysis,
        ideas=result.ideas,
        generated_at=result.generated_at,
        cached=result.cached,
    )


def _task_response(task: ImportTask) -> ImportTaskResponse:
    return ImportTaskResponse(
        task_id=task.task_id,
        channel_id=task.channel_id,
        status=task.status,
        videos_imported=task.videos_imported,
        error_code=task.error_code,
        error_message=task.error_message,
        created_at=task.created_at,
        started_at=task.started_at,
        finished_at=task.finished_at,
    )
