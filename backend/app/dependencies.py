from __future__ import annotations

from datetime import timedelta
from functools import lru_cache

from backend.app.config import AppSettings, load_settings
from backend.app.repositories.analysis_cache_repository import AnalysisCacheRepository
from backend.app.repositories.analytics_repository import AnalyticsRepository
from backend.app.repositories.api_key_repository import ApiKeyRepository
from backend.app.repositories.database import Database
from backend.app.repositories.import_task_repository import ImportTaskRepository
from backend.app.repositories.profile_repository import ProfileRepository
from backend.app.services.ai_analyzer import AIProviderConfig, YouTubeAIAnalyzer
from backend.app.services.http_retry import RetryPolicy, UrllibTransport
from backend.app.services.import_service import YouTubeImportService
from backend.app.services.import_task_runner import ImportTaskRunner
from backend.app.services.insights_service import InsightsService
from backend.app.services.youtube_fetcher import YouTubeChannelFetcher
from backend.app.services.youtube_oauth_service import OAuthClientConfig, YouTubeOAuthService
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        base_delay_ms=settings.retry_base_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
        network_delay_ms=settings.retry_network_delay_ms,
    )


@lru_cache(maxsize=1)
def get_transport() -> UrllibTransport:
    return UrllibTransport(timeout_seconds=get_settings().http_timeout_seconds)


@lru_cache(maxsize=1)
def get_profile_repository() -> ProfileRepository:
    return ProfileRepository(get_database())


@lru_cache(maxsize=1)
def get_api_key_repository() -> ApiKeyRepository:
    return ApiKeyRepository(get_database())


@lru_cache(maxsize=1)
def get_fetcher() -> YouTubeChannelFetcher:
    return YouTubeChannelFetcher(retry_policy=get_retry_policy())


@lru_cache(maxsize=1)
def get_oauth_service() -> YouTubeOAuthService:
    settings = get_settings()
    return YouTubeOAuthService(
        client_config=OAuthClientConfig(
            client_id=settings.google_client_id or "",
            client_secret=settings.google_client_secret or "",
            auth_uri=settings.google_auth_uri,
            token_uri=settings.google_token_uri,
            redirect_uri=settings.youtube_redirect_uri,
            scopes=settings.youtube_oauth_scopes,
        ),
        profile_repository=get_profile_repository(),
        fetcher=get_fetcher(),
        send=get_transport().send,
        retry_policy=get_retry_policy(),
        telemetry=get_telemetry(),
        refresh_skew_seconds=settings.youtube_token_refresh_skew_seconds,
    )


@lru_cache(maxsize=1)
def get_import_service() -> YouTubeImportService:
    return YouTubeImportService(
        oauth_service=get_oauth_service(),
        fetcher=get_fetcher(),
        analytics_repository=AnalyticsRepository(get_database()),
        profile_repository=get_profile_repository(),
        video_limit=get_settings().youtube_import_video_limit,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_import_runner() -> ImportTaskRunner:
    return ImportTaskRunner(
        task_repository=ImportTaskRepository(get_database()),
        import_service=get_import_service(),
        worker_count=get_settings().youtube_import_worker_count,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_analyzer() -> YouTubeAIAnalyzer:
    settings = get_settings()
    config = AIProviderConfig(
        provider=settings.ai_provider,
        openai_api_key=settings.openai_api_key,
        openai_model=settings.openai_model,
        openai_base_url=settings.openai_base_url,
        gemini_api_key=settings.gemini_api_key,
        gemini_model=settings.gemini_model,
        gemini_base_url=settings.gemini_base_url,
        timeout_seconds=settings.http_timeout_seconds,
    )
    return YouTubeAIAnalyzer(
        config=config,
        send=UrllibTransport(timeout_seconds=config.timeout_seconds).send,
        retry_policy=get_retry_policy(),
    )


@lru_cache(maxsize=1)
def get_insights_service() -> InsightsService:
    return InsightsService(
        analyzer=get_analyzer(),
        cache_repository=AnalysisCacheRepository(get_database()),
        profile_repository=get_profile_repository(),
        cache_ttl=timedelta(hours=get_settings().ai_analysis_cache_ttl_hours),
        telemetry=get_telemetry(),
    )


def reset_cached_dependencies() -> None:
    if get_import_runner.cache_info().currsize:
        get_import_runner().shutdown(wait=True)
    get_insights_service.cache_clear()
    get_analyzer.cache_clear()
    get_import_runner.cache_clear()
    get_import_service.cache_clear()
    get_oauth_service.cache_clear()
    get_fetcher.cache_clear()
    get_api_key_repository.cache_clear()
    get_profile_repository.cache_clear()
    get_transport.cache_clear()
    get_retry_policy.cache_clear()
    get_telemetry.cache_clear()
    get_database.cache_clear()
    get_settings.cache_clear()
