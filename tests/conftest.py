from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl

import httplib2
import pytest
from fastapi.testclient import TestClient
from googleapiclient.errors import HttpError

from backend.app.dependencies import (
    get_api_key_repository,
    get_import_runner,
    get_import_service,
    get_insights_service,
    get_oauth_service,
    get_profile_repository,
    reset_cached_dependencies,
)
from backend.app.main import create_app
from backend.app.repositories.analysis_cache_repository import AnalysisCacheRepository
from backend.app.repositories.analytics_repository import AnalyticsRepository
from backend.app.repositories.api_key_repository import ApiKeyRepository
from backend.app.repositories.database import Database
from backend.app.repositories.import_task_repository import ImportTaskRepository
from backend.app.repositories.profile_repository import ProfileRepository, YouTubeConnection
from backend.app.services.ai_analyzer import AIProviderConfig, YouTubeAIAnalyzer
from backend.app.services.http_retry import HttpRequest, HttpResponse, RetryPolicy
from backend.app.services.import_service import YouTubeImportService
from backend.app.services.import_task_runner import ImportTaskRunner
from backend.app.services.insights_service import InsightsService
from backend.app.services.youtube_fetcher import YouTubeChannelFetcher
from backend.app.services.youtube_oauth_service import OAuthClientConfig, YouTubeOAuthService

FIXED_NOW = datetime(2025, 3, 14, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _stratly_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:  # pyright: ignore[reportUnusedFunction]
    monkeypatch.setenv("STRATLY_GOOGLE_CLIENT_ID", "test-client-id.apps.googleusercontent.com")
    monkeypatch.setenv("STRATLY_GOOGLE_CLIENT_SECRET", "test-client-secret")
    monkeypatch.setenv("STRATLY_TELEMETRY_SINK", "none")
    monkeypatch.delenv("STRATLY_OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("STRATLY_GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("STRATLY_AI_PROVIDER", raising=False)


def http_error(status: int, content: bytes = b"{}") -> HttpError:
    return HttpError(httplib2.Response({"status": str(status)}), content)


def channel_item(
    channel_id: str = "UC123",
    *,
    title: str = "Test Channel",
    subscribers: object = "1500",
    views: object = "120000",
    videos: object = "42",
    uploads: str | None = "UU123",
) -> dict[str, Any]:
    statistics: dict[str, Any] = {"hiddenSubscriberCount": False}
    if subscribers is not None:
        statistics["subscriberCount"] = subscribers
    if views is not None:
        statistics["viewCount"] = views
    if videos is not None:
        statistics["videoCount"] = videos
    related = {"uploads": uploads} if uploads is not None else {}
    return {
        "id": channel_id,
        "snippet": {
            "title": title,
            "description": "Reviews and comparisons.",
            "publishedAt": "2019-05-01T10:00:00Z",
            "thumbnails": {
                "default": {"url": "https://img.example/default.jpg"},
                "high": {"url": "https://img.example/high.jpg"},
            },
        },
        "statistics": statistics,
        "contentDetails": {"relatedPlaylists": related},
    }


def video_item(
    video_id: str,
    *,
    views: object = "1000",
    likes: object = "50",
    comments: object = "10",
    duration: object = "PT4M13S",
    published_at: str = "2025-03-01T09:00:00Z",
) -> dict[str, Any]:
    statistics: dict[str, Any] = {}
    if views is not None:
        statistics["viewCount"] = views
    if likes is not None:
        statistics["likeCount"] = likes
    if comments is not None:
        statistics["commentCount"] = comments
    return {
        "id": video_id,
        "snippet": {
            "title": f"Video {video_id}",
            "description": f"Description of {video_id}",
            "publishedAt": published_at,
            "tags": ["tech", "review"],
            "categoryId": "28",
            "thumbnails": {"medium": {"url": f"https://img.example/{video_id}.jpg"}},
        },
        "statistics": statistics,
        "contentDetails": {"duration": duration},
    }


class _FakeRequest:
    def __init__(self, client: FakeYouTubeClient, resource: str, kwargs: dict[str, Any]) -> None:
        self._client = client
        self._resource = resource
        self._kwargs = kwargs

    def execute(self) -> dict[str, Any]:
        return self._client.respond(self._resource, self._kwargs)


class _FakeResource:
    def __init__(self, client: FakeYouTubeClient, resource: str) -> None:
        self._client = client
        self._resource = resource

    def list(self, **kwargs: Any) -> _FakeRequest:
        self._client.calls.append((self._resource, kwargs))
        return _FakeRequest(self._client, self._resource, kwargs)


class FakeYouTubeClient:
    """Mimics the ``client.<resource>().list(**kw).execute()`` chain of googleapiclient."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.executions: list[str] = []
        self.tokens_seen: list[str] = []
        self.channels_by_id: dict[str, dict[str, Any]] = {"UC123": channel_item()}
        self.mine_channel: dict[str, Any] | None = channel_item()
        self.playlist_video_ids: list[str] = []
        self.videos_by_id: dict[str, dict[str, Any]] = {}
        self.failures: dict[str, list[BaseException]] = {}
        self.rejected_tokens: set[str] = set()
        self._current_token = ""

    def factory(self, access_token: str) -> FakeYouTubeClient:
        self.tokens_seen.append(access_token)
        self._current_token = access_token
        return self

    def add_videos(self, *items: dict[str, Any]) -> None:
        for item in items:
            self.videos_by_id[item["id"]] = item
            self.playlist_video_ids.append(item["id"])

    def fail_next(self, resource: str, *errors: BaseException) -> None:
        self.failures.setdefault(resource, []).extend(errors)

    def channels(self) -> _FakeResource:
        return _FakeResource(self, "channels")

    def playlistItems(self) -> _FakeResource:  # noqa: N802
        return _FakeResource(self, "playlistItems")

    def videos(self) -> _FakeResource:
        return _FakeResource(self, "videos")

    def respond(self, resource: str, kwargs: dict[str, Any]) -> dict[str, Any]:
        self.executions.append(resource)
        if self._current_token in self.rejected_tokens:
            raise http_error(401)
        queued = self.failures.get(resource)
        if queued:
            raise queued.pop(0)

        if resource == "channels":
            if kwargs.get("mine"):
                return {"items": [self.mine_channel]} if self.mine_channel else {"items": []}
            channel = self.channels_by_id.get(str(kwargs.get("id")))
            return {"items": [channel]} if channel else {"items": []}

        if resource == "playlistItems":
            start = int(kwargs.get("pageToken") or 0)
            page_size = int(kwargs["maxResults"])
            page = self.playlist_video_ids[start : start + page_size]
            response: dict[str, Any] = {
                "items": [{"contentDetails": {"videoId": video_id}} for video_id in page]
            }
            if start + page_size < len(self.playlist_video_ids):
                response["nextPageToken"] = str(start + page_size)
            return response

        ids = str(kwargs["id"]).split(",")
        return {
            "items": [self.videos_by_id[key] for key in ids if key in self.videos_by_id]
        }


class FakeTokenEndpoint:
    """Records token endpoint requests and answers from a queue (default: a fresh token)."""

    def __init__(self) -> None:
        self.requests: list[HttpRequest] = []
        self.responses: list[HttpResponse] = []
        self._issued = 0

    def queue_json(self, status_code: int, body: str) -> None:
        self.responses.append(HttpResponse(status_code=status_code, body=body.encode("utf-8")))

    def send(self, request: HttpRequest) -> HttpResponse:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        self._issued += 1
        return HttpResponse(
            status_code=200,
            body=(
                f'{{"access_token": "access-{self._issued}", "expires_in": 3599, '
                '"token_type": "Bearer"}'
            ).encode("utf-8"),
        )

    def form_fields(self, index: int = -1) -> dict[str, str]:
        body = self.requests[index].body or b""
        return dict(parse_qsl(body.decode("utf-8")))


class FakeAIProvider:
    """Answers OpenAI chat completion requests: queued outcomes first, then numbered analyses."""

    def __init__(self) -> None:
        self.requests: list[HttpRequest] = []
        self.outcomes: list[HttpResponse | Exception] = []
        self._answered = 0

    def queue_reply(self, text: str) -> None:
        self.outcomes.append(chat_reply(text))

    def queue_status(self, status_code: int) -> None:
        self.outcomes.append(HttpResponse(status_code=status_code))

    def send(self, request: HttpRequest) -> HttpResponse:
        self.requests.append(request)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        self._answered += 1
        return chat_reply(f"Channel analysis {self._answered} written by the provider.")


def chat_reply(text: str) -> HttpResponse:
    payload = {"choices": [{"message": {"content": text}}]}
    return HttpResponse(status_code=200, body=json.dumps(payload).encode("utf-8"))


@dataclass
class FakeClock:
    now: datetime = FIXED_NOW

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class ImmediateExecutor(Executor):
    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future[Any]:
        future: Future[Any] = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as exc:  # noqa: BLE001
            future.set_exception(exc)
        return future


@dataclass
class ServiceGraph:
    database: Database
    youtube: FakeYouTubeClient
    token_endpoint: FakeTokenEndpoint
    ai_provider: FakeAIProvider
    clock: FakeClock
    profiles: ProfileRepository
    analytics: AnalyticsRepository
    api_keys: ApiKeyRepository
    fetcher: YouTubeChannelFetcher
    oauth: YouTubeOAuthService
    importer: YouTubeImportService
    runner: ImportTaskRunner
    insights: InsightsService
    sleeps: list[float] = field(default_factory=list)

    def connect(self, user_id: str = "u1", *, refresh_token: str | None = "r-stored") -> None:
        self.profiles.apply_youtube_connection(
            user_id,
            YouTubeConnection(
                access_token="a-stored",
                refresh_token=refresh_token,
                expires_at=self.clock.now + timedelta(hours=1),
                channel_id="UC123",
                channel_title="Test Channel",
                channel_thumbnail="https://img.example/default.jpg",
            ),
        )


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "runtime-data"
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def database(data_dir: Path) -> Database:
    db = Database(data_dir / "state.db")
    db.initialize()
    return db


@pytest.fixture
def services(database: Database) -> ServiceGraph:
    youtube = FakeYouTubeClient()
    token_endpoint = FakeTokenEndpoint()
    ai_provider = FakeAIProvider()
    clock = FakeClock()
    sleeps: list[float] = []
    retry_policy = RetryPolicy(max_attempts=3, base_delay_ms=1000, max_delay_ms=16000)

    profiles = ProfileRepository(database)
    analytics = AnalyticsRepository(database)
    fetcher = YouTubeChannelFetcher(
        retry_policy=retry_policy,
        client_factory=youtube.factory,
        sleep=sleeps.append,
    )
    oauth = YouTubeOAuthService(
        client_config=OAuthClientConfig(
            client_id="test-client-id.apps.googleusercontent.com",
            client_secret="test-client-secret",
            auth_uri="https://accounts.google.com/o/oauth2/auth",
            token_uri="https://oauth2.googleapis.com/token",
            redirect_uri="http://localhost:8000/api/youtube/callback",
            scopes=("https://www.googleapis.com/auth/youtube.readonly",),
        ),
        profile_repository=profiles,
        fetcher=fetcher,
        send=token_endpoint.send,
        retry_policy=retry_policy,
        now=clock,
        sleep=sleeps.append,
    )
    importer = YouTubeImportService(
        oauth_service=oauth,
        fetcher=fetcher,
        analytics_repository=analytics,
        profile_repository=profiles,
        video_limit=30,
        today=lambda: clock.now.date(),
    )
    runner = ImportTaskRunner(
        task_repository=ImportTaskRepository(database),
        import_service=importer,
        executor=ImmediateExecutor(),
    )
    analyzer = YouTubeAIAnalyzer(
        config=AIProviderConfig(openai_api_key="sk-test"),
        send=ai_provider.send,
        retry_policy=retry_policy,
        sleep=sleeps.append,
    )
    insights = InsightsService(
        analyzer=analyzer,
        cache_repository=AnalysisCacheRepository(database),
        profile_repository=profiles,
        now=clock,
    )
    return ServiceGraph(
        database=database,
        youtube=youtube,
        token_endpoint=token_endpoint,
        ai_provider=ai_provider,
        clock=clock,
        profiles=profiles,
        analytics=analytics,
        api_keys=ApiKeyRepository(database),
        fetcher=fetcher,
        oauth=oauth,
        importer=importer,
        runner=runner,
        insights=insights,
        sleeps=sleeps,
    )


@pytest.fixture
def client(
    data_dir: Path,
    services: ServiceGraph,
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[TestClient]:
    monkeypatch.setenv("STRATLY_DATA_DIR", str(data_dir))
    reset_cached_dependencies()

    app = create_app()
    app.dependency_overrides[get_oauth_service] = lambda: services.oauth
    app.dependency_overrides[get_import_service] = lambda: services.importer
    app.dependency_overrides[get_import_runner] = lambda: services.runner
    app.dependency_overrides[get_insights_service] = lambda: services.insights
    app.dependency_overrides[get_profile_repository] = lambda: services.profiles
    app.dependency_overrides[get_api_key_repository] = lambda: services.api_keys
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()


@pytest.fixture
def auth_headers(services: ServiceGraph) -> dict[str, str]:
    _, token = services.api_keys.create_key("u1", "tests")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_channel() -> Callable[..., dict[str, Any]]:
    return channel_item


@pytest.fixture
def make_video() -> Callable[..., dict[str, Any]]:
    return video_item


@pytest.fixture
def make_http_error() -> Callable[..., HttpError]:
    return http_error
