from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from backend.app.services.http_retry import (
    HttpResponse,
    RateLimitExceededError,
    RetryPolicy,
    UpstreamHttpError,
    UpstreamTransportError,
    send_with_retry,
)

LOGGER = logging.getLogger("stratly.youtube.fetcher")

ISO8601_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
PAGE_SIZE_MAX = 50
THUMBNAIL_PREFERENCE = ("high", "medium", "default")

YouTubeClientFactory = Callable[[str], Any]


class YouTubeApiError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class YouTubeAuthorizationError(YouTubeApiError):
    """The access token was rejected; a refresh (or reconnect) is needed."""


class YouTubeRateLimitedError(YouTubeApiError):
    pass


class ChannelNotFoundError(YouTubeApiError):
    pass


@dataclass(frozen=True)
class ChannelIdentity:
    channel_id: str
    title: str
    thumbnail_url: str | None


@dataclass(frozen=True)
class ChannelStatistics:
    channel_id: str
    title: str
    description: str
    subscribers: int
    views: int
    videos: int
    hidden_subscriber_count: bool
    thumbnail_url: str | None
    published_at: str | None
    uploads_playlist_id: str | None


@dataclass(frozen=True)
class FetchedVideo:
    video_id: str
    title: str
    description: str
    published_at: str | None
    views: int
    likes: int
    comments: int
    duration_seconds: int
    thumbnail_url: str | None
    tags: tuple[str, ...]
    category_id: str | None


def build_youtube_client(access_token: str) -> Any:
    credentials = Credentials(token=access_token)
    return build("youtube", "v3", credentials=credentials, cache_discovery=False)


class YouTubeChannelFetcher:
    def __init__(
        self,
        *,
        retry_policy: RetryPolicy,
        client_factory: YouTubeClientFactory = build_youtube_client,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._retry_policy = retry_policy
        self._client_factory = client_factory
        self._sleep = sleep

    def get_channel_identity(self, access_token: str) -> ChannelIdentity:
        client = self._client_factory(access_token)
        response = self._execute(
            client.channels().list(part="snippet", mine=True, maxResults=1),
            label="channels.list mine",
        )
        items = _as_list(response.get("items"))
        if not items:
            raise ChannelNotFoundError("No YouTube channel found for this account")

        item = _as_dict(items[0])
        channel_id = item.get("id")
        if not isinstance(channel_id, str) or not channel_id.strip():
            raise ChannelNotFoundError("YouTube returned a channel without an id")
        snippet = _as_dict(item.get("snippet"))
        thumbnails = _as_dict(snippet.get("thumbnails"))
        return ChannelIdentity(
            channel_id=channel_id,
            title=_as_text(snippet.get("title")),
            thumbnail_url=_thumbnail_url(thumbnails, ("default", "medium", "high")),
        )

    def get_channel_statistics(self, access_token: str, channel_id: str) -> ChannelStatistics:
        client = self._client_factory(access_token)
        return self._fetch_channel(client, channel_id)

    def get_recent_videos(
        self,
        access_token: str,
        channel_id: str,
        max_results: int = 30,
        *,
        uploads_playlist_id: str | None = None,
    ) -> list[FetchedVideo]:
        """Return up to ``max_results`` uploads, newest first.

        Pass ``uploads_playlist_id`` when the channel was already fetched to skip the
        extra channels.list call.
        """
        client = self._client_factory(access_token)
        if uploads_playlist_id is None:
            uploads_playlist_id = self._fetch_channel(client, channel_id).uploads_playlist_id
        if uploads_playlist_id is None:
            raise ChannelNotFoundError(f"Channel {channel_id} has no uploads playlist")

        video_ids = self._list_upload_ids(
            client,
            playlist_id=uploads_playlist_id,
            limit=max(1, max_results),
        )
        videos = self._fetch_video_details(client, video_ids)
        LOGGER.info(
            "youtube fetch recent_videos channel_id=%s requested=%s playlist_items=%s videos=%s",
            channel_id,
            max_results,
            len(video_ids),
            len(videos),
        )
        return videos

    def _fetch_channel(self, client: Any, channel_id: str) -> ChannelStatistics:
        response = self._execute(
            client.channels().list(
                part="snippet,statistics,contentDetails",
                id=channel_id,
                maxResults=1,
            ),
            label="channels.list",
        )
        items = _as_list(response.get("items"))
        if not items:
            raise ChannelNotFoundError(f"Channel {channel_id} not found")

        item = _as_dict(items[0])
        snippet = _as_dict(item.get("snippet"))
        statistics = _as_dict(item.get("statistics"))
        content_details = _as_dict(item.get("contentDetails"))
        related = _as_dict(content_details.get("relatedPlaylists"))
        uploads = related.get("uploads")

        return ChannelStatistics(
            channel_id=_as_text(item.get("id")) or channel_id,
            title=_as_text(snippet.get("title")),
            description=_as_text(snippet.get("description")),
            subscribers=parse_count(statistics.get("subscriberCount")),
            views=parse_count(statistics.get("viewCount")),
            videos=parse_count(statistics.get("videoCount")),
            hidden_subscriber_count=statistics.get("hiddenSubscriberCount") is True,
            thumbnail_url=_thumbnail_url(_as_dict(snippet.get("thumbnails")), THUMBNAIL_PREFERENCE),
            published_at=_optional_text(snippet.get("publishedAt")),
            uploads_playlist_id=uploads if isinstance(uploads, str) and uploads.strip() else None,
        )

    def _list_upload_ids(self, client: Any, *, playlist_id: str, limit: int) -> list[str]:
        video_ids: list[str] = []
        page_token: str | None = None

        while len(video_ids) < limit:
            query_kwargs: dict[str, object] = {
                "part": "contentDetails",
                "playlistId": playlist_id,
                "maxResults": min(PAGE_SIZE_MAX, limit - len(video_ids)),
            }
            if page_token is not None:
                query_kwargs["pageToken"] = page_token

            response = self._execute(
                client.playlistItems().list(**query_kwargs),
                label="playlistItems.list",
            )
            for item in _as_list(response.get("items")):
                content_details = _as_dict(_as_dict(item).get("contentDetails"))
                video_id = content_details.get("videoId")
                if isinstance(video_id, str) and video_id.strip() and video_id not in video_ids:
                    video_ids.append(video_id)

            raw_next = response.get("nextPageToken")
            if not isinstance(raw_next, str) or not raw_next.strip():
                break
            page_token = raw_next

        return video_ids[:limit]

    def _fetch_video_details(self, client: Any, video_ids: list[str]) -> list[FetchedVideo]:
        by_id: dict[str, FetchedVideo] = {}
        for index in range(0, len(video_ids), PAGE_SIZE_MAX):
            chunk = video_ids[index : index + PAGE_SIZE_MAX]
            response = self._execute(
                client.videos().list(
                    part="snippet,statistics,contentDetails",
                    id=",".join(chunk),
                    maxResults=len(chunk),
                ),
                label="videos.list",
            )
            for item in _as_list(response.get("items")):
                video = _parse_video(_as_dict(item))
                if video is not None:
                    by_id[video.video_id] = video

        # Keep uploads-playlist order (newest first).
        return [by_id[video_id] for video_id in video_ids if video_id in by_id]

    def _execute(self, request: Any, *, label: str) -> dict[str, Any]:
        payload: dict[str, Any] = {}

        def send() -> HttpResponse:
            try:
                result = request.execute()
            except HttpError as exc:
                return HttpResponse(status_code=int(exc.resp.status), body=exc.content or b"")
            except (httplib2.HttpLib2Error, OSError) as exc:
                raise UpstreamTransportError(f"{label} failed: {exc}") from exc
            payload.clear()
            payload.update(_as_dict(result))
            return HttpResponse(status_code=200)

        try:
            send_with_retry(send, policy=self._retry_policy, sleep=self._sleep, label=label)
        except RateLimitExceededError as exc:
            raise YouTubeRateLimitedError(
                f"YouTube API rate limited ({label})",
                status_code=exc.status_code,
            ) from exc
        except UpstreamHttpError as exc:
            if exc.status_code == 401:
                raise YouTubeAuthorizationError(
                    f"YouTube rejected the access token ({label})",
                    status_code=401,
                ) from exc
            raise YouTubeApiError(
                f"YouTube API error {exc.status_code} ({label})",
                status_code=exc.status_code,
            ) from exc
        except UpstreamTransportError as exc:
            raise YouTubeApiError(f"YouTube API unreachable ({label}): {exc}") from exc
        return payload


def parse_count(raw_value: object) -> int:
    if isinstance(raw_value, bool):
        return 0
    if isinstance(raw_value, int):
        return max(0, raw_value)
    if isinstance(raw_value, str):
        try:
            return max(0, int(raw_value.strip()))
        except ValueError:
            return 0
    return 0


def parse_duration_seconds(raw_value: object) -> int:
    if not isinstance(raw_value, str):
        return 0
    matched = ISO8601_DURATION_PATTERN.match(raw_value.strip())
    if matched is None:
        return 0

    days = int(matched.group("days") or 0)
    hours = int(matched.group("hours") or 0)
    minutes = int(matched.group("minutes") or 0)
    seconds = int(matched.group("seconds") or 0)
    return days * 86_400 + hours * 3_600 + minutes * 60 + seconds


def _parse_video(item: dict[str, Any]) -> FetchedVideo | None:
    video_id = item.get("id")
    if not isinstance(video_id, str) or not video_id.strip():
        return None

    snippet = _as_dict(item.get("snippet"))
    statistics = _as_dict(item.get("statistics"))
    content_details = _as_dict(item.get("contentDetails"))

    tags: list[str] = []
    for raw_tag in _as_list(snippet.get("tags")):
        if isinstance(raw_tag, str):
            tags.append(raw_tag)

    return FetchedVideo(
        video_id=video_id,
        title=_as_text(snippet.get("title")),
        description=_as_text(snippet.get("description")),
        published_at=_optional_text(snippet.get("publishedAt")),
        views=parse_count(statistics.get("viewCount")),
        likes=parse_count(statistics.get("likeCount")),
        comments=parse_count(statistics.get("commentCount")),
        duration_seconds=parse_duration_seconds(content_details.get("duration")),
        thumbnail_url=_thumbnail_url(_as_dict(snippet.get("thumbnails")), THUMBNAIL_PREFERENCE),
        tags=tuple(tags),
        category_id=_optional_text(snippet.get("categoryId")),
    )


def _thumbnail_url(thumbnails: dict[str, Any], preference: tuple[str, ...]) -> str | None:
    for quality in preference:
        url_value = _as_dict(thumbnails.get(quality)).get("url")
        if isinstance(url_value, str) and url_value.strip():
            return url_value
    return None


def _as_text(value: object) -> str:
    return value if isinstance(value, str) else ""


def _optional_text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return list(cast(list[Any], value))
    return []
