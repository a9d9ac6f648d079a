from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from backend.app.repositories.common import parse_timestamp, to_optional_str, utc_now_iso
from backend.app.repositories.database import Database


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    youtube_channel_id: str | None = None
    youtube_access_token: str | None = None
    youtube_refresh_token: str | None = None
    youtube_token_expires_at: datetime | None = None
    youtube_channel_title: str | None = None
    youtube_channel_thumbnail: str | None = None

    @property
    def youtube_connected(self) -> bool:
        return self.youtube_access_token is not None and self.youtube_channel_id is not None


@dataclass(frozen=True)
class YouTubeConnection:
    """Everything the OAuth callback learns about a channel, written as one record."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime
    channel_id: str
    channel_title: str
    channel_thumbnail: str | None


class ProfileRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, user_id: str) -> UserProfile | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT
                    id,
                    youtube_channel_id,
                    youtube_access_token,
                    youtube_refresh_token,
                    youtube_token_expires_at,
                    youtube_channel_title,
                    youtube_channel_thumbnail
                FROM profiles
                WHERE id = ?
                """,
                (user_id,),
            ).fetchone()

        if row is None:
            return None
        return UserProfile(
            user_id=str(row["id"]),
            youtube_channel_id=to_optional_str(row["youtube_channel_id"]),
            youtube_access_token=to_optional_str(row["youtube_access_token"]),
            youtube_refresh_token=to_optional_str(row["youtube_refresh_token"]),
            youtube_token_expires_at=parse_timestamp(row["youtube_token_expires_at"]),
            youtube_channel_title=to_optional_str(row["youtube_channel_title"]),
            youtube_channel_thumbnail=to_optional_str(row["youtube_channel_thumbnail"]),
        )

    def ensure(self, user_id: str) -> None:
        """Create an empty profile row. Used to seed users in tests and scripts."""
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO profiles (id, created_at, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (user_id, now_iso, now_iso),
            )

    def apply_youtube_connection(self, user_id: str, connection: YouTubeConnection) -> None:
        # Google only issues a refresh token on first consent; a NULL here must
        # never erase the one already stored.
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO profiles (
                    id,
                    youtube_channel_id,
                    youtube_access_token,
                    youtube_refresh_token,
                    youtube_token_expires_at,
                    youtube_channel_title,
                    youtube_channel_thumbnail,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    youtube_channel_id = excluded.youtube_channel_id,
                    youtube_access_token = excluded.youtube_access_token,
                    youtube_refresh_token = COALESCE(
                        excluded.youtube_refresh_token,
                        profiles.youtube_refresh_token
                    ),
                    youtube_token_expires_at = excluded.youtube_token_expires_at,
                    youtube_channel_title = excluded.youtube_channel_title,
                    youtube_channel_thumbnail = excluded.youtube_channel_thumbnail,
                    updated_at = excluded.updated_at
                """,
                (
                    user_id,
                    connection.channel_id,
                    connection.access_token,
                    connection.refresh_token,
                    _to_iso(connection.expires_at),
                    connection.channel_title,
                    connection.channel_thumbnail,
                    now_iso,
                    now_iso,
                ),
            )

    def update_access_token(self, user_id: str, *, access_token: str, expires_at: datetime) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE profiles
                SET youtube_access_token = ?, youtube_token_expires_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (access_token, _to_iso(expires_at), utc_now_iso(), user_id),
            )
        return cursor.rowcount > 0

    def update_channel_identity(
        self,
        user_id: str,
        *,
        channel_title: str,
        channel_thumbnail: str | None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE profiles
                SET youtube_channel_title = ?,
                    youtube_channel_thumbnail = COALESCE(?, youtube_channel_thumbnail),
                    updated_at = ?
                WHERE id = ?
                """,
                (channel_title, channel_thumbnail, utc_now_iso(), user_id),
            )


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()
