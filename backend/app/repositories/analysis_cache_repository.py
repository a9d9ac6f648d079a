from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from backend.app.repositories.common import parse_timestamp
from backend.app.repositories.database import Database


@dataclass(frozen=True)
class CachedAnalysis:
    user_id: str
    channel_id: str
    analysis_text: str
    provider: str
    created_at: datetime
    expires_at: datetime


class AnalysisCacheRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get_fresh(self, *, user_id: str, channel_id: str, now: datetime) -> CachedAnalysis | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT user_id, channel_id, analysis_text, provider, created_at, expires_at
                FROM ai_analyses
                WHERE user_id = ? AND channel_id = ?
                """,
                (user_id, channel_id),
            ).fetchone()

        if row is None:
            return None

        created_at = parse_timestamp(row["created_at"])
        expires_at = parse_timestamp(row["expires_at"])
        if created_at is None or expires_at is None:
            return None
        if expires_at <= now.astimezone(UTC):
            return None

        return CachedAnalysis(
            user_id=str(row["user_id"]),
            channel_id=str(row["channel_id"]),
            analysis_text=str(row["analysis_text"]),
            provider=str(row["provider"]),
            created_at=created_at,
            expires_at=expires_at,
        )

    def upsert(self, analysis: CachedAnalysis) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO ai_analyses
                (user_id, channel_id, analysis_text, provider, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, channel_id) DO UPDATE SET
                    analysis_text = excluded.analysis_text,
                    provider = excluded.provider,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at
                """,
                (
                    analysis.user_id,
                    analysis.channel_id,
                    analysis.analysis_text,
                    analysis.provider,
                    analysis.created_at.astimezone(UTC).isoformat(),
                    analysis.expires_at.astimezone(UTC).isoformat(),
                ),
            )
