from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS profiles (
    id TEXT PRIMARY KEY,
    youtube_channel_id TEXT NULL,
    youtube_access_token TEXT NULL,
    youtube_refresh_token TEXT NULL,
    youtube_token_expires_at TEXT NULL,
    youtube_channel_title TEXT NULL,
    youtube_channel_thumbnail TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS api_keys (
    key_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    label TEXT NOT NULL,
    secret_hash TEXT NOT NULL,
    created_at TEXT NOT NULL,
    revoked_at TEXT NULL,
    last_used_at TEXT NULL
);

CREATE INDEX IF NOT EXISTS idx_api_keys_user_id ON api_keys(user_id);

CREATE TABLE IF NOT EXISTS channel_snapshots (
    channel_id TEXT NOT NULL,
    snapshot_date TEXT NOT NULL,
    user_id TEXT NOT NULL,
    subscribers INTEGER NOT NULL,
    total_views INTEGER NOT NULL,
    total_videos INTEGER NOT NULL,
    recent_views INTEGER NOT NULL,
    recent_likes INTEGER NOT NULL,
    recent_comments INTEGER NOT NULL,
    engagement_rate REAL NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (channel_id, snapshot_date)
);

CREATE INDEX IF NOT EXISTS idx_channel_snapshots_user_date
ON channel_snapshots(user_id, snapshot_date);

CREATE TABLE IF NOT EXISTS video_records (
    video_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    published_at TEXT NULL,
    views INTEGER NOT NULL,
    likes INTEGER NOT NULL,
    comments INTEGER NOT NULL,
    duration_seconds INTEGER NOT NULL,
    thumbnail_url TEXT NULL,
    tags_json TEXT NOT NULL,
    category_id TEXT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_video_records_channel_published
ON video_records(channel_id, published_at DESC);

CREATE TABLE IF NOT EXISTS ai_analyses (
    user_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    analysis_text TEXT NOT NULL,
    provider TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    PRIMARY KEY (user_id, channel_id)
);

CREATE TABLE IF NOT EXISTS import_tasks (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    status TEXT NOT NULL,
    videos_imported INTEGER NULL,
    error_code TEXT NULL,
    error_message TEXT NULL,
    created_at TEXT NOT NULL,
    started_at TEXT NULL,
    finished_at TEXT NULL
);

CREATE INDEX IF NOT EXISTS idx_import_tasks_user_created
ON import_tasks(user_id, created_at DESC);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        # Import workers write from their own threads; a short busy timeout
        # lets concurrent upserts queue instead of failing with "database is locked".
        conn = sqlite3.connect(self._path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQL)
