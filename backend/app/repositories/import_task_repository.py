from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal
from uuid import uuid4

from backend.app.repositories.common import parse_timestamp, to_optional_str, utc_now_iso
from backend.app.repositories.database import Database

ImportTaskStatus = Literal["pending", "running", "succeeded", "failed"]


@dataclass(frozen=True)
class ImportTask:
    task_id: str
    user_id: str
    channel_id: str
    status: ImportTaskStatus
    videos_imported: int | None
    error_code: str | None
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None


class ImportTaskRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def create_task(self, *, user_id: str, channel_id: str) -> ImportTask:
        task_id = f"imp_{uuid4().hex}"
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO import_tasks (id, user_id, channel_id, status, created_at)
                VALUES (?, ?, ?, 'pending', ?)
                """,
                (task_id, user_id, channel_id, utc_now_iso()),
            )
        task = self.get_task(task_id, user_id=user_id)
        if task is None:
            raise RuntimeError(f"import task {task_id} vanished after insert")
        return task

    def mark_running(self, task_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE import_tasks SET status = 'running', started_at = ? WHERE id = ?",
                (utc_now_iso(), task_id),
            )

    def mark_succeeded(self, task_id: str, *, videos_imported: int) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE import_tasks
                SET status = 'succeeded', videos_imported = ?, finished_at = ?
                WHERE id = ?
                """,
                (videos_imported, utc_now_iso(), task_id),
            )

    def mark_failed(self, task_id: str, *, error_code: str, error_message: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE import_tasks
                SET status = 'failed', error_code = ?, error_message = ?, finished_at = ?
                WHERE id = ?
                """,
                (error_code, error_message[:500], utc_now_iso(), task_id),
            )

    def get_task(self, task_id: str, *, user_id: str) -> ImportTask | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM import_tasks
                WHERE id = ? AND user_id = ?
                """,
                (task_id, user_id),
            ).fetchone()

        if row is None:
            return None
        created_at = parse_timestamp(row["created_at"])
        if created_at is None:
            return None
        return ImportTask(
            task_id=str(row["id"]),
            user_id=str(row["user_id"]),
            channel_id=str(row["channel_id"]),
            status=_status(row["status"]),
            videos_imported=(
                int(row["videos_imported"]) if row["videos_imported"] is not None else None
            ),
            error_code=to_optional_str(row["error_code"]),
            error_message=to_optional_str(row["error_message"]),
            created_at=created_at,
            started_at=parse_timestamp(row["started_at"]),
            finished_at=parse_timestamp(row["finished_at"]),
        )


def _status(raw_value: object) -> ImportTaskStatus:
    if raw_value == "running":
        return "running"
    if raw_value == "succeeded":
        return "succeeded"
    if raw_value == "failed":
        return "failed"
    return "pending"
