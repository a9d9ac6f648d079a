from __future__ import annotations

import logging
import sqlite3
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.repositories.import_task_repository import ImportTask, ImportTaskRepository
from backend.app.services.import_service import YouTubeImportService
from backend.app.services.youtube_fetcher import (
    ChannelNotFoundError,
    YouTubeApiError,
    YouTubeRateLimitedError,
)
from backend.app.services.youtube_oauth_service import OAuthError
from backend.app.telemetry import TelemetryClient, elapsed_ms

LOGGER = logging.getLogger("stratly.youtube.import")


class ImportTaskRunner:
    """Runs channel imports off the request thread and records their outcome."""

    def __init__(
        self,
        *,
        task_repository: ImportTaskRepository,
        import_service: YouTubeImportService,
        executor: Executor | None = None,
        worker_count: int = 2,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._task_repository = task_repository
        self._import_service = import_service
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, worker_count),
            thread_name_prefix="stratly-import",
        )
        self._telemetry = telemetry or TelemetryClient.disabled()

    def submit(self, user_id: str, channel_id: str) -> ImportTask:
        task = self._task_repository.create_task(user_id=user_id, channel_id=channel_id)
        self._telemetry.emit(
            "youtube.import.task.submitted",
            task_id=task.task_id,
            user_id=user_id,
            channel_id=channel_id,
        )
        future: Future[None] = self._executor.submit(self._run, task)
        future.add_done_callback(_log_unexpected_failure)
        return task

    def get(self, task_id: str, user_id: str) -> ImportTask | None:
        return self._task_repository.get_task(task_id, user_id=user_id)

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _run(self, task: ImportTask) -> None:
        tokens = bind_contextvars(import_task_id=task.task_id, user_id=task.user_id)
        started_at = time.perf_counter()
        try:
            # A failed status write ends the task as failed, like a failed import.
            try:
                self._task_repository.mark_running(task.task_id)
                summary = self._import_service.import_channel(task.user_id, task.channel_id)
                self._task_repository.mark_succeeded(
                    task.task_id,
                    videos_imported=summary.videos_imported,
                )
            except Exception as exc:
                self._record_failure(task, exc, started_at)
                return

            self._telemetry.emit(
                "youtube.import.task.succeeded",
                task_id=task.task_id,
                videos_imported=summary.videos_imported,
                duration_ms=elapsed_ms(started_at),
            )
        finally:
            reset_contextvars(**tokens)

    def _record_failure(self, task: ImportTask, exc: Exception, started_at: float) -> None:
        error_code = classify_import_error(exc)
        LOGGER.warning(
            "youtube import failed task_id=%s channel_id=%s error_code=%s",
            task.task_id,
            task.channel_id,
            error_code,
            exc_info=True,
        )
        self._task_repository.mark_failed(
            task.task_id,
            error_code=error_code,
            error_message=str(exc) or type(exc).__name__,
        )
        self._telemetry.emit(
            "youtube.import.task.failed",
            task_id=task.task_id,
            error_code=error_code,
            duration_ms=elapsed_ms(started_at),
        )


def classify_import_error(exc: BaseException) -> str:
    if isinstance(exc, OAuthError):
        return exc.error_code
    if isinstance(exc, ChannelNotFoundError):
        return "channel_not_found"
    if isinstance(exc, YouTubeRateLimitedError):
        return "rate_limited"
    if isinstance(exc, YouTubeApiError):
        return "youtube_api_error"
    if isinstance(exc, sqlite3.Error):
        return "database_error"
    return "internal_error"


def _log_unexpected_failure(future: Future[None]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        LOGGER.error("youtube import task crashed", exc_info=exc)
