"""
Export pipeline — runs one export task through its three stages:

  1. fetch      page the group's topics into the cache (fetcher/topics.py)
  2. download   pull the referenced images into a per-export staging dir
                (skipped when images are off or none were found)
  3. zip        stream README + posts + images into the output archive

ExportOrchestrator owns the ExportRegistry. start_export() records the task
and schedules run_export() in the background; pollers read progress through
get_status(). run_export() never raises: every failure ends as status
'failed' with a single user-facing message in task.error.
"""
import asyncio
import shutil
import uuid
from pathlib import Path

import httpx
from loguru import logger

from topicvault.archive.media import download_all_images
from topicvault.archive.zip_builder import ZipOptions, build_export_zip, generate_zip_file_name
from topicvault.config.settings import (
    DOWNLOAD_CONCURRENCY,
    DOWNLOAD_RETRIES,
    DOWNLOAD_TIMEOUT_S,
    EXPORT_DIR,
    FETCH_DELAY_S,
    TASK_RETENTION_S,
)
from topicvault.database.db import (
    StorageError,
    count_topics,
    create_export,
    get_db,
    get_export,
    get_export_history,
    get_group,
    query_topics,
    update_export_stats,
    update_export_status,
)
from topicvault.export.task import (
    COMPLETED,
    DOWNLOADING_IMAGES,
    FAILED,
    FETCHING,
    ZIPPING,
    ExportOptions,
    ExportRegistry,
    ExportTask,
)
from topicvault.fetcher.base import PlatformClient
from topicvault.fetcher.client import AuthError, PlatformError
from topicvault.fetcher.topics import FetchOptions, fetch_and_cache_topics, normalize_date
from topicvault.monitoring.alerts import alert_export_completed, alert_export_failed


class ArchiveError(Exception):
    """The ZIP writer reported a failure."""


class ExportNotFound(Exception):
    pass


class ExportNotReady(Exception):
    pass


def describe_error(exc: Exception) -> str:
    """Map an internal / platform failure to the message shown to the user."""
    if isinstance(exc, AuthError):
        return "Token is invalid or expired, please reconnect"
    if isinstance(exc, PlatformError) and exc.code is not None:
        return f"Error code {exc.code}: {exc}"
    if isinstance(exc, StorageError):
        return f"Cache error: {exc}"
    if isinstance(exc, ArchiveError):
        return f"Archive failed: {exc}"
    if isinstance(exc, httpx.TimeoutException):
        return "Platform request timed out"
    return str(exc) or "Export failed"


class ExportOrchestrator:
    def __init__(
        self,
        client: PlatformClient,
        export_dir: Path = EXPORT_DIR,
        registry: ExportRegistry | None = None,
        retention_s: float = TASK_RETENTION_S,
        fetch_delay_s: float = FETCH_DELAY_S,
        download_concurrency: int = DOWNLOAD_CONCURRENCY,
        download_timeout_s: float = DOWNLOAD_TIMEOUT_S,
        download_retries: int = DOWNLOAD_RETRIES,
        download_backoff_s: float = 1.0,
        asset_client: httpx.AsyncClient | None = None,
    ):
        self.client      = client
        self.export_dir  = Path(export_dir)
        self.registry    = registry or ExportRegistry()
        self.retention_s = retention_s

        self.fetch_delay_s        = fetch_delay_s
        self.download_concurrency = download_concurrency
        self.download_timeout_s   = download_timeout_s
        self.download_retries     = download_retries
        self.download_backoff_s   = download_backoff_s
        self.asset_client         = asset_client

        self._running: set[asyncio.Task] = set()

    # ── Public API ────────────────────────────────────────────────────────────

    async def start_export(
        self,
        group_id: str,
        group_name: str | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
        options: ExportOptions | None = None,
    ) -> str:
        """Create the task + durable record, start the run, return the export id."""
        export_id = uuid.uuid4().hex

        with get_db() as conn:
            if not group_name:
                cached = get_group(conn, group_id)
                group_name = cached.name if cached else f"Group {group_id}"
            create_export(conn, export_id, group_id, group_name, start_date, end_date)

        task = ExportTask(
            export_id  = export_id,
            group_id   = group_id,
            group_name = group_name,
            start_date = start_date,
            end_date   = end_date,
            options    = options or ExportOptions(),
        )
        self.registry.add(task)

        runner = asyncio.create_task(self.run_export(task), name=f"export-{export_id[:8]}")
        self._running.add(runner)
        runner.add_done_callback(self._running.discard)

        logger.info(f"[Export {export_id[:8]}] created for group {group_id} ({group_name})")
        return export_id

    async def wait_all(self) -> None:
        """Block until every export started by this orchestrator has finished."""
        while self._running:
            await asyncio.gather(*list(self._running))

    def get_status(self, export_id: str) -> dict | None:
        """Live task snapshot if still in memory, else the durable record, else None."""
        task = self.registry.get(export_id)
        if task is not None:
            return task.snapshot()
        with get_db() as conn:
            return get_export(conn, export_id)

    def history(self, group_id: str | None = None, limit: int = 20) -> list[dict]:
        with get_db() as conn:
            return get_export_history(conn, group_id, limit)

    def archive_path(self, export_id: str) -> Path:
        """Path of a finished archive; raises ExportNotFound / ExportNotReady."""
        with get_db() as conn:
            record = get_export(conn, export_id)
        if record is None:
            raise ExportNotFound(f"export {export_id} does not exist")
        if record["status"] != COMPLETED:
            raise ExportNotReady(f"export {export_id} is {record['status']}")
        if not record["file_path"]:
            raise ExportNotFound(f"export {export_id} has no archive")
        path = Path(record["file_path"])
        if not path.is_file():
            raise ExportNotFound(f"archive for {export_id} was deleted")
        return path

    def read_archive(self, export_id: str) -> bytes:
        return self.archive_path(export_id).read_bytes()

    # ── Pipeline ──────────────────────────────────────────────────────────────

    async def run_export(self, task: ExportTask) -> None:
        tag     = f"[Export {task.export_id[:8]}]"
        staging = self.export_dir / task.export_id
        try:
            await self._run_stages(task, staging)
        except Exception as exc:
            if task.is_terminal:
                logger.error(f"{tag} error after {task.status}, status kept: {exc}")
                return
            message = describe_error(exc)
            logger.error(f"{tag} failed during {task.status}: {exc}")
            task.error = message
            task.transition(FAILED, "Export failed")
            try:
                with get_db() as conn:
                    update_export_status(conn, task.export_id, FAILED, error=message)
            except StorageError as db_exc:
                logger.error(f"{tag} could not record failure: {db_exc}")
            await alert_export_failed(task.export_id, task.group_name, message)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
            self.registry.schedule_removal(task.export_id, self.retention_s)

    async def _run_stages(self, task: ExportTask, staging: Path) -> None:
        tag      = f"[Export {task.export_id[:8]}]"
        progress = task.progress
        start    = normalize_date(task.start_date)
        end      = normalize_date(task.end_date, end_of_day=True)

        # ── Stage 1: fetch ────────────────────────────────────────────────────
        self._set_status(task, FETCHING, "Fetching topics...")

        def on_fetch(p) -> None:
            progress.advance(fetched_topics=p.fetched)
            progress.current_step = f"Fetched {p.fetched} topics..."

        fetch_result = await fetch_and_cache_topics(self.client, FetchOptions(
            group_id    = task.group_id,
            start_date  = start,
            end_date    = end,
            scope       = task.options.scope,
            delay_s     = self.fetch_delay_s,
            on_progress = on_fetch,
        ))
        if not fetch_result.success:
            raise fetch_result.error

        progress.advance(
            total_topics   = fetch_result.topics_count,
            fetched_topics = fetch_result.topics_count,
            total_images   = fetch_result.images_count,
        )

        with get_db() as conn:
            update_export_stats(
                conn, task.export_id, fetch_result.topics_count, fetch_result.images_count
            )
            total  = count_topics(conn, task.group_id, start, end, task.options.scope)
            topics = query_topics(conn, task.group_id, start, end, task.options.scope, limit=total) if total else []

        if not topics:
            logger.info(f"{tag} no topics in range, nothing to archive")
            self._finish(task, "No topics found")
            return

        progress.advance(total_topics=len(topics))

        # ── Stage 2: images ───────────────────────────────────────────────────
        images_dir = staging / "images"
        if task.options.include_images and fetch_result.images_count > 0:
            self._set_status(task, DOWNLOADING_IMAGES, "Downloading images...")

            def on_download(p) -> None:
                progress.advance(downloaded_images=p.downloaded)
                progress.current_step = f"Downloading images {p.downloaded}/{p.total}..."

            download = await download_all_images(
                topics,
                images_dir,
                concurrency = self.download_concurrency,
                timeout     = self.download_timeout_s,
                retries     = self.download_retries,
                backoff_s   = self.download_backoff_s,
                on_progress = on_download,
                client      = self.asset_client,
            )
            progress.advance(downloaded_images=download.downloaded_images)
            if download.errors:
                logger.warning(
                    f"{tag} {download.failed_images} images failed, continuing: "
                    f"{download.errors[:5]}"
                )

        # ── Stage 3: zip ──────────────────────────────────────────────────────
        self._set_status(task, ZIPPING, "Packing archive...")

        def on_zip(p) -> None:
            if p.stage == "adding_posts":
                progress.advance(converted_topics=p.current)
            progress.current_step = p.message

        zip_name = generate_zip_file_name(
            task.group_name, task.start_date, task.end_date, task.export_id
        )
        zip_result = await build_export_zip(topics, ZipOptions(
            output_path    = self.export_dir / zip_name,
            group_name     = task.group_name,
            start_date     = task.start_date,
            end_date       = task.end_date,
            style          = task.options.markdown_style,
            include_images = task.options.include_images,
            images_dir     = images_dir if images_dir.is_dir() else None,
            on_progress    = on_zip,
        ))
        if not zip_result.success:
            raise ArchiveError(zip_result.error or "unknown writer error")

        progress.advance(converted_topics=len(topics))
        self._finish(task, "Export complete", file_path=zip_result.file_path)
        await alert_export_completed(task.export_id, task.group_name, len(topics), zip_name)

    # ── Internal ──────────────────────────────────────────────────────────────

    def _set_status(self, task: ExportTask, status: str, step: str) -> None:
        task.transition(status, step)
        with get_db() as conn:
            update_export_status(conn, task.export_id, status)
        logger.info(f"[Export {task.export_id[:8]}] → {status}")

    def _finish(self, task: ExportTask, step: str, file_path: str | None = None) -> None:
        # DB first so a StorageError leaves the task non-terminal
        with get_db() as conn:
            update_export_status(conn, task.export_id, COMPLETED, file_path=file_path)
        task.file_path = file_path
        task.transition(COMPLETED, step)
        logger.info(f"[Export {task.export_id[:8]}] → completed ({step})")
