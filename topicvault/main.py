"""
Entry point — one-off exports from the command line, plus a scheduler daemon.

  export   fetch a group's topics for a date range and write a ZIP archive
  status   show a live or recorded export
  history  list recent exports
  sync     run APScheduler: incremental topic sync for every SYNC_GROUPS entry
           and a daily job that deletes expired export archives

Usage:
    python -m topicvault.main export 88885555 --start 2024-01-01 --end 2024-12-31
    python -m topicvault.main sync
"""
import asyncio
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path

import typer
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from topicvault.config.settings import (
    EXPORT_MAX_AGE_HOURS,
    LOG_LEVEL,
    LOGS_DIR,
    SYNC_GROUPS,
    SYNC_INTERVAL_S,
    ZSXQ_TOKEN,
)
from topicvault.database.db import (
    expire_old_exports,
    get_db,
    get_export,
    get_export_history,
    init_db,
    latest_topic_time,
)
from topicvault.export.pipeline import ExportOrchestrator
from topicvault.export.task import TERMINAL, ExportOptions
from topicvault.fetcher.client import PlatformError, ZsxqClient
from topicvault.fetcher.topics import fetch_new_topics

app = typer.Typer(help="Cache Knowledge-Planet topics and export them as Markdown archives.")


# ── Logging ────────────────────────────────────────────────────────────────────

def _setup_logging() -> None:
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    logger.remove()
    logger.add(sys.stderr, level=LOG_LEVEL)
    logger.add(
        LOGS_DIR / "topicvault_{time:YYYY-MM-DD}.log",
        rotation="00:00",
        retention="14 days",
        level=LOG_LEVEL,
        encoding="utf-8",
    )


@app.callback()
def _main() -> None:
    _setup_logging()
    init_db()


# ── Commands ───────────────────────────────────────────────────────────────────

@app.command()
def export(
    group_id: str = typer.Argument(..., help="Group to export"),
    start: str | None = typer.Option(None, help="Start date, YYYY-MM-DD or full timestamp"),
    end: str | None = typer.Option(None, help="End date, YYYY-MM-DD or full timestamp"),
    scope: str = typer.Option("all", help="'all' or 'digests'"),
    images: bool = typer.Option(True, "--images/--no-images", help="Download and bundle images"),
    style: str = typer.Option("detailed", help="'detailed' or 'simple'"),
) -> None:
    """Run one export and print the archive path."""
    options = ExportOptions(scope=scope, include_images=images, markdown_style=style)
    try:
        record = asyncio.run(_export(group_id, start, end, options))
    except PlatformError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1)

    if record["status"] != "completed":
        typer.echo(f"export failed: {record.get('error')}", err=True)
        raise typer.Exit(1)
    typer.echo(record.get("file_path") or "no topics matched, nothing written")


@app.command()
def status(export_id: str) -> None:
    """Show the recorded state of an export."""
    with get_db() as conn:
        record = get_export(conn, export_id)
    if record is None:
        typer.echo(f"no export {export_id}", err=True)
        raise typer.Exit(1)
    for key, value in record.items():
        typer.echo(f"{key:>12}: {value}")


@app.command()
def history(group: str | None = typer.Option(None, help="Only this group"), limit: int = 20) -> None:
    """List recent exports, newest first."""
    with get_db() as conn:
        rows = get_export_history(conn, group, limit)
    for row in rows:
        typer.echo(
            f"{row['export_id'][:8]}  {row['created_at']}  {row['status']:<18}"
            f"{row['topic_count']:>5} topics  {row['group_name']}"
        )


@app.command()
def sync() -> None:
    """Run the background scheduler until interrupted."""
    asyncio.run(_serve())


# ── Export runner ──────────────────────────────────────────────────────────────

async def _export(group_id: str, start: str | None, end: str | None, options: ExportOptions) -> dict:
    async with ZsxqClient(ZSXQ_TOKEN) as client:
        orchestrator = ExportOrchestrator(client)
        export_id = await orchestrator.start_export(
            group_id, start_date=start, end_date=end, options=options
        )

        last_step = None
        while True:
            snap = orchestrator.get_status(export_id)
            step = snap["progress"]["current_step"] if "progress" in snap else snap["status"]
            if step != last_step:
                logger.info(f"[CLI] {snap['status']}: {step}")
                last_step = step
            if snap["status"] in TERMINAL:
                break
            await asyncio.sleep(0.5)

        await orchestrator.wait_all()
        return snap


# ── Scheduler jobs ─────────────────────────────────────────────────────────────

async def _run_sync(client: ZsxqClient, group_id: str) -> None:
    with get_db() as conn:
        since = latest_topic_time(conn, group_id)
    result = await fetch_new_topics(client, group_id, since)
    if not result.success:
        logger.error(f"[Scheduler] sync {group_id} failed: {result.error}")
    elif result.topics_count:
        logger.info(f"[Scheduler] sync {group_id} → {result.topics_count} topics refreshed")


def _run_export_cleanup() -> None:
    """Daily job: delete archives older than EXPORT_MAX_AGE_HOURS."""
    with get_db() as conn:
        paths = expire_old_exports(conn, EXPORT_MAX_AGE_HOURS)
    for path in paths:
        Path(path).unlink(missing_ok=True)
    if paths:
        logger.info(f"[Scheduler] export cleanup → removed {len(paths)} archives")
    else:
        logger.debug("[Scheduler] export cleanup → nothing to remove")


def build_scheduler(client: ZsxqClient, groups: list[str] = SYNC_GROUPS) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone="UTC")

    for group_id in groups:
        scheduler.add_job(
            _run_sync,
            "interval",
            seconds       = SYNC_INTERVAL_S,
            args          = [client, group_id],
            id            = f"sync_{group_id}",
            name          = f"Sync topics ({group_id})",
            max_instances = 1,
            coalesce      = True,
            next_run_time = datetime.now(timezone.utc),
        )
        logger.debug(f"[Scheduler] sync {group_id} every {SYNC_INTERVAL_S}s")

    scheduler.add_job(
        _run_export_cleanup,
        "cron",
        hour   = 3,
        minute = 0,
        id     = "export_cleanup",
        name   = f"Delete export archives older than {EXPORT_MAX_AGE_HOURS}h",
    )
    return scheduler


async def _serve() -> None:
    logger.info("topicvault scheduler starting up")
    async with ZsxqClient(ZSXQ_TOKEN) as client:
        scheduler = build_scheduler(client)
        scheduler.start()
        logger.info(f"Scheduler running — {len(scheduler.get_jobs())} jobs active")

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        await stop.wait()
        logger.info("Shutting down scheduler…")
        scheduler.shutdown(wait=False)


if __name__ == "__main__":
    app()
