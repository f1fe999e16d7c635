"""
Topic fetcher — pages backwards through a group's topics and caches them.

The listing API uses end_time as a cursor:
  - the first request has no end_time (or the export's end date) and returns
    the newest topics
  - each following request passes the create_time of the previous page's
    last (oldest) topic, and the API returns only strictly older topics
  - an empty page means there is nothing left

Paging stops once a page reaches past start_date, the max_topics quota is
met, or a page comes back short. Re-fetched topics are harmless because the
cache upserts by topic_id.
"""
import asyncio
import re
from dataclasses import dataclass
from typing import Callable

from loguru import logger

from topicvault.config.settings import FETCH_BATCH_SIZE, FETCH_DELAY_S, PLATFORM_UTC_OFFSET
from topicvault.database.db import get_db, upsert_group, upsert_topics
from topicvault.fetcher.base import PlatformClient, Topic

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass
class FetchProgress:
    fetched:         int
    total:           int | None     # unknown up front
    current_batch:   int
    is_complete:     bool
    last_topic_time: str | None = None


@dataclass
class FetchOptions:
    group_id:    str
    start_date:  str | None = None
    end_date:    str | None = None
    scope:       str = "all"           # 'all' | 'digests'
    batch_size:  int = FETCH_BATCH_SIZE
    max_topics:  int = 0               # 0 = no quota
    delay_s:     float = FETCH_DELAY_S
    on_progress: Callable[[FetchProgress], None] | None = None


@dataclass
class FetchResult:
    topics_count: int
    images_count: int
    batches:      int = 0
    error:        Exception | None = None

    @property
    def success(self) -> bool:
        return self.error is None


# ── Public API ─────────────────────────────────────────────────────────────────

async def fetch_and_cache_topics(client: PlatformClient, options: FetchOptions) -> FetchResult:
    """
    Fetch every topic of options.group_id inside [start_date, end_date] and
    upsert it into the cache. Never raises: a failed request ends the loop and
    comes back as FetchResult.error alongside whatever was cached so far.
    """
    start_date = normalize_date(options.start_date)
    end_date   = normalize_date(options.end_date, end_of_day=True)

    total_fetched = 0
    total_images  = 0
    batch_number  = 0
    cursor        = end_date

    try:
        group = await client.get_group(options.group_id)
        with get_db() as conn:
            upsert_group(conn, group)
        logger.info(f"[Fetcher] group {group.group_id} ({group.name})")

        while True:
            batch_number += 1
            topics = await client.list_topics(
                options.group_id,
                count    = options.batch_size,
                end_time = cursor,
                scope    = options.scope,
            )

            if not topics:
                logger.debug(f"[Fetcher] batch {batch_number}: empty page, done")
                _report(options, total_fetched, batch_number, True, None)
                break

            in_range = filter_by_time_range(topics, start_date, end_date)
            if in_range:
                with get_db() as conn:
                    upsert_topics(conn, in_range)
                total_images  += sum(len(t.images) for t in in_range)
                total_fetched += len(in_range)

            last_time = topics[-1].created_at

            if start_date and last_time < start_date:
                done = True     # page reaches past the window
            elif options.max_topics > 0 and total_fetched >= options.max_topics:
                done = True
            elif len(topics) < options.batch_size:
                done = True     # short page: nothing older upstream
            else:
                done   = False
                cursor = last_time

            logger.debug(
                f"[Fetcher] batch {batch_number}: {len(topics)} topics, "
                f"{len(in_range)} in range, total {total_fetched}"
            )
            _report(options, total_fetched, batch_number, done, last_time)

            if done:
                break
            await asyncio.sleep(options.delay_s)

    except Exception as exc:
        logger.error(
            f"[Fetcher] group {options.group_id} aborted after "
            f"{total_fetched} topics (batch {batch_number}): {exc}"
        )
        return FetchResult(total_fetched, total_images, batch_number, error=exc)

    logger.info(
        f"[Fetcher] group {options.group_id} → {total_fetched} topics, "
        f"{total_images} images in {batch_number} batches"
    )
    return FetchResult(total_fetched, total_images, batch_number)


async def fetch_new_topics(
    client: PlatformClient,
    group_id: str,
    last_fetched_time: str | None = None,
    on_progress: Callable[[FetchProgress], None] | None = None,
) -> FetchResult:
    """Incremental sync: fetch only topics newer than `last_fetched_time`."""
    return await fetch_and_cache_topics(
        client,
        FetchOptions(group_id=group_id, start_date=last_fetched_time, on_progress=on_progress),
    )


def filter_by_time_range(
    topics: list[Topic], start_date: str | None = None, end_date: str | None = None
) -> list[Topic]:
    """Keep topics whose create time lies in [start_date, end_date]; None = unbounded."""
    return [
        t for t in topics
        if not (start_date and t.created_at < start_date)
        and not (end_date and t.created_at > end_date)
    ]


def normalize_date(value: str | None, end_of_day: bool = False) -> str | None:
    """
    Expand a bare YYYY-MM-DD into the platform's timestamp format so that it
    compares correctly against create_time strings. Full timestamps pass through.
    """
    if not value:
        return None
    if _DATE_ONLY.match(value):
        clock = "23:59:59.999" if end_of_day else "00:00:00.000"
        return f"{value}T{clock}{PLATFORM_UTC_OFFSET}"
    return value


def estimate_fetch_time(topic_count: int, batch_size: int = FETCH_BATCH_SIZE, delay_ms: int = 300) -> int:
    """Rough duration in ms: ~500ms per request plus the pause between pages."""
    batches = -(-topic_count // batch_size)
    return batches * (500 + delay_ms)


# ── Internal ──────────────────────────────────────────────────────────────────

def _report(
    options: FetchOptions, fetched: int, batch: int, complete: bool, last_time: str | None
) -> None:
    if options.on_progress:
        options.on_progress(FetchProgress(
            fetched         = fetched,
            total           = None,
            current_batch   = batch,
            is_complete     = complete,
            last_topic_time = last_time,
        ))
