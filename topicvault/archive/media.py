"""
Image downloader — fetches every image referenced by a list of topics into
a staging directory with a fixed number of concurrent workers.

File names are derived from topic id + image index + URL extension, so a
re-run finds the files it already has and skips the network entirely.
A failed image is retried with linear backoff, then recorded as an error;
it never aborts the rest of the batch.
"""
import asyncio
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable
from urllib.parse import urlparse

import httpx
from loguru import logger

from topicvault.config.settings import DOWNLOAD_CONCURRENCY, DOWNLOAD_RETRIES, DOWNLOAD_TIMEOUT_S
from topicvault.fetcher.base import Topic

_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36",
    "Referer":    "https://wx.zsxq.com/",
}

# Extensions kept as-is; anything else is saved as .jpg
_IMAGE_EXTS = {"jpg", "jpeg", "png", "gif", "webp"}
_DEFAULT_EXT = "jpg"


@dataclass
class ImageTask:
    topic_id:  str
    index:     int
    url:       str
    file_name: str


@dataclass
class DownloadProgress:
    total:      int
    downloaded: int
    failed:     int
    current:    str | None = None


@dataclass
class DownloadResult:
    total_images:      int = 0
    downloaded_images: int = 0
    failed_images:     int = 0
    errors:            list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed_images == 0


# ── Naming ────────────────────────────────────────────────────────────────────

def image_file_name(topic_id: str, index: int, url: str) -> str:
    """'<topic_id>_<n>.<ext>' with n 1-based and ext taken from the URL path."""
    suffix = PurePosixPath(urlparse(url).path).suffix.lower().lstrip(".")
    ext = suffix if suffix in _IMAGE_EXTS else _DEFAULT_EXT
    return f"{topic_id}_{index + 1}.{ext}"


def extract_image_tasks(topics: list[Topic]) -> list[ImageTask]:
    tasks: list[ImageTask] = []
    for topic in topics:
        for i, url in enumerate(topic.images):
            if url:
                tasks.append(ImageTask(topic.topic_id, i, url, image_file_name(topic.topic_id, i, url)))
    return tasks


def get_image_mapping(topics: list[Topic]) -> dict[str, str]:
    """Source URL → local file name for every image in `topics`."""
    return {t.url: t.file_name for t in extract_image_tasks(topics)}


# ── Download ──────────────────────────────────────────────────────────────────

async def download_all_images(
    topics: list[Topic],
    output_dir: Path,
    concurrency: int = DOWNLOAD_CONCURRENCY,
    timeout: float = DOWNLOAD_TIMEOUT_S,
    retries: int = DOWNLOAD_RETRIES,
    backoff_s: float = 1.0,
    on_progress: Callable[[DownloadProgress], None] | None = None,
    client: httpx.AsyncClient | None = None,
) -> DownloadResult:
    """
    Download every image of `topics` into `output_dir`.

    `concurrency` workers pull from one queue, so a slot is refilled as soon
    as any download finishes. Each image gets 1 + `retries` attempts, waiting
    backoff_s * attempt between them (1s, 2s, 3s by default).
    """
    tasks  = extract_image_tasks(topics)
    result = DownloadResult(total_images=len(tasks))
    if not tasks:
        return result

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    queue: asyncio.Queue[ImageTask] = asyncio.Queue()
    for task in tasks:
        queue.put_nowait(task)

    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=timeout, follow_redirects=True, headers=_HEADERS)

    def report(current: str) -> None:
        if on_progress:
            on_progress(DownloadProgress(
                total      = result.total_images,
                downloaded = result.downloaded_images,
                failed     = result.failed_images,
                current    = current,
            ))

    async def worker() -> None:
        while True:
            try:
                task = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            dest = output_dir / task.file_name
            if dest.exists():
                result.downloaded_images += 1
                logger.debug(f"[Media] already present: {task.file_name}")
            else:
                error = await _download_with_retry(client, task.url, dest, timeout, retries, backoff_s)
                if error is None:
                    result.downloaded_images += 1
                else:
                    result.failed_images += 1
                    result.errors.append(f"{task.file_name}: {error}")
                    logger.warning(f"[Media] giving up on {task.file_name}: {error}")
            report(task.file_name)

    try:
        workers = max(1, min(concurrency, len(tasks)))
        await asyncio.gather(*(worker() for _ in range(workers)))
    finally:
        if own_client:
            await client.aclose()

    logger.info(
        f"[Media] {result.downloaded_images}/{result.total_images} images ready, "
        f"{result.failed_images} failed → {output_dir}"
    )
    return result


# ── Internal helpers ──────────────────────────────────────────────────────────

async def _download_with_retry(
    client: httpx.AsyncClient,
    url: str,
    dest: Path,
    timeout: float,
    retries: int,
    backoff_s: float,
) -> str | None:
    """Returns None on success, otherwise the last error message."""
    last_error = "download failed"
    for attempt in range(retries + 1):
        if attempt:
            await asyncio.sleep(backoff_s * attempt)
        try:
            resp = await client.get(url, timeout=timeout)
            resp.raise_for_status()
            await asyncio.to_thread(_write_atomic, dest, resp.content)
            logger.debug(f"[Media] saved {dest.name} ({len(resp.content) / 1024:.0f} KB)")
            return None
        except (httpx.HTTPError, OSError) as exc:
            last_error = str(exc) or type(exc).__name__
            logger.debug(f"[Media] attempt {attempt + 1} failed for {url[:80]}: {last_error}")
    return last_error


def _write_atomic(dest: Path, data: bytes) -> None:
    """Write via a .part file so an interrupted write never looks complete."""
    tmp = dest.with_name(dest.name + ".part")
    tmp.write_bytes(data)
    tmp.replace(dest)
