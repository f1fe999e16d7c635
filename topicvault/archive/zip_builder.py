"""
ZIP builder — streams the README index, one Markdown file per topic and the
downloaded images into a single deflate-compressed archive.

Entries are written one at a time straight to the output file (images are
copied from disk in chunks), so the archive is never held in memory.

Archive layout:
    README.md
    posts/<YYYYMMDD>_<topic_id>_<title>.md
    images/<topic_id>_<n>.<ext>
"""
import asyncio
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from loguru import logger

from topicvault.archive.markdown import (
    generate_file_name,
    generate_index_markdown,
    safe_file_part,
    topic_to_markdown,
)
from topicvault.fetcher.base import Topic

_POST_PROGRESS_EVERY = 10


@dataclass
class ZipProgress:
    stage:   str    # 'converting' | 'adding_posts' | 'adding_images' | 'finalizing'
    current: int
    total:   int
    message: str


@dataclass
class ZipOptions:
    output_path:    Path
    group_name:     str
    start_date:     str | None = None
    end_date:       str | None = None
    style:          str = "detailed"      # 'simple' | 'detailed'
    include_images: bool = True
    images_dir:     Path | None = None
    on_progress:    Callable[[ZipProgress], None] | None = None


@dataclass
class ZipResult:
    success:      bool
    file_path:    str
    file_size:    int = 0
    posts_count:  int = 0
    images_count: int = 0
    error:        str | None = None


async def build_export_zip(topics: list[Topic], options: ZipOptions) -> ZipResult:
    """Build the archive in a worker thread so pollers keep getting progress."""
    return await asyncio.to_thread(write_export_zip, topics, options)


def write_export_zip(topics: list[Topic], options: ZipOptions) -> ZipResult:
    """
    Blocking implementation of build_export_zip. Writer errors are returned
    as ZipResult(success=False) instead of raised.
    """
    output_path = Path(options.output_path)
    images_count = 0

    def report(stage: str, current: int, total: int, message: str) -> None:
        if options.on_progress:
            options.on_progress(ZipProgress(stage, current, total, message))

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(output_path, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
            report("converting", 0, len(topics), "Writing index...")
            index = generate_index_markdown(
                topics, options.group_name, options.start_date, options.end_date
            )
            zf.writestr("README.md", index)

            for i, topic in enumerate(topics, start=1):
                doc = topic_to_markdown(
                    topic,
                    style             = options.style,
                    include_images    = options.include_images,
                    image_path_prefix = "../images",
                )
                zf.writestr(f"posts/{generate_file_name(topic)}", doc)
                if i % _POST_PROGRESS_EVERY == 0 or i == len(topics):
                    report("adding_posts", i, len(topics), f"Adding topics {i}/{len(topics)}")

            images_dir = Path(options.images_dir) if options.images_dir else None
            if images_dir and images_dir.is_dir():
                images = sorted(
                    p for p in images_dir.iterdir()
                    if p.is_file() and not p.name.endswith(".part")
                )
                report("adding_images", 0, len(images), "Adding images...")
                for image in images:
                    zf.write(image, arcname=f"images/{image.name}")
                    images_count += 1

            report("finalizing", 1, 1, "Finalizing archive...")

        file_size = output_path.stat().st_size
    except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
        logger.error(f"[Zip] failed to build {output_path}: {exc}")
        if output_path.is_file():
            output_path.unlink()
        return ZipResult(success=False, file_path=str(output_path), error=str(exc))

    logger.info(
        f"[Zip] {output_path.name}: {len(topics)} topics, {images_count} images, "
        f"{file_size / 1024:.0f} KB"
    )
    return ZipResult(
        success      = True,
        file_path    = str(output_path),
        file_size    = file_size,
        posts_count  = len(topics),
        images_count = images_count,
    )


def generate_zip_file_name(
    group_name: str,
    start_date: str | None = None,
    end_date: str | None = None,
    export_id: str | None = None,
) -> str:
    """'<group>[_<start>_<end>]_<today>[_<id8>].zip'; the id keeps parallel exports apart."""
    name = safe_file_part(group_name) or "export"
    date_range = f"_{start_date[:10]}_{end_date[:10]}" if start_date and end_date else ""
    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    suffix = f"_{export_id[:8]}" if export_id else ""
    return f"{name}{date_range}_{today}{suffix}.zip"
