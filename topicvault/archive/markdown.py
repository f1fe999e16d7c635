"""
Markdown converter — Topic → per-topic document, plus the README index.

Per-topic layout (detailed style):

    # <title>

    ---
    Author: ...
    Date: YYYY-MM-DD HH:MM
    Type: ...
    Tags: Digest
    Stats: 3 likes · 1 comments · 120 reads
    ---

    <body>

    ![Image 1](../images/<topic_id>_1.jpg)

    ## Attachments
    - [name](url) (1.2 KB)

The simple style drops the metadata block.
"""
import html
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime

from topicvault.archive.media import image_file_name
from topicvault.fetcher.base import Topic

TITLE_CHARS     = 30    # characters of body text used for a derived title
FILE_TITLE_MAX  = 50    # characters of title kept in a file name

_TYPE_NAMES = {
    "talk":     "Share",
    "task":     "Assignment",
    "q&a":      "Question",
    "solution": "Answer",
}

# Order matters: the specific tags are rewritten before the catch-all strip
_TAG_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"<br\s*/?>", re.I), "\n"),
    (re.compile(r"</?p\s*>", re.I),  "\n"),
    (re.compile(r"</?strong>", re.I), "**"),
    (re.compile(r"</?em>", re.I),     "*"),
    (re.compile(r"</?code>", re.I),   "`"),
    (re.compile(r"<[^>]+>"),          ""),
]
_BLANK_RUNS   = re.compile(r"\n{3,}")
_ILLEGAL_PATH = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WHITESPACE   = re.compile(r"\s+")


@dataclass
class ExportStats:
    total_topics:    int
    digested_topics: int
    total_images:    int
    total_likes:     int
    total_comments:  int


# ── Per-topic document ────────────────────────────────────────────────────────

def topic_to_markdown(
    topic: Topic,
    style: str = "detailed",
    include_images: bool = True,
    image_path_prefix: str = "../images",
    include_metadata: bool = True,
) -> str:
    lines: list[str] = [f"# {topic.title or generate_title(topic)}", ""]

    if style == "detailed":
        lines.append("---")
        lines.append(f"Author: {topic.owner_name}")
        lines.append(f"Date: {format_date(topic.created_at)}")
        lines.append(f"Type: {topic_type_name(topic.type)}")
        if topic.digested:
            lines.append("Tags: Digest")
        if include_metadata:
            stats = []
            if topic.likes_count > 0:
                stats.append(f"{topic.likes_count} likes")
            if topic.comments_count > 0:
                stats.append(f"{topic.comments_count} comments")
            if topic.reading_count > 0:
                stats.append(f"{topic.reading_count} reads")
            if stats:
                lines.append(f"Stats: {' · '.join(stats)}")
        lines.append("---")
        lines.append("")

    content = process_content(topic.content)
    if content:
        lines.append(content)
        lines.append("")

    if include_images and topic.images:
        for i, url in enumerate(topic.images):
            name = image_file_name(topic.topic_id, i, url)
            lines.append(f"![Image {i + 1}]({image_path_prefix}/{name})")
        lines.append("")

    if topic.files:
        lines.append("## Attachments")
        lines.append("")
        for f in topic.files:
            size = f" ({format_file_size(f.size)})" if f.size else ""
            lines.append(f"- [{f.name}]({f.url}){size}")
        lines.append("")

    return "\n".join(lines)


# ── Index document ────────────────────────────────────────────────────────────

def generate_index_markdown(
    topics: list[Topic],
    group_name: str,
    start_date: str | None = None,
    end_date: str | None = None,
    generated_at: datetime | None = None,
) -> str:
    generated_at = generated_at or datetime.now()
    stats = calculate_stats(topics)

    lines = [f"# {group_name} Export", "", "## Export Info", ""]
    lines.append(f"- Generated: {generated_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if start_date:
        lines.append(f"- Start date: {start_date[:10]}")
    if end_date:
        lines.append(f"- End date: {end_date[:10]}")
    lines.append(f"- Topics: {len(topics)}")
    lines.append("")

    lines += [
        "## Statistics",
        "",
        f"- Total topics: {stats.total_topics}",
        f"- Digests: {stats.digested_topics}",
        f"- Images: {stats.total_images}",
        f"- Total likes: {stats.total_likes}",
        f"- Total comments: {stats.total_comments}",
        "",
        "## Contents",
        "",
    ]

    for month, month_topics in group_topics_by_month(topics).items():
        lines.append(f"### {month}")
        lines.append("")
        for topic in month_topics:
            title = topic.title or generate_title(topic)
            star  = " ⭐" if topic.digested else ""
            lines.append(f"- [{title}](./posts/{generate_file_name(topic)}){star}")
        lines.append("")

    return "\n".join(lines)


# ── Naming helpers ────────────────────────────────────────────────────────────

def generate_file_name(topic: Topic) -> str:
    """'<YYYYMMDD>_<topic_id>_<safe title>.md'."""
    date  = topic.created_at[:10].replace("-", "")
    title = topic.title or generate_title(topic)
    return f"{date}_{topic.topic_id}_{safe_file_part(title, FILE_TITLE_MAX)}.md"


def safe_file_part(text: str, limit: int | None = None) -> str:
    """Drop characters that are illegal in paths and turn whitespace into '_'."""
    cleaned = _WHITESPACE.sub("_", _ILLEGAL_PATH.sub("", text))
    return cleaned[:limit] if limit else cleaned


def generate_title(topic: Topic) -> str:
    """First line of the body, cut to TITLE_CHARS with '...' when truncated."""
    content = topic.content.strip()
    if not content:
        return f"{topic_type_name(topic.type)} - {format_date(topic.created_at)}"
    first_line = content.split("\n")[0]
    title = first_line[:TITLE_CHARS]
    return f"{title}..." if len(title) < len(first_line) else title


def topic_type_name(type_: str) -> str:
    return _TYPE_NAMES.get(type_, type_)


# ── Content helpers ───────────────────────────────────────────────────────────

def process_content(content: str) -> str:
    """Reduce the platform's light HTML to plain Markdown text."""
    if not content:
        return ""
    result = content
    for pattern, replacement in _TAG_RULES:
        result = pattern.sub(replacement, result)
    result = html.unescape(result).replace("\xa0", " ")
    return _BLANK_RUNS.sub("\n\n", result).strip()


def format_date(value: str) -> str:
    """'2024-01-15T10:30:00.000+0800' → '2024-01-15 10:30' (wall-clock time kept)."""
    try:
        return datetime.fromisoformat(value).strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return value[:16].replace("T", " ")


def format_file_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def calculate_stats(topics: list[Topic]) -> ExportStats:
    return ExportStats(
        total_topics    = len(topics),
        digested_topics = sum(1 for t in topics if t.digested),
        total_images    = sum(len(t.images) for t in topics),
        total_likes     = sum(t.likes_count for t in topics),
        total_comments  = sum(t.comments_count for t in topics),
    )


def group_topics_by_month(topics: list[Topic]) -> dict[str, list[Topic]]:
    """'YYYY-MM' → topics, months and topics both newest first."""
    by_month: dict[str, list[Topic]] = defaultdict(list)
    for topic in sorted(topics, key=lambda t: t.created_at, reverse=True):
        by_month[topic.created_at[:7]].append(topic)
    return dict(by_month)
