"""
SQLite helpers — connection, init, the topic cache and export records.
All public functions accept an open sqlite3.Connection so callers control
the transaction boundary via the get_db() context manager.

Any sqlite3 failure leaves this module as StorageError.
"""
import json
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator, Iterable

from loguru import logger

from topicvault.config.settings import DB_PATH
from topicvault.fetcher.base import FileInfo, Group, Topic


class StorageError(Exception):
    """Raised for any failure of the local cache database."""


# ── Connection ─────────────────────────────────────────────────────────────────

@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Yield an open connection; commit on clean exit, rollback on exception."""
    try:
        conn = sqlite3.connect(DB_PATH, detect_types=sqlite3.PARSE_DECLTYPES)
    except sqlite3.Error as exc:
        raise StorageError(f"cannot open {DB_PATH}: {exc}") from exc
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        yield conn
        conn.commit()
    except sqlite3.Error as exc:
        conn.rollback()
        raise StorageError(str(exc)) from exc
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


# ── Schema init ────────────────────────────────────────────────────────────────

def init_db() -> None:
    """Create tables and indexes from schema.sql. Safe to call repeatedly."""
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    schema_path = Path(__file__).parent / "schema.sql"
    sql = schema_path.read_text(encoding="utf-8")
    with get_db() as conn:
        conn.executescript(sql)


# ── Groups ─────────────────────────────────────────────────────────────────────

def upsert_group(conn: sqlite3.Connection, group: Group) -> None:
    """Insert or refresh group metadata. The group_id itself never changes."""
    conn.execute(
        """INSERT INTO groups
               (group_id, name, description, owner_name, member_count, topics_count, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(group_id) DO UPDATE SET
               name         = excluded.name,
               description  = excluded.description,
               owner_name   = excluded.owner_name,
               member_count = excluded.member_count,
               topics_count = excluded.topics_count,
               updated_at   = excluded.updated_at""",
        (
            group.group_id,
            group.name,
            group.description,
            group.owner_name,
            group.member_count,
            group.topics_count,
            _utcnow(),
        ),
    )


def get_group(conn: sqlite3.Connection, group_id: str) -> Group | None:
    row = conn.execute("SELECT * FROM groups WHERE group_id = ?", (group_id,)).fetchone()
    if row is None:
        return None
    return Group(
        group_id     = row["group_id"],
        name         = row["name"],
        description  = row["description"],
        owner_name   = row["owner_name"],
        member_count = row["member_count"],
        topics_count = row["topics_count"],
    )


# ── Topics ─────────────────────────────────────────────────────────────────────

def upsert_topics(conn: sqlite3.Connection, topics: Iterable[Topic]) -> int:
    """
    Insert or update a batch of topics by topic_id. Returns the number written.
    The whole batch runs inside one savepoint: either every row lands or none.
    created_at is never overwritten: the first fetch wins for that field,
    the latest fetch wins for everything else.
    """
    now   = _utcnow()
    count = 0
    conn.execute("SAVEPOINT upsert_topics")
    try:
        for topic in topics:
            conn.execute(
                """INSERT INTO topics
                       (topic_id, group_id, type, title, content, owner_id, owner_name,
                        images, files, likes_count, comments_count, reading_count,
                        digested, created_at, fetched_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(topic_id) DO UPDATE SET
                       type           = excluded.type,
                       title          = excluded.title,
                       content        = excluded.content,
                       owner_id       = excluded.owner_id,
                       owner_name     = excluded.owner_name,
                       images         = excluded.images,
                       files          = excluded.files,
                       likes_count    = excluded.likes_count,
                       comments_count = excluded.comments_count,
                       reading_count  = excluded.reading_count,
                       digested       = excluded.digested,
                       fetched_at     = excluded.fetched_at""",
                (
                    topic.topic_id,
                    topic.group_id,
                    topic.type,
                    topic.title,
                    topic.content,
                    topic.owner_id,
                    topic.owner_name,
                    json.dumps(topic.images),
                    json.dumps([asdict(f) for f in topic.files]),
                    topic.likes_count,
                    topic.comments_count,
                    topic.reading_count,
                    1 if topic.digested else 0,
                    topic.created_at,
                    now,
                ),
            )
            count += 1
    except sqlite3.Error:
        conn.execute("ROLLBACK TO SAVEPOINT upsert_topics")
        conn.execute("RELEASE SAVEPOINT upsert_topics")
        raise
    conn.execute("RELEASE SAVEPOINT upsert_topics")
    return count


def query_topics(
    conn: sqlite3.Connection,
    group_id: str,
    start_date: str | None = None,
    end_date: str | None = None,
    scope: str = "all",
    limit: int = 100,
    offset: int = 0,
) -> list[Topic]:
    """Topics of a group inside [start_date, end_date], newest first."""
    where, args = _topic_filter(group_id, start_date, end_date, scope)
    rows = conn.execute(
        f"SELECT * FROM topics WHERE {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
        (*args, limit, offset),
    ).fetchall()
    return [_row_to_topic(r) for r in rows]


def count_topics(
    conn: sqlite3.Connection,
    group_id: str,
    start_date: str | None = None,
    end_date: str | None = None,
    scope: str = "all",
) -> int:
    where, args = _topic_filter(group_id, start_date, end_date, scope)
    row = conn.execute(f"SELECT COUNT(*) AS cnt FROM topics WHERE {where}", args).fetchone()
    return row["cnt"]


def earliest_topic_time(conn: sqlite3.Connection, group_id: str) -> str | None:
    row = conn.execute(
        "SELECT MIN(created_at) AS earliest FROM topics WHERE group_id = ?", (group_id,)
    ).fetchone()
    return row["earliest"]


def latest_topic_time(conn: sqlite3.Connection, group_id: str) -> str | None:
    row = conn.execute(
        "SELECT MAX(created_at) AS latest FROM topics WHERE group_id = ?", (group_id,)
    ).fetchone()
    return row["latest"]


# ── Export records ─────────────────────────────────────────────────────────────

def create_export(
    conn: sqlite3.Connection,
    export_id: str,
    group_id: str,
    group_name: str,
    start_date: str | None = None,
    end_date: str | None = None,
) -> None:
    conn.execute(
        """INSERT INTO exports (export_id, group_id, group_name, start_date, end_date, status)
           VALUES (?, ?, ?, ?, ?, 'pending')""",
        (export_id, group_id, group_name, start_date, end_date),
    )


def update_export_status(
    conn: sqlite3.Connection,
    export_id: str,
    status: str,
    file_path: str | None = None,
    error: str | None = None,
) -> None:
    """Record a status change; terminal states also stamp completed_at."""
    if status in ("completed", "failed"):
        conn.execute(
            """UPDATE exports
               SET status = ?, file_path = COALESCE(?, file_path), error = ?, completed_at = ?
               WHERE export_id = ?""",
            (status, file_path, error, _utcnow(), export_id),
        )
    else:
        conn.execute("UPDATE exports SET status = ? WHERE export_id = ?", (status, export_id))


def update_export_stats(
    conn: sqlite3.Connection, export_id: str, topic_count: int, image_count: int
) -> None:
    conn.execute(
        "UPDATE exports SET topic_count = ?, image_count = ? WHERE export_id = ?",
        (topic_count, image_count, export_id),
    )


def get_export(conn: sqlite3.Connection, export_id: str) -> dict | None:
    row = conn.execute("SELECT * FROM exports WHERE export_id = ?", (export_id,)).fetchone()
    return dict(row) if row else None


def get_export_history(
    conn: sqlite3.Connection, group_id: str | None = None, limit: int = 20
) -> list[dict]:
    """Most recent export records, optionally for one group."""
    if group_id:
        rows = conn.execute(
            "SELECT * FROM exports WHERE group_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (group_id, limit),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM exports ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
    return [dict(r) for r in rows]


def delete_export(conn: sqlite3.Connection, export_id: str) -> None:
    conn.execute("DELETE FROM exports WHERE export_id = ?", (export_id,))


def expire_old_exports(conn: sqlite3.Connection, max_age_hours: int = 24) -> list[str]:
    """
    Detach archive files from completed exports older than `max_age_hours`.
    Returns the file paths that were detached; the caller deletes them.
    The export rows themselves are kept.
    """
    cutoff = _hours_ago(max_age_hours)
    rows = conn.execute(
        """SELECT export_id, file_path FROM exports
           WHERE status = 'completed' AND file_path IS NOT NULL AND completed_at <= ?""",
        (cutoff,),
    ).fetchall()
    for row in rows:
        conn.execute("UPDATE exports SET file_path = NULL WHERE export_id = ?", (row["export_id"],))
    if rows:
        logger.info(f"[Cache] expired {len(rows)} export archives older than {max_age_hours}h")
    return [row["file_path"] for row in rows]


# ── Helpers ────────────────────────────────────────────────────────────────────

def _topic_filter(
    group_id: str, start_date: str | None, end_date: str | None, scope: str
) -> tuple[str, list]:
    clauses = ["group_id = ?"]
    args: list = [group_id]
    if start_date:
        clauses.append("created_at >= ?")
        args.append(start_date)
    if end_date:
        clauses.append("created_at <= ?")
        args.append(end_date)
    if scope == "digests":
        clauses.append("digested = 1")
    return " AND ".join(clauses), args


def _row_to_topic(row: sqlite3.Row) -> Topic:
    return Topic(
        topic_id       = row["topic_id"],
        group_id       = row["group_id"],
        type           = row["type"],
        created_at     = row["created_at"],
        title          = row["title"],
        content        = row["content"] or "",
        owner_id       = row["owner_id"] or "",
        owner_name     = row["owner_name"] or "",
        images         = json.loads(row["images"] or "[]"),
        files          = [FileInfo(**f) for f in json.loads(row["files"] or "[]")],
        likes_count    = row["likes_count"],
        comments_count = row["comments_count"],
        reading_count  = row["reading_count"],
        digested       = bool(row["digested"]),
        fetched_at     = row["fetched_at"],
    )


def _utcnow() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _hours_ago(hours: int) -> str:
    dt = datetime.now(timezone.utc) - timedelta(hours=hours)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")
