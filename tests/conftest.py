"""
Shared fixtures: an isolated SQLite cache per test, a fake platform client
and helpers for building topics and mock asset servers.
"""
from datetime import datetime, timedelta

import httpx
import pytest

from topicvault.config import settings
from topicvault.database import db
from topicvault.fetcher.base import Group, PlatformClient, Topic

GROUP_ID = "g1"
BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)


def ts(dt: datetime) -> str:
    """Platform-style timestamp, e.g. 2024-03-01T12:00:00.000+0800."""
    return dt.strftime("%Y-%m-%dT%H:%M:%S.000+0800")


def make_topic(i: int, group_id: str = GROUP_ID, **overrides) -> Topic:
    """Topic number i, one hour older than topic i - 1."""
    fields = dict(
        topic_id    = f"t{i:03d}",
        group_id    = group_id,
        type        = "talk",
        created_at  = ts(BASE_TIME - timedelta(hours=i)),
        content     = f"Post number {i}",
        owner_id    = "u1",
        owner_name  = "Alice",
        likes_count = i,
    )
    fields.update(overrides)
    return Topic(**fields)


def make_topics(n: int, **overrides) -> list[Topic]:
    return [make_topic(i, **overrides) for i in range(n)]


class FakePlatformClient(PlatformClient):
    """
    Serves `topics` newest first with the real cursor contract: end_time is
    an exclusive "older than" bound. Every list call is recorded.
    """

    def __init__(
        self,
        topics: list[Topic],
        group: Group | None = None,
        fail_on_call: int | None = None,
        error: Exception | None = None,
    ):
        self.topics = sorted(topics, key=lambda t: t.created_at, reverse=True)
        self.group = group or Group(group_id=GROUP_ID, name="Test Group", owner_name="Alice")
        self.fail_on_call = fail_on_call
        self.error = error or httpx.ConnectError("connection reset")
        self.calls: list[dict] = []

    async def get_group(self, group_id: str) -> Group:
        if self.fail_on_call == 0:
            raise self.error
        return self.group

    async def list_topics(self, group_id, count, end_time=None, scope="all"):
        self.calls.append({"count": count, "end_time": end_time, "scope": scope})
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise self.error
        pool = [
            t for t in self.topics
            if (end_time is None or t.created_at < end_time)
            and (scope != "digests" or t.digested)
        ]
        return pool[:count]


def asset_client(handler) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by `handler(request)`."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def png_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=b"\x89PNG fake " + request.url.path.encode())


@pytest.fixture(autouse=True)
def no_alerts(monkeypatch):
    monkeypatch.setattr(settings, "DISCORD_WEBHOOK_URL", None)


@pytest.fixture
def cache_db(tmp_path, monkeypatch):
    """Fresh database file with the schema applied and the test group present."""
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "cache.db")
    db.init_db()
    with db.get_db() as conn:
        db.upsert_group(conn, Group(group_id=GROUP_ID, name="Test Group"))
    return tmp_path / "cache.db"
