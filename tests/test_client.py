"""Tests for the zsxq API client and payload conversion (fetcher/client.py)."""
import httpx
import pytest

from topicvault.fetcher.client import AuthError, PlatformError, ZsxqClient, convert_topic


def _client(handler) -> ZsxqClient:
    return ZsxqClient("tok", base_url="https://api.test/v2", transport=httpx.MockTransport(handler))


def _ok(resp_data: dict) -> httpx.Response:
    return httpx.Response(200, json={"succeeded": True, "resp_data": resp_data})


RAW_TALK = {
    "topic_id": 1001,
    "group": {"group_id": 55},
    "type": "talk",
    "create_time": "2024-01-02T10:00:00.000+0800",
    "likes_count": 4,
    "comments_count": 2,
    "reading_count": 90,
    "digested": True,
    "talk": {
        "owner": {"user_id": 7, "name": "Bob"},
        "text": "hello",
        "article": {"title": "A long read", "inline_content_html": "<p>body</p>"},
        "images": [
            {"original": {"url": "https://img/orig.png"}, "large": {"url": "https://img/large.png"}},
            {"large": {"url": "https://img/only-large.jpg"}},
            {"thumbnail": {"url": "https://img/thumb.jpg"}},
        ],
        "files": [{"name": "deck.pdf", "url": "https://files/deck.pdf", "size": 1536}],
    },
}


class TestConvertTopic:

    @pytest.mark.unit
    def test_talk_with_article_images_and_files(self):
        topic = convert_topic(RAW_TALK)

        assert topic.topic_id == "1001"
        assert topic.group_id == "55"
        assert topic.title == "A long read"
        assert topic.content == "hello\n\n<p>body</p>"
        assert topic.owner_id == "7"
        assert topic.owner_name == "Bob"
        assert topic.images == ["https://img/orig.png", "https://img/only-large.jpg"]
        assert topic.files[0].name == "deck.pdf"
        assert topic.files[0].size == 1536
        assert topic.digested is True
        assert (topic.likes_count, topic.comments_count, topic.reading_count) == (4, 2, 90)

    @pytest.mark.unit
    def test_task_uses_its_title(self):
        raw = {
            "topic_id": 2,
            "type": "task",
            "create_time": "2024-01-02T10:00:00.000+0800",
            "task": {"title": "Homework 1", "text": "do it", "owner": {"uid": 9, "name": "T"}},
        }

        topic = convert_topic(raw)

        assert topic.type == "task"
        assert topic.title == "Homework 1"
        assert topic.content == "do it"
        assert topic.owner_id == "9"
        assert topic.images == []

    @pytest.mark.unit
    def test_question_without_optional_fields(self):
        raw = {
            "topic_id": 3,
            "type": "q&a",
            "create_time": "2024-01-02T10:00:00.000+0800",
            "question": {"text": "why?"},
        }

        topic = convert_topic(raw)

        assert topic.content == "why?"
        assert topic.title is None
        assert topic.likes_count == 0
        assert topic.digested is False


class TestZsxqClient:

    @pytest.mark.unit
    def test_missing_token(self):
        with pytest.raises(AuthError):
            ZsxqClient("")

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_list_topics_sends_cursor_and_cookie(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _ok({"topics": [RAW_TALK]})

        async with _client(handler) as client:
            topics = await client.list_topics("55", 20, end_time="2024-01-03T00:00:00.000+0800")

        assert [t.topic_id for t in topics] == ["1001"]
        request = seen[0]
        assert request.url.path == "/v2/groups/55/topics"
        assert request.url.params["count"] == "20"
        assert request.url.params["scope"] == "all"
        assert request.url.params["end_time"] == "2024-01-03T00:00:00.000+0800"
        assert "zsxq_access_token=tok" in request.headers["cookie"]

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_first_page_has_no_end_time(self):
        seen = []

        def handler(request):
            seen.append(request)
            return _ok({"topics": []})

        async with _client(handler) as client:
            assert await client.list_topics("55", 20) == []

        assert "end_time" not in seen[0].url.params

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_get_group(self):
        def handler(request):
            return _ok({"group": {
                "group_id": 55,
                "name": "Readers",
                "owner": {"name": "Ann"},
                "statistics": {"members": {"count": 300}, "topics": {"topics_count": 1200}},
            }})

        async with _client(handler) as client:
            group = await client.get_group("55")

        assert group.name == "Readers"
        assert group.owner_name == "Ann"
        assert group.member_count == 300
        assert group.topics_count == 1200

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_expired_token_code(self):
        def handler(request):
            return httpx.Response(200, json={"succeeded": False, "code": 1059, "error": "expired"})

        async with _client(handler) as client:
            with pytest.raises(AuthError) as exc_info:
                await client.list_topics("55", 20)

        assert exc_info.value.code == 1059

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_http_401(self):
        async with _client(lambda request: httpx.Response(401)) as client:
            with pytest.raises(AuthError):
                await client.get_group("55")

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_other_error_codes(self):
        def handler(request):
            return httpx.Response(200, json={"succeeded": False, "code": 1030, "info": "rate limited"})

        async with _client(handler) as client:
            with pytest.raises(PlatformError) as exc_info:
                await client.list_topics("55", 20)

        assert not isinstance(exc_info.value, AuthError)
        assert exc_info.value.code == 1030
        assert str(exc_info.value) == "rate limited"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_server_error_status(self):
        async with _client(lambda request: httpx.Response(502)) as client:
            with pytest.raises(httpx.HTTPStatusError):
                await client.list_topics("55", 20)

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_topics_without_group_take_requested_group(self):
        raw = {k: v for k, v in RAW_TALK.items() if k != "group"}

        async with _client(lambda request: _ok({"topics": [raw]})) as client:
            [topic] = await client.list_topics("55", 20)

        assert topic.group_id == "55"
