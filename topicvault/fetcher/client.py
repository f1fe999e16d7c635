"""
HTTP client for the Knowledge-Planet (zsxq) API — implements PlatformClient.

Every response is wrapped in an envelope:
    {"succeeded": true,  "resp_data": {...}}
    {"succeeded": false, "code": 1059, "error": "..."}

Non-success envelopes and HTTP error statuses are raised as PlatformError;
an invalid / expired token is raised as AuthError so callers can tell the
user to reconnect instead of retrying.
"""
import httpx
from loguru import logger

from topicvault.config.settings import API_TIMEOUT_S, ZSXQ_API_BASE
from topicvault.fetcher.base import FileInfo, Group, PlatformClient, Topic

_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36",
    "Referer":    "https://wx.zsxq.com/",
    "Accept":     "application/json",
}
_AUTH_CODES = {1059, 401}


class PlatformError(Exception):
    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class AuthError(PlatformError):
    """The token was rejected by the platform."""


class ZsxqClient(PlatformClient):
    """
    Thin async wrapper around the group + topic listing endpoints.
    Use as an async context manager so the underlying httpx client is closed.
    """

    def __init__(
        self,
        token: str,
        base_url: str = ZSXQ_API_BASE,
        timeout: float = API_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not token:
            raise AuthError("ZSXQ_TOKEN is not set", code=401)
        self._http = httpx.AsyncClient(
            base_url  = base_url,
            timeout   = timeout,
            headers   = _HEADERS,
            cookies   = {"zsxq_access_token": token},
            transport = transport,
        )

    async def __aenter__(self) -> "ZsxqClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── PlatformClient ────────────────────────────────────────────────────────

    async def get_group(self, group_id: str) -> Group:
        data  = await self._get(f"/groups/{group_id}")
        group = data.get("group", {})
        owner = group.get("owner") or {}
        stats = group.get("statistics") or {}
        return Group(
            group_id     = str(group.get("group_id", group_id)),
            name         = group.get("name", ""),
            description  = group.get("description"),
            owner_name   = owner.get("name"),
            member_count = (stats.get("members") or {}).get("count"),
            topics_count = (stats.get("topics") or {}).get("topics_count"),
        )

    async def list_topics(
        self,
        group_id: str,
        count: int,
        end_time: str | None = None,
        scope: str = "all",
    ) -> list[Topic]:
        params: dict = {"count": count, "scope": scope}
        if end_time:
            params["end_time"] = end_time
        data = await self._get(f"/groups/{group_id}/topics", params=params)
        return [convert_topic(t, group_id) for t in data.get("topics", [])]

    # ── Internal ──────────────────────────────────────────────────────────────

    async def _get(self, path: str, params: dict | None = None) -> dict:
        resp = await self._http.get(path, params=params)
        if resp.status_code == 401:
            raise AuthError("token rejected (HTTP 401)", code=401)
        resp.raise_for_status()

        body = resp.json()
        if not body.get("succeeded", False):
            code    = body.get("code")
            message = body.get("error") or body.get("info") or "request failed"
            logger.warning(f"[Platform] {path} failed: code={code} {message}")
            if code in _AUTH_CODES:
                raise AuthError(message, code=code)
            raise PlatformError(message, code=code)
        return body.get("resp_data", {})


# ── Conversion ────────────────────────────────────────────────────────────────

def convert_topic(raw: dict, group_id: str = "") -> Topic:
    """
    Map one raw topic payload to a Topic, whichever of talk/task/q&a/solution it is.
    `group_id` is used when the payload carries no group of its own.
    """
    talk     = raw.get("talk")
    task     = raw.get("task")
    question = raw.get("question")
    solution = raw.get("solution")
    body     = talk or task or question or solution or {}
    owner    = body.get("owner") or {}

    title: str | None = None
    text = ""
    if talk:
        text    = talk.get("text") or ""
        article = talk.get("article")
        if article:
            title = article.get("title")
            if article.get("inline_content_html"):
                text = f"{text}\n\n{article['inline_content_html']}"
    elif task:
        title = task.get("title")
        text  = task.get("text") or ""
    elif question:
        text = question.get("text") or ""
    elif solution:
        text = solution.get("text") or ""

    images: list[str] = []
    for img in (talk or {}).get("images") or []:
        url = (img.get("original") or {}).get("url") or (img.get("large") or {}).get("url")
        if url:
            images.append(url)

    files = [
        FileInfo(name=f.get("name", ""), url=f.get("url") or "", size=f.get("size"))
        for f in (talk or {}).get("files") or []
    ]

    return Topic(
        topic_id       = str(raw["topic_id"]),
        group_id       = str((raw.get("group") or {}).get("group_id") or group_id),
        type           = raw.get("type", "talk"),
        created_at     = raw["create_time"],
        title          = title,
        content        = text,
        owner_id       = str(owner.get("user_id") or owner.get("uid") or ""),
        owner_name     = owner.get("name") or "",
        images         = images,
        files          = files,
        likes_count    = int(raw.get("likes_count") or 0),
        comments_count = int(raw.get("comments_count") or 0),
        reading_count  = int(raw.get("reading_count") or 0),
        digested       = bool(raw.get("digested", False)),
    )
