"""
Group / Topic dataclasses and the PlatformClient ABC.
The fetcher only talks to the platform through PlatformClient, so tests can
swap in a fake without touching the network.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

TOPIC_TYPES = ("talk", "task", "q&a", "solution")


@dataclass
class Group:
    group_id:     str
    name:         str
    description:  str | None = None
    owner_name:   str | None = None
    member_count: int | None = None
    topics_count: int | None = None


@dataclass
class FileInfo:
    name: str
    url:  str = ""
    size: int | None = None     # bytes, when the platform reports it


@dataclass
class Topic:
    topic_id:       str           # globally unique across groups
    group_id:       str
    type:           str           # one of TOPIC_TYPES
    created_at:     str           # ISO 8601, the ordering key
    title:          str | None = None
    content:        str = ""
    owner_id:       str = ""
    owner_name:     str = ""
    images:         list[str] = field(default_factory=list)
    files:          list[FileInfo] = field(default_factory=list)
    likes_count:    int = 0
    comments_count: int = 0
    reading_count:  int = 0
    digested:       bool = False  # "featured" flag
    fetched_at:     str | None = None


class PlatformClient(ABC):
    """Listing side of the content platform."""

    @abstractmethod
    async def get_group(self, group_id: str) -> Group:
        ...

    @abstractmethod
    async def list_topics(
        self,
        group_id: str,
        count: int,
        end_time: str | None = None,
        scope: str = "all",
    ) -> list[Topic]:
        """
        Return at most `count` topics, newest first, strictly older than
        `end_time` when given. An empty list means there is nothing older.
        """
        ...
