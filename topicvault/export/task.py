"""
Export task model and the in-memory registry of live tasks.

Status flow:
    pending → fetching → downloading_images → zipping → completed
                  │                                  ↗
                  └──────────── (no images) ────────┘
    any non-terminal state → failed

The registry is the only place live tasks are kept. Once a task reaches a
terminal state it is dropped after a retention window; the durable record
stays in the exports table.
"""
import asyncio
from dataclasses import asdict, dataclass, field

from loguru import logger

PENDING            = "pending"
FETCHING           = "fetching"
DOWNLOADING_IMAGES = "downloading_images"
ZIPPING            = "zipping"
COMPLETED          = "completed"
FAILED             = "failed"

TERMINAL = {COMPLETED, FAILED}

# Allowed forward moves; FAILED is reachable from every non-terminal state
_NEXT: dict[str, set[str]] = {
    PENDING:            {FETCHING},
    FETCHING:           {DOWNLOADING_IMAGES, ZIPPING, COMPLETED},
    DOWNLOADING_IMAGES: {ZIPPING},
    ZIPPING:            {COMPLETED},
}


class InvalidTransition(Exception):
    pass


@dataclass
class ExportOptions:
    scope:          str = "all"         # 'all' | 'digests'
    include_images: bool = True
    markdown_style: str = "detailed"    # 'simple' | 'detailed'


@dataclass
class ExportProgress:
    total_topics:      int = 0
    fetched_topics:    int = 0
    converted_topics:  int = 0
    total_images:      int = 0
    downloaded_images: int = 0
    current_step:      str = "Initializing"

    def advance(self, **counts: int) -> None:
        """Raise counters; a lower value than the current one is ignored."""
        for name, value in counts.items():
            setattr(self, name, max(getattr(self, name), value))


@dataclass
class ExportTask:
    export_id:  str
    group_id:   str
    group_name: str
    start_date: str | None = None
    end_date:   str | None = None
    options:    ExportOptions = field(default_factory=ExportOptions)
    status:     str = PENDING
    progress:   ExportProgress = field(default_factory=ExportProgress)
    error:      str | None = None
    file_path:  str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def transition(self, status: str, step: str | None = None) -> None:
        allowed = set() if self.is_terminal else _NEXT[self.status] | {FAILED}
        if status not in allowed:
            raise InvalidTransition(f"{self.status} → {status}")
        self.status = status
        if step:
            self.progress.current_step = step

    def snapshot(self) -> dict:
        """Plain-dict copy for pollers."""
        return asdict(self)


class ExportRegistry:
    """Live export tasks keyed by export_id."""

    def __init__(self) -> None:
        self._tasks: dict[str, ExportTask] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def add(self, task: ExportTask) -> None:
        self._tasks[task.export_id] = task

    def get(self, export_id: str) -> ExportTask | None:
        return self._tasks.get(export_id)

    def discard(self, export_id: str) -> None:
        self._tasks.pop(export_id, None)
        timer = self._timers.pop(export_id, None)
        if timer:
            timer.cancel()
        logger.debug(f"[Registry] released {export_id[:8]}")

    def schedule_removal(self, export_id: str, delay_s: float) -> None:
        """Drop the task from memory `delay_s` seconds from now."""
        old = self._timers.pop(export_id, None)
        if old:
            old.cancel()
        loop = asyncio.get_running_loop()
        self._timers[export_id] = loop.call_later(delay_s, self._expire, export_id)

    def _expire(self, export_id: str) -> None:
        self._timers.pop(export_id, None)
        self.discard(export_id)

    def __contains__(self, export_id: str) -> bool:
        return export_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)
