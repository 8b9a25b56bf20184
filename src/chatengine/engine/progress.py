"""Live progress of in-flight turns, read by polling clients."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel
from pydantic import Field

from chatengine.models import Artifact
from chatengine.models import Source

logger = logging.getLogger(__name__)


class ProgressMeta(BaseModel):
    tools_used: list[str] = Field(default_factory=list)
    sources: list[Source] = Field(default_factory=list)
    artifacts: list[Artifact] = Field(default_factory=list)


class LiveProgress(BaseModel):
    text: str = ""
    complete: bool = False
    meta: ProgressMeta = Field(default_factory=ProgressMeta)


def _append_unique(target: list[Any], items: list[Any]) -> None:
    for item in items:
        if item not in target:
            target.append(item)


class LiveProgressCache:
    """Conversation id -> :class:`LiveProgress`, with delayed removal."""

    def __init__(self) -> None:
        self._entries: dict[str, LiveProgress] = {}
        self._pending_clears: dict[str, asyncio.Task] = {}

    def update(
        self,
        chat_id: str,
        *,
        text: str | None = None,
        complete: bool | None = None,
        meta: ProgressMeta | dict[str, Any] | None = None,
    ) -> LiveProgress:
        """Merge the given fields into the entry, creating it when missing.

        List fields of *meta* accumulate without duplicates.
        """
        entry = self._entries.setdefault(chat_id, LiveProgress())
        if text is not None:
            entry.text = text
        if complete is not None:
            entry.complete = complete
        if meta is not None:
            if isinstance(meta, dict):
                meta = ProgressMeta.model_validate(meta)
            _append_unique(entry.meta.tools_used, meta.tools_used)
            _append_unique(entry.meta.sources, meta.sources)
            _append_unique(entry.meta.artifacts, meta.artifacts)
        return entry

    def read(self, chat_id: str) -> LiveProgress | None:
        entry = self._entries.get(chat_id)
        return entry.model_copy(deep=True) if entry is not None else None

    def clear(self, chat_id: str) -> None:
        self._entries.pop(chat_id, None)

    def clear_and_start(self, chat_id: str) -> None:
        """Reset the entry for a new turn and cancel any pending removal."""
        pending = self._pending_clears.pop(chat_id, None)
        if pending is not None and not pending.done():
            pending.cancel()
        self._entries[chat_id] = LiveProgress()

    def schedule_clear(
        self,
        chat_id: str,
        delay: float,
        on_clear: Callable[[str], None] | None = None,
    ) -> asyncio.Task:
        """Remove the entry after *delay* seconds, then call *on_clear*."""
        previous = self._pending_clears.pop(chat_id, None)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.create_task(
            self._clear_later(chat_id, delay, on_clear), name=f"progress-clear-{chat_id}"
        )
        self._pending_clears[chat_id] = task
        return task

    async def _clear_later(
        self,
        chat_id: str,
        delay: float,
        on_clear: Callable[[str], None] | None,
    ) -> None:
        await asyncio.sleep(delay)
        self.clear(chat_id)
        if on_clear is not None:
            on_clear(chat_id)
        if self._pending_clears.get(chat_id) is asyncio.current_task():
            del self._pending_clears[chat_id]
        logger.debug("Cleared live progress for chat %s", chat_id)

    async def close(self) -> None:
        """Cancel all pending removals."""
        tasks = list(self._pending_clears.values())
        self._pending_clears.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
