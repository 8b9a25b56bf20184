"""Per-conversation scratchpad where tools leave provenance for the turn."""

from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel
from pydantic import Field

from chatengine.models import Artifact
from chatengine.models import Source


class ToolMemoryEntry(BaseModel):
    used_sources: list[Source] = Field(default_factory=list)
    used_artifacts: list[Artifact] = Field(default_factory=list)


class ToolMemory:
    """``(conversation_id, tool_name) -> ToolMemoryEntry`` in process memory."""

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, ToolMemoryEntry]] = {}

    def record(
        self,
        conversation_id: str,
        tool_name: str,
        *,
        sources: Source | Iterable[Source] | None = None,
        artifacts: Artifact | Iterable[Artifact] | None = None,
    ) -> None:
        entry = self._entries.setdefault(conversation_id, {}).setdefault(
            tool_name, ToolMemoryEntry()
        )
        if isinstance(sources, Source):
            sources = [sources]
        if isinstance(artifacts, Artifact):
            artifacts = [artifacts]
        entry.used_sources.extend(sources or [])
        entry.used_artifacts.extend(artifacts or [])

    def read(self, conversation_id: str) -> dict[str, ToolMemoryEntry]:
        return {
            name: entry.model_copy(deep=True)
            for name, entry in self._entries.get(conversation_id, {}).items()
        }

    def clear(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)
