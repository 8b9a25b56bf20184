"""Shared data models — provenance records and caller context."""

from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel
from pydantic import Field


class Source(BaseModel):
    """A cited textual or knowledge origin."""

    type: str = Field(
        description="Kind of source (knowledge-entry, knowledge-chunk, file, url, ...).",
    )
    id: str | None = Field(
        default=None,
        description="Identifier of the cited record, when it has one.",
    )
    label: str = Field(
        description="Human readable label; also the deduplication key.",
    )
    url: str | None = Field(default=None)
    external: bool | None = Field(
        default=None,
        description="True when the source lives outside the organisation's data.",
    )


class Artifact(BaseModel):
    """A generated or attached media output."""

    type: str = Field(description="Kind of artifact (image, audio, file, ...).")
    url: str | None = Field(default=None)
    label: str | None = Field(default=None)
    external: bool | None = Field(default=None)


class SessionContext(BaseModel):
    """Who is asking, and in which conversation.

    Passed to directive resolvers and to tool executions.
    """

    chat_id: str
    user_id: str
    organisation_id: str
    chat_session_group_id: str | None = None


ToolContext = SessionContext


def dedupe_sources(sources: Iterable[Source]) -> list[Source]:
    """Collapse sources sharing a ``label``; the first occurrence wins."""
    seen: set[str] = set()
    unique: list[Source] = []
    for source in sources:
        if source.label in seen:
            continue
        seen.add(source.label)
        unique.append(source)
    return unique
