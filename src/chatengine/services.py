"""Collaborator interfaces consumed by directives and tools.

The engine never talks to a database, file storage or crawler directly.
Host applications hand in objects satisfying these protocols via
``Services``; any of them may be left out, in which case the directives
and tools that need them are not registered.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from typing import Protocol
from typing import runtime_checkable

from pydantic import BaseModel
from pydantic import Field

# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class Chunk(BaseModel):
    """A retrievable unit of previously ingested knowledge content."""

    id: str
    text: str
    knowledge_entry_id: str
    knowledge_entry_name: str
    meta: dict[str, Any] = Field(default_factory=dict)


class KnowledgeEntry(BaseModel):
    """A knowledge document; ``meta["textLength"]`` holds its size in characters."""

    id: str
    name: str
    meta: dict[str, Any] = Field(default_factory=dict)


class SearchFilters(BaseModel):
    """Restrictions applied to a semantic knowledge search."""

    organisation_id: str
    user_id: str | None = None
    workspace_id: str | None = None
    knowledge_entry_ids: list[str] | None = None
    knowledge_group_ids: list[str] | None = None
    knowledge_filter_ids: list[str] | None = None
    names: list[str] | None = None
    filters: dict[str, list[str]] = Field(default_factory=dict)
    limit: int | None = None
    add_before: int | None = None
    add_after: int | None = None


class StoredFile(BaseModel):
    id: str
    name: str
    content_type: str | None = None
    data: bytes = b""


class ParsedDocument(BaseModel):
    title: str | None = None
    content: str = ""


class PromptSnippet(BaseModel):
    id: str
    name: str
    category: str
    content: str


class KnowledgeText(BaseModel):
    id: str
    title: str
    text: str


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class KnowledgeBase(Protocol):
    """Semantic search and entry lookup over ingested knowledge."""

    async def search(self, query: str, filters: SearchFilters) -> list[Chunk]: ...

    async def get_entries(
        self,
        *,
        organisation_id: str,
        user_id: str | None = None,
        ids: list[str] | None = None,
        filters: dict[str, list[str]] | None = None,
    ) -> list[KnowledgeEntry]: ...

    async def get_full_text(self, entry: KnowledgeEntry) -> str: ...


@runtime_checkable
class FileStore(Protocol):
    async def fetch_file(
        self, file_id: str, bucket: str, organisation_id: str
    ) -> StoredFile: ...


@runtime_checkable
class DocumentParser(Protocol):
    async def parse(
        self,
        *,
        source_type: str,
        source_id: str,
        bucket: str,
        organisation_id: str,
    ) -> ParsedDocument: ...


@runtime_checkable
class UrlFetcher(Protocol):
    async def fetch_markdown(self, url: str) -> str: ...


@runtime_checkable
class PromptSnippetStore(Protocol):
    async def get_by_name(
        self, name: str, category: str, organisation_id: str
    ) -> PromptSnippet | None: ...

    async def get_by_id(
        self, snippet_id: str, organisation_id: str
    ) -> PromptSnippet | None: ...


@runtime_checkable
class KnowledgeTextStore(Protocol):
    async def get_by_title(
        self, title: str, organisation_id: str
    ) -> KnowledgeText | None: ...


@runtime_checkable
class SpeechToText(Protocol):
    async def transcribe(self, file: StoredFile, *, organisation_id: str) -> str: ...


@dataclass(frozen=True)
class Services:
    """Bundle of optional collaborators handed to the engine."""

    knowledge_base: KnowledgeBase | None = None
    files: FileStore | None = None
    documents: DocumentParser | None = None
    urls: UrlFetcher | None = None
    prompt_snippets: PromptSnippetStore | None = None
    knowledge_texts: KnowledgeTextStore | None = None
    speech_to_text: SpeechToText | None = None
