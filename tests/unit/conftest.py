"""Unit test fixtures — fake collaborators, a scripted adapter and the MCP client."""

from __future__ import annotations

from typing import Any

import pytest
from fastmcp import Client

from chatengine.engine.llm_adapters import CompletionStream
from chatengine.engine.schemas import CompletionOptions
from chatengine.engine.schemas import StepResult
from chatengine.engine.schemas import ToolCall
from chatengine.engine.schemas import ToolResult
from chatengine.engine.schemas import Usage
from chatengine.models import SessionContext
from chatengine.models import Source
from chatengine.services import Chunk
from chatengine.services import KnowledgeEntry
from chatengine.services import KnowledgeText
from chatengine.services import ParsedDocument
from chatengine.services import PromptSnippet
from chatengine.services import SearchFilters
from chatengine.services import Services
from chatengine.services import StoredFile

# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeKnowledgeBase:
    def __init__(
        self,
        entries: list[KnowledgeEntry] | None = None,
        chunks: list[Chunk] | None = None,
        full_texts: dict[str, str] | None = None,
    ) -> None:
        self.entries = entries or []
        self.chunks = chunks or []
        self.full_texts = full_texts or {}
        self.searches: list[tuple[str, SearchFilters]] = []
        self.entry_queries: list[dict[str, Any]] = []
        self.fail_search = False

    async def search(self, query: str, filters: SearchFilters) -> list[Chunk]:
        self.searches.append((query, filters))
        if self.fail_search:
            raise RuntimeError("vector index unavailable")
        chunks = self.chunks
        if filters.knowledge_entry_ids:
            chunks = [
                c for c in chunks if c.knowledge_entry_id in filters.knowledge_entry_ids
            ]
        if filters.limit:
            chunks = chunks[: filters.limit]
        return list(chunks)

    async def get_entries(
        self,
        *,
        organisation_id: str,
        user_id: str | None = None,
        ids: list[str] | None = None,
        filters: dict[str, list[str]] | None = None,
    ) -> list[KnowledgeEntry]:
        self.entry_queries.append(
            {"organisation_id": organisation_id, "ids": ids, "filters": filters}
        )
        if ids is None:
            return list(self.entries)
        return [e for e in self.entries if e.id in ids]

    async def get_full_text(self, entry: KnowledgeEntry) -> str:
        return self.full_texts.get(entry.id, "")


class FakeDocuments:
    async def parse(
        self,
        *,
        source_type: str,
        source_id: str,
        bucket: str,
        organisation_id: str,
    ) -> ParsedDocument:
        if source_id == "broken":
            raise ValueError("cannot parse")
        return ParsedDocument(
            title=f"Doc {source_id}",
            content=f"content of {source_id} ({source_type}/{bucket})",
        )


class FakeUrls:
    def __init__(self) -> None:
        self.fetched: list[str] = []

    async def fetch_markdown(self, url: str) -> str:
        self.fetched.append(url)
        if "unreachable" in url:
            raise ConnectionError("host unreachable")
        return f"# Page {url}"


class FakePromptSnippets:
    async def get_by_name(
        self, name: str, category: str, organisation_id: str
    ) -> PromptSnippet | None:
        if name == "greeting" and category == "general":
            return PromptSnippet(
                id="s1", name=name, category=category, content="Be friendly."
            )
        return None

    async def get_by_id(self, snippet_id: str, organisation_id: str) -> PromptSnippet | None:
        if snippet_id == "s2":
            return PromptSnippet(
                id="s2", name="tone", category="general", content="Be brief."
            )
        return None


class FakeKnowledgeTexts:
    async def get_by_title(self, title: str, organisation_id: str) -> KnowledgeText | None:
        if title == "Policy":
            return KnowledgeText(id="t1", title=title, text="Refunds within 30 days.")
        return None


class FakeFiles:
    def __init__(self) -> None:
        self.files = {
            "audio-1": StoredFile(id="audio-1", name="memo.mp3", content_type="audio/mpeg"),
            "pdf-1": StoredFile(id="pdf-1", name="doc.pdf", content_type="application/pdf"),
        }

    async def fetch_file(self, file_id: str, bucket: str, organisation_id: str) -> StoredFile:
        if file_id not in self.files:
            raise KeyError(file_id)
        return self.files[file_id]


class FakeSpeechToText:
    async def transcribe(self, file: StoredFile, *, organisation_id: str) -> str:
        return f"transcript of {file.name}"


# ---------------------------------------------------------------------------
# Scripted adapter
# ---------------------------------------------------------------------------


def _tool_name(tools, name: str) -> str:
    if name in tools:
        return name
    # dynamic tools carry a random suffix
    return next(
        (n for n in tools if n.startswith(f"{name}_") or n.startswith(f"{name}-")),
        name,
    )


class ScriptedLLMAdapter:
    """Replays scripted steps; tool calls run through ``Tool.run``.

    Each step is a dict with optional ``text``, ``tool_calls`` (list of
    ``(name, args)``) and ``usage`` (``(prompt, completion)``).  A tool
    name also matches a dynamic tool registered under ``<name>_<suffix>``.
    """

    def __init__(
        self,
        steps: list[dict[str, Any]],
        *,
        sources: list[Source] | None = None,
        fail_after_text: str | None = None,
        model: str = "scripted",
    ) -> None:
        self.steps = steps
        self.deferred_sources = sources or []
        self.fail_after_text = fail_after_text
        self.calls: list[dict[str, Any]] = []
        self._model = model

    @property
    def model(self) -> str:
        return self._model

    def stream(self, messages, *, tools, options, context, on_step) -> CompletionStream:
        self.calls.append({"messages": messages, "tools": tools, "options": options})
        return CompletionStream(self._run(tools, context, on_step), self._sources)

    async def _sources(self) -> list[Source]:
        return list(self.deferred_sources)

    async def _run(self, tools, context, on_step):
        if self.fail_after_text is not None:
            yield self.fail_after_text
            raise ConnectionError("stream interrupted")
        for index, step in enumerate(self.steps):
            text = step.get("text", "")
            if text:
                yield text
            calls = [
                ToolCall(
                    id=f"call_{index}_{n}",
                    name=_tool_name(tools, name),
                    arguments=args,
                )
                for n, (name, args) in enumerate(step.get("tool_calls", []))
            ]
            results = [
                ToolResult(
                    tool_call_id=call.id,
                    name=call.name,
                    result=await tools[call.name].run(call.arguments, context),
                )
                for call in calls
            ]
            prompt, completion = step.get("usage", (0, 0))
            on_step(
                StepResult(
                    text=text,
                    tool_calls=calls,
                    tool_results=results,
                    finish_reason="tool_calls" if calls else "stop",
                    usage=Usage(prompt_tokens=prompt, completion_tokens=completion),
                )
            )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def context() -> SessionContext:
    return SessionContext(chat_id="chat-1", user_id="user-1", organisation_id="org-1")


@pytest.fixture()
def knowledge_base() -> FakeKnowledgeBase:
    entries = [
        KnowledgeEntry(id="e1", name="Handbook", meta={"textLength": 400}),
        KnowledgeEntry(id="e2", name="Pricing", meta={"textLength": 200}),
    ]
    chunks = [
        Chunk(
            id="c1",
            text="Vacation is 30 days.",
            knowledge_entry_id="e1",
            knowledge_entry_name="Handbook",
            meta={"page": 3},
        ),
        Chunk(
            id="c2",
            text="Plans start at 10 EUR.",
            knowledge_entry_id="e2",
            knowledge_entry_name="Pricing",
        ),
    ]
    full_texts = {"e1": "Full handbook text.", "e2": "Full pricing text."}
    return FakeKnowledgeBase(entries, chunks, full_texts)


@pytest.fixture()
def fake_urls() -> FakeUrls:
    return FakeUrls()


@pytest.fixture()
def services(knowledge_base, fake_urls) -> Services:
    return Services(
        knowledge_base=knowledge_base,
        files=FakeFiles(),
        documents=FakeDocuments(),
        urls=fake_urls,
        prompt_snippets=FakePromptSnippets(),
        knowledge_texts=FakeKnowledgeTexts(),
        speech_to_text=FakeSpeechToText(),
    )


@pytest.fixture()
def scripted_adapter():
    """Factory for :class:`ScriptedLLMAdapter`."""
    return ScriptedLLMAdapter


@pytest.fixture()
def default_options() -> CompletionOptions:
    return CompletionOptions()


@pytest.fixture()
async def mcp_client(redis_client, services):
    """Yield a FastMCP Client wired to the ChatEngine server."""
    from chatengine.engine import NoopLLMAdapter
    from chatengine.server import configure
    from chatengine.server import mcp
    from chatengine.server import shutdown

    await configure(
        redis=redis_client,
        llm_adapter=NoopLLMAdapter(),
        services=services,
        start_background_tasks=False,
    )

    async with Client(mcp) as client:
        yield client

    await shutdown()
