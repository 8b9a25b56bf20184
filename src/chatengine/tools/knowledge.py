"""Knowledge base tools.

``create_knowledge_tool`` builds the per-conversation dynamic tool bound to
a knowledge selection.  Its output is filled greedily into the model's
context budget: for every matching entry the full document is preferred,
then the matching chunks, then the single most relevant chunk.
"""

from __future__ import annotations

import logging
import math
import uuid
from typing import Any
from typing import Literal

from pydantic import BaseModel
from pydantic import Field

from chatengine.errors import ErrorPolicy
from chatengine.models import Source
from chatengine.models import ToolContext
from chatengine.services import Chunk
from chatengine.services import KnowledgeBase
from chatengine.services import SearchFilters
from chatengine.tools.memory import ToolMemory
from chatengine.tools.registry import ToolRegistry
from chatengine.tools.schemas import Tool

logger = logging.getLogger(__name__)

DEFAULT_BASE_NAME = "query-knowledge-base"
NO_RESULTS = "No relevant knowledge chunks found."

RetrievalMode = Literal["auto", "chunks", "full"]

_QUERY_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": "The search query to find relevant information",
        },
    },
    "required": ["query"],
}


class SelectionItem(BaseModel):
    id: str
    label: str = ""


class KnowledgeSelection(BaseModel):
    """Knowledge a user attached to a turn."""

    knowledge_entries: list[SelectionItem] = Field(default_factory=list)
    knowledge_filters: list[SelectionItem] = Field(default_factory=list)
    knowledge_groups: list[SelectionItem] = Field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (
            self.knowledge_entries or self.knowledge_filters or self.knowledge_groups
        )


def estimate_tokens(length: int) -> int:
    """Rough token count for *length* characters (about four per token)."""
    return math.ceil(length / 4)


def available_context_tokens(max_tokens: int, max_output_tokens: int) -> int:
    # 10% stays reserved for the prompt itself
    return math.floor((max_tokens - max_output_tokens) * 0.9)


def _entry_block(name: str, entry_id: str, text: str) -> str:
    return f'KnowledgeEntry ["{name}", {entry_id}]:\n{text}'


def _describe(selection: KnowledgeSelection) -> str:
    parts = ["Searches the knowledge base with pre-selected filters."]
    if selection.knowledge_entries:
        parts.append("Restricted to specific entries.")
    if selection.knowledge_groups:
        parts.append("Restricted to specific groups.")
    if selection.knowledge_filters:
        parts.append("Uses specific filters.")
    return " ".join(parts)


def create_knowledge_tool(
    knowledge_base: KnowledgeBase,
    memory: ToolMemory,
    selection: KnowledgeSelection,
    *,
    max_tokens: int,
    max_output_tokens: int,
    base_name: str | None = None,
    description: str | None = None,
    n: int = 3,
    add_before: int = 0,
    add_after: int = 0,
    mode: RetrievalMode = "auto",
) -> Tool:
    """Build a dynamic tool named ``<base_name>_<8 hex>`` bound to *selection*."""
    name = f"{base_name or DEFAULT_BASE_NAME}_{uuid.uuid4().hex[:8]}"
    budget = available_context_tokens(max_tokens, max_output_tokens)

    async def execute(args: dict[str, Any], context: ToolContext) -> str:
        query = str(args.get("query") or "")
        logger.info("Tool %s queried in chat %s", name, context.chat_id)
        try:
            outputs, sources = await _retrieve(query, context)
        except Exception as exc:
            logger.exception("Error querying knowledge base")
            return f"Error querying knowledge base: {exc}"
        if not outputs:
            return NO_RESULTS
        memory.record(context.chat_id, name, sources=sources)
        return "\n\n".join(outputs)

    async def _retrieve(
        query: str, context: ToolContext
    ) -> tuple[list[str], list[Source]]:
        chunks = await knowledge_base.search(
            query,
            SearchFilters(
                organisation_id=context.organisation_id,
                user_id=context.user_id,
                knowledge_entry_ids=[i.id for i in selection.knowledge_entries] or None,
                knowledge_group_ids=[i.id for i in selection.knowledge_groups] or None,
                knowledge_filter_ids=[i.id for i in selection.knowledge_filters]
                or None,
                limit=n,
                add_before=add_before,
                add_after=add_after,
            ),
        )
        if not chunks:
            return [], []

        by_entry: dict[str, list[Chunk]] = {}
        for chunk in chunks:
            by_entry.setdefault(chunk.knowledge_entry_id, []).append(chunk)

        entries = await knowledge_base.get_entries(
            organisation_id=context.organisation_id,
            user_id=context.user_id,
            ids=list(by_entry),
        )

        used = 0
        outputs: list[str] = []
        sources: list[Source] = []
        for entry in entries:
            entry_chunks = by_entry.get(entry.id, [])
            entry_tokens = estimate_tokens(int(entry.meta.get("textLength") or 0))

            if mode == "full" or (mode == "auto" and used + entry_tokens <= budget):
                text = await knowledge_base.get_full_text(entry)
                tokens = estimate_tokens(len(text))
                if used + tokens <= budget:
                    outputs.append(_entry_block(entry.name, entry.id, text))
                    used += tokens
                    sources.append(
                        Source(
                            type="knowledge-entry",
                            id=entry.id,
                            label=f"[Full] {entry.name}",
                            external=False,
                        )
                    )
                    continue

            chunk_text = "\n".join(c.text for c in entry_chunks)
            chunk_tokens = estimate_tokens(len(chunk_text))
            if mode == "chunks" or (mode == "auto" and used + chunk_tokens <= budget):
                outputs.append(_entry_block(entry.name, entry.id, chunk_text))
                used += chunk_tokens
                sources.extend(
                    Source(
                        type="knowledge-chunk",
                        id=c.id,
                        label=f"[Chunk] {entry.name}",
                        external=False,
                    )
                    for c in entry_chunks
                )
                continue

            if entry_chunks:
                top = entry_chunks[0]
                outputs.append(_entry_block(entry.name, entry.id, top.text))
                used += estimate_tokens(len(top.text))
                sources.append(
                    Source(
                        type="knowledge-chunk",
                        id=top.id,
                        label=f"[Chunk] {entry.name}",
                        external=False,
                    )
                )
        return outputs, sources

    return Tool(
        name=name,
        description=description or _describe(selection),
        parameters=_QUERY_PARAMETERS,
        execute=execute,
        error_policy=ErrorPolicy.degrade,
        metadata={"kind": "knowledge"},
    )


def register_dynamic_knowledge_tool(
    registry: ToolRegistry,
    knowledge_base: KnowledgeBase,
    memory: ToolMemory,
    selection: KnowledgeSelection,
    context: ToolContext,
    *,
    max_tokens: int,
    max_output_tokens: int,
) -> Tool | None:
    """Register a knowledge tool for *context*'s chat; ``None`` when nothing is selected."""
    if selection.empty:
        return None
    tool = create_knowledge_tool(
        knowledge_base,
        memory,
        selection,
        max_tokens=max_tokens,
        max_output_tokens=max_output_tokens,
    )
    registry.register_dynamic(context.chat_id, tool.name, tool)
    return tool


# ---------------------------------------------------------------------------
# Static search tool
# ---------------------------------------------------------------------------


def create_query_knowledge_base_tool(knowledge_base: KnowledgeBase) -> Tool:
    """Unbound semantic search; the model passes any filters itself."""

    async def execute(args: dict[str, Any], context: ToolContext) -> str:
        chunks = await knowledge_base.search(
            str(args["query"]),
            SearchFilters(
                organisation_id=context.organisation_id,
                user_id=context.user_id,
                limit=int(args.get("n") or 5),
                add_before=int(args.get("addBeforeN") or 0),
                add_after=int(args.get("addAfterN") or 0),
                knowledge_entry_ids=args.get("knowledgeEntryIds"),
                knowledge_group_ids=args.get("knowledgeGroupIds"),
                knowledge_filter_ids=args.get("knowledgeFilterIds"),
            ),
        )
        if not chunks:
            return NO_RESULTS
        return "\n\n".join(
            f"Entry: {c.knowledge_entry_name} (ID: {c.knowledge_entry_id})\n"
            f"  Chunk ID: {c.id}\n"
            f"  Extract: {c.text[:100]}..."
            for c in chunks
        )

    id_list = {"type": "array", "items": {"type": "string"}}
    return Tool(
        name=DEFAULT_BASE_NAME,
        description=(
            "Query the knowledge base for relevant information using semantic "
            "similarity search. Results can be restricted to knowledge entry, "
            "group or filter ids."
        ),
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query"},
                "n": {"type": "number", "default": 5},
                "addBeforeN": {"type": "number", "default": 0},
                "addAfterN": {"type": "number", "default": 0},
                "knowledgeEntryIds": id_list,
                "knowledgeGroupIds": id_list,
                "knowledgeFilterIds": id_list,
            },
            "required": ["query"],
        },
        execute=execute,
        error_policy=ErrorPolicy.strict,
        metadata={"kind": "knowledge"},
    )
