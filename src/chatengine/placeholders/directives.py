"""Built-in ``{{#name ...}}`` directives.

Each factory closes over the collaborator it needs and returns a
:class:`Directive`.  ``build_default_directives`` registers only the
directives whose collaborators were supplied.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from chatengine.errors import ArgumentValidationError
from chatengine.errors import ErrorPolicy
from chatengine.models import SessionContext
from chatengine.models import Source
from chatengine.placeholders.arguments import ArgumentDict
from chatengine.placeholders.arguments import get_number_argument
from chatengine.placeholders.arguments import get_string_argument
from chatengine.placeholders.arguments import get_string_list_argument
from chatengine.placeholders.arguments import parse_list
from chatengine.placeholders.replacer import Directive
from chatengine.placeholders.replacer import DirectiveResult
from chatengine.services import Chunk
from chatengine.services import DocumentParser
from chatengine.services import FileStore
from chatengine.services import KnowledgeBase
from chatengine.services import KnowledgeEntry
from chatengine.services import KnowledgeTextStore
from chatengine.services import PromptSnippetStore
from chatengine.services import SearchFilters
from chatengine.services import Services
from chatengine.services import SpeechToText
from chatengine.services import UrlFetcher

logger = logging.getLogger(__name__)

_FILTER_PREFIX = "filter:"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def filter_arguments(args: ArgumentDict) -> dict[str, list[str]]:
    """Collect ``filter:<key>=a,b`` arguments into ``{key: [a, b]}``."""
    filters: dict[str, list[str]] = {}
    for key, value in args.items():
        if key.startswith(_FILTER_PREFIX):
            filters[key[len(_FILTER_PREFIX) :]] = parse_list(str(value))
    return filters


def chunk_label(chunk: Chunk) -> str:
    label = f"Chunk: {chunk.knowledge_entry_name}"
    page = chunk.meta.get("page")
    if page is not None:
        label += f" [Page {page}]"
    return label


def entry_source(entry: KnowledgeEntry) -> Source:
    return Source(type="knowledge-entry", id=entry.id, label=entry.name)


def chunk_source(chunk: Chunk) -> Source:
    return Source(
        type="knowledge-chunk",
        id=chunk.knowledge_entry_id,
        label=chunk_label(chunk),
    )


# ---------------------------------------------------------------------------
# Knowledge
# ---------------------------------------------------------------------------


def knowledgebase_directive(knowledge_base: KnowledgeBase) -> Directive:
    async def resolve(
        match: str,
        args: ArgumentDict,
        variables: Mapping[str, Any],
        context: SessionContext,
    ) -> DirectiveResult:
        ids = get_string_list_argument(args, "id")
        filters = filter_arguments(args)
        logger.debug(
            "knowledgebase directive in chat %s: ids=%s filters=%s",
            context.chat_id,
            ids,
            filters,
        )
        entries = await knowledge_base.get_entries(
            organisation_id=context.organisation_id,
            user_id=context.user_id,
            ids=ids,
            filters=filters or None,
        )
        if not entries:
            logger.info("No knowledge entries found for chat %s", context.chat_id)
            return DirectiveResult(content="", skip_rest_of_message=True)

        texts = [await knowledge_base.get_full_text(entry) for entry in entries]
        return DirectiveResult(
            content="\n".join(texts),
            sources=[entry_source(entry) for entry in entries],
        )

    return Directive(
        name="knowledgebase",
        resolver=resolve,
        error_policy=ErrorPolicy.degrade,
        description="Full text of the selected knowledge entries.",
    )


def similar_to_directive(knowledge_base: KnowledgeBase) -> Directive:
    async def resolve(
        match: str,
        args: ArgumentDict,
        variables: Mapping[str, Any],
        context: SessionContext,
    ) -> DirectiveResult:
        variable = get_string_argument(args, "searchForVariable", "user_input")
        question = variables.get(variable)
        if question is None or question == "":
            logger.info(
                "similar_to directive: variable %r is empty in chat %s",
                variable,
                context.chat_id,
            )
            return DirectiveResult(content="")

        count = get_number_argument(args, "count")
        before = get_number_argument(args, "before")
        after = get_number_argument(args, "after")
        filters = SearchFilters(
            organisation_id=context.organisation_id,
            user_id=context.user_id,
            workspace_id=get_string_argument(args, "workspaceId"),
            knowledge_entry_ids=get_string_list_argument(args, "id"),
            names=get_string_list_argument(args, "names"),
            filters=filter_arguments(args),
            limit=int(count) if count is not None else None,
            add_before=int(before) if before is not None else None,
            add_after=int(after) if after is not None else None,
        )
        chunks = await knowledge_base.search(str(question), filters)

        entry_ids = list(dict.fromkeys(chunk.knowledge_entry_id for chunk in chunks))
        entries = []
        if entry_ids:
            entries = await knowledge_base.get_entries(
                organisation_id=context.organisation_id,
                user_id=context.user_id,
                ids=entry_ids,
            )
        sources = [entry_source(entry) for entry in entries]
        sources.extend(chunk_source(chunk) for chunk in chunks)
        return DirectiveResult(
            content="\n".join(chunk.text for chunk in chunks),
            sources=sources,
        )

    return Directive(
        name="similar_to",
        resolver=resolve,
        error_policy=ErrorPolicy.degrade,
        description="Chunks semantically closest to a session variable.",
    )


def knowledge_text_directive(store: KnowledgeTextStore) -> Directive:
    async def resolve(
        match: str,
        args: ArgumentDict,
        variables: Mapping[str, Any],
        context: SessionContext,
    ) -> DirectiveResult:
        title = str(args["title"])
        try:
            text = await store.get_by_title(title, context.organisation_id)
        except Exception:
            logger.exception("Error getting knowledge text %r", title)
            text = None
        return DirectiveResult(content=text.text if text else "")

    return Directive(
        name="knowledge_text",
        resolver=resolve,
        required_arguments=(("title",),),
    )


# ---------------------------------------------------------------------------
# Files and URLs
# ---------------------------------------------------------------------------


def file_directive(documents: DocumentParser) -> Directive:
    async def resolve(
        match: str,
        args: ArgumentDict,
        variables: Mapping[str, Any],
        context: SessionContext,
    ) -> DirectiveResult:
        source_type = get_string_argument(args, "source", "db") or "db"
        bucket = get_string_argument(args, "bucket", "default") or "default"
        ids = [i.strip() for i in get_string_list_argument(args, "id", []) or []]

        contents: list[str] = []
        sources: list[Source] = []
        for file_id in filter(None, ids):
            try:
                document = await documents.parse(
                    source_type=source_type,
                    source_id=file_id,
                    bucket=bucket,
                    organisation_id=context.organisation_id,
                )
            except Exception:
                logger.exception("Error parsing document %s", file_id)
                continue
            contents.append(document.content)
            sources.append(
                Source(type="file", id=file_id, label=document.title or file_id)
            )
        return DirectiveResult(content="\n\n".join(contents), sources=sources)

    return Directive(
        name="file",
        resolver=resolve,
        required_arguments=(("id",),),
    )


def url_directive(urls: UrlFetcher) -> Directive:
    async def resolve(
        match: str,
        args: ArgumentDict,
        variables: Mapping[str, Any],
        context: SessionContext,
    ) -> DirectiveResult:
        url = get_string_argument(args, "url") or get_string_argument(args, "html")
        if not url:
            raise ArgumentValidationError("url parameter is required for url placeholder")
        logger.debug("url directive in chat %s: %s", context.chat_id, url)
        try:
            markdown = await urls.fetch_markdown(url)
        except Exception:
            logger.exception("Error getting markdown from %s", url)
            return DirectiveResult(content="")
        return DirectiveResult(
            content=markdown,
            sources=[Source(type="url", label=url, url=url, external=True)],
        )

    return Directive(
        name="url",
        resolver=resolve,
        required_arguments=(("url",), ("html",)),
    )


def prompt_snippet_directive(store: PromptSnippetStore) -> Directive:
    async def resolve(
        match: str,
        args: ArgumentDict,
        variables: Mapping[str, Any],
        context: SessionContext,
    ) -> DirectiveResult:
        name = get_string_argument(args, "name")
        category = get_string_argument(args, "category")
        snippet_id = args.get("id")
        if not (name and category) and snippet_id in (None, ""):
            raise ArgumentValidationError(
                "name, category or id parameter is required for prompt_snippet placeholder"
            )
        try:
            if name and category:
                snippet = await store.get_by_name(
                    name, category, context.organisation_id
                )
            else:
                snippet = await store.get_by_id(str(snippet_id), context.organisation_id)
        except Exception:
            logger.exception("Error getting prompt snippet")
            snippet = None
        return DirectiveResult(content=snippet.content if snippet else "")

    return Directive(
        name="prompt_snippet",
        resolver=resolve,
        required_arguments=(("name", "category"), ("id",)),
    )


def stt_directive(files: FileStore, speech_to_text: SpeechToText) -> Directive:
    async def resolve(
        match: str,
        args: ArgumentDict,
        variables: Mapping[str, Any],
        context: SessionContext,
    ) -> DirectiveResult:
        file_id = str(args["id"])
        bucket = str(args.get("bucket") or "default")
        try:
            file = await files.fetch_file(file_id, bucket, context.organisation_id)
        except Exception:
            logger.exception("Error getting file %s", file_id)
            return DirectiveResult(content="")

        if not (file.content_type or "").startswith("audio/"):
            logger.error("File %s is not an audio file (%s)", file_id, file.content_type)
            return DirectiveResult(content="")

        try:
            text = await speech_to_text.transcribe(
                file, organisation_id=context.organisation_id
            )
        except Exception:
            logger.exception("Error transcribing audio file %s", file_id)
            return DirectiveResult(content="")
        return DirectiveResult(content=text or "")

    return Directive(
        name="stt",
        resolver=resolve,
        required_arguments=(("id",),),
    )


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def build_default_directives(services: Services) -> list[Directive]:
    """Directives for every collaborator present in *services*, in resolution order."""
    directives: list[Directive] = []
    if services.knowledge_base is not None:
        directives.append(knowledgebase_directive(services.knowledge_base))
        directives.append(similar_to_directive(services.knowledge_base))
    if services.documents is not None:
        directives.append(file_directive(services.documents))
    if services.urls is not None:
        directives.append(url_directive(services.urls))
    if services.prompt_snippets is not None:
        directives.append(prompt_snippet_directive(services.prompt_snippets))
    if services.knowledge_texts is not None:
        directives.append(knowledge_text_directive(services.knowledge_texts))
    if services.files is not None and services.speech_to_text is not None:
        directives.append(stt_directive(services.files, services.speech_to_text))
    return directives
