"""Turn entry point — ``ChatEngine.run_turn`` and its companions.

One ``ChatEngine`` owns the tool registry, tool memory, live progress
cache and directive table of a process; request handlers share it.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel
from pydantic import Field
from redis.asyncio import Redis  # type: ignore[import-untyped]

from chatengine.config import OrchestratorConfig
from chatengine.config import SessionStoreConfig
from chatengine.config import ToolRegistryConfig
from chatengine.engine.llm_adapters import StreamingLLMAdapter
from chatengine.engine.orchestrator import CompletionOrchestrator
from chatengine.engine.progress import LiveProgress
from chatengine.engine.progress import LiveProgressCache
from chatengine.engine.schemas import CompletionOptions
from chatengine.engine.schemas import TurnMeta
from chatengine.errors import ArgumentValidationError
from chatengine.errors import ErrorPolicy
from chatengine.errors import NotFoundError
from chatengine.errors import SecurityViolationError
from chatengine.models import SessionContext
from chatengine.observability import track_latency
from chatengine.placeholders.directives import build_default_directives
from chatengine.placeholders.replacer import Directive
from chatengine.placeholders.replacer import DirectiveResolver
from chatengine.placeholders.replacer import replace_variables
from chatengine.services import Services
from chatengine.sessions import create_chat_message
from chatengine.sessions.schemas import ChatMessage
from chatengine.sessions.schemas import KnowledgeSources
from chatengine.sessions.schemas import MessageRole
from chatengine.sessions.schemas import new_session_id
from chatengine.sessions.schemas import Session
from chatengine.sessions.store import RedisSessionStore
from chatengine.tools.knowledge import create_query_knowledge_base_tool
from chatengine.tools.knowledge import KnowledgeSelection
from chatengine.tools.knowledge import register_dynamic_knowledge_tool
from chatengine.tools.memory import ToolMemory
from chatengine.tools.registry import ToolRegistry
from chatengine.tools.url import create_url_tool

logger = logging.getLogger(__name__)

URL_TOOL_ALIAS = "parse-url"


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class LLMOptions(BaseModel):
    model: str | None = None
    max_tokens: int | None = Field(default=None, gt=0)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)


class PromptTemplate(BaseModel):
    """System prompt (and optional first user prompt) of a new conversation."""

    system_prompt: str
    user_prompt: str | None = Field(
        default=None,
        description="First user message template; may use variables and directives.",
    )
    llm_options: LLMOptions | None = None


class TurnRequest(BaseModel):
    user_id: str = Field(min_length=1)
    organisation_id: str = Field(min_length=1)
    chat_id: str | None = Field(
        default=None,
        description="Existing conversation; a new one is started when absent or unknown.",
    )
    chat_session_group_id: str | None = None
    user_message: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    template: PromptTemplate | None = None
    enabled_tools: list[str] = Field(default_factory=list)
    knowledge: KnowledgeSelection | None = None
    llm_options: LLMOptions | None = None

    @property
    def context(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "organisation_id": self.organisation_id,
            "chat_session_group_id": self.chat_session_group_id,
        }


class TurnResult(BaseModel):
    chat_id: str
    message: ChatMessage
    messages: list[ChatMessage]
    meta: TurnMeta


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ChatEngine:
    """Runs chat turns against stored sessions."""

    def __init__(
        self,
        redis: Redis,
        adapter: StreamingLLMAdapter,
        *,
        services: Services | None = None,
        session_config: SessionStoreConfig | None = None,
        registry_config: ToolRegistryConfig | None = None,
        orchestrator_config: OrchestratorConfig | None = None,
        directives: list[Directive] | None = None,
        directive_policies: dict[str, ErrorPolicy] | None = None,
        store: RedisSessionStore | None = None,
        registry: ToolRegistry | None = None,
    ) -> None:
        self.services = services or Services()
        self.config = orchestrator_config or OrchestratorConfig()
        self.store = store or RedisSessionStore(redis, session_config)
        self.registry = registry or ToolRegistry(registry_config)
        self.memory = ToolMemory()
        self.progress = LiveProgressCache()
        self.orchestrator = CompletionOrchestrator(
            adapter, self.registry, self.memory, self.progress, self.config
        )

        self.resolver = DirectiveResolver()
        policies = directive_policies or {}
        for directive in (
            directives
            if directives is not None
            else build_default_directives(self.services)
        ):
            self.resolver.register(
                directive, error_policy=policies.get(directive.name)
            )

        if self.services.knowledge_base is not None:
            tool = create_query_knowledge_base_tool(self.services.knowledge_base)
            self.registry.register_static(tool.name, tool)

    # -- lifecycle --

    def start(self) -> None:
        self.store.start()
        self.registry.start()

    async def stop(self) -> None:
        await self.registry.stop()
        await self.store.stop()
        await self.progress.close()

    # -- turns --

    async def run_turn(self, request: TurnRequest) -> TurnResult:
        """Resolve the prompt, stream one completion and persist the new messages.

        Nothing is written to the session store unless the completion
        succeeds.
        """
        with track_latency("chat.run_turn"):
            session = await self._load_session(request)
            chat_id = session.id if session is not None else request.chat_id
            chat_id = chat_id or new_session_id()
            is_new = session is None or not session.messages
            context = SessionContext(chat_id=chat_id, **request.context)

            variables = dict(session.state.variables) if session else {}
            variables.update(request.variables)
            user_input = request.user_message or request.variables.get("user_input")
            if user_input is not None:
                variables["user_input"] = user_input

            pending = self._new_messages(request, is_new, user_input)
            resolved = await self.resolver.resolve(
                replace_variables(pending, variables), variables, context
            )

            history = list(session.messages) if session else []
            result = await self.orchestrator.complete(
                [*history, *resolved.messages],
                context=context,
                tool_names=self._turn_tools(request, context),
                options=self._options(request),
            )

            assistant = create_chat_message(
                MessageRole.assistant,
                result.text,
                model=result.model,
                sources=result.meta.sources,
                artifacts=result.meta.artifacts,
                knowledge_sources=_knowledge_sources(request.knowledge),
            )
            new_messages = [*resolved.messages, assistant]
            if session is None:
                session = await self.store.create(
                    chat_id,
                    context=request.context,
                    variables=variables,
                    messages=new_messages,
                )
            else:
                session = await self.store.append_messages(
                    chat_id, new_messages, variables=variables
                )

            logger.info(
                "Chat %s turn finished (%d messages)", chat_id, len(session.messages)
            )
            return TurnResult(
                chat_id=chat_id,
                message=assistant,
                messages=session.messages,
                meta=result.meta,
            )

    def poll_progress(self, chat_id: str) -> LiveProgress | None:
        return self.progress.read(chat_id)

    # -- session management --

    async def create_empty_session(
        self,
        *,
        user_id: str,
        organisation_id: str,
        chat_id: str | None = None,
        chat_session_group_id: str | None = None,
    ) -> str:
        """Create a session without messages.

        An existing *chat_id* is returned as is when it belongs to
        *organisation_id*; otherwise ``SecurityViolationError`` is raised.
        """
        existing = await self.store.get(chat_id) if chat_id else None
        if existing is not None:
            if existing.organisation_id != organisation_id:
                raise SecurityViolationError(
                    "Chat session belongs to a different organisation"
                )
            return existing.id
        session = await self.store.create(
            chat_id,
            context={
                "user_id": user_id,
                "organisation_id": organisation_id,
                "chat_session_group_id": chat_session_group_id,
            },
        )
        return session.id

    async def update_message(
        self,
        chat_id: str,
        message_id: str,
        patch: dict[str, Any],
        *,
        organisation_id: str,
    ) -> ChatMessage | None:
        return await self.store.update_message(
            chat_id, message_id, patch, expected_organisation_id=organisation_id
        )

    async def drop_session(self, chat_id: str, *, organisation_id: str) -> None:
        session = await self.store.get(chat_id)
        if session is None:
            raise NotFoundError(f"Chat session {chat_id} not found")
        if session.organisation_id != organisation_id:
            raise SecurityViolationError(
                "Cannot delete a chat session from a different organisation"
            )
        await self.store.drop(chat_id)
        for name in self.registry.dynamic_names(chat_id):
            self.registry.unregister(name, chat_id)
        self.memory.clear(chat_id)
        self.progress.clear(chat_id)
        self.orchestrator.forget(chat_id)

    # -- helpers --

    async def _load_session(self, request: TurnRequest) -> Session | None:
        if not request.chat_id:
            return None
        session = await self.store.get(request.chat_id)
        if session is None:
            logger.info("Chat %s not found; starting a new session", request.chat_id)
            return None
        if session.organisation_id != request.organisation_id:
            logger.error(
                "Security violation: chat %s requested by organisation %s",
                request.chat_id,
                request.organisation_id,
            )
            raise SecurityViolationError(
                "Chat session belongs to a different organisation"
            )
        return session

    def _new_messages(
        self, request: TurnRequest, is_new: bool, user_input: Any
    ) -> list[ChatMessage]:
        messages: list[ChatMessage] = []
        user_content: Any = user_input
        if is_new:
            template = request.template
            system_prompt = (
                template.system_prompt if template else self.config.default_system_prompt
            )
            messages.append(create_chat_message(MessageRole.system, system_prompt))
            if template is not None and template.user_prompt:
                user_content = template.user_prompt
        if user_content is None or user_content == "":
            raise ArgumentValidationError("user_message is required")
        messages.append(create_chat_message(MessageRole.user, user_content))
        return messages

    def _turn_tools(self, request: TurnRequest, context: SessionContext) -> list[str]:
        names: list[str] = []
        for name in request.enabled_tools:
            if name == URL_TOOL_ALIAS and self.services.urls is not None:
                tool = create_url_tool(self.services.urls, self.memory)
                self.registry.register_dynamic(context.chat_id, tool.name, tool)
                name = tool.name
            names.append(name)

        if request.knowledge is not None and self.services.knowledge_base is not None:
            tool = register_dynamic_knowledge_tool(
                self.registry,
                self.services.knowledge_base,
                self.memory,
                request.knowledge,
                context,
                max_tokens=self.config.context_window_tokens,
                max_output_tokens=self.config.max_output_tokens,
            )
            if tool is not None:
                names.append(tool.name)
        return names

    def _options(self, request: TurnRequest) -> CompletionOptions:
        # template options win over the caller's
        merged: dict[str, Any] = {}
        for options in (
            request.llm_options,
            request.template.llm_options if request.template else None,
        ):
            if options is not None:
                merged.update(options.model_dump(exclude_none=True))
        return CompletionOptions(**merged)


def _knowledge_sources(selection: KnowledgeSelection | None) -> KnowledgeSources | None:
    if selection is None or selection.empty:
        return None
    return KnowledgeSources(
        knowledge_entries=[item.id for item in selection.knowledge_entries],
        knowledge_filters=[item.id for item in selection.knowledge_filters],
    )
