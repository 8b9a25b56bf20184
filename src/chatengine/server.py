"""ChatEngine — FastMCP v2 server exposing chat turns and live progress.

Tools delegate to one ``ChatEngine`` (Redis-backed sessions).  Call
``configure(redis_url=...)`` before using the server.
"""

from __future__ import annotations

from time import perf_counter
from typing import Any

from fastmcp import FastMCP
from pydantic import ValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]

from chatengine.chat import ChatEngine
from chatengine.chat import TurnRequest
from chatengine.config import LLMConfig
from chatengine.config import OrchestratorConfig
from chatengine.config import SessionStoreConfig
from chatengine.config import ToolRegistryConfig
from chatengine.engine import build_llm_adapter
from chatengine.engine import StreamingLLMAdapter
from chatengine.errors import ChatEngineError
from chatengine.errors import NotFoundError
from chatengine.observability import record_latency
from chatengine.schemas import ChatResult
from chatengine.schemas import ProgressResult
from chatengine.schemas import SessionResult
from chatengine.schemas import UpdateMessageResult
from chatengine.services import Services

mcp = FastMCP("ChatEngine")

# ---------------------------------------------------------------------------
# Engine instance (set via configure())
# ---------------------------------------------------------------------------

_engine: ChatEngine | None = None


async def configure(
    redis_url: str = "redis://localhost:6379",
    *,
    redis: Redis | None = None,
    llm_config: LLMConfig | None = None,
    llm_adapter: StreamingLLMAdapter | None = None,
    services: Services | None = None,
    session_config: SessionStoreConfig | None = None,
    registry_config: ToolRegistryConfig | None = None,
    orchestrator_config: OrchestratorConfig | None = None,
    start_background_tasks: bool = True,
) -> ChatEngine:
    """Initialize the chat engine backend.

    Must be called before the MCP tools can function.  A ready *redis*
    client takes precedence over *redis_url*.
    """
    global _engine
    if _engine is not None:
        try:
            await shutdown()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            _engine = None

    adapter = llm_adapter or build_llm_adapter(llm_config or LLMConfig())
    _engine = ChatEngine(
        redis if redis is not None else Redis.from_url(redis_url),
        adapter,
        services=services,
        session_config=session_config,
        registry_config=registry_config,
        orchestrator_config=orchestrator_config,
    )
    if start_background_tasks:
        _engine.start()
    return _engine


async def shutdown() -> None:
    """Stop background jobs and close the Redis client."""
    global _engine
    if _engine is not None:
        engine, _engine = _engine, None
        await engine.stop()
        await engine.store.close()


async def _reset_sessions() -> None:
    """Clear stored sessions — exposed for test cleanup."""
    if _engine is not None:
        await _engine.store.clear()


def _get_engine() -> ChatEngine:
    """Return the engine instance or raise."""
    if _engine is None:
        raise RuntimeError("Chat engine not configured. Call configure() first.")
    return _engine


def _validation_message(exc: ValidationError) -> str:
    err = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in err.get("loc", ()))
    msg = str(err.get("msg", "Invalid input"))
    return f"{location}: {msg}" if location else msg


def _status_for(exc: ChatEngineError) -> str:
    return "not_found" if isinstance(exc, NotFoundError) else "rejected"


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool
async def chat(
    user_id: str,
    organisation_id: str,
    user_message: str | None = None,
    chat_id: str | None = None,
    chat_session_group_id: str | None = None,
    variables: dict[str, Any] | None = None,
    template: dict | None = None,
    enabled_tools: list[str] | None = None,
    knowledge: dict | None = None,
    llm_options: dict | None = None,
) -> ChatResult:
    """Run one chat turn and return the assistant reply.

    Args:
        user_id: Calling user.
        organisation_id: Organisation the conversation belongs to.
        user_message: The user's input for this turn.
        chat_id: Existing conversation to continue; omitted starts a new one.
        chat_session_group_id: Optional grouping of conversations.
        variables: Template variables ({{ name }} placeholders).
        template: system_prompt, optional user_prompt and llm_options for new conversations.
        enabled_tools: Tool names the model may call ("parse-url" enables URL reading).
        knowledge: knowledge_entries / knowledge_filters / knowledge_groups selection.
        llm_options: model, max_tokens and temperature overrides.
    """
    start = perf_counter()
    ok = False
    try:
        engine = _get_engine()
        try:
            request = TurnRequest.model_validate(
                {
                    "user_id": user_id,
                    "organisation_id": organisation_id,
                    "user_message": user_message,
                    "chat_id": chat_id,
                    "chat_session_group_id": chat_session_group_id,
                    "variables": variables or {},
                    "template": template,
                    "enabled_tools": enabled_tools or [],
                    "knowledge": knowledge,
                    "llm_options": llm_options,
                }
            )
        except ValidationError as exc:
            return ChatResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
                chat_id=chat_id or "",
            )

        try:
            result = await engine.run_turn(request)
        except ChatEngineError as exc:
            return ChatResult(
                status=_status_for(exc),
                error_code=exc.error_code,
                message=str(exc),
                chat_id=chat_id or "",
            )

        ok = True
        return ChatResult(
            chat_id=result.chat_id,
            reply=result.message,
            message_count=len(result.messages),
            meta=result.meta,
        )
    finally:
        record_latency(
            operation="mcp.chat",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def poll_chat_progress(chat_id: str) -> ProgressResult:
    """Return the partial reply of a running (or just finished) turn.

    Args:
        chat_id: Conversation to poll.
    """
    start = perf_counter()
    ok = False
    try:
        progress = _get_engine().poll_progress(chat_id)
        if progress is None:
            return ProgressResult(
                status="not_found",
                error_code="not_found",
                message="No turn in progress for this chat.",
                chat_id=chat_id,
            )
        ok = True
        return ProgressResult(
            chat_id=chat_id,
            text=progress.text,
            complete=progress.complete,
            meta=progress.meta,
        )
    finally:
        record_latency(
            operation="mcp.poll_chat_progress",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def create_chat_session(
    user_id: str,
    organisation_id: str,
    chat_id: str | None = None,
    chat_session_group_id: str | None = None,
) -> SessionResult:
    """Create an empty conversation (or confirm an existing one).

    Args:
        user_id: Owning user.
        organisation_id: Owning organisation.
        chat_id: Desired id; an existing conversation with this id is reused.
        chat_session_group_id: Optional grouping of conversations.
    """
    start = perf_counter()
    ok = False
    try:
        if not user_id or not organisation_id:
            return SessionResult(
                status="rejected",
                error_code="validation_error",
                message="user_id and organisation_id are required.",
            )
        try:
            new_id = await _get_engine().create_empty_session(
                user_id=user_id,
                organisation_id=organisation_id,
                chat_id=chat_id,
                chat_session_group_id=chat_session_group_id,
            )
        except ChatEngineError as exc:
            return SessionResult(
                status=_status_for(exc),
                error_code=exc.error_code,
                message=str(exc),
            )
        ok = True
        return SessionResult(chat_id=new_id)
    finally:
        record_latency(
            operation="mcp.create_chat_session",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def update_chat_message(
    chat_id: str,
    message_id: str,
    organisation_id: str,
    content: str | None = None,
    meta: dict | None = None,
) -> UpdateMessageResult:
    """Replace the content and/or meta fields of one stored message.

    Args:
        chat_id: Conversation holding the message.
        message_id: The message's meta.id.
        organisation_id: Organisation of the caller; must own the conversation.
        content: New message content.
        meta: Meta fields to overwrite (the id is kept).
    """
    start = perf_counter()
    ok = False
    try:
        patch: dict[str, Any] = {}
        if content is not None:
            patch["content"] = content
        if meta:
            patch["meta"] = meta
        if not patch:
            return UpdateMessageResult(
                status="rejected",
                error_code="validation_error",
                message="content or meta is required.",
                chat_id=chat_id,
            )
        try:
            updated = await _get_engine().update_message(
                chat_id, message_id, patch, organisation_id=organisation_id
            )
        except ValidationError as exc:
            return UpdateMessageResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
                chat_id=chat_id,
            )
        except ChatEngineError as exc:
            return UpdateMessageResult(
                status=_status_for(exc),
                error_code=exc.error_code,
                message=str(exc),
                chat_id=chat_id,
            )
        if updated is None:
            return UpdateMessageResult(
                status="not_found",
                error_code="not_found",
                message=f"Chat session {chat_id} not found",
                chat_id=chat_id,
            )
        ok = True
        return UpdateMessageResult(chat_id=chat_id, updated=updated)
    finally:
        record_latency(
            operation="mcp.update_chat_message",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def delete_chat_session(chat_id: str, organisation_id: str) -> SessionResult:
    """Delete a conversation and everything the engine keeps for it.

    Args:
        chat_id: Conversation to delete.
        organisation_id: Organisation of the caller; must own the conversation.
    """
    start = perf_counter()
    ok = False
    try:
        try:
            await _get_engine().drop_session(chat_id, organisation_id=organisation_id)
        except ChatEngineError as exc:
            return SessionResult(
                status=_status_for(exc),
                error_code=exc.error_code,
                message=str(exc),
                chat_id=chat_id,
            )
        ok = True
        return SessionResult(chat_id=chat_id)
    finally:
        record_latency(
            operation="mcp.delete_chat_session",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )
