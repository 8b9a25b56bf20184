"""Pydantic models for the MCP tool results."""

from __future__ import annotations

from pydantic import BaseModel
from pydantic import Field

from chatengine.engine.progress import ProgressMeta
from chatengine.engine.schemas import TurnMeta
from chatengine.sessions.schemas import ChatMessage


class _StatusResult(BaseModel):
    status: str = Field(
        default="ok",
        description="Outcome of the call (ok, rejected, not_found).",
    )
    error_code: str | None = Field(
        default=None,
        description="Machine-readable reason when status is not ok.",
    )
    message: str | None = Field(
        default=None,
        description="Human readable explanation when status is not ok.",
    )


class ChatResult(_StatusResult):
    """Response from chat."""

    chat_id: str = Field(
        default="",
        description="Conversation the turn ran in; reuse it for follow-ups.",
    )
    reply: ChatMessage | None = Field(
        default=None,
        description="The assistant message produced by this turn.",
    )
    message_count: int = Field(
        default=0,
        description="Number of messages stored in the conversation after the turn.",
    )
    meta: TurnMeta | None = Field(
        default=None,
        description="Token usage, tools used and provenance of the turn.",
    )


class ProgressResult(_StatusResult):
    """Response from poll_chat_progress."""

    chat_id: str
    text: str = ""
    complete: bool = False
    meta: ProgressMeta | None = None


class SessionResult(_StatusResult):
    """Response from create_chat_session and delete_chat_session."""

    chat_id: str = ""


class UpdateMessageResult(_StatusResult):
    """Response from update_chat_message."""

    chat_id: str
    updated: ChatMessage | None = None
