"""Session domain data models."""

from __future__ import annotations

import time
import uuid
from datetime import datetime
from datetime import UTC
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field

from chatengine.models import Artifact
from chatengine.models import Source


def new_message_id() -> str:
    return uuid.uuid4().hex[:10]


def new_session_id() -> str:
    return uuid.uuid4().hex[:16]


def utc_timestamp() -> str:
    return datetime.now(tz=UTC).isoformat()


class MessageRole(str, Enum):
    system = "system"
    user = "user"
    assistant = "assistant"


class KnowledgeSources(BaseModel):
    """Knowledge selection a message was generated against."""

    knowledge_entries: list[str] = Field(default_factory=list)
    knowledge_filters: list[str] = Field(default_factory=list)


class MessageMeta(BaseModel):
    id: str = Field(
        default_factory=new_message_id,
        description="Message-local identifier; messages are addressed by it, never by index.",
    )
    visible: bool | None = None
    model: str | None = None
    human: bool | None = None
    timestamp: str = Field(default_factory=utc_timestamp)
    artifacts: list[Artifact] | None = None
    knowledge_sources: KnowledgeSources | None = None
    sources: list[Source] | None = None


class ChatMessage(BaseModel):
    """One entry of a session's append-ordered history."""

    role: MessageRole
    content: Any = ""
    meta: MessageMeta = Field(default_factory=MessageMeta)

    def to_provider_message(self) -> dict[str, Any]:
        """Shape used by provider adapters (role + content only)."""
        return {"role": self.role.value, "content": self.content}


class SessionState(BaseModel):
    variables: dict[str, Any] = Field(default_factory=dict)


class Session(BaseModel):
    """A stored chat session."""

    id: str = Field(default_factory=new_session_id)
    name: str = ""
    user_id: str
    organisation_id: str = Field(
        description="Owning organisation; immutable once the session exists.",
    )
    chat_session_group_id: str | None = None
    messages: list[ChatMessage] = Field(default_factory=list)
    state: SessionState = Field(default_factory=SessionState)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    last_used_at: float = Field(default_factory=time.time)
    expires_at: float | None = None

    def find_message(self, message_id: str) -> int | None:
        for index, message in enumerate(self.messages):
            if message.meta.id == message_id:
                return index
        return None
