"""Session domain — chat sessions, their messages and the Redis store."""

from __future__ import annotations

from typing import Any

from chatengine.models import Artifact
from chatengine.models import Source
from chatengine.sessions.schemas import ChatMessage
from chatengine.sessions.schemas import KnowledgeSources
from chatengine.sessions.schemas import MessageMeta
from chatengine.sessions.schemas import MessageRole
from chatengine.sessions.schemas import Session
from chatengine.sessions.schemas import SessionState
from chatengine.sessions.store import RedisSessionStore

__all__ = [
    "ChatMessage",
    "KnowledgeSources",
    "MessageMeta",
    "MessageRole",
    "RedisSessionStore",
    "Session",
    "SessionState",
    "create_chat_message",
]


def create_chat_message(
    role: MessageRole | str,
    content: Any,
    *,
    model: str | None = None,
    human: bool | None = None,
    visible: bool | None = None,
    sources: list[Source] | None = None,
    artifacts: list[Artifact] | None = None,
    knowledge_sources: KnowledgeSources | None = None,
) -> ChatMessage:
    """Factory for a ChatMessage with a fresh id and timestamp.

    User messages default to ``human=True``.
    """
    role = MessageRole(role)
    if human is None and role == MessageRole.user:
        human = True
    return ChatMessage(
        role=role,
        content=content,
        meta=MessageMeta(
            model=model,
            human=human,
            visible=visible,
            sources=sources or None,
            artifacts=artifacts or None,
            knowledge_sources=knowledge_sources,
        ),
    )
