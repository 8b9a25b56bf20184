"""Redis-backed chat session store.

Sessions are stored as JSON strings keyed by ``{prefix}:session:{id}`` with
a key expiry equal to the configured max age.  A sorted set
``{prefix}:session_updated`` (score = ``updated_at``) drives ``cleanup()``
and per-user history listings.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from collections.abc import Callable
from collections.abc import Sequence
from typing import Any

from redis.asyncio import Redis  # type: ignore[import-untyped]

from chatengine.config import SessionStoreConfig
from chatengine.errors import NotFoundError
from chatengine.errors import SecurityViolationError
from chatengine.sessions.schemas import ChatMessage
from chatengine.sessions.schemas import MessageRole
from chatengine.sessions.schemas import new_session_id
from chatengine.sessions.schemas import Session
from chatengine.sessions.schemas import SessionState
from chatengine.tasks import PeriodicTask

logger = logging.getLogger(__name__)

_CLEAR_BATCH_SIZE = 100
_IMMUTABLE_FIELDS = {"id", "created_at"}


def _decode(raw: bytes | str) -> str:
    return raw.decode() if isinstance(raw, bytes) else raw


class RedisSessionStore:
    """Durable, append-oriented storage for chat sessions."""

    def __init__(
        self,
        redis: Redis,
        config: SessionStoreConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self.config = config or SessionStoreConfig()
        self._clock = clock or time.time
        self._session_key = f"{self.config.key_prefix}:session"
        self._updated_key = f"{self.config.key_prefix}:session_updated"
        # entries live only while a caller holds or awaits the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._cleanup_task = PeriodicTask(
            "session-cleanup",
            self.config.cleanup_interval_seconds,
            self.cleanup,
        )

    # -- lifecycle --

    def start(self) -> None:
        """Start the periodic cleanup job."""
        self._cleanup_task.start()

    async def stop(self) -> None:
        await self._cleanup_task.stop()

    async def close(self) -> None:
        await self.stop()
        await self._redis.aclose()

    # -- write --

    async def create(
        self,
        session_id: str | None = None,
        *,
        context: dict[str, Any],
        variables: dict[str, Any] | None = None,
        messages: Sequence[ChatMessage] | None = None,
    ) -> Session:
        """Create and persist a new session.

        *context* carries ``user_id``, ``organisation_id`` and optionally
        ``chat_session_group_id``.
        """
        session_id = session_id or new_session_id()
        now = self._clock()
        session = Session(
            id=session_id,
            name=f"Chat {session_id}",
            user_id=context["user_id"],
            organisation_id=context["organisation_id"],
            chat_session_group_id=context.get("chat_session_group_id"),
            messages=list(messages or []),
            state=SessionState(variables=dict(variables or {})),
            created_at=now,
            updated_at=now,
            last_used_at=now,
            expires_at=now + self.config.max_age_seconds,
        )
        await self._write(session)
        logger.info("Created chat session %s", session_id)
        return session

    async def set(self, session_id: str, changes: dict[str, Any]) -> Session:
        """Apply a partial update to a stored session.

        A change of ``organisation_id`` is a security violation and is
        rejected, never merged.
        """
        async with self._lock(session_id):
            session = await self._read(session_id)
            if session is None:
                raise NotFoundError(f"Chat session {session_id} not found")

            new_org = changes.get("organisation_id")
            if "organisation_id" in changes and new_org != session.organisation_id:
                logger.error(
                    "Security violation: attempted to change organisation_id "
                    "of chat session %s from %s to %s",
                    session_id,
                    session.organisation_id,
                    new_org,
                )
                raise SecurityViolationError(
                    "Cannot change organisation ID for an existing chat session"
                )

            payload = session.model_dump()
            for field, value in changes.items():
                if field in _IMMUTABLE_FIELDS:
                    continue
                if isinstance(value, list):
                    value = [
                        item.model_dump() if isinstance(item, ChatMessage) else item
                        for item in value
                    ]
                elif isinstance(value, SessionState):
                    value = value.model_dump()
                payload[field] = value
            payload["updated_at"] = self._clock()
            updated = Session.model_validate(payload)
            await self._write(updated)
            logger.debug("Updated chat session %s fields=%s", session_id, sorted(changes))
            return updated

    async def append_messages(
        self,
        session_id: str,
        messages: Sequence[ChatMessage],
        *,
        variables: dict[str, Any] | None = None,
    ) -> Session:
        """Append *messages* (and merge *variables*) to an existing session."""
        async with self._lock(session_id):
            session = await self._read(session_id)
            if session is None:
                raise NotFoundError(f"Chat session {session_id} not found")
            session.messages.extend(messages)
            if variables:
                session.state.variables.update(variables)
            now = self._clock()
            session.updated_at = now
            session.last_used_at = now
            await self._write(session)
            return session

    async def update_message(
        self,
        session_id: str,
        message_id: str,
        patch: dict[str, Any],
        expected_organisation_id: str | None = None,
    ) -> ChatMessage | None:
        """Replace fields of one message, addressed by its ``meta.id``.

        Returns ``None`` when the session does not exist.  System messages
        and unknown message ids are rejected with ``NotFoundError``.
        """
        async with self._lock(session_id):
            session = await self._read(session_id)
            if session is None:
                return None

            if (
                expected_organisation_id is not None
                and session.organisation_id != expected_organisation_id
            ):
                logger.error(
                    "Security violation: message update in chat session %s "
                    "with mismatched organisation_id",
                    session_id,
                )
                raise SecurityViolationError(
                    "Cannot update message in a chat session from a different organisation"
                )

            index = session.find_message(message_id)
            if index is None or session.messages[index].role == MessageRole.system:
                raise NotFoundError(
                    f"Message {message_id} not found or is a system message"
                )

            merged = session.messages[index].model_dump()
            meta_patch = patch.get("meta") or {}
            merged.update({k: v for k, v in patch.items() if k not in ("meta", "role")})
            # the message id is its address and never changes
            merged["meta"].update({k: v for k, v in meta_patch.items() if k != "id"})
            updated = ChatMessage.model_validate(merged)
            session.messages[index] = updated
            session.updated_at = self._clock()
            await self._write(session)
            logger.info("Updated message %s in chat session %s", message_id, session_id)
            return updated

    async def drop(self, session_id: str) -> None:
        pipe = self._redis.pipeline()
        pipe.delete(f"{self._session_key}:{session_id}")
        pipe.zrem(self._updated_key, session_id)
        await pipe.execute()
        self._locks.pop(session_id, None)

    # -- read --

    async def get(self, session_id: str) -> Session | None:
        """Return the session (refreshing ``last_used_at``) or ``None``."""
        async with self._lock(session_id):
            session = await self._read(session_id)
            if session is None:
                return None
            session.last_used_at = self._clock()
            await self._write(session)
            return session

    async def exists(self, session_id: str) -> bool:
        return bool(await self._redis.exists(f"{self._session_key}:{session_id}"))

    async def history_for_user(
        self,
        user_id: str,
        *,
        organisation_id: str,
        since: float = 0.0,
    ) -> list[Session]:
        """Sessions of *user_id* in *organisation_id* updated after *since*, newest first."""
        ids = await self._redis.zrevrangebyscore(self._updated_key, "+inf", since)
        if not ids:
            return []

        decoded_ids = [_decode(raw_id) for raw_id in ids]
        pipe = self._redis.pipeline()
        for sid in decoded_ids:
            pipe.get(f"{self._session_key}:{sid}")
        raw_results = await pipe.execute()

        sessions: list[Session] = []
        for raw in raw_results:
            if raw is None:
                continue
            session = Session.model_validate_json(raw)
            if session.user_id == user_id and session.organisation_id == organisation_id:
                sessions.append(session)
        return sessions

    # -- housekeeping --

    async def cleanup(self) -> int:
        """Delete sessions not updated within the max age. Returns the count."""
        cutoff = self._clock() - self.config.max_age_seconds
        stale = await self._redis.zrangebyscore(self._updated_key, "-inf", cutoff)
        if not stale:
            return 0

        removed = 0
        for start in range(0, len(stale), _CLEAR_BATCH_SIZE):
            batch = [_decode(raw_id) for raw_id in stale[start : start + _CLEAR_BATCH_SIZE]]
            pipe = self._redis.pipeline()
            for sid in batch:
                pipe.delete(f"{self._session_key}:{sid}")
            pipe.zrem(self._updated_key, *batch)
            await pipe.execute()
            for sid in batch:
                self._locks.pop(sid, None)
            removed += len(batch)
        logger.info("Session cleanup removed %d stale session(s)", removed)
        return removed

    async def clear(self) -> None:
        """Remove every session and index (test helper)."""
        batch: list = []
        async for key in self._redis.scan_iter(match=f"{self.config.key_prefix}:*"):
            batch.append(key)
            if len(batch) >= _CLEAR_BATCH_SIZE:
                await self._redis.delete(*batch)
                batch.clear()
        if batch:
            await self._redis.delete(*batch)
        self._locks.clear()

    # -- internal --

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def _read(self, session_id: str) -> Session | None:
        data = await self._redis.get(f"{self._session_key}:{session_id}")
        if data is None:
            return None
        return Session.model_validate_json(data)

    async def _write(self, session: Session) -> None:
        pipe = self._redis.pipeline()
        pipe.set(
            f"{self._session_key}:{session.id}",
            session.model_dump_json(),
            ex=self.config.max_age_seconds,
        )
        pipe.zadd(self._updated_key, {session.id: session.updated_at})
        await pipe.execute()
