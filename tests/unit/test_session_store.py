"""Unit tests for the Redis session store (fakeredis)."""

from __future__ import annotations

import pytest

from chatengine.config import SessionStoreConfig
from chatengine.errors import NotFoundError
from chatengine.errors import SecurityViolationError
from chatengine.sessions import create_chat_message
from chatengine.sessions import RedisSessionStore
from chatengine.sessions import SessionState

_CONTEXT = {"user_id": "user-1", "organisation_id": "org-1"}


class _Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make_store(redis_client, clock: _Clock | None = None, **config) -> RedisSessionStore:
    return RedisSessionStore(
        redis_client, SessionStoreConfig(**config), clock=clock or _Clock()
    )


def _conversation():
    return [
        create_chat_message("system", "Be helpful."),
        create_chat_message("user", "Hi"),
        create_chat_message("assistant", "Hello!", model="gpt-4o-mini"),
    ]


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------


class TestCreateAndGet:
    async def test_create_persists_session(self, redis_client):
        store = _make_store(redis_client)
        created = await store.create(
            "chat-1", context=_CONTEXT, variables={"lang": "en"}, messages=_conversation()
        )

        loaded = await store.get("chat-1")
        assert loaded is not None
        assert loaded.id == "chat-1"
        assert loaded.organisation_id == "org-1"
        assert loaded.state.variables == {"lang": "en"}
        assert [m.content for m in loaded.messages] == ["Be helpful.", "Hi", "Hello!"]
        assert loaded.expires_at == created.created_at + 48 * 3600

    async def test_create_generates_id(self, redis_client):
        store = _make_store(redis_client)
        created = await store.create(context=_CONTEXT)
        assert created.id
        assert await store.exists(created.id)

    async def test_get_unknown_returns_none(self, redis_client):
        store = _make_store(redis_client)
        assert await store.get("missing") is None
        assert await store.exists("missing") is False

    async def test_unknown_lookups_leave_no_locks(self, redis_client):
        store = _make_store(redis_client)
        for i in range(50):
            assert await store.get(f"missing-{i}") is None
            assert await store.update_message(f"missing-{i}", "m", {}) is None

        assert len(store._locks) == 0

    async def test_lock_released_after_use(self, redis_client):
        store = _make_store(redis_client)
        await store.create("chat-1", context=_CONTEXT)
        await store.get("chat-1")
        await store.append_messages("chat-1", [create_chat_message("user", "Hi")])

        assert "chat-1" not in store._locks

    async def test_get_refreshes_last_used(self, redis_client):
        clock = _Clock()
        store = _make_store(redis_client, clock)
        await store.create("chat-1", context=_CONTEXT)

        clock.now += 60
        loaded = await store.get("chat-1")

        assert loaded.last_used_at == clock.now
        assert loaded.updated_at == clock.now - 60

    async def test_message_ids_survive_round_trip(self, redis_client):
        store = _make_store(redis_client)
        messages = _conversation()
        await store.create("chat-1", context=_CONTEXT, messages=messages)

        loaded = await store.get("chat-1")

        assert [m.meta.id for m in loaded.messages] == [m.meta.id for m in messages]
        assert loaded.messages[1].meta.human is True


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------


class TestSet:
    async def test_partial_update(self, redis_client):
        clock = _Clock()
        store = _make_store(redis_client, clock)
        await store.create("chat-1", context=_CONTEXT)

        clock.now += 5
        updated = await store.set(
            "chat-1", {"name": "Renamed", "state": SessionState(variables={"a": 1})}
        )

        assert updated.name == "Renamed"
        assert updated.state.variables == {"a": 1}
        assert updated.updated_at == clock.now

    async def test_same_organisation_is_accepted(self, redis_client):
        store = _make_store(redis_client)
        await store.create("chat-1", context=_CONTEXT)
        updated = await store.set("chat-1", {"organisation_id": "org-1", "name": "x"})
        assert updated.name == "x"

    @pytest.mark.parametrize("new_org", ["org-2", None])
    async def test_organisation_change_rejected(self, redis_client, new_org):
        store = _make_store(redis_client)
        await store.create("chat-1", context=_CONTEXT)

        with pytest.raises(SecurityViolationError):
            await store.set("chat-1", {"organisation_id": new_org})

        assert (await store.get("chat-1")).organisation_id == "org-1"

    async def test_immutable_fields_ignored(self, redis_client):
        store = _make_store(redis_client)
        created = await store.create("chat-1", context=_CONTEXT)
        updated = await store.set("chat-1", {"id": "other", "created_at": 1.0})
        assert updated.id == "chat-1"
        assert updated.created_at == created.created_at

    async def test_missing_session_raises(self, redis_client):
        store = _make_store(redis_client)
        with pytest.raises(NotFoundError):
            await store.set("missing", {"name": "x"})


class TestAppendMessages:
    async def test_appends_in_order(self, redis_client):
        store = _make_store(redis_client)
        await store.create("chat-1", context=_CONTEXT, messages=_conversation())

        session = await store.append_messages(
            "chat-1",
            [create_chat_message("user", "Again"), create_chat_message("assistant", "Sure")],
            variables={"user_input": "Again"},
        )

        assert len(session.messages) == 5
        assert session.messages[-1].content == "Sure"
        assert session.state.variables["user_input"] == "Again"

    async def test_missing_session_raises(self, redis_client):
        store = _make_store(redis_client)
        with pytest.raises(NotFoundError):
            await store.append_messages("missing", [create_chat_message("user", "x")])


class TestUpdateMessage:
    async def test_updates_content_and_merges_meta(self, redis_client):
        store = _make_store(redis_client)
        messages = _conversation()
        await store.create("chat-1", context=_CONTEXT, messages=messages)
        target = messages[2]

        updated = await store.update_message(
            "chat-1",
            target.meta.id,
            {"content": "Edited", "meta": {"visible": False, "id": "hijack"}},
        )

        assert updated.content == "Edited"
        assert updated.meta.id == target.meta.id
        assert updated.meta.visible is False
        assert updated.meta.model == "gpt-4o-mini"
        loaded = await store.get("chat-1")
        assert loaded.messages[2].content == "Edited"

    async def test_role_cannot_change(self, redis_client):
        store = _make_store(redis_client)
        messages = _conversation()
        await store.create("chat-1", context=_CONTEXT, messages=messages)

        updated = await store.update_message(
            "chat-1", messages[1].meta.id, {"role": "system", "content": "x"}
        )

        assert updated.role.value == "user"

    async def test_missing_session_returns_none(self, redis_client):
        store = _make_store(redis_client)
        assert await store.update_message("missing", "m1", {"content": "x"}) is None

    async def test_system_message_rejected(self, redis_client):
        store = _make_store(redis_client)
        messages = _conversation()
        await store.create("chat-1", context=_CONTEXT, messages=messages)

        with pytest.raises(NotFoundError):
            await store.update_message("chat-1", messages[0].meta.id, {"content": "x"})

    async def test_unknown_message_rejected(self, redis_client):
        store = _make_store(redis_client)
        await store.create("chat-1", context=_CONTEXT, messages=_conversation())

        with pytest.raises(NotFoundError):
            await store.update_message("chat-1", "nope", {"content": "x"})

    async def test_organisation_mismatch_rejected(self, redis_client):
        store = _make_store(redis_client)
        messages = _conversation()
        await store.create("chat-1", context=_CONTEXT, messages=messages)

        with pytest.raises(SecurityViolationError):
            await store.update_message(
                "chat-1",
                messages[1].meta.id,
                {"content": "x"},
                expected_organisation_id="org-2",
            )


# ---------------------------------------------------------------------------
# Listing / housekeeping
# ---------------------------------------------------------------------------


class TestHistoryForUser:
    async def test_filters_by_user_and_organisation(self, redis_client):
        clock = _Clock()
        store = _make_store(redis_client, clock)
        await store.create("a", context=_CONTEXT)
        clock.now += 10
        await store.create("b", context=_CONTEXT)
        await store.create("c", context={"user_id": "user-2", "organisation_id": "org-1"})
        await store.create("d", context={"user_id": "user-1", "organisation_id": "org-2"})

        sessions = await store.history_for_user("user-1", organisation_id="org-1")

        assert [s.id for s in sessions] == ["b", "a"]

    async def test_since_excludes_older(self, redis_client):
        clock = _Clock()
        store = _make_store(redis_client, clock)
        await store.create("old", context=_CONTEXT)
        clock.now += 100
        await store.create("new", context=_CONTEXT)

        sessions = await store.history_for_user(
            "user-1", organisation_id="org-1", since=clock.now - 1
        )

        assert [s.id for s in sessions] == ["new"]

    async def test_empty(self, redis_client):
        store = _make_store(redis_client)
        assert await store.history_for_user("user-1", organisation_id="org-1") == []


class TestCleanup:
    async def test_removes_only_stale_sessions(self, redis_client):
        clock = _Clock()
        store = _make_store(redis_client, clock, max_age_hours=1.0)
        await store.create("stale", context=_CONTEXT)
        clock.now += 1800
        await store.create("fresh", context=_CONTEXT)

        clock.now += 1801
        removed = await store.cleanup()

        assert removed == 1
        assert await store.exists("stale") is False
        assert await store.exists("fresh") is True

    async def test_nothing_to_remove(self, redis_client):
        store = _make_store(redis_client)
        await store.create("chat-1", context=_CONTEXT)
        assert await store.cleanup() == 0


class TestDrop:
    async def test_drop_removes_session_and_index(self, redis_client):
        store = _make_store(redis_client)
        await store.create("chat-1", context=_CONTEXT)

        await store.drop("chat-1")

        assert await store.get("chat-1") is None
        assert await store.history_for_user("user-1", organisation_id="org-1") == []

    async def test_clear_removes_everything(self, redis_client):
        store = _make_store(redis_client)
        await store.create("a", context=_CONTEXT)
        await store.create("b", context=_CONTEXT)

        await store.clear()

        assert await store.exists("a") is False
        assert await store.exists("b") is False
