"""Tests for RouterState — watermarks, sessions and the group registry."""

from __future__ import annotations

import pytest
from conftest import make_group

from clawgate.db import (
    _init_test_database,
    get_all_registered_groups,
    get_all_sessions,
    get_router_state,
    set_router_state,
)
from clawgate.state import LAST_AGENT_TIMESTAMP_KEY, LAST_TIMESTAMP_KEY, RouterState


@pytest.fixture(autouse=True)
async def _setup_db():
    await _init_test_database()


class TestWatermarks:
    async def test_advance_global_persists(self):
        state = RouterState()
        await state.advance_global("2024-01-01T00:00:05+00:00")

        assert state.last_timestamp == "2024-01-01T00:00:05+00:00"
        assert await get_router_state(LAST_TIMESTAMP_KEY) == "2024-01-01T00:00:05+00:00"

    async def test_global_never_moves_backwards(self):
        state = RouterState()
        await state.advance_global("2024-01-01T00:00:05+00:00")
        await state.advance_global("2024-01-01T00:00:01+00:00")
        assert state.last_timestamp == "2024-01-01T00:00:05+00:00"

    async def test_agent_watermark_is_per_chat(self):
        state = RouterState()
        await state.advance_agent("a@g.us", "2024-01-01T00:00:05+00:00")

        assert state.agent_timestamp("a@g.us") == "2024-01-01T00:00:05+00:00"
        assert state.agent_timestamp("b@g.us") == ""

    async def test_agent_watermark_never_moves_backwards(self):
        state = RouterState()
        await state.advance_agent("a@g.us", "2024-01-01T00:00:05+00:00")
        await state.advance_agent("a@g.us", "2024-01-01T00:00:01+00:00")
        assert state.agent_timestamp("a@g.us") == "2024-01-01T00:00:05+00:00"


class TestLoad:
    async def test_roundtrip_through_database(self):
        state = RouterState()
        await state.advance_global("2024-01-01T00:00:05+00:00")
        await state.advance_agent("a@g.us", "2024-01-01T00:00:04+00:00")
        await state.set_session("main", "sess-1")
        await state.register_group("a@g.us", make_group("main"))

        loaded = await RouterState.load()
        assert loaded.last_timestamp == "2024-01-01T00:00:05+00:00"
        assert loaded.last_agent_timestamp == {"a@g.us": "2024-01-01T00:00:04+00:00"}
        assert loaded.sessions == {"main": "sess-1"}
        assert loaded.registered_groups["a@g.us"].folder == "main"

    async def test_corrupted_agent_timestamps_reset(self):
        await set_router_state(LAST_AGENT_TIMESTAMP_KEY, "{not json")
        loaded = await RouterState.load()
        assert loaded.last_agent_timestamp == {}

    async def test_empty_database(self):
        loaded = await RouterState.load()
        assert loaded.last_timestamp == ""
        assert loaded.registered_groups == {}


class TestGroups:
    async def test_group_for_folder(self):
        state = RouterState()
        await state.register_group("a@g.us", make_group("team"))

        assert state.group_for_folder("team")[0] == "a@g.us"
        assert state.group_for_folder("missing") is None

    async def test_register_group_persists(self):
        state = RouterState()
        await state.register_group("a@g.us", make_group("team", trigger="@bot"))

        stored = await get_all_registered_groups()
        assert stored["a@g.us"].trigger == "@bot"

    async def test_transient_group_is_not_persisted(self):
        state = RouterState()
        state.register_transient_group("email-main", make_group("email-main"))

        assert "email-main" in state.registered_groups
        assert await get_all_registered_groups() == {}

    async def test_set_session_persists(self):
        state = RouterState()
        await state.set_session("team", "s-9")
        assert state.session_for("team") == "s-9"
        assert await get_all_sessions() == {"team": "s-9"}
