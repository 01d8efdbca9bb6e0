"""Router state — the in-memory mirror of everything the router must remember.

One ``RouterState`` is built at startup, loaded from the database and then
injected into every component that needs it (router, IPC handlers, email
channel, scheduler). Each mutating method persists immediately, so the
flush points are explicit: the global watermark after every decided
message, the per-chat agent watermark after every successful agent turn,
sessions whenever the agent hands back a new token, and groups on
registration.

Watermarks are ISO-8601 strings compared lexicographically, the same way
SQLite compares them in ``get_new_messages``. They never move backwards.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from clawgate import db
from clawgate.logger import logger
from clawgate.types import RegisteredGroup

LAST_TIMESTAMP_KEY = "last_timestamp"
LAST_AGENT_TIMESTAMP_KEY = "last_agent_timestamp"


@dataclass
class RouterState:
    last_timestamp: str = ""
    last_agent_timestamp: dict[str, str] = field(default_factory=dict)
    sessions: dict[str, str] = field(default_factory=dict)
    registered_groups: dict[str, RegisteredGroup] = field(default_factory=dict)

    # --- Load ---

    @classmethod
    async def load(cls) -> RouterState:
        state = cls()
        state.last_timestamp = await db.get_router_state(LAST_TIMESTAMP_KEY) or ""
        raw = await db.get_router_state(LAST_AGENT_TIMESTAMP_KEY)
        try:
            state.last_agent_timestamp = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            logger.warning("Corrupted last_agent_timestamp in DB, resetting")
            state.last_agent_timestamp = {}
        state.sessions = await db.get_all_sessions()
        state.registered_groups = await db.get_all_registered_groups()
        logger.info("State loaded", group_count=len(state.registered_groups))
        return state

    # --- Watermarks ---

    async def advance_global(self, timestamp: str) -> None:
        """Move the global watermark forward and persist it."""
        if timestamp <= self.last_timestamp:
            return
        self.last_timestamp = timestamp
        await db.set_router_state(LAST_TIMESTAMP_KEY, timestamp)

    def agent_timestamp(self, chat_jid: str) -> str:
        return self.last_agent_timestamp.get(chat_jid, "")

    async def advance_agent(self, chat_jid: str, timestamp: str) -> None:
        """Move one chat's agent watermark forward and persist the whole map."""
        if timestamp <= self.agent_timestamp(chat_jid):
            return
        self.last_agent_timestamp[chat_jid] = timestamp
        await db.set_router_state(
            LAST_AGENT_TIMESTAMP_KEY, json.dumps(self.last_agent_timestamp)
        )

    # --- Sessions ---

    def session_for(self, group_folder: str) -> str | None:
        return self.sessions.get(group_folder)

    async def set_session(self, group_folder: str, session_id: str) -> None:
        self.sessions[group_folder] = session_id
        await db.set_session(group_folder, session_id)

    # --- Groups ---

    def group_for_folder(self, folder: str) -> tuple[str, RegisteredGroup] | None:
        for jid, group in self.registered_groups.items():
            if group.folder == folder:
                return jid, group
        return None

    async def register_group(self, jid: str, group: RegisteredGroup) -> None:
        """Add or replace a registered group and persist it."""
        self.registered_groups[jid] = group
        await db.set_registered_group(jid, group)
        logger.info("Group registered", jid=jid, name=group.name, folder=group.folder)

    def register_transient_group(self, jid: str, group: RegisteredGroup) -> None:
        """Register for this process only. Email contexts are rebuilt on every poll."""
        if jid not in self.registered_groups:
            logger.info("Transient group registered", jid=jid, folder=group.folder)
        self.registered_groups[jid] = group
