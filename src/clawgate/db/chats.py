"""Chat metadata operations (discovery of chats, registered or not)."""

from __future__ import annotations

from datetime import UTC, datetime

from clawgate.db._connection import _get_db
from clawgate.types import ChatInfo

_GROUP_SYNC_KEY = "__group_sync__"


async def store_chat_metadata(chat_jid: str, timestamp: str, name: str | None = None) -> None:
    """Store chat metadata only (no message content).

    The last-seen timestamp never moves backwards.
    """
    db = _get_db()
    if name:
        await db.execute(
            """
            INSERT INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)
            ON CONFLICT(jid) DO UPDATE SET
                name = excluded.name,
                last_message_time = MAX(last_message_time, excluded.last_message_time)
            """,
            (chat_jid, name, timestamp),
        )
    else:
        await db.execute(
            """
            INSERT INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)
            ON CONFLICT(jid) DO UPDATE SET
                last_message_time = MAX(last_message_time, excluded.last_message_time)
            """,
            (chat_jid, chat_jid, timestamp),
        )
    await db.commit()


async def update_chat_name(chat_jid: str, name: str) -> None:
    """Update chat name without changing timestamp for existing chats."""
    db = _get_db()
    now = datetime.now(UTC).isoformat()
    await db.execute(
        """
        INSERT INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)
        ON CONFLICT(jid) DO UPDATE SET name = excluded.name
        """,
        (chat_jid, name, now),
    )
    await db.commit()


async def get_all_chats() -> list[ChatInfo]:
    """Get all known chats, ordered by most recent activity."""
    db = _get_db()
    cursor = await db.execute(
        "SELECT jid, name, last_message_time FROM chats WHERE jid != ? "
        "ORDER BY last_message_time DESC",
        (_GROUP_SYNC_KEY,),
    )
    rows = await cursor.fetchall()
    return [
        ChatInfo(jid=row["jid"], name=row["name"], last_message_time=row["last_message_time"])
        for row in rows
    ]


async def get_last_group_sync() -> str | None:
    """Get timestamp of last group metadata sync."""
    db = _get_db()
    cursor = await db.execute(
        "SELECT last_message_time FROM chats WHERE jid = ?", (_GROUP_SYNC_KEY,)
    )
    row = await cursor.fetchone()
    return row["last_message_time"] if row else None


async def set_last_group_sync() -> None:
    """Record that group metadata was synced."""
    db = _get_db()
    now = datetime.now(UTC).isoformat()
    await db.execute(
        "INSERT OR REPLACE INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)",
        (_GROUP_SYNC_KEY, _GROUP_SYNC_KEY, now),
    )
    await db.commit()
