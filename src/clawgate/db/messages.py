"""Message storage and retrieval."""

from __future__ import annotations

from clawgate.db._connection import _get_db
from clawgate.types import InboundMessage


def _row_to_message(row) -> InboundMessage:
    return InboundMessage(
        id=row["id"],
        chat_jid=row["chat_jid"],
        sender=row["sender"],
        sender_name=row["sender_name"],
        content=row["content"],
        timestamp=row["timestamp"],
        is_from_me=bool(row["is_from_me"]),
    )


def _echo_prefix(assistant_name: str) -> tuple[int, str]:
    prefix = f"{assistant_name}:"
    return len(prefix), prefix


async def store_message(msg: InboundMessage) -> None:
    """Store a message with full content. Re-delivery of the same id overwrites."""
    db = _get_db()
    await db.execute(
        "INSERT OR REPLACE INTO messages "
        "(id, chat_jid, sender, sender_name, content, timestamp, is_from_me) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        (
            msg.id,
            msg.chat_jid,
            msg.sender,
            msg.sender_name,
            msg.content,
            msg.timestamp,
            1 if msg.is_from_me else 0,
        ),
    )
    await db.commit()


async def get_new_messages(
    jids: list[str], last_timestamp: str, assistant_name: str, limit: int = 100
) -> list[InboundMessage]:
    """Get messages across chats newer than the watermark, oldest first.

    The assistant's own echoes (``"<assistant_name>:"`` prefix) are left out.
    Other messages sent from the owner's account are kept.
    """
    if not jids:
        return []

    db = _get_db()
    placeholders = ",".join("?" for _ in jids)
    sql = f"""
        SELECT id, chat_jid, sender, sender_name, content, timestamp, is_from_me
        FROM messages
        WHERE timestamp > ? AND chat_jid IN ({placeholders})
          AND substr(content, 1, ?) != ?
        ORDER BY timestamp
        LIMIT ?
    """
    cursor = await db.execute(sql, [last_timestamp, *jids, *_echo_prefix(assistant_name), limit])
    rows = await cursor.fetchall()
    return [_row_to_message(row) for row in rows]


async def get_messages_since(
    chat_jid: str, since_timestamp: str, assistant_name: str
) -> list[InboundMessage]:
    """Get one chat's messages after a timestamp, oldest first, minus assistant echoes."""
    db = _get_db()
    cursor = await db.execute(
        """
        SELECT id, chat_jid, sender, sender_name, content, timestamp, is_from_me
        FROM messages
        WHERE chat_jid = ? AND timestamp > ? AND substr(content, 1, ?) != ?
        ORDER BY timestamp
        """,
        (chat_jid, since_timestamp, *_echo_prefix(assistant_name)),
    )
    rows = await cursor.fetchall()
    return [_row_to_message(row) for row in rows]
