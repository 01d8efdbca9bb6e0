"""Processed-email dedup records.

Dedup is by Gmail message id, so re-polling after a crash is idempotent:
an email is handled again only while ``responded`` is still false.
"""

from __future__ import annotations

from datetime import UTC, datetime

from clawgate.db._connection import _get_db
from clawgate.types import ProcessedEmail


def _row_to_email(row) -> ProcessedEmail:
    return ProcessedEmail(
        id=row["id"],
        thread_id=row["thread_id"],
        sender=row["sender"],
        subject=row["subject"] or "",
        processed_at=row["processed_at"],
        responded=bool(row["responded"]),
        pending_reply=row["pending_reply"],
    )


async def get_processed_email(email_id: str) -> ProcessedEmail | None:
    db = _get_db()
    cursor = await db.execute("SELECT * FROM processed_emails WHERE id = ?", (email_id,))
    row = await cursor.fetchone()
    return _row_to_email(row) if row else None


async def is_email_processed(email_id: str) -> bool:
    """True once a reply for this email has been delivered."""
    record = await get_processed_email(email_id)
    return record is not None and record.responded


async def mark_email_processed(
    email_id: str, thread_id: str, sender: str, subject: str
) -> None:
    """Record that an email was picked up. Keeps an existing responded flag."""
    db = _get_db()
    await db.execute(
        """
        INSERT INTO processed_emails (id, thread_id, sender, subject, processed_at, responded)
        VALUES (?, ?, ?, ?, ?, 0)
        ON CONFLICT(id) DO UPDATE SET processed_at = excluded.processed_at
        """,
        (email_id, thread_id, sender, subject, datetime.now(UTC).isoformat()),
    )
    await db.commit()


async def set_pending_reply(email_id: str, reply: str) -> None:
    """Hold an undelivered agent reply so the next poll can resend it."""
    db = _get_db()
    await db.execute(
        "UPDATE processed_emails SET pending_reply = ? WHERE id = ?", (reply, email_id)
    )
    await db.commit()


async def mark_email_responded(email_id: str) -> None:
    db = _get_db()
    await db.execute(
        "UPDATE processed_emails SET responded = 1, pending_reply = NULL WHERE id = ?",
        (email_id,),
    )
    await db.commit()


async def get_unresponded_emails() -> list[ProcessedEmail]:
    """Emails with an agent reply that still has to be delivered."""
    db = _get_db()
    cursor = await db.execute(
        """
        SELECT * FROM processed_emails
        WHERE responded = 0 AND pending_reply IS NOT NULL
        ORDER BY processed_at
        """
    )
    rows = await cursor.fetchall()
    return [_row_to_email(row) for row in rows]
