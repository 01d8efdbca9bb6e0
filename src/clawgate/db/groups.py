"""Registered groups."""

from __future__ import annotations

import json

from clawgate.db._connection import _get_db
from clawgate.logger import logger
from clawgate.types import ContainerConfig, RegisteredGroup


def _row_to_group(row) -> RegisteredGroup:
    container_config = None
    if row["container_config"]:
        try:
            container_config = ContainerConfig.from_dict(json.loads(row["container_config"]))
        except (TypeError, json.JSONDecodeError) as exc:
            logger.warning(
                "Failed to parse container config, using defaults",
                folder=row["folder"],
                err=str(exc),
            )
    return RegisteredGroup(
        name=row["name"],
        folder=row["folder"],
        trigger=row["trigger_pattern"],
        added_at=row["added_at"],
        container_config=container_config,
    )


async def set_registered_group(jid: str, group: RegisteredGroup) -> None:
    """Register or update a group keyed by chat identity."""
    db = _get_db()
    await db.execute(
        """
        INSERT OR REPLACE INTO registered_groups
            (jid, name, folder, trigger_pattern, added_at, container_config)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            jid,
            group.name,
            group.folder,
            group.trigger,
            group.added_at,
            json.dumps(group.container_config.to_dict()) if group.container_config else None,
        ),
    )
    await db.commit()


async def get_all_registered_groups() -> dict[str, RegisteredGroup]:
    """Get all registered groups as a dict of jid -> RegisteredGroup."""
    db = _get_db()
    cursor = await db.execute("SELECT * FROM registered_groups")
    rows = await cursor.fetchall()
    return {row["jid"]: _row_to_group(row) for row in rows}
