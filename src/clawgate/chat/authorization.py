"""Authorization and trigger checks.

Everything here is a pure function of registry state plus the identity the
host itself observed (the chat a message arrived on, or the IPC directory a
command was read from). Identity claims inside payloads are never consulted.
"""

from __future__ import annotations

import re
from functools import lru_cache

from clawgate.types import InboundMessage, RegisteredGroup


@lru_cache(maxsize=256)
def _trigger_regex(trigger: str) -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(trigger)}\b", re.IGNORECASE)


def matches_trigger(group: RegisteredGroup, body: str) -> bool:
    """Empty trigger auto-responds; otherwise a case-insensitive prefix match.

    The match must end on a word boundary, so ``@bot`` does not fire on
    ``@botany``.
    """
    if not group.trigger:
        return True
    return _trigger_regex(group.trigger.strip()).search(body.strip()) is not None


def eligible_group(
    groups: dict[str, RegisteredGroup], msg: InboundMessage
) -> RegisteredGroup | None:
    """Return the group a message may invoke the agent for, or None."""
    group = groups.get(msg.chat_jid)
    if group is None or not matches_trigger(group, msg.content):
        return None
    return group


def is_privileged_folder(folder: str, main_folder: str) -> bool:
    return folder == main_folder


def can_act_on(source_folder: str, target_folder: str, is_privileged: bool) -> bool:
    """An IPC source may act on its own group, or on any group if privileged."""
    return is_privileged or source_folder == target_folder


def folder_for_jid(groups: dict[str, RegisteredGroup], jid: str) -> str | None:
    group = groups.get(jid)
    return group.folder if group else None


def resolve_chat_jid(groups: dict[str, RegisteredGroup], folder: str) -> str | None:
    """The registry's own chat identity for a folder."""
    for jid, group in groups.items():
        if group.folder == folder:
            return jid
    return None
