"""Prompt formatting and outbound text shaping."""

from __future__ import annotations

import re

from clawgate.types import InboundMessage

_INTERNAL_TAG_RE = re.compile(r"<internal>[\s\S]*?</internal>")


def escape_xml(s: str) -> str:
    """Escape XML special characters."""
    return s.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace('"', "&quot;")


def format_messages(messages: list[InboundMessage]) -> str:
    """Format messages as the XML block the agent receives as its prompt."""
    lines = [
        f'<message sender="{escape_xml(m.sender_name)}" time="{m.timestamp}">'
        f"{escape_xml(m.content)}</message>"
        for m in messages
    ]
    return f"<messages>\n{chr(10).join(lines)}\n</messages>"


def format_email_prompt(sender: str, subject: str, body: str) -> str:
    return (
        "<email>\n"
        f"<from>{escape_xml(sender)}</from>\n"
        f"<subject>{escape_xml(subject)}</subject>\n"
        f"<body>{escape_xml(body)}</body>\n"
        "</email>\n\n"
        "Respond to this email. Your response will be sent as an email reply."
    )


def strip_internal_tags(text: str) -> str:
    """Remove <internal>...</internal> blocks and trim whitespace."""
    return _INTERNAL_TAG_RE.sub("", text).strip()


def split_text(text: str, max_len: int) -> list[str]:
    """Split text into chunks of at most ``max_len`` characters.

    Prefers the last newline inside the window, then the last space, and
    only hard-splits when the window has neither. Separators at a split
    point are dropped.
    """
    if max_len <= 0:
        raise ValueError("max_len must be positive")
    chunks: list[str] = []
    remaining = text
    while len(remaining) > max_len:
        window = remaining[:max_len]
        cut = window.rfind("\n")
        if cut <= 0:
            cut = window.rfind(" ")
        if cut <= 0:
            chunks.append(window)
            remaining = remaining[max_len:]
            continue
        chunks.append(remaining[:cut])
        remaining = remaining[cut + 1 :]
    if remaining:
        chunks.append(remaining)
    return chunks
