"""Channel normalizer — platform events in, ``InboundMessage`` out.

Adapters pull the raw fields out of their SDK objects and hand them to the
methods here. Every method records chat metadata (identity + last-seen
timestamp) before deciding whether the event is worth delivering, so chat
discovery sees unregistered chats too. Ignored events (own echoes, status
broadcasts, bot-authored or edited messages) return ``None``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from clawgate import db
from clawgate.logger import logger
from clawgate.types import InboundMessage

MetadataRecorder = Callable[[str, str, str | None], Awaitable[None]]

SLACK_PREFIX = "slack:"
EMAIL_SENDER = "email"

# Slack message subtypes that are not new user content
_IGNORED_SLACK_SUBTYPES = frozenset(
    {"message_changed", "message_deleted", "bot_message", "channel_join", "channel_leave"}
)


class AliasTable:
    """Process-lifetime map from alternate self identifiers to canonical ones.

    WhatsApp addresses the account owner either by phone (``123@s.whatsapp.net``)
    or by a linked-identity alias (``987:12@lid``). The mapping is learned at
    connection time; unknown aliases pass through unchanged.
    """

    def __init__(self) -> None:
        self._aliases: dict[str, str] = {}

    def learn(self, alias_user: str, canonical_jid: str) -> None:
        self._aliases[alias_user] = canonical_jid
        logger.debug("Alias learned", alias_user=alias_user, canonical_jid=canonical_jid)

    def translate(self, jid: str) -> str:
        if not jid.endswith("@lid"):
            return jid
        user = jid.split("@", 1)[0].split(":", 1)[0]
        return self._aliases.get(user, jid)

    def __len__(self) -> int:
        return len(self._aliases)


def epoch_to_iso(ts: float) -> str:
    """Convert epoch seconds (or milliseconds) to an ISO-8601 UTC string."""
    if ts > 1e10:  # milliseconds → seconds
        ts = ts / 1000
    return datetime.fromtimestamp(ts, tz=UTC).isoformat()


def slack_jid(channel_id: str) -> str:
    return f"{SLACK_PREFIX}{channel_id}"


class ChannelNormalizer:
    def __init__(
        self,
        assistant_name: str,
        aliases: AliasTable | None = None,
        record_metadata: MetadataRecorder | None = None,
    ) -> None:
        self._assistant_name = assistant_name
        self.aliases = aliases or AliasTable()
        self._record_metadata = record_metadata or db.store_chat_metadata

    async def _record(self, chat_jid: str, timestamp: str, name: str | None = None) -> None:
        try:
            await self._record_metadata(chat_jid, timestamp, name)
        except Exception:
            logger.exception("Failed to store chat metadata", chat_jid=chat_jid)

    # --- Persistent-socket messaging (WhatsApp) ---

    async def normalize_socket_event(
        self,
        *,
        message_id: str,
        chat_jid: str,
        sender_jid: str,
        sender_name: str,
        content: str,
        timestamp: float,
        is_from_me: bool,
    ) -> InboundMessage | None:
        if not chat_jid or chat_jid == "status@broadcast":
            return None

        chat_jid = self.aliases.translate(chat_jid)
        iso = epoch_to_iso(timestamp)
        await self._record(chat_jid, iso)

        # Our own replies echo back on the socket; they're already stored by dispatch
        if is_from_me and content.startswith(f"{self._assistant_name}:"):
            return None

        return InboundMessage(
            id=message_id,
            chat_jid=chat_jid,
            sender=sender_jid,
            sender_name=sender_name or sender_jid.split("@")[0],
            content=content,
            timestamp=iso,
            is_from_me=is_from_me,
        )

    # --- Gateway chat service (Slack) ---

    async def normalize_gateway_event(
        self,
        *,
        channel_id: str,
        user_id: str | None,
        text: str,
        ts: str,
        is_direct: bool,
        sender_name: str | None = None,
        bot_id: str | None = None,
        subtype: str | None = None,
        channel_name: str | None = None,
    ) -> InboundMessage | None:
        if not channel_id:
            return None

        # DMs are keyed by the user so the identity survives Slack reopening the IM
        jid = slack_jid(user_id if is_direct and user_id else channel_id)
        iso = epoch_to_iso(float(ts))
        await self._record(jid, iso, channel_name)

        if bot_id or subtype in _IGNORED_SLACK_SUBTYPES or not user_id:
            return None

        return InboundMessage(
            id=ts,
            chat_jid=jid,
            sender=user_id,
            sender_name=sender_name or user_id,
            content=text or "",
            timestamp=iso,
        )

    # --- Polled mailbox (Gmail) ---

    async def normalize_email(
        self, *, context_key: str, email_id: str, sender: str, body: str, date: str | None
    ) -> InboundMessage:
        """Emails are always delivered; the context key is the chat identity."""
        iso = datetime.now(UTC).isoformat()
        if date:
            try:
                iso = datetime.fromisoformat(date).astimezone(UTC).isoformat()
            except ValueError:
                pass  # RFC 2822 dates from Gmail fall back to receipt time
        await self._record(context_key, iso, f"Email: {sender}")
        return InboundMessage(
            id=email_id,
            chat_jid=context_key,
            sender=sender,
            sender_name=sender,
            content=body,
            timestamp=iso,
        )
