"""Tests for trigger matching and IPC authorization helpers."""

from __future__ import annotations

from conftest import make_group

from clawgate.chat.authorization import (
    can_act_on,
    eligible_group,
    folder_for_jid,
    is_privileged_folder,
    matches_trigger,
    resolve_chat_jid,
)
from clawgate.types import InboundMessage


def _msg(chat_jid: str, content: str) -> InboundMessage:
    return InboundMessage(
        id="1",
        chat_jid=chat_jid,
        sender="u",
        sender_name="U",
        content=content,
        timestamp="2024-01-01T00:00:00+00:00",
    )


class TestMatchesTrigger:
    def test_empty_trigger_matches_everything(self):
        assert matches_trigger(make_group("main"), "anything at all")

    def test_prefix_match(self):
        assert matches_trigger(make_group("g", trigger="@bot"), "@bot hello")

    def test_case_insensitive(self):
        assert matches_trigger(make_group("g", trigger="@Bot"), "@BOT hello")

    def test_leading_whitespace_ignored(self):
        assert matches_trigger(make_group("g", trigger="@bot"), "   @bot hi")

    def test_no_match_in_middle(self):
        assert not matches_trigger(make_group("g", trigger="@bot"), "hello @bot")

    def test_requires_word_boundary(self):
        assert not matches_trigger(make_group("g", trigger="@bot"), "@botany is fun")

    def test_trigger_alone(self):
        assert matches_trigger(make_group("g", trigger="@bot"), "@bot")

    def test_regex_characters_are_literal(self):
        assert not matches_trigger(make_group("g", trigger="a.c"), "abc hello")
        assert matches_trigger(make_group("g", trigger="a.c"), "a.c hello")


class TestEligibleGroup:
    def test_unregistered_chat(self):
        assert eligible_group({}, _msg("x@g.us", "hi")) is None

    def test_registered_but_untriggered(self):
        groups = {"g@g.us": make_group("g", trigger="@bot")}
        assert eligible_group(groups, _msg("g@g.us", "hi")) is None

    def test_registered_and_triggered(self):
        groups = {"g@g.us": make_group("g", trigger="@bot")}
        assert eligible_group(groups, _msg("g@g.us", "@bot hi")).folder == "g"


class TestAuthorization:
    def test_privileged_folder(self):
        assert is_privileged_folder("main", "main")
        assert not is_privileged_folder("team", "main")

    def test_own_group_allowed(self):
        assert can_act_on("team", "team", False)

    def test_other_group_denied(self):
        assert not can_act_on("team", "other", False)

    def test_privileged_can_act_on_anyone(self):
        assert can_act_on("main", "other", True)

    def test_folder_and_jid_lookups(self):
        groups = {"a@g.us": make_group("alpha"), "b@g.us": make_group("beta")}
        assert folder_for_jid(groups, "b@g.us") == "beta"
        assert folder_for_jid(groups, "c@g.us") is None
        assert resolve_chat_jid(groups, "alpha") == "a@g.us"
        assert resolve_chat_jid(groups, "gamma") is None
