"""Tests for prompt formatting and outbound text shaping."""

from __future__ import annotations

import pytest

from clawgate.chat.formatter import (
    escape_xml,
    format_email_prompt,
    format_messages,
    split_text,
    strip_internal_tags,
)


class TestEscapeXml:
    def test_escapes_special_characters(self):
        assert escape_xml('a & b < c > d "e"') == "a &amp; b &lt; c &gt; d &quot;e&quot;"

    def test_ampersand_escaped_first(self):
        assert escape_xml("<") == "&lt;"


class TestFormatMessages:
    def test_wraps_each_message(self, make_msg):
        text = format_messages(
            [
                make_msg(sender_name="Alice", content="hi", timestamp="T1"),
                make_msg(id="2", sender_name="Bob", content="yo", timestamp="T2"),
            ]
        )
        assert text == (
            "<messages>\n"
            '<message sender="Alice" time="T1">hi</message>\n'
            '<message sender="Bob" time="T2">yo</message>\n'
            "</messages>"
        )

    def test_escapes_content_and_sender(self, make_msg):
        text = format_messages([make_msg(sender_name='A "B"', content="<script>")])
        assert 'sender="A &quot;B&quot;"' in text
        assert "&lt;script&gt;" in text


class TestFormatEmailPrompt:
    def test_contains_fields(self):
        prompt = format_email_prompt("Jane <jane@example.com>", "Hello", "Body & more")
        assert "<from>Jane &lt;jane@example.com&gt;</from>" in prompt
        assert "<subject>Hello</subject>" in prompt
        assert "<body>Body &amp; more</body>" in prompt


class TestStripInternalTags:
    def test_removes_blocks(self):
        assert strip_internal_tags("a <internal>secret</internal> b") == "a  b"

    def test_multiline_block(self):
        assert strip_internal_tags("<internal>\nline1\nline2\n</internal>\nvisible") == "visible"

    def test_only_internal_becomes_empty(self):
        assert strip_internal_tags("  <internal>x</internal>  ") == ""

    def test_multiple_blocks_non_greedy(self):
        assert strip_internal_tags("<internal>a</internal>keep<internal>b</internal>") == "keep"


class TestSplitText:
    def test_short_text_single_chunk(self):
        assert split_text("hello", 10) == ["hello"]

    def test_prefers_newline(self):
        assert split_text("aaaa\nbbbb cc", 9) == ["aaaa", "bbbb cc"]

    def test_falls_back_to_space(self):
        assert split_text("aaa bbb ccc", 7) == ["aaa", "bbb ccc"]

    def test_hard_split_without_separators(self):
        assert split_text("abcdefghij", 4) == ["abcd", "efgh", "ij"]

    def test_every_chunk_within_limit(self):
        text = " ".join(f"word{i}" for i in range(500))
        chunks = split_text(text, 50)
        assert all(len(c) <= 50 for c in chunks)
        assert " ".join(chunks) == text

    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            split_text("x", 0)
