from __future__ import annotations

from datetime import datetime

import pytest

from adapters.notification_formatting import DIVIDER, escape_md, format_notification

SENT_AT = datetime(2024, 1, 1, 9, 30).astimezone()


def test_markdown_escapes_title_and_body() -> None:
    message = format_notification("Doc *changed*", "Modified by: a_b", "markdown", sent_at=SENT_AT)

    lines = message.splitlines()
    assert lines[0] == "[09:30:00 01-01-2024]"
    assert lines[1] == "**Doc \\*changed\\***"
    assert lines[2] == DIVIDER
    assert "Modified by: a\\_b" in lines
    assert lines[-1] == DIVIDER


def test_html_escapes_markup() -> None:
    message = format_notification("Q&A <notes>", "x < y", "html", sent_at=SENT_AT)

    assert "<b>Q&amp;A &lt;notes&gt;</b>" in message
    assert "x &lt; y" in message


def test_unknown_mode_is_rejected() -> None:
    with pytest.raises(ValueError):
        format_notification("t", "c", "plain")


def test_escape_md_leaves_plain_text_alone() -> None:
    assert escape_md("Roadmap 2024") == "Roadmap 2024"
    assert escape_md("[link]") == "\\[link]"
