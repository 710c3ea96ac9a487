"""Shared notification formatting helpers.

Keeping formatting here prevents drift between adapters and keeps messages
consistent regardless of delivery channel.
"""

from __future__ import annotations

from datetime import datetime
import html
from typing import Optional

DIVIDER = "──────────────"


def _timestamp(sent_at: Optional[datetime]) -> str:
    moment = sent_at or datetime.now()
    return moment.astimezone().strftime("%H:%M:%S %d-%m-%Y").strip()


def escape_md(value: str) -> str:
    for ch in r"*[`_":
        value = value.replace(ch, f"\\{ch}")
    return value


def _format_markdown(title: str, content: str, sent_at: Optional[datetime]) -> str:
    """Create the Markdown body used by the Telethon user-client adapter."""

    # Telegram Markdown is supported by passing parse_mode="Markdown".
    lines = [
        f"[{_timestamp(sent_at)}]",
        f"**{escape_md(title)}**",
        DIVIDER,
        "",
        escape_md(content),
        "",
        DIVIDER,
    ]
    return "\n".join(lines)


def _format_html(title: str, content: str, sent_at: Optional[datetime]) -> str:
    """Create the HTML body used by the Bot API adapter."""

    parts = [
        f"[{html.escape(_timestamp(sent_at))}]",
        f"<b>{html.escape(title)}</b>",
        DIVIDER,
        "",
        html.escape(content),
        "",
        DIVIDER,
    ]
    return "\n".join(parts)


def format_notification(title: str, content: str, mode: str, sent_at: Optional[datetime] = None) -> str:
    """Return the notification formatted for the requested mode."""

    if mode == "markdown":
        return _format_markdown(title, content, sent_at)
    if mode == "html":
        return _format_html(title, content, sent_at)
    raise ValueError(f"Unsupported notification format: {mode}")
