"""Telegram user-client notification adapter.

Formats a Markdown message and sends it through a logged-in Telethon session.
Chat ids of "me" or "" go to the account's Saved Messages.
"""

from __future__ import annotations

from typing import Union

from adapters.notification_formatting import format_notification


def _peer(chat_id: str) -> Union[str, int]:
    if not chat_id:
        return "me"
    try:
        return int(chat_id)
    except ValueError:
        return chat_id


class TelegramClientNotifier:
    """Notifier adapter backed by a connected telethon.TelegramClient."""

    def __init__(self, client) -> None:
        self._client = client

    async def notify(self, chat_id: str, title: str, content: str) -> None:
        message = format_notification(title, content, mode="markdown")
        await self._client.send_message(_peer(chat_id), message, parse_mode="Markdown")
