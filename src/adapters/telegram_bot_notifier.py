"""Telegram Bot API notification adapter.

Uses the Bot API for delivery so notifications can be routed to any chat the
bot is a member of. The tracked document's chat id is the destination.
"""

from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request
from typing import Optional

from adapters.notification_formatting import format_notification


class TelegramBotNotifier:
    """Notifier adapter that sends messages via the Telegram Bot API."""

    def __init__(self, bot_token: str, default_chat_id: Optional[str] = None, timeout_s: float = 10.0) -> None:
        self._bot_token = bot_token
        self._default_chat_id = default_chat_id
        self._timeout_s = timeout_s

    def _endpoint(self) -> str:
        # The Bot API endpoint is deterministic and derived from the token.
        return f"https://api.telegram.org/bot{self._bot_token}/sendMessage"

    def _post(self, payload: dict) -> None:
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(self._endpoint(), data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_s):
                pass
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            raise RuntimeError(f"Bot API error {e.code}: {body}") from e

    async def notify(self, chat_id: str, title: str, content: str) -> None:
        """Send the formatted notification via the Bot API."""

        target = chat_id or self._default_chat_id
        if not target:
            raise ValueError("No chat id to deliver the notification to")
        payload = {
            "chat_id": target,
            "text": format_notification(title, content, mode="html"),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        # urllib blocks, so the request runs on a worker thread.
        await asyncio.to_thread(self._post, payload)
