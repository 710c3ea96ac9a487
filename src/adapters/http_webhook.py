"""Webhook sender adapter for rule actions."""

from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request
from typing import Any


class UrllibWebhookSender:
    """POSTs JSON and reports the HTTP status; non-2xx is left to the caller."""

    def __init__(self, timeout_s: float = 10.0) -> None:
        self._timeout_s = timeout_s

    def _post(self, url: str, payload: dict[str, Any]) -> int:
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(url, data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_s) as response:
                return response.status
        except urllib.error.HTTPError as e:
            return e.code

    async def post_json(self, url: str, payload: dict[str, Any]) -> int:
        return await asyncio.to_thread(self._post, url, payload)
