from __future__ import annotations

import asyncio
import json

import pytest

from adapters.docs_api_client import DocsApiClient
from adapters.telegram_bot_notifier import TelegramBotNotifier
from adapters.telegram_notifier import TelegramClientNotifier

TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


def _client_with(responses: dict, clock=None) -> tuple[DocsApiClient, list[str]]:
    client = DocsApiClient("app", "secret", clock=clock or FakeClock())
    calls: list[str] = []

    def fake_call(method, path, body=None, auth=True):
        calls.append(path)
        return responses[path]

    client._call = fake_call
    return client, calls


def test_metadata_is_mapped_from_first_meta() -> None:
    client, calls = _client_with(
        {
            "/open-apis/suite/docs-api/meta": {
                "code": 0,
                "data": {
                    "docs_metas": [
                        {
                            "docs_token": "doc1",
                            "docs_type": "docx",
                            "title": "Roadmap",
                            "owner_id": "ou_1",
                            "latest_modify_user": "ou_2",
                            "latest_modify_time": "1700000000",
                            "create_time": 1690000000,
                        }
                    ]
                },
            }
        }
    )

    metadata = asyncio.run(client.fetch_metadata("doc1", "docx"))

    assert metadata.title == "Roadmap"
    assert metadata.last_modified_user == "ou_2"
    assert metadata.last_modified_time == 1_700_000_000
    assert metadata.doc_type == "docx"
    assert calls == ["/open-apis/suite/docs-api/meta"]


def test_missing_metadata_returns_none() -> None:
    client, _ = _client_with({"/open-apis/suite/docs-api/meta": {"code": 0, "data": {"docs_metas": []}}})

    assert asyncio.run(client.fetch_metadata("doc1", "doc")) is None


def test_sheet_content_collects_every_sheet() -> None:
    base = "/open-apis/sheets"
    client, _ = _client_with(
        {
            f"{base}/v3/spreadsheets/sh1/sheets/query": {
                "data": {"sheets": [{"sheet_id": "a1", "title": "Budget"}]}
            },
            f"{base}/v2/spreadsheets/sh1/values/a1": {"data": {"valueRange": {"values": [["item", 3]]}}},
        }
    )

    content = json.loads(asyncio.run(client.fetch_content("sh1", "sheet")))

    assert content["sheets"]["Budget"] == {"sheet_id": "a1", "values": [["item", 3]]}


def test_unsupported_content_type_returns_none() -> None:
    client, calls = _client_with({})

    assert asyncio.run(client.fetch_content("x", "mindnote")) is None
    assert calls == []


def test_tenant_token_is_cached_until_expiry() -> None:
    clock = FakeClock()
    client, calls = _client_with(
        {TOKEN_PATH: {"code": 0, "tenant_access_token": "t-1", "expire": 7200}}, clock=clock
    )

    assert client._tenant_token() == "t-1"
    assert client._tenant_token() == "t-1"
    assert calls == [TOKEN_PATH]

    clock.now += 7200
    client._tenant_token()
    assert calls == [TOKEN_PATH, TOKEN_PATH]


def test_bot_notifier_posts_html_to_chat() -> None:
    notifier = TelegramBotNotifier("123:abc", default_chat_id="42")
    posted: list[dict] = []
    notifier._post = posted.append

    asyncio.run(notifier.notify("", "Document changed", "a < b"))

    assert posted[0]["chat_id"] == "42"
    assert posted[0]["parse_mode"] == "HTML"
    assert "a &lt; b" in posted[0]["text"]


def test_bot_notifier_without_chat_is_rejected() -> None:
    notifier = TelegramBotNotifier("123:abc")

    with pytest.raises(ValueError):
        asyncio.run(notifier.notify("", "t", "c"))


def test_client_notifier_resolves_peers() -> None:
    class FakeTelegramClient:
        def __init__(self) -> None:
            self.sent: list[tuple] = []

        async def send_message(self, peer, message, parse_mode=None):
            self.sent.append((peer, parse_mode))

    client = FakeTelegramClient()
    notifier = TelegramClientNotifier(client)

    async def scenario() -> None:
        await notifier.notify("-1001234", "t", "c")
        await notifier.notify("", "t", "c")
        await notifier.notify("@team", "t", "c")

    asyncio.run(scenario())

    assert client.sent == [(-1001234, "Markdown"), ("me", "Markdown"), ("@team", "Markdown")]
