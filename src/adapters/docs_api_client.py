"""Document platform (Feishu/Lark open API) adapter.

Implements MetadataFetcherPort and ContentFetcherPort. Calls are plain
urllib requests run on a worker thread; the tenant access token is cached
until shortly before it expires.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Callable, Optional

from core.models import DocMetadata

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://open.feishu.cn"
# Refresh the token this many seconds before the platform says it expires.
_TOKEN_MARGIN_S = 60


class DocsApiError(RuntimeError):
    """The document platform rejected a request or returned an error code."""


class DocsApiClient:
    def __init__(
        self,
        app_id: str,
        app_secret: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._app_id = app_id
        self._app_secret = app_secret
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # HTTP plumbing

    def _call(self, method: str, path: str, body: Optional[dict] = None, auth: bool = True) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = urllib.request.Request(url, data=data, method=method)
        request.add_header("Content-Type", "application/json; charset=utf-8")
        if auth:
            request.add_header("Authorization", f"Bearer {self._tenant_token()}")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_s) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace")
            raise DocsApiError(f"{method} {path} failed with HTTP {e.code}: {detail}") from e

        if payload.get("code", 0) != 0:
            raise DocsApiError(f"{method} {path} failed: {payload.get('msg') or 'unknown error'}")
        return payload

    def _tenant_token(self) -> str:
        with self._token_lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token
            payload = self._call(
                "POST",
                "/open-apis/auth/v3/tenant_access_token/internal",
                {"app_id": self._app_id, "app_secret": self._app_secret},
                auth=False,
            )
            self._token = payload["tenant_access_token"]
            self._token_expires_at = self._clock() + int(payload.get("expire", 7200)) - _TOKEN_MARGIN_S
            LOGGER.debug("Refreshed tenant access token")
            return self._token

    # Metadata

    def _fetch_metadata_sync(self, doc_token: str, doc_type: str) -> Optional[DocMetadata]:
        payload = self._call(
            "POST",
            "/open-apis/suite/docs-api/meta",
            {"request_docs": [{"docs_token": doc_token, "docs_type": doc_type}]},
        )
        metas = (payload.get("data") or {}).get("docs_metas") or []
        if not metas:
            LOGGER.warning("No metadata returned for %s (document may not exist)", doc_token)
            return None
        meta = metas[0]
        return DocMetadata(
            doc_token=meta.get("docs_token") or doc_token,
            title=meta.get("title") or "Unknown",
            owner_id=meta.get("owner_id") or "unknown",
            last_modified_user=meta.get("latest_modify_user") or "unknown",
            last_modified_time=int(meta.get("latest_modify_time") or 0),
            doc_type=meta.get("docs_type") or doc_type,
            created_time=int(meta.get("create_time") or 0),
        )

    async def fetch_metadata(self, doc_token: str, doc_type: str) -> Optional[DocMetadata]:
        return await asyncio.to_thread(self._fetch_metadata_sync, doc_token, doc_type)

    # Content

    def _doc_content(self, doc_token: str) -> Optional[str]:
        quoted = urllib.parse.quote(doc_token)
        payload = self._call("GET", f"/open-apis/doc/v2/{quoted}/raw_content")
        return (payload.get("data") or {}).get("content")

    def _docx_content(self, doc_token: str) -> Optional[str]:
        quoted = urllib.parse.quote(doc_token)
        payload = self._call("GET", f"/open-apis/docx/v1/documents/{quoted}/raw_content")
        return (payload.get("data") or {}).get("content")

    def _sheet_content(self, doc_token: str) -> Optional[str]:
        quoted = urllib.parse.quote(doc_token)
        payload = self._call("GET", f"/open-apis/sheets/v3/spreadsheets/{quoted}/sheets/query")
        sheets = (payload.get("data") or {}).get("sheets") or []
        snapshot: dict[str, Any] = {"spreadsheet_token": doc_token, "sheets": {}}
        for sheet in sheets:
            sheet_id = sheet.get("sheet_id")
            name = sheet.get("title") or sheet_id
            try:
                values = self._call("GET", f"/open-apis/sheets/v2/spreadsheets/{quoted}/values/{sheet_id}")
            except DocsApiError as exc:
                LOGGER.warning("Skipping sheet %s of %s: %s", name, doc_token, exc)
                continue
            value_range = (values.get("data") or {}).get("valueRange") or {}
            snapshot["sheets"][name] = {"sheet_id": sheet_id, "values": value_range.get("values") or []}
        return json.dumps(snapshot, ensure_ascii=False, indent=2)

    def _bitable_content(self, doc_token: str) -> Optional[str]:
        quoted = urllib.parse.quote(doc_token)
        payload = self._call("GET", f"/open-apis/bitable/v1/apps/{quoted}/tables?page_size=100")
        tables = (payload.get("data") or {}).get("items") or []
        snapshot: dict[str, Any] = {"app_token": doc_token, "tables": {}}
        for table in tables:
            table_id = table.get("table_id")
            name = table.get("name") or table_id
            try:
                records = self._call(
                    "GET", f"/open-apis/bitable/v1/apps/{quoted}/tables/{table_id}/records?page_size=500"
                )
            except DocsApiError as exc:
                LOGGER.warning("Skipping table %s of %s: %s", name, doc_token, exc)
                continue
            items = (records.get("data") or {}).get("items") or []
            snapshot["tables"][name] = {
                "table_id": table_id,
                "records": [{"record_id": item.get("record_id"), "fields": item.get("fields")} for item in items],
            }
        return json.dumps(snapshot, ensure_ascii=False, indent=2)

    def _fetch_content_sync(self, doc_token: str, doc_type: str) -> Optional[str]:
        downloaders = {
            "doc": self._doc_content,
            "docx": self._docx_content,
            "sheet": self._sheet_content,
            "bitable": self._bitable_content,
        }
        downloader = downloaders.get(doc_type)
        if downloader is None:
            LOGGER.warning("Content download not supported for document type %r", doc_type)
            return None
        content = downloader(doc_token)
        if content is not None:
            LOGGER.info("Downloaded %s content for %s (%s chars)", doc_type, doc_token, len(content))
        return content

    async def fetch_content(self, doc_token: str, doc_type: str) -> Optional[str]:
        return await asyncio.to_thread(self._fetch_content_sync, doc_token, doc_type)
