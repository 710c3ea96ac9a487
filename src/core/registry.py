"""In-process registry of tracked documents.

The poller owns one registry and is the only writer. Keeping the map behind
this narrow interface lets another backing (shared cache, external store)
replace it without touching the poller.
"""

from __future__ import annotations

from typing import Iterator, List, Optional

from core.models import TrackedDocument


class TrackedDocumentRegistry:
    """Map of doc_token -> TrackedDocument."""

    def __init__(self) -> None:
        self._docs: dict[str, TrackedDocument] = {}

    def __len__(self) -> int:
        return len(self._docs)

    def __contains__(self, doc_token: object) -> bool:
        return doc_token in self._docs

    def __iter__(self) -> Iterator[TrackedDocument]:
        return iter(list(self._docs.values()))

    def get(self, doc_token: str) -> Optional[TrackedDocument]:
        return self._docs.get(doc_token)

    def set(self, tracked: TrackedDocument) -> None:
        self._docs[tracked.doc_token] = tracked

    def delete(self, doc_token: str) -> bool:
        return self._docs.pop(doc_token, None) is not None

    def update_if_present(self, tracked: TrackedDocument) -> bool:
        """Store the new state only if the document is still tracked.

        A poll that finishes after stop_tracking must not resurrect the entry,
        so the write is dropped and False is returned.
        """

        if tracked.doc_token not in self._docs:
            return False
        self._docs[tracked.doc_token] = tracked
        return True

    def values(self) -> List[TrackedDocument]:
        """Point-in-time copy, safe to iterate while the registry changes."""

        return list(self._docs.values())

    def clear(self) -> None:
        self._docs.clear()
