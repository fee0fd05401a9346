"""In-memory implementation of the document store."""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Dict, Optional

from ..errors import ConflictError
from .repository import Document, DocumentStore, apply_increment, matches


class InMemoryDocumentStore(DocumentStore):
    """Store documents in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = asyncio.Lock()

    def _bucket(self, collection: str) -> Dict[str, Document]:
        return self._collections.setdefault(collection, {})

    # ------------------------------------------------------------------
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        doc = self._bucket(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def query(
        self, collection: str, filters: Optional[dict[str, Any]] = None
    ) -> list[Document]:
        return [
            copy.deepcopy(doc)
            for doc in self._bucket(collection).values()
            if matches(doc, filters)
        ]

    async def save(self, collection: str, doc: Document) -> Document:
        async with self._lock:
            bucket = self._bucket(collection)
            current = bucket.get(doc["id"])
            stored = copy.deepcopy(doc)
            stored["version"] = (current["version"] if current else 0) + 1
            bucket[doc["id"]] = stored
            return copy.deepcopy(stored)

    async def compare_and_swap(
        self, collection: str, doc: Document, expected_version: int
    ) -> Document:
        async with self._lock:
            bucket = self._bucket(collection)
            current = bucket.get(doc["id"])
            actual = current["version"] if current else None
            if actual != expected_version:
                raise ConflictError(collection, doc["id"], expected_version, actual)
            stored = copy.deepcopy(doc)
            stored["version"] = expected_version + 1
            bucket[doc["id"]] = stored
            return copy.deepcopy(stored)

    async def increment(
        self, collection: str, doc_id: str, field: str, amount: float = 1
    ) -> None:
        async with self._lock:
            doc = self._bucket(collection).get(doc_id)
            if doc is None:
                return
            apply_increment(doc, field, amount)
            doc["version"] += 1

    async def delete(self, collection: str, doc_id: str) -> bool:
        async with self._lock:
            return self._bucket(collection).pop(doc_id, None) is not None
