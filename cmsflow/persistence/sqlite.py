"""SQLite implementation of the document store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional

from ..errors import ConflictError
from .repository import Document, DocumentStore, apply_increment, matches


class SQLiteDocumentStore(DocumentStore):
    """Persist documents using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (collection, id)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _decode(row: sqlite3.Row) -> Document:
        doc = json.loads(row["data"])
        doc["version"] = row["version"]
        return doc

    def _save(self, collection: str, doc: Document) -> Document:
        with self._lock:
            row = self._fetchone(
                "SELECT version FROM documents WHERE collection = ? AND id = ?",
                collection,
                doc["id"],
            )
            version = (row["version"] if row else 0) + 1
            stored = {**doc, "version": version}
            self._conn.execute(
                """
                INSERT INTO documents (collection, id, version, data) VALUES (?, ?, ?, ?)
                ON CONFLICT (collection, id) DO UPDATE SET
                    version = excluded.version, data = excluded.data
                """,
                (collection, doc["id"], version, json.dumps(stored)),
            )
            self._conn.commit()
            return stored

    def _compare_and_swap(
        self, collection: str, doc: Document, expected_version: int
    ) -> Document:
        with self._lock:
            stored = {**doc, "version": expected_version + 1}
            cur = self._conn.execute(
                """
                UPDATE documents SET version = ?, data = ?
                WHERE collection = ? AND id = ? AND version = ?
                """,
                (
                    expected_version + 1,
                    json.dumps(stored),
                    collection,
                    doc["id"],
                    expected_version,
                ),
            )
            self._conn.commit()
            if cur.rowcount != 1:
                row = self._fetchone(
                    "SELECT version FROM documents WHERE collection = ? AND id = ?",
                    collection,
                    doc["id"],
                )
                raise ConflictError(
                    collection, doc["id"], expected_version, row["version"] if row else None
                )
            return stored

    def _increment(self, collection: str, doc_id: str, field: str, amount: float) -> None:
        with self._lock:
            row = self._fetchone(
                "SELECT version, data FROM documents WHERE collection = ? AND id = ?",
                collection,
                doc_id,
            )
            if row is None:
                return
            doc = self._decode(row)
            apply_increment(doc, field, amount)
            doc["version"] = row["version"] + 1
            self._conn.execute(
                "UPDATE documents SET version = ?, data = ? WHERE collection = ? AND id = ?",
                (doc["version"], json.dumps(doc), collection, doc_id),
            )
            self._conn.commit()

    def _delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            )
            self._conn.commit()
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Store API
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT version, data FROM documents WHERE collection = ? AND id = ?",
            collection,
            doc_id,
        )
        return self._decode(row) if row else None

    async def query(
        self, collection: str, filters: Optional[dict[str, Any]] = None
    ) -> list[Document]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT version, data FROM documents WHERE collection = ? ORDER BY rowid",
            collection,
        )
        docs = [self._decode(r) for r in rows]
        return [d for d in docs if matches(d, filters)]

    async def save(self, collection: str, doc: Document) -> Document:
        return await asyncio.to_thread(self._save, collection, doc)

    async def compare_and_swap(
        self, collection: str, doc: Document, expected_version: int
    ) -> Document:
        return await asyncio.to_thread(
            self._compare_and_swap, collection, doc, expected_version
        )

    async def increment(
        self, collection: str, doc_id: str, field: str, amount: float = 1
    ) -> None:
        await asyncio.to_thread(self._increment, collection, doc_id, field, amount)

    async def delete(self, collection: str, doc_id: str) -> bool:
        return await asyncio.to_thread(self._delete, collection, doc_id)
