"""PostgreSQL implementation of the document store."""

from __future__ import annotations

import json
from typing import Any, Optional

import asyncpg

from ..errors import ConflictError
from .repository import Document, DocumentStore, matches


class PostgresDocumentStore(DocumentStore):
    """Persist documents using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
                seq BIGSERIAL,
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                data JSONB NOT NULL,
                PRIMARY KEY (collection, id)
            )
            """
        )

    @staticmethod
    def _decode(row: asyncpg.Record) -> Document:
        data = row["data"]
        doc = json.loads(data) if isinstance(data, str) else dict(data)
        doc["version"] = row["version"]
        return doc

    # ------------------------------------------------------------------
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT version, data FROM documents WHERE collection = $1 AND id = $2",
                collection,
                doc_id,
            )
        finally:
            await conn.close()
        return self._decode(row) if row else None

    async def query(
        self, collection: str, filters: Optional[dict[str, Any]] = None
    ) -> list[Document]:
        conn = await self._connect()
        try:
            if filters:
                rows = await conn.fetch(
                    "SELECT version, data FROM documents WHERE collection = $1 AND data @> $2::jsonb ORDER BY seq",
                    collection,
                    json.dumps(filters),
                )
            else:
                rows = await conn.fetch(
                    "SELECT version, data FROM documents WHERE collection = $1 ORDER BY seq",
                    collection,
                )
        finally:
            await conn.close()
        # containment is looser than equality for nested values
        return [d for d in (self._decode(r) for r in rows) if matches(d, filters)]

    async def save(self, collection: str, doc: Document) -> Document:
        conn = await self._connect()
        try:
            version = await conn.fetchval(
                """
                INSERT INTO documents (collection, id, version, data)
                VALUES ($1, $2, 1, $3::jsonb)
                ON CONFLICT (collection, id) DO UPDATE
                SET version = documents.version + 1, data = EXCLUDED.data
                RETURNING version
                """,
                collection,
                doc["id"],
                json.dumps(doc),
            )
        finally:
            await conn.close()
        return {**doc, "version": version}

    async def compare_and_swap(
        self, collection: str, doc: Document, expected_version: int
    ) -> Document:
        stored = {**doc, "version": expected_version + 1}
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE documents SET version = $1, data = $2::jsonb
                WHERE collection = $3 AND id = $4 AND version = $5
                """,
                expected_version + 1,
                json.dumps(stored),
                collection,
                doc["id"],
                expected_version,
            )
            if status != "UPDATE 1":
                actual = await conn.fetchval(
                    "SELECT version FROM documents WHERE collection = $1 AND id = $2",
                    collection,
                    doc["id"],
                )
                raise ConflictError(collection, doc["id"], expected_version, actual)
        finally:
            await conn.close()
        return stored

    async def increment(
        self, collection: str, doc_id: str, field: str, amount: float = 1
    ) -> None:
        path = field.split(".")
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE documents
                SET data = jsonb_set(
                        data,
                        $3::text[],
                        to_jsonb(COALESCE((data #>> $3::text[])::float8, 0) + $4::float8),
                        true
                    ),
                    version = version + 1
                WHERE collection = $1 AND id = $2
                """,
                collection,
                doc_id,
                path,
                float(amount),
            )
        finally:
            await conn.close()

    async def delete(self, collection: str, doc_id: str) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "DELETE FROM documents WHERE collection = $1 AND id = $2",
                collection,
                doc_id,
            )
        finally:
            await conn.close()
        return status == "DELETE 1"
