"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from typing import Any, Optional, Protocol

Document = dict[str, Any]


class DocumentStore(Protocol):
    """Protocol for document persistence backends.

    Documents are JSON-compatible dicts with an ``id`` and a ``version``. The
    store owns ``version``: every write bumps it, and
    :meth:`compare_and_swap` refuses to write over a newer one.
    """

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return the document or ``None``."""

    async def query(
        self, collection: str, filters: Optional[dict[str, Any]] = None
    ) -> list[Document]:
        """Return documents whose top-level fields equal every ``filters`` item."""

    async def save(self, collection: str, doc: Document) -> Document:
        """Insert or overwrite ``doc`` unconditionally; return it with its new version."""

    async def compare_and_swap(
        self, collection: str, doc: Document, expected_version: int
    ) -> Document:
        """Write ``doc`` only if the stored version equals ``expected_version``.

        Raises:
            ConflictError: the stored version differs or the document is gone.
        """

    async def increment(
        self, collection: str, doc_id: str, field: str, amount: float = 1
    ) -> None:
        """Atomically add ``amount`` to the numeric field at dotted path ``field``."""

    async def delete(self, collection: str, doc_id: str) -> bool:
        """Remove the document; return ``True`` if it existed."""


def matches(doc: Document, filters: Optional[dict[str, Any]]) -> bool:
    if not filters:
        return True
    return all(doc.get(key) == value for key, value in filters.items())


def apply_increment(doc: Document, field: str, amount: float) -> None:
    """Add ``amount`` to the value at dotted path ``field`` inside ``doc``."""
    *parents, leaf = field.split(".")
    target = doc
    for part in parents:
        target = target.setdefault(part, {})
    target[leaf] = (target.get(leaf) or 0) + amount
