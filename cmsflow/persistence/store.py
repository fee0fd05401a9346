"""Typed access to workflow documents on top of a :class:`DocumentStore`."""

from __future__ import annotations

from typing import Any, Optional, TypeVar

from pydantic import BaseModel

from ..constants import AB_TESTS, DEFINITIONS, INSTANCES, VERSIONS
from ..contracts import ABTest, ContentVersion, WorkflowDefinition, WorkflowInstance
from .repository import DocumentStore

M = TypeVar("M", bound=BaseModel)


class WorkflowStore:
    """Definition Store used by the engine.

    Models go in and come back out with the version assigned by the
    underlying document store.
    """

    def __init__(self, documents: DocumentStore) -> None:
        self.documents = documents

    async def _get(self, collection: str, model: type[M], doc_id: str) -> Optional[M]:
        doc = await self.documents.get(collection, doc_id)
        return model.model_validate(doc) if doc is not None else None

    async def _query(
        self, collection: str, model: type[M], filters: Optional[dict[str, Any]] = None
    ) -> list[M]:
        return [model.model_validate(d) for d in await self.documents.query(collection, filters)]

    async def _save(self, collection: str, obj: M) -> M:
        doc = await self.documents.save(collection, obj.model_dump(mode="json"))
        return type(obj).model_validate(doc)

    async def _swap(self, collection: str, obj: M, expected_version: int) -> M:
        doc = await self.documents.compare_and_swap(
            collection, obj.model_dump(mode="json"), expected_version
        )
        return type(obj).model_validate(doc)

    # ------------------------------------------------------------------
    # Definitions
    async def get_definition(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return await self._get(DEFINITIONS, WorkflowDefinition, workflow_id)

    async def query_definitions(self, **filters: Any) -> list[WorkflowDefinition]:
        return await self._query(DEFINITIONS, WorkflowDefinition, filters)

    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return await self._save(DEFINITIONS, definition)

    async def swap_definition(
        self, definition: WorkflowDefinition, expected_version: int
    ) -> WorkflowDefinition:
        return await self._swap(DEFINITIONS, definition, expected_version)

    async def increment_stat(self, workflow_id: str, stat: str, amount: float = 1) -> None:
        await self.documents.increment(DEFINITIONS, workflow_id, f"stats.{stat}", amount)

    # ------------------------------------------------------------------
    # Instances
    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        return await self._get(INSTANCES, WorkflowInstance, instance_id)

    async def query_instances(self, **filters: Any) -> list[WorkflowInstance]:
        return await self._query(INSTANCES, WorkflowInstance, filters)

    async def save_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        return await self._save(INSTANCES, instance)

    async def swap_instance(
        self, instance: WorkflowInstance, expected_version: int
    ) -> WorkflowInstance:
        return await self._swap(INSTANCES, instance, expected_version)

    async def delete_instance(self, instance_id: str) -> bool:
        return await self.documents.delete(INSTANCES, instance_id)

    # ------------------------------------------------------------------
    # Versions and A/B tests
    async def save_version(self, version: ContentVersion) -> ContentVersion:
        return await self._save(VERSIONS, version)

    async def query_versions(self, **filters: Any) -> list[ContentVersion]:
        return await self._query(VERSIONS, ContentVersion, filters)

    async def get_ab_test(self, test_id: str) -> Optional[ABTest]:
        return await self._get(AB_TESTS, ABTest, test_id)

    async def save_ab_test(self, test: ABTest) -> ABTest:
        return await self._save(AB_TESTS, test)

    async def swap_ab_test(self, test: ABTest, expected_version: int) -> ABTest:
        return await self._swap(AB_TESTS, test, expected_version)
