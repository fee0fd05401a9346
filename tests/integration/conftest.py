import pytest

from cmsflow.collaborators import (
    ActionRegistry,
    InMemorySubjectStore,
    StaticAnalyticsService,
    StaticRoleChecker,
    StaticSuggestionService,
)
from cmsflow.config import EngineConfig
from cmsflow.persistence import InMemoryDocumentStore, WorkflowStore
from cmsflow.scheduling import ManualScheduler
from cmsflow.service import WorkflowService


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def actions() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("noop", lambda spec, ctx: None)
    registry.register("echo", lambda spec, ctx: spec.params.get("value"))
    return registry


@pytest.fixture
def roles() -> StaticRoleChecker:
    return StaticRoleChecker({"alice": ["author"], "ed": ["editor"], "root": ["admin"]})


@pytest.fixture
def subjects() -> InMemorySubjectStore:
    return InMemorySubjectStore({"post-1": {"title": "Hello", "status": "draft"}})


@pytest.fixture
def suggestions() -> StaticSuggestionService:
    return StaticSuggestionService({"suggestions": ["shorter title"], "scores": {"seo": 80}})


@pytest.fixture
def analytics() -> StaticAnalyticsService:
    return StaticAnalyticsService(
        {
            "post-1": {"page_views": 120, "engagement": 0.4},
            "A": {"conversion": 10},
            "B": {"conversion": 8},
        }
    )


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def store() -> WorkflowStore:
    return WorkflowStore(InMemoryDocumentStore())


@pytest.fixture
def service(
    store, actions, roles, subjects, suggestions, analytics, scheduler, engine_config
) -> WorkflowService:
    return WorkflowService(
        store,
        action_runner=actions,
        role_checker=roles,
        subject_store=subjects,
        suggestions=suggestions,
        analytics=analytics,
        scheduler=scheduler,
        config=engine_config,
    )
