"""Interfaces to the services the engine calls out to.

Each collaborator is a :class:`typing.Protocol`; the small concrete classes
here cover single-process deployments and tests.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ActionSpec(BaseModel):
    """What a task step asks the action runner to do."""

    action: str
    params: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class TaskContext:
    """Execution scope handed to a task action.

    ``variables`` is the live instance variable map; actions may read it and
    write to it for the duration of the step.
    """

    instance_id: str
    workflow_id: str
    step_id: str
    subject_id: Optional[str] = None
    actor: Optional[str] = None
    input: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    attempt: int = 1


class ActionRunner(Protocol):
    async def invoke(self, spec: ActionSpec, context: TaskContext) -> Any:
        """Run the action and return its result, or raise."""


class RoleChecker(Protocol):
    async def has_role(self, actor: Optional[str], role: str) -> bool:
        """Return ``True`` if ``actor`` holds ``role``."""


class SubjectStore(Protocol):
    """Access to the governed business objects (content entries)."""

    async def get_subject(self, subject_id: str) -> Optional[Dict[str, Any]]:
        """Return the subject's fields, or ``None`` if it does not exist."""

    async def update_subject(self, subject_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Apply ``fields`` to the subject and return the updated fields."""


class SuggestionService(Protocol):
    async def suggest(self, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        """Return ``{"suggestions": ..., "scores": ...}`` for a subject snapshot."""


class AnalyticsService(Protocol):
    async def get_analytics(self, query: Dict[str, Any]) -> Dict[str, Any]:
        """Return metric values for ``query``."""


ActionFunc = Callable[[ActionSpec, TaskContext], Any]


class ActionRegistry:
    """Maps action names to callables; implements :class:`ActionRunner`.

    Callables receive ``(spec, context)`` and may be sync or async.
    """

    def __init__(self) -> None:
        self._actions: Dict[str, ActionFunc] = {}

    def register(self, name: str, func: ActionFunc) -> None:
        self._actions[name] = func

    def action(self, name: str) -> Callable[[ActionFunc], ActionFunc]:
        """Decorator form of :meth:`register`."""

        def decorator(func: ActionFunc) -> ActionFunc:
            self.register(name, func)
            return func

        return decorator

    def names(self) -> list[str]:
        return sorted(self._actions)

    async def invoke(self, spec: ActionSpec, context: TaskContext) -> Any:
        func = self._actions.get(spec.action)
        if func is None:
            raise LookupError(f"Unknown action: {spec.action}")
        result = func(spec, context)
        if inspect.isawaitable(result):
            result = await result
        return result


class StaticRoleChecker:
    """Role lookup from a fixed ``{actor: roles}`` mapping."""

    def __init__(self, roles: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self._roles = {actor: set(r) for actor, r in (roles or {}).items()}

    def grant(self, actor: str, *roles: str) -> None:
        self._roles.setdefault(actor, set()).update(roles)

    async def has_role(self, actor: Optional[str], role: str) -> bool:
        if actor is None:
            return False
        return role in self._roles.get(actor, set())


class InMemorySubjectStore:
    """Keeps subjects in a local dict."""

    def __init__(self, subjects: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._subjects: Dict[str, Dict[str, Any]] = {
            k: dict(v) for k, v in (subjects or {}).items()
        }

    def add(self, subject_id: str, **fields: Any) -> None:
        self._subjects[subject_id] = dict(fields)

    async def get_subject(self, subject_id: str) -> Optional[Dict[str, Any]]:
        subject = self._subjects.get(subject_id)
        return dict(subject) if subject is not None else None

    async def update_subject(self, subject_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        subject = self._subjects.setdefault(subject_id, {})
        subject.update(fields)
        return dict(subject)


class StaticSuggestionService:
    """Returns the same suggestion payload for every snapshot."""

    def __init__(self, payload: Optional[Dict[str, Any]] = None) -> None:
        self._payload = payload or {"suggestions": [], "scores": {}}
        self.calls: list[Dict[str, Any]] = []

    async def suggest(self, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(snapshot)
        return dict(self._payload)


class StaticAnalyticsService:
    """Analytics keyed by variant id (A/B queries) or subject id."""

    def __init__(self, data: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._data = data or {}
        self.queries: list[Dict[str, Any]] = []

    async def get_analytics(self, query: Dict[str, Any]) -> Dict[str, Any]:
        self.queries.append(query)
        filters = query.get("filters", {})
        key = filters.get("variant") or filters.get("content_id")
        return dict(self._data.get(key, {}))
