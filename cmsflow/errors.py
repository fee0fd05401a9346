"""Error taxonomy for the cmsflow engine."""

from __future__ import annotations

from typing import Optional


class CmsFlowError(Exception):
    """Base class for all engine errors.

    ``reason`` is a stable code that callers can match on; the message is
    meant for humans.
    """

    reason: str = "Error"

    def __init__(self, message: str, reason: Optional[str] = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason

    @property
    def message(self) -> str:
        return str(self)


class DefinitionError(CmsFlowError):
    """A workflow definition violates a structural invariant. Never retried."""

    reason = "InvalidDefinition"

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message, reason=reason)


class NotFound(CmsFlowError):
    """A workflow, instance, subject or test does not exist."""

    reason = "NotFound"

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} {identifier!r} not found")
        self.kind = kind
        self.identifier = identifier


class InvalidTransition(CmsFlowError):
    """No stage transition matches the requested action."""

    reason = "InvalidTransition"

    def __init__(self, stage: Optional[str], action: str) -> None:
        super().__init__(f"No transition for action {action!r} from stage {stage!r}")
        self.stage = stage
        self.action = action


class ConflictError(CmsFlowError):
    """Raised by a document store when a compare-and-swap sees a newer version."""

    reason = "Conflict"

    def __init__(self, collection: str, doc_id: str, expected: int, actual: Optional[int]) -> None:
        super().__init__(
            f"{collection}/{doc_id}: expected version {expected}, found {actual}"
        )
        self.collection = collection
        self.doc_id = doc_id
        self.expected = expected
        self.actual = actual


class ConcurrentModification(CmsFlowError):
    """An instance changed underneath the caller; reload and retry."""

    reason = "ConcurrentModification"

    def __init__(self, instance_id: str) -> None:
        super().__init__(f"Instance {instance_id!r} was modified concurrently")
        self.instance_id = instance_id


class StepError(CmsFlowError):
    """A step failed to execute."""

    reason = "StepError"

    def __init__(self, step_id: str, message: str, attempts: int = 1) -> None:
        super().__init__(f"Step {step_id!r} failed: {message}")
        self.step_id = step_id
        self.detail = message
        self.attempts = attempts


class ValidationError(CmsFlowError):
    """Input or output does not match the declared schema, or the request is malformed."""

    reason = "ValidationError"


class AuthorizationError(CmsFlowError):
    """The actor lacks a role required for the operation."""

    reason = "Unauthorized"


class ConcurrencyLimitExceeded(CmsFlowError):
    """Starting another instance would exceed ``max_concurrent_instances``."""

    reason = "ConcurrencyLimitExceeded"


class ExpressionError(CmsFlowError):
    """A condition or decision expression is malformed or failed to evaluate."""

    reason = "InvalidExpression"


__all__ = [
    "CmsFlowError",
    "DefinitionError",
    "NotFound",
    "InvalidTransition",
    "ConflictError",
    "ConcurrentModification",
    "StepError",
    "ValidationError",
    "AuthorizationError",
    "ConcurrencyLimitExceeded",
    "ExpressionError",
]
