"""
Structured error types for the reconciliation engine.

Every failure the engine can observe is one of a small number of typed
errors. Each carries enough metadata for the controller to decide what to do
next without inspecting messages:

- **Category:** what kind of error (render, revision, dispatch, network, ...)
- **Retryable:** whether requeueing the Application can fix it on its own
- **Reason:** a CamelCase word written into status conditions and events
- **Context:** application, revision, cluster and component identifiers
- **Cause:** the chained underlying exception

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────────┐
        │                        AppSpineError                              │
        │         (category, retryable, reason, context, cause)             │
        ├──────────────────────────────────────────────────────────────────┤
        │                                                                   │
        │  RenderError           TransientInfraError      DispatchError     │
        │  (RENDER, terminal)    (retryable)              (DISPATCH)        │
        │       │                     │                        │            │
        │  DefinitionNotFound    NetworkError           ResourceConflict    │
        │  TemplateError         StatusConflictError                        │
        │  ValidationError       ClusterResolutionError                     │
        │                        RevisionConflict                           │
        │                                                                   │
        │  InvariantViolation (INTERNAL, fatal to one key)                  │
        │       │                                                           │
        │  CorruptRevisionError                                             │
        └──────────────────────────────────────────────────────────────────┘

How the controller treats each branch:

    RenderError          -> Rendered=False condition + Warning event, no requeue
    TransientInfraError  -> requeue with exponential backoff, Stalled after N
    DispatchError        -> recorded on the failing target only
    InvariantViolation   -> processing of that key is abandoned

Examples:
    >>> err = TemplateError("parameter 'port' must be int").with_context(
    ...     app="default/web", component="frontend")
    >>> err.retryable
    False
    >>> err.reason
    'TemplateError'
    >>> err.to_dict()["context"]["component"]
    'frontend'

Tags:
    error-handling, exception-hierarchy, retry-logic, conditions, app-spine
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Categories are grouped by their typical retry behavior:
    - **Infrastructure (transient):** NETWORK, CONFLICT
    - **Content (terminal until edited):** RENDER, VALIDATION, CONFIG
    - **Delivery:** REVISION, DISPATCH
    - **Internal:** INTERNAL, UNKNOWN
    """

    NETWORK = "NETWORK"           # Connection, timeout, cluster unreachable
    CONFLICT = "CONFLICT"         # Optimistic-concurrency write conflict

    RENDER = "RENDER"             # Definition lookup, template expansion
    VALIDATION = "VALIDATION"     # Shape constraints on rendered output
    CONFIG = "CONFIG"             # Engine misconfiguration

    REVISION = "REVISION"         # Revision allocation and storage
    DISPATCH = "DISPATCH"         # Per-target apply failures

    INTERNAL = "INTERNAL"         # Broken invariants, bugs
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Typed fields cover the identifiers the engine deals in; anything else
    goes into ``metadata``. ``to_dict()`` drops unset fields so log lines
    stay short.

    Attributes:
        app: Application key (``namespace/name``)
        revision: Revision name (``web-v2``)
        cluster: Target cluster name
        component: Component name
        resource: Resource identity (``apps/v1/Deployment/ns/name``)
        metadata: Additional key-value pairs
    """

    app: str | None = None
    revision: str | None = None
    cluster: str | None = None
    component: str | None = None
    resource: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["app", "revision", "cluster", "component", "resource"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class AppSpineError(Exception):
    """
    Base exception for all engine errors.

    Subclasses set ``default_category``, ``default_retryable`` and
    ``default_reason``; callers may override any of them per instance.

    Guardrails:
        ❌ DON'T: Raise plain Exception for expected failures
        ✅ DO: Pick the subclass whose retry semantics match

        ❌ DON'T: Mark render or validation errors retryable
        ✅ DO: Let a spec edit trigger the next attempt

        ❌ DON'T: Drop the original exception
        ✅ DO: Pass it as cause= when wrapping
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False
    default_reason: str = "InternalError"

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        reason: str | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.reason = reason or self.default_reason
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> AppSpineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise DefinitionNotFound("no such trait").with_context(
                app="default/web", component="frontend"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
            "reason": self.reason,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# RENDER ERRORS (terminal for the attempt, fixed by a spec/definition edit)
# =============================================================================


class RenderError(AppSpineError):
    """Rendering the Application failed.

    Terminal for the current attempt but not for the Application: a later
    spec or definition edit may fix it.
    """

    default_category = ErrorCategory.RENDER
    default_retryable = False
    default_reason = "RenderFailed"


class DefinitionNotFound(RenderError):
    """A component, trait, policy or workflow-step type is not defined."""

    default_reason = "DefinitionNotFound"

    def __init__(self, kind: str, type_name: str, **kwargs: Any):
        self.kind = kind
        self.type_name = type_name
        super().__init__(f"{kind} definition {type_name!r} not found", **kwargs)


class TemplateError(RenderError):
    """Template expansion failed (unknown placeholder, bad parameter binding)."""

    default_reason = "TemplateError"


class ValidationError(RenderError):
    """Rendered output violates a shape constraint."""

    default_category = ErrorCategory.VALIDATION
    default_reason = "ValidationError"


# =============================================================================
# TRANSIENT ERRORS (requeue with backoff)
# =============================================================================


class TransientInfraError(AppSpineError):
    """Temporary failure of an external call; requeueing may succeed."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True
    default_reason = "TransientError"


class NetworkError(TransientInfraError):
    """Connection, DNS or timeout error talking to an external system."""

    default_reason = "NetworkError"


class StatusConflictError(TransientInfraError):
    """The Application changed between read and status write."""

    default_category = ErrorCategory.CONFLICT
    default_reason = "StatusConflict"


class ClusterResolutionError(TransientInfraError):
    """The cluster registry could not resolve a placement policy."""

    default_reason = "ClusterResolutionFailed"


class RevisionConflict(TransientInfraError):
    """A concurrent writer already allocated the requested revision number.

    Callers re-read the current number and retry once before requeueing.
    """

    default_category = ErrorCategory.REVISION
    default_reason = "RevisionConflict"

    def __init__(self, app: str, expected: int, actual: int, **kwargs: Any):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"revision number for {app} moved from {expected} to {actual}",
            **kwargs,
        )
        self.context.app = app


# =============================================================================
# DISPATCH ERRORS (isolated to one target)
# =============================================================================


class DispatchError(AppSpineError):
    """Applying a resource to one target failed.

    Never aborts the other targets of the same dispatch.
    """

    default_category = ErrorCategory.DISPATCH
    default_retryable = True
    default_reason = "ApplyFailed"


class ResourceConflictError(DispatchError):
    """Compare-and-patch lost against concurrent writers too many times."""

    default_category = ErrorCategory.CONFLICT
    default_reason = "ResourceConflict"


# =============================================================================
# INVARIANT VIOLATIONS (fatal to one key)
# =============================================================================


class InvariantViolation(AppSpineError):
    """A programming invariant is broken; processing of this key stops."""

    default_category = ErrorCategory.INTERNAL
    default_retryable = False
    default_reason = "InvariantViolation"


class CorruptRevisionError(InvariantViolation):
    """A persisted revision does not match its own fingerprint or numbering."""

    default_reason = "CorruptRevision"


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error should trigger a backoff requeue."""
    if isinstance(error, AppSpineError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError, OSError))


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, AppSpineError):
        return error.category
    if isinstance(error, (ConnectionError, TimeoutError, OSError)):
        return ErrorCategory.NETWORK
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


def error_reason(error: Exception) -> str:
    """Condition/event reason for any exception."""
    if isinstance(error, AppSpineError):
        return error.reason
    return type(error).__name__


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "AppSpineError",
    # Render
    "RenderError",
    "DefinitionNotFound",
    "TemplateError",
    "ValidationError",
    # Transient
    "TransientInfraError",
    "NetworkError",
    "StatusConflictError",
    "ClusterResolutionError",
    "RevisionConflict",
    # Dispatch
    "DispatchError",
    "ResourceConflictError",
    # Invariants
    "InvariantViolation",
    "CorruptRevisionError",
    # Utilities
    "is_retryable",
    "categorize_error",
    "error_reason",
]
