"""Reconcile state machine.

Valid transition graph::

    PENDING        → RENDERING
    RENDERING      → RENDER_FAILED | DIFFING
    RENDER_FAILED  → IDLE
    DIFFING        → NO_CHANGE | REVISING | APPLYING_RETRY
    NO_CHANGE      → APPLYING
    REVISING       → APPLYING | APPLYING_RETRY
    APPLYING       → SUCCEEDED | DEGRADED | FAILED | APPLYING_RETRY
    SUCCEEDED      → IDLE | APPLYING_RETRY
    DEGRADED       → IDLE | APPLYING_RETRY
    FAILED         → IDLE | APPLYING_RETRY
    APPLYING_RETRY → IDLE
    IDLE           → RENDERING
    any            → DELETING (terminal)

``APPLYING_RETRY`` is where transient failures land; the status write that
follows SUCCEEDED/DEGRADED/FAILED can still fail, hence those edges.
"""

from __future__ import annotations

from enum import Enum


class InvalidTransitionError(ValueError):
    """Raised when the reconciler tries an illegal phase change."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid ReconcilePhase transition: {current} → {target}")


class ReconcilePhase(str, Enum):
    PENDING = "Pending"
    RENDERING = "Rendering"
    RENDER_FAILED = "RenderFailed"
    DIFFING = "Diffing"
    NO_CHANGE = "NoChange"
    REVISING = "Revising"
    APPLYING = "Applying"
    SUCCEEDED = "Succeeded"
    DEGRADED = "Degraded"
    FAILED = "Failed"
    APPLYING_RETRY = "ApplyingRetry"
    IDLE = "Idle"
    DELETING = "Deleting"


_P = ReconcilePhase

VALID_TRANSITIONS: dict[ReconcilePhase, frozenset[ReconcilePhase]] = {
    _P.PENDING: frozenset({_P.RENDERING}),
    _P.RENDERING: frozenset({_P.RENDER_FAILED, _P.DIFFING}),
    _P.RENDER_FAILED: frozenset({_P.IDLE}),
    _P.DIFFING: frozenset({_P.NO_CHANGE, _P.REVISING, _P.APPLYING_RETRY}),
    _P.NO_CHANGE: frozenset({_P.APPLYING}),
    _P.REVISING: frozenset({_P.APPLYING, _P.APPLYING_RETRY}),
    _P.APPLYING: frozenset({_P.SUCCEEDED, _P.DEGRADED, _P.FAILED, _P.APPLYING_RETRY}),
    _P.SUCCEEDED: frozenset({_P.IDLE, _P.APPLYING_RETRY}),
    _P.DEGRADED: frozenset({_P.IDLE, _P.APPLYING_RETRY}),
    _P.FAILED: frozenset({_P.IDLE, _P.APPLYING_RETRY}),
    _P.APPLYING_RETRY: frozenset({_P.IDLE}),
    _P.IDLE: frozenset({_P.RENDERING}),
    _P.DELETING: frozenset(),
}


def validate_transition(current: ReconcilePhase, target: ReconcilePhase) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_transition(ReconcilePhase.APPLYING, ReconcilePhase.DEGRADED)
        >>> validate_transition(ReconcilePhase.IDLE, ReconcilePhase.APPLYING)
        Traceback (most recent call last):
        ...
        InvalidTransitionError: Invalid ReconcilePhase transition: Idle → Applying
    """
    if target is ReconcilePhase.DELETING and current is not ReconcilePhase.DELETING:
        return
    if target not in VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value)
