"""Reconciliation controller: work queue, state machine, reconciler, manager."""

from appspine.controller.backoff import ExponentialBackoff
from appspine.controller.manager import ControllerManager, ManagerStats
from appspine.controller.phases import (
    VALID_TRANSITIONS,
    InvalidTransitionError,
    ReconcilePhase,
    validate_transition,
)
from appspine.controller.reconciler import (
    ApplicationReconciler,
    ReconcileResult,
    ReconcileState,
)
from appspine.controller.workqueue import WorkQueue

__all__ = [
    "VALID_TRANSITIONS",
    "ApplicationReconciler",
    "ControllerManager",
    "ExponentialBackoff",
    "InvalidTransitionError",
    "ManagerStats",
    "ReconcilePhase",
    "ReconcileResult",
    "ReconcileState",
    "WorkQueue",
    "validate_transition",
]
