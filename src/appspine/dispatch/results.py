"""Result models for multi-cluster dispatch.

Pydantic v2 models capturing what one dispatch attempt did.  They form a
composition hierarchy: per-resource results roll up into per-target
results, which roll up into one :class:`DispatchResult` whose aggregate
status the controller turns into Application status.

Key Concepts:
    ResourceOutcome: what compare-and-patch did to one resource.
    TargetOutcome: Applied, AppliedWithDrift or Failed for one cluster.
    DispatchStatus: Succeeded when every target applied, Degraded when some
        did and some failed, Failed when none did.

Architecture Decisions:
    - ``mark_complete()`` pattern: the dispatcher calls it once every target
      has joined; it stamps duration and derives the aggregate status.
    - A target with zero assigned resources counts as Applied.

Tags:
    results, models, pydantic, dispatch, multi-cluster, status
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class ResourceOutcome(str, Enum):
    CREATED = "created"
    CONFIGURED = "configured"
    UNCHANGED = "unchanged"
    DRIFT_CORRECTED = "drift_corrected"
    DELETED = "deleted"
    FAILED = "failed"


class TargetOutcome(str, Enum):
    APPLIED = "Applied"
    APPLIED_WITH_DRIFT = "AppliedWithDrift"
    FAILED = "Failed"

    @property
    def succeeded(self) -> bool:
        return self is not TargetOutcome.FAILED


class DispatchStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    DEGRADED = "Degraded"
    FAILED = "Failed"
    PENDING = "Pending"

    @property
    def at_least_degraded(self) -> bool:
        return self in (DispatchStatus.SUCCEEDED, DispatchStatus.DEGRADED)


class ResourceResult(BaseModel):
    """Compare-and-patch outcome for a single resource."""

    component: str
    api_version: str
    kind: str
    name: str
    namespace: str | None = None
    outcome: ResourceOutcome
    error: str | None = None

    @property
    def changed(self) -> bool:
        return self.outcome in (
            ResourceOutcome.CREATED,
            ResourceOutcome.CONFIGURED,
            ResourceOutcome.DRIFT_CORRECTED,
        )


class TargetResult(BaseModel):
    """Everything dispatched to one cluster in one attempt."""

    cluster: str
    components: list[str] = Field(default_factory=list)
    outcome: TargetOutcome = TargetOutcome.APPLIED
    reason: str = ""
    message: str = ""
    resources: list[ResourceResult] = Field(default_factory=list)
    pruned: list[ResourceResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.outcome.succeeded

    @property
    def drifted(self) -> list[ResourceResult]:
        return [r for r in self.resources if r.outcome == ResourceOutcome.DRIFT_CORRECTED]

    def compute_outcome(self) -> TargetOutcome:
        """Derive the outcome from resource results unless already Failed."""
        if self.outcome == TargetOutcome.FAILED:
            return self.outcome
        if self.drifted:
            return TargetOutcome.APPLIED_WITH_DRIFT
        return TargetOutcome.APPLIED


class DispatchResult(BaseModel):
    """Aggregated outcome of dispatching one revision to its placement."""

    revision: str
    started_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    completed_at: str | None = None
    duration_seconds: float = 0.0
    targets: list[TargetResult] = Field(default_factory=list)
    status: DispatchStatus = DispatchStatus.PENDING
    summary: str = ""

    def target(self, cluster: str) -> TargetResult | None:
        for t in self.targets:
            if t.cluster == cluster:
                return t
        return None

    @property
    def succeeded_targets(self) -> list[TargetResult]:
        return [t for t in self.targets if t.succeeded]

    @property
    def failed_targets(self) -> list[TargetResult]:
        return [t for t in self.targets if not t.succeeded]

    @property
    def changed(self) -> bool:
        """True when any resource on any target was written or pruned."""
        return any(r.changed for t in self.targets for r in t.resources) or any(
            r.outcome == ResourceOutcome.DELETED for t in self.targets for r in t.pruned
        )

    def mark_complete(self) -> None:
        """Stamp completion time and derive the aggregate status."""
        self.completed_at = datetime.now(UTC).isoformat()
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at)
        self.duration_seconds = (end - start).total_seconds()
        self.targets.sort(key=lambda t: t.cluster)

        ok = len(self.succeeded_targets)
        total = len(self.targets)
        if ok == total:
            self.status = DispatchStatus.SUCCEEDED
        elif ok > 0:
            self.status = DispatchStatus.DEGRADED
        else:
            self.status = DispatchStatus.FAILED
        self.summary = f"{ok}/{total} targets applied"
