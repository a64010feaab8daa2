"""Multi-cluster dispatch: placement, compare-and-patch apply, aggregation."""

from appspine.dispatch.cluster import (
    Applier,
    ClusterClient,
    ClusterRef,
    ClusterRegistry,
    InMemoryClusterClient,
    InMemoryFleet,
    PatchingApplier,
    StaticClusterRegistry,
)
from appspine.dispatch.dispatcher import MultiClusterDispatcher, tracked_resources
from appspine.dispatch.placement import PlacementDecision, PlacementTarget, resolve_placement
from appspine.dispatch.results import (
    DispatchResult,
    DispatchStatus,
    ResourceOutcome,
    ResourceResult,
    TargetOutcome,
    TargetResult,
)

__all__ = [
    "Applier",
    "ClusterClient",
    "ClusterRef",
    "ClusterRegistry",
    "DispatchResult",
    "DispatchStatus",
    "InMemoryClusterClient",
    "InMemoryFleet",
    "MultiClusterDispatcher",
    "PatchingApplier",
    "PlacementDecision",
    "PlacementTarget",
    "ResourceOutcome",
    "ResourceResult",
    "StaticClusterRegistry",
    "TargetOutcome",
    "TargetResult",
    "resolve_placement",
    "tracked_resources",
]
