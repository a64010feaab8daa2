"""Placement: which components go to which clusters.

Computed from the render output's ``topology`` policies, never by the
dispatcher itself.  When the workflow has ``deploy`` steps, only the
policies those steps list are used (a deploy step listing none uses every
topology policy).  Without any topology policy, every component goes to the
registry's default cluster.
"""

from __future__ import annotations

from dataclasses import dataclass

from appspine.core.errors import AppSpineError, ClusterResolutionError
from appspine.dispatch.cluster import ClusterRef, ClusterRegistry
from appspine.render.output import RenderedPolicy, RenderOutput

TOPOLOGY_POLICY = "topology"
DEPLOY_STEP = "deploy"


@dataclass(frozen=True)
class PlacementTarget:
    cluster: ClusterRef
    components: tuple[str, ...]


@dataclass(frozen=True)
class PlacementDecision:
    """Resolved mapping from target cluster to the components it runs."""

    targets: tuple[PlacementTarget, ...] = ()

    @property
    def clusters(self) -> list[str]:
        return [t.cluster.name for t in self.targets]

    def components_for(self, cluster: str) -> tuple[str, ...]:
        for target in self.targets:
            if target.cluster.name == cluster:
                return target.components
        return ()

    def as_dict(self) -> dict[str, list[str]]:
        return {t.cluster.name: list(t.components) for t in self.targets}


def placement_policies(render: RenderOutput) -> list[RenderedPolicy]:
    """Topology policies in effect for *render*."""
    topology = render.policies_of_type(TOPOLOGY_POLICY)
    deploy_steps = [s for s in render.workflow if s.type == DEPLOY_STEP]
    if not deploy_steps:
        return topology

    selected: set[str] = set()
    for step in deploy_steps:
        names = step.properties.get("policies")
        selected.update(names if names else (p.name for p in topology))
    return [p for p in topology if p.name in selected]


def resolve_placement(render: RenderOutput, registry: ClusterRegistry) -> PlacementDecision:
    """Resolve clusters for every component.

    Raises:
        ClusterResolutionError: If the registry fails or a policy matches nothing.
    """
    all_components = render.component_names
    assigned: dict[str, tuple[ClusterRef, set[str]]] = {}

    try:
        policies = placement_policies(render)
        if not policies:
            cluster = registry.default_cluster()
            assigned[cluster.name] = (cluster, set(all_components))
        for policy in policies:
            components = policy.properties.get("components") or all_components
            for cluster in registry.resolve_clusters(policy.properties):
                _, names = assigned.setdefault(cluster.name, (cluster, set()))
                names.update(c for c in components if c in all_components)
    except AppSpineError:
        raise
    except Exception as e:
        raise ClusterResolutionError(f"cluster registry lookup failed: {e}", cause=e) from e

    return PlacementDecision(
        targets=tuple(
            PlacementTarget(cluster, tuple(sorted(names)))
            for _, (cluster, names) in sorted(assigned.items())
        )
    )
