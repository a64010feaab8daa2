"""
Multi-cluster dispatcher.

Applies one revision's resources to every target of a placement decision
and reduces the per-target outcomes into one :class:`DispatchResult`.

Targets are independent: each runs in its own pool thread, a failure on
one never touches the others, and the attempt completes only when every
target has joined (the pool is scoped to the call).  Within a target,
resources are applied in ``RenderOutput.apply_order()`` and the first
failure stops that target, since later resources may depend on it.

Targets that applied cleanly are then pruned: resources the Application
applied there before (the resource tracker) but no longer renders for that
cluster are deleted.

Example::

    dispatcher = MultiClusterDispatcher(PatchingApplier(fleet.client_for), max_parallel=8)
    result = dispatcher.apply(revision, placement, previous=app.status.applied)
    result.status  # DispatchStatus.DEGRADED
"""

from __future__ import annotations

from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed

from appspine.core.errors import error_reason
from appspine.core.logging import get_logger
from appspine.core.models import AppliedResource
from appspine.dispatch.cluster import Applier, ClusterRef
from appspine.dispatch.placement import PlacementDecision, PlacementTarget
from appspine.dispatch.results import (
    DispatchResult,
    ResourceOutcome,
    ResourceResult,
    TargetOutcome,
    TargetResult,
)
from appspine.render.output import format_resource_key, resource_key
from appspine.revision.models import ApplicationRevision

logger = get_logger(__name__)


def tracked_resources(result: TargetResult) -> list[AppliedResource]:
    """Resource tracker entries for what *result* left on its cluster."""
    entries = [
        AppliedResource(
            cluster=result.cluster,
            component=r.component,
            api_version=r.api_version,
            kind=r.kind,
            name=r.name,
            namespace=r.namespace,
        )
        for r in result.resources
        if r.outcome != ResourceOutcome.FAILED
    ]
    entries.extend(
        AppliedResource(
            cluster=result.cluster,
            component=r.component,
            api_version=r.api_version,
            kind=r.kind,
            name=r.name,
            namespace=r.namespace,
        )
        for r in result.pruned
        if r.outcome == ResourceOutcome.FAILED
    )
    return entries


class MultiClusterDispatcher:
    """Fan a revision out to its targets through an :class:`Applier`."""

    def __init__(self, applier: Applier, max_parallel: int = 8):
        self.applier = applier
        self.max_parallel = max(1, max_parallel)

    def apply(
        self,
        revision: ApplicationRevision,
        placement: PlacementDecision,
        previous: Iterable[AppliedResource] = (),
    ) -> DispatchResult:
        result = DispatchResult(revision=revision.name)
        previous = list(previous)
        if not placement.targets:
            result.mark_complete()
            return result

        max_workers = min(self.max_parallel, len(placement.targets))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch") as pool:
            futures = {
                pool.submit(self._apply_target, revision, target, previous): target
                for target in placement.targets
            }
            for future in as_completed(futures):
                target = futures[future]
                try:
                    tr = future.result()
                except Exception as e:
                    tr = TargetResult(
                        cluster=target.cluster.name,
                        components=list(target.components),
                        outcome=TargetOutcome.FAILED,
                        reason=error_reason(e),
                        message=str(e),
                    )
                result.targets.append(tr)

        result.mark_complete()
        logger.info(
            "dispatch.completed",
            app=revision.app_id.key,
            revision=revision.name,
            status=result.status.value,
            summary=result.summary,
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result

    def _apply_target(
        self,
        revision: ApplicationRevision,
        target: PlacementTarget,
        previous: list[AppliedResource],
    ) -> TargetResult:
        cluster = target.cluster
        tr = TargetResult(cluster=cluster.name, components=list(target.components))
        resources = revision.render.apply_order(list(target.components))

        for component, resource in resources:
            key = resource_key(resource)
            api_version, kind, namespace, name = key
            try:
                outcome = self.applier.apply(cluster, resource)
            except Exception as e:
                tr.resources.append(
                    ResourceResult(
                        component=component,
                        api_version=api_version,
                        kind=kind,
                        name=name,
                        namespace=namespace,
                        outcome=ResourceOutcome.FAILED,
                        error=str(e),
                    )
                )
                tr.outcome = TargetOutcome.FAILED
                tr.reason = error_reason(e)
                tr.message = f"{format_resource_key(key)}: {e}"
                logger.warning(
                    "dispatch.target_failed",
                    app=revision.app_id.key,
                    revision=revision.name,
                    cluster=cluster.name,
                    resource=format_resource_key(key),
                    reason=tr.reason,
                    error=str(e),
                )
                return tr
            tr.resources.append(
                ResourceResult(
                    component=component,
                    api_version=api_version,
                    kind=kind,
                    name=name,
                    namespace=namespace,
                    outcome=outcome,
                )
            )

        tr.outcome = tr.compute_outcome()
        desired = {resource_key(r) for _, r in resources}
        stale = [
            p for p in previous if p.cluster == cluster.name and p.resource_key not in desired
        ]
        tr.pruned = self.prune(cluster, stale)
        logger.debug(
            "dispatch.target_applied",
            app=revision.app_id.key,
            cluster=cluster.name,
            outcome=tr.outcome.value,
            resources=len(tr.resources),
            pruned=len(tr.pruned),
        )
        return tr

    def prune(self, cluster: ClusterRef, stale: Iterable[AppliedResource]) -> list[ResourceResult]:
        """Delete tracked resources that are no longer rendered for *cluster*.

        Failures are recorded per resource and never raised.
        """
        results = []
        for entry in stale:
            try:
                self.applier.delete(cluster, entry.resource_key)
                outcome, error = ResourceOutcome.DELETED, None
            except Exception as e:
                outcome, error = ResourceOutcome.FAILED, str(e)
                logger.warning(
                    "dispatch.prune_failed",
                    cluster=cluster.name,
                    resource=f"{entry.kind}/{entry.name}",
                    error=error,
                )
            results.append(
                ResourceResult(
                    component=entry.component,
                    api_version=entry.api_version,
                    kind=entry.kind,
                    name=entry.name,
                    namespace=entry.namespace,
                    outcome=outcome,
                    error=error,
                )
            )
        return results

    def delete_all(
        self,
        targets: Iterable[tuple[ClusterRef, list[AppliedResource]]],
    ) -> dict[str, list[ResourceResult]]:
        """Deletion path: remove every tracked resource, targets in parallel.

        Resources are removed in reverse kind order (namespaced objects
        before their Namespace).  Returns the failures by cluster name; an
        empty dict means everything is gone.
        """
        targets = list(targets)
        if not targets:
            return {}
        failures: dict[str, list[ResourceResult]] = {}
        max_workers = min(self.max_parallel, len(targets))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cleanup") as pool:
            futures = {
                pool.submit(self.prune, cluster, sorted(entries, key=_deletion_rank)): cluster
                for cluster, entries in targets
            }
            for future in as_completed(futures):
                failed = [r for r in future.result() if r.outcome == ResourceOutcome.FAILED]
                if failed:
                    failures[futures[future].name] = failed
        return failures


def _deletion_rank(entry: AppliedResource) -> tuple[int, str]:
    foundation = entry.kind in ("Namespace", "CustomResourceDefinition")
    return (1 if foundation else 0, entry.name)
