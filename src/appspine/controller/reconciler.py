"""
Application reconciler: one synchronous pass of the control loop.

    observe → render → diff → (revise) → place → dispatch → report

Why This Module Exists
----------------------
Everything else in the engine is a leaf: the renderer is pure, the
revision store only stores, the dispatcher only applies.  The reconciler
decides what happens when, owns every ``status`` write and every event,
and turns failures into either conditions (render and dispatch errors) or
requeues (transient infrastructure errors).

Key Concepts
------------
- **Level-triggered**: each pass reads the Application fresh and converges
  toward it; running it twice on an unchanged Application creates no
  revision and writes nothing to any cluster.
- **Change detection**: a new revision is created only when the render's
  fingerprint differs from the latest revision's.
- **Pins**: the revision being rolled out is pinned as ``rollout`` until
  ``status`` points at it; clusters pin what they actually run.  GC never
  touches pinned revisions.
- **Deletion**: checked between steps; the current step always finishes,
  then cleanup removes tracked resources, purges revisions and finalizes.

Result Contract
---------------
``reconcile()`` never raises for Application-level problems.  It returns a
:class:`ReconcileResult` telling the caller whether to requeue with backoff
(``requeue``, optionally capped by ``max_delay``) or forget the key's
failure history (``forget``).
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field

from appspine.controller.phases import VALID_TRANSITIONS, ReconcilePhase, validate_transition
from appspine.core.errors import (
    AppSpineError,
    CorruptRevisionError,
    DispatchError,
    InvariantViolation,
    RenderError,
    RevisionConflict,
    error_reason,
)
from appspine.core.events import EventRecorder, EventType, ObjectReference, emit_event
from appspine.core.logging import LogContext, get_logger
from appspine.core.models import (
    AppID,
    Application,
    ApplicationPhase,
    ApplicationStatus,
    AppliedResource,
    ConditionStatus,
    ConditionType,
    ServiceStatus,
    TargetStatus,
    WorkflowStepStatus,
)
from appspine.core.settings import EngineSettings, get_settings
from appspine.core.store import ApplicationStore
from appspine.dispatch.cluster import ClusterRegistry
from appspine.dispatch.dispatcher import MultiClusterDispatcher, tracked_resources
from appspine.dispatch.placement import PlacementDecision, resolve_placement
from appspine.dispatch.results import DispatchResult, DispatchStatus, ResourceResult
from appspine.render.output import RenderOutput
from appspine.render.renderer import Renderer
from appspine.revision.gc import GCReport
from appspine.revision.models import ApplicationRevision
from appspine.revision.store import (
    HOLDER_ROLLOUT,
    HOLDER_STATUS,
    TARGET_HOLDER_PREFIX,
    RevisionStore,
    target_holder,
)

logger = get_logger(__name__)

_APP_PHASE = {
    DispatchStatus.SUCCEEDED: ApplicationPhase.SUCCEEDED,
    DispatchStatus.DEGRADED: ApplicationPhase.DEGRADED,
    DispatchStatus.FAILED: ApplicationPhase.FAILED,
}

_RECONCILE_PHASE = {
    DispatchStatus.SUCCEEDED: ReconcilePhase.SUCCEEDED,
    DispatchStatus.DEGRADED: ReconcilePhase.DEGRADED,
    DispatchStatus.FAILED: ReconcilePhase.FAILED,
}


@dataclass
class ReconcileState:
    """Transient per-attempt state; discarded when the attempt ends."""

    app_id: AppID
    retry_count: int = 0
    phase: ReconcilePhase = ReconcilePhase.PENDING
    revision: ApplicationRevision | None = None
    created_revision: bool = False
    placement: PlacementDecision | None = None
    dispatch: DispatchResult | None = None
    history: list[ReconcilePhase] = field(default_factory=list)

    def advance(self, phase: ReconcilePhase) -> None:
        validate_transition(self.phase, phase)
        self.history.append(self.phase)
        self.phase = phase
        logger.debug("reconcile.phase", phase=phase.value)

    def can_advance(self, phase: ReconcilePhase) -> bool:
        return phase in VALID_TRANSITIONS.get(self.phase, frozenset())


@dataclass
class ReconcileResult:
    app_id: AppID
    phase: ReconcilePhase
    requeue: bool = False
    max_delay: float | None = None
    forget: bool = False
    error: Exception | None = None
    revision: str | None = None
    dispatch_status: DispatchStatus | None = None
    finalized: bool = False


class _Deleted(Exception):
    """Raised between steps when the Application is marked for deletion."""

    def __init__(self, app: Application):
        self.app = app


class ApplicationReconciler:
    """Drives Renderer → RevisionStore → Dispatcher for one Application at a time.

    Every collaborator is injected; nothing is looked up globally.
    ``on_settled`` is called with the AppID once a dispatch settles, which
    is how the manager schedules GC off the reconcile path.
    """

    def __init__(
        self,
        store: ApplicationStore,
        renderer: Renderer,
        revisions: RevisionStore,
        dispatcher: MultiClusterDispatcher,
        registry: ClusterRegistry,
        recorder: EventRecorder | None = None,
        settings: EngineSettings | None = None,
        on_settled: Callable[[AppID], None] | None = None,
    ):
        self.store = store
        self.renderer = renderer
        self.revisions = revisions
        self.dispatcher = dispatcher
        self.registry = registry
        self.recorder = recorder
        self.settings = settings or get_settings()
        self.on_settled = on_settled

    # ------------------------------------------------------------------ #
    # Entry point
    # ------------------------------------------------------------------ #

    def reconcile(self, app_id: AppID, retry_count: int = 0) -> ReconcileResult:
        """Run one reconcile attempt.

        Args:
            app_id: Application to reconcile.
            retry_count: Consecutive failed attempts before this one; drives
                the ``Stalled`` condition.
        """
        state = ReconcileState(app_id=app_id, retry_count=retry_count)
        with LogContext(app=app_id.key, attempt=retry_count + 1):
            logger.debug("reconcile.started")
            try:
                app = self.store.get(app_id)
                if app is None:
                    logger.debug("reconcile.not_found")
                    return ReconcileResult(app_id, state.phase, forget=True)
                if app.deleting:
                    return self._cleanup(app, state)
                return self._reconcile(app, state)
            except _Deleted as d:
                deleted = d.app
            except InvariantViolation as e:
                logger.error("reconcile.invariant_violation", error=e.to_dict())
                self._event(app_id, EventType.WARNING, e.reason, e.message)
                return ReconcileResult(app_id, state.phase, forget=True, error=e)
            except Exception as e:
                return self._on_transient(state, e)

            try:
                return self._cleanup(deleted, state, extra_applied=self._tracker(deleted, state))
            except Exception as e:
                return self._on_transient(state, e)

    # ------------------------------------------------------------------ #
    # Main path
    # ------------------------------------------------------------------ #

    def _reconcile(self, app: Application, state: ReconcileState) -> ReconcileResult:
        app_id = app.app_id

        state.advance(ReconcilePhase.RENDERING)
        try:
            render = self.renderer.render(app_id, app.spec)
        except RenderError as e:
            return self._on_render_failed(app, state, e)
        self._check_deleted(app_id, state)

        state.advance(ReconcilePhase.DIFFING)
        state.revision = self._diff(app, render, state)
        self.revisions.set_reference(app_id, HOLDER_ROLLOUT, state.revision.number)
        self._check_deleted(app_id, state)

        state.advance(ReconcilePhase.APPLYING)
        state.placement = resolve_placement(state.revision.render, self.registry)
        state.dispatch = self.dispatcher.apply(
            state.revision, state.placement, previous=app.status.applied
        )
        dropped = self._prune_dropped_clusters(app, state.placement)
        state.advance(_RECONCILE_PHASE[state.dispatch.status])
        self._check_deleted(app_id, state)

        self._update_target_references(app_id, state)
        status = self._translate(app, state, dropped)
        newly_stalled = status.is_true(ConditionType.STALLED) and not app.status.is_true(
            ConditionType.STALLED
        )
        if status != app.status:
            app.status = status
            self.store.update_status(app)
        self._pin_status(app_id, state)

        self._emit_outcome_events(app, state, newly_stalled)
        if self.on_settled is not None:
            self.on_settled(app_id)

        result = ReconcileResult(
            app_id,
            state.phase,
            revision=state.revision.name,
            dispatch_status=state.dispatch.status,
        )
        if state.dispatch.status == DispatchStatus.SUCCEEDED:
            result.forget = True
        else:
            result.requeue = True
            result.max_delay = self.settings.degraded_requeue_ceiling_seconds
        state.advance(ReconcilePhase.IDLE)

        logger.info(
            "reconcile.completed",
            revision=state.revision.name,
            new_revision=state.created_revision,
            status=state.dispatch.status.value,
            summary=state.dispatch.summary,
        )
        return result

    def _diff(
        self,
        app: Application,
        render: RenderOutput,
        state: ReconcileState,
    ) -> ApplicationRevision:
        app_id = app.app_id
        latest = self.revisions.get_latest(app_id)
        current = self.revisions.current_number(app_id)
        if latest is not None and latest.number > current:
            raise CorruptRevisionError(
                f"latest revision {latest.number} is above the allocation counter {current}"
            ).with_context(app=app_id.key, revision=latest.name)

        fp = self.revisions.fingerprint(render)
        if latest is not None and latest.fingerprint == fp:
            state.advance(ReconcilePhase.NO_CHANGE)
            return latest

        state.advance(ReconcilePhase.REVISING)
        revision = self._create_revision(app, render, fp, current)
        state.created_revision = True
        self._event(app_id, EventType.NORMAL, "Revised", f"created revision {revision.name}")
        return revision

    def _create_revision(
        self,
        app: Application,
        render: RenderOutput,
        fp: str,
        expected: int,
    ) -> ApplicationRevision:
        """``create_next`` with one retry on a conflicting concurrent creator."""
        app_id = app.app_id
        try:
            return self.revisions.create_next(
                app_id, render, generation=app.metadata.generation, expected_number=expected
            )
        except RevisionConflict as e:
            logger.info("revision.conflict_retry", expected=e.expected, actual=e.actual)

        latest = self.revisions.get_latest(app_id)
        if latest is not None and latest.fingerprint == fp:
            return latest
        return self.revisions.create_next(
            app_id,
            render,
            generation=app.metadata.generation,
            expected_number=self.revisions.current_number(app_id),
        )

    def _prune_dropped_clusters(
        self,
        app: Application,
        placement: PlacementDecision,
    ) -> list[AppliedResource]:
        """Delete resources on clusters the placement no longer includes.

        Returns the entries that could not be removed and stay tracked.
        """
        by_cluster: dict[str, list[AppliedResource]] = defaultdict(list)
        for entry in app.status.applied:
            if entry.cluster not in placement.clusters:
                by_cluster[entry.cluster].append(entry)

        remaining: list[AppliedResource] = []
        for cluster_name, entries in sorted(by_cluster.items()):
            cluster = self.registry.get(cluster_name)
            if cluster is None:
                logger.warning("reconcile.prune_cluster_unknown", cluster=cluster_name)
                remaining.extend(entries)
                continue
            failed = {
                (r.api_version, r.kind, r.namespace, r.name)
                for r in self.dispatcher.prune(cluster, entries)
                if r.error is not None
            }
            remaining.extend(e for e in entries if e.resource_key in failed)
        return remaining

    def _update_target_references(self, app_id: AppID, state: ReconcileState) -> None:
        dispatch, placement = state.dispatch, state.placement
        number = state.revision.number

        live: set[str] = set()
        for target in dispatch.succeeded_targets:
            for component in target.components:
                holder = target_holder(target.cluster, component)
                self.revisions.set_reference(app_id, holder, number)
                live.add(holder)

        succeeded = {t.cluster for t in dispatch.succeeded_targets}
        for holder in self.revisions.references(app_id):
            if not holder.startswith(TARGET_HOLDER_PREFIX) or holder in live:
                continue
            cluster = holder[len(TARGET_HOLDER_PREFIX):].split("/", 1)[0]
            if cluster in succeeded or cluster not in placement.clusters:
                self.revisions.clear_reference(app_id, holder)

    def _pin_status(self, app_id: AppID, state: ReconcileState) -> None:
        """Move the ``status`` pin once ``latest_revision`` is stored."""
        if not state.dispatch.status.at_least_degraded:
            return
        number = state.revision.number
        self.revisions.set_reference(app_id, HOLDER_STATUS, number)
        if self.revisions.references(app_id).get(HOLDER_ROLLOUT) == number:
            self.revisions.clear_reference(app_id, HOLDER_ROLLOUT)

    # ------------------------------------------------------------------ #
    # Status
    # ------------------------------------------------------------------ #

    def _tracker(self, app: Application, state: ReconcileState) -> list[AppliedResource]:
        """Resource tracker after this attempt's dispatch."""
        if state.dispatch is None:
            return list(app.status.applied)
        previous: dict[str, list[AppliedResource]] = defaultdict(list)
        for entry in app.status.applied:
            previous[entry.cluster].append(entry)

        tracked: list[AppliedResource] = []
        for target in state.dispatch.targets:
            entries = tracked_resources(target)
            if not target.succeeded:
                keys = {e.resource_key for e in entries}
                entries.extend(e for e in previous[target.cluster] if e.resource_key not in keys)
            tracked.extend(entries)
        for cluster, entries in previous.items():
            if cluster not in state.placement.clusters:
                tracked.extend(entries)
        return tracked

    def _translate(
        self,
        app: Application,
        state: ReconcileState,
        dropped_remaining: list[AppliedResource],
    ) -> ApplicationStatus:
        revision, dispatch = state.revision, state.dispatch
        status = app.status.model_copy(deep=True)
        status.observed_generation = app.metadata.generation
        status.phase = _APP_PHASE[dispatch.status]

        status.set_condition(
            ConditionType.RENDERED,
            ConditionStatus.TRUE,
            "Rendered",
            f"{len(revision.render.components)} component(s) rendered",
        )
        status.set_condition(
            ConditionType.REVISED,
            ConditionStatus.TRUE,
            "Revised" if state.created_revision else "NoChange",
            revision.name,
        )
        message = dispatch.summary
        failures = [f"{t.cluster}: {t.reason}: {t.message}" for t in dispatch.failed_targets]
        if failures:
            message = f"{message}; " + "; ".join(failures)
        succeeded = dispatch.status == DispatchStatus.SUCCEEDED
        cond_status = ConditionStatus.TRUE if succeeded else ConditionStatus.FALSE
        status.set_condition(
            ConditionType.DISPATCHED, cond_status, dispatch.status.value, message
        )
        status.set_condition(ConditionType.READY, cond_status, dispatch.status.value, message)

        if succeeded:
            if status.get_condition(ConditionType.STALLED) is not None:
                status.set_condition(
                    ConditionType.STALLED, ConditionStatus.FALSE, "Recovered", ""
                )
        else:
            consecutive = state.retry_count + 1
            if consecutive >= self.settings.stall_threshold:
                status.set_condition(
                    ConditionType.STALLED,
                    ConditionStatus.TRUE,
                    "ConsecutiveFailures",
                    f"{consecutive} consecutive attempts did not succeed; "
                    f"still retrying: {message}",
                )

        if dispatch.status.at_least_degraded:
            status.latest_revision = revision.name

        previous = {(s.cluster, s.name): s for s in app.status.services}
        services = []
        for target in dispatch.targets:
            for component in target.components:
                if target.succeeded:
                    comp_rev = revision.component_revision(component)
                    services.append(
                        ServiceStatus(
                            name=component,
                            cluster=target.cluster,
                            healthy=True,
                            revision=revision.name,
                            component_revision=comp_rev.name if comp_rev else None,
                        )
                    )
                else:
                    prior = previous.get((target.cluster, component))
                    services.append(
                        ServiceStatus(
                            name=component,
                            cluster=target.cluster,
                            healthy=False,
                            revision=prior.revision if prior else None,
                            component_revision=prior.component_revision if prior else None,
                            message=target.message,
                        )
                    )
        status.services = sorted(services, key=lambda s: (s.name, s.cluster))
        status.targets = [
            TargetStatus(
                cluster=t.cluster,
                outcome=t.outcome.value,
                reason=t.reason,
                message=t.message,
                components=list(t.components),
            )
            for t in dispatch.targets
        ]

        tracker = [
            e for e in self._tracker(app, state) if e.cluster in state.placement.clusters
        ]
        tracker.extend(dropped_remaining)
        status.applied = sorted(tracker, key=lambda e: (e.cluster, e.component, e.kind, e.name))

        status.workflow = [
            WorkflowStepStatus(
                name=step.name,
                type=step.type,
                phase=_step_phase(step.type, dispatch.status),
            )
            for step in revision.render.workflow
        ]
        return status

    def _emit_outcome_events(
        self,
        app: Application,
        state: ReconcileState,
        newly_stalled: bool,
    ) -> None:
        app_id, revision, dispatch = app.app_id, state.revision, state.dispatch
        changed = state.created_revision or dispatch.changed

        if dispatch.status == DispatchStatus.SUCCEEDED:
            if changed:
                self._event(
                    app_id,
                    EventType.NORMAL,
                    "Applied",
                    f"{revision.name} applied to {', '.join(t.cluster for t in dispatch.targets)}",
                )
        else:
            reason = "Degraded" if dispatch.status == DispatchStatus.DEGRADED else "ApplyFailed"
            detail = "; ".join(f"{t.cluster}: {t.message}" for t in dispatch.failed_targets)
            self._event(app_id, EventType.WARNING, reason, f"{revision.name}: {detail}")

        drifted = [t.cluster for t in dispatch.targets if t.drifted]
        if drifted:
            self._event(
                app_id,
                EventType.NORMAL,
                "DriftCorrected",
                f"live state corrected on {', '.join(drifted)}",
            )
        if newly_stalled:
            cond = app.status.get_condition(ConditionType.STALLED)
            self._event(app_id, EventType.WARNING, "Stalled", cond.message if cond else "")

        if changed and dispatch.status.at_least_degraded:
            for step in revision.render.workflow:
                if step.type == "notification":
                    self._event(
                        app_id,
                        EventType.NORMAL,
                        "WorkflowNotification",
                        step.properties.get("message", ""),
                    )

    # ------------------------------------------------------------------ #
    # Failure paths
    # ------------------------------------------------------------------ #

    def _on_render_failed(
        self,
        app: Application,
        state: ReconcileState,
        error: RenderError,
    ) -> ReconcileResult:
        state.advance(ReconcilePhase.RENDER_FAILED)
        logger.warning("reconcile.render_failed", reason=error.reason, error=error.message)

        status = app.status.model_copy(deep=True)
        status.phase = ApplicationPhase.RENDER_FAILED
        status.observed_generation = app.metadata.generation
        status.set_condition(
            ConditionType.RENDERED, ConditionStatus.FALSE, error.reason, error.message
        )
        if status != app.status:
            app.status = status
            self.store.update_status(app)
        self._event(app.app_id, EventType.WARNING, error.reason, error.message)

        state.advance(ReconcilePhase.IDLE)
        return ReconcileResult(app.app_id, ReconcilePhase.RENDER_FAILED, forget=True, error=error)

    def _on_transient(self, state: ReconcileState, error: Exception) -> ReconcileResult:
        app_id = state.app_id
        consecutive = state.retry_count + 1
        if state.can_advance(ReconcilePhase.APPLYING_RETRY):
            state.advance(ReconcilePhase.APPLYING_RETRY)

        if isinstance(error, AppSpineError):
            logger.warning(
                "reconcile.transient_error", consecutive=consecutive, error=error.to_dict()
            )
        else:
            logger.error(
                "reconcile.unexpected_error",
                consecutive=consecutive,
                error=str(error),
                exc_info=True,
            )
        self._event(app_id, EventType.WARNING, error_reason(error), str(error))

        if consecutive >= self.settings.stall_threshold:
            self.mark_stalled(app_id, consecutive, error)
        return ReconcileResult(app_id, ReconcilePhase.APPLYING_RETRY, requeue=True, error=error)

    def mark_stalled(self, app_id: AppID, consecutive: int, error: Exception) -> bool:
        """Write ``Stalled=True`` after too many consecutive failures.

        Best effort: a failed status write is logged and retried with the
        next failure.  Returns True when the condition was newly set.
        """
        try:
            app = self.store.get(app_id)
            if app is None or app.deleting:
                return False
            was_stalled = app.status.is_true(ConditionType.STALLED)
            app.status.set_condition(
                ConditionType.STALLED,
                ConditionStatus.TRUE,
                "ConsecutiveFailures",
                f"{consecutive} consecutive attempts failed; still retrying: "
                f"{error_reason(error)}: {error}",
            )
            self.store.update_status(app)
        except Exception as e:
            logger.warning("reconcile.stalled_write_failed", error=str(e))
            return False
        if not was_stalled:
            logger.warning("reconcile.stalled", consecutive=consecutive)
            self._event(
                app_id,
                EventType.WARNING,
                "Stalled",
                f"{consecutive} consecutive attempts failed: {error}",
            )
        return not was_stalled

    # ------------------------------------------------------------------ #
    # Deletion
    # ------------------------------------------------------------------ #

    def _check_deleted(self, app_id: AppID, state: ReconcileState) -> None:
        current = self.store.get(app_id)
        if current is not None and current.deleting:
            logger.info("reconcile.deletion_observed", phase=state.phase.value)
            raise _Deleted(current)

    def _cleanup(
        self,
        app: Application,
        state: ReconcileState,
        extra_applied: list[AppliedResource] | None = None,
    ) -> ReconcileResult:
        """Delete tracked resources everywhere, purge revisions, finalize."""
        app_id = app.app_id
        state.advance(ReconcilePhase.DELETING)

        entries = {(e.cluster, e.resource_key): e for e in app.status.applied}
        for e in extra_applied or []:
            entries.setdefault((e.cluster, e.resource_key), e)

        by_cluster: dict[str, list[AppliedResource]] = defaultdict(list)
        for e in entries.values():
            by_cluster[e.cluster].append(e)
        targets = []
        for cluster_name, cluster_entries in sorted(by_cluster.items()):
            cluster = self.registry.get(cluster_name)
            if cluster is None:
                logger.warning(
                    "reconcile.cleanup_cluster_unknown",
                    cluster=cluster_name,
                    resources=len(cluster_entries),
                )
                continue
            targets.append((cluster, cluster_entries))

        failures = self.dispatcher.delete_all(targets)
        if failures:
            failed = [(c, r) for c, results in sorted(failures.items()) for r in results]
            error = DispatchError(
                f"{len(failed)} resource(s) could not be deleted: "
                + "; ".join(f"{c}: {r.kind}/{r.name}: {r.error}" for c, r in failed),
                reason="CleanupFailed",
            ).with_context(app=app_id.key)
            self._record_cleanup_progress(app_id, list(entries.values()), failures)
            return self._on_transient(state, error)

        purged = self.revisions.purge(app_id)
        self.store.finalize(app_id)
        logger.info("reconcile.deleted", revisions_purged=purged, clusters=len(targets))
        self._event(
            app_id,
            EventType.NORMAL,
            "Deleted",
            f"removed resources from {len(targets)} cluster(s) and {purged} revision(s)",
        )
        return ReconcileResult(app_id, ReconcilePhase.DELETING, forget=True, finalized=True)

    def _record_cleanup_progress(
        self,
        app_id: AppID,
        entries: list[AppliedResource],
        failures: dict[str, list[ResourceResult]],
    ) -> None:
        remaining = {
            (cluster, r.kind, r.name, r.namespace)
            for cluster, results in failures.items()
            for r in results
        }
        try:
            app = self.store.get(app_id)
            if app is None:
                return
            app.status.phase = ApplicationPhase.DELETING
            app.status.applied = sorted(
                (e for e in entries if (e.cluster, e.kind, e.name, e.namespace) in remaining),
                key=lambda e: (e.cluster, e.component, e.kind, e.name),
            )
            self.store.update_status(app)
        except Exception as e:
            logger.warning("reconcile.cleanup_status_write_failed", error=str(e))

    # ------------------------------------------------------------------ #
    # GC
    # ------------------------------------------------------------------ #

    def collect_garbage(self, app_id: AppID) -> GCReport | None:
        """One retention pass for *app_id*; skipped while it is being deleted."""
        app = self.store.get(app_id)
        if app is None or app.deleting:
            return None
        return self.revisions.gc(app_id, self.settings.revision_history_limit)

    # ------------------------------------------------------------------ #
    # Events
    # ------------------------------------------------------------------ #

    def _event(self, app_id: AppID, event_type: EventType, reason: str, message: str) -> None:
        emit_event(
            self.recorder,
            ObjectReference(name=app_id.name, namespace=app_id.namespace),
            event_type,
            reason,
            message,
        )


def _step_phase(step_type: str, status: DispatchStatus) -> str:
    if status.at_least_degraded:
        return "succeeded"
    return "failed" if step_type == "deploy" else "skipped"
