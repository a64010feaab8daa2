"""Tests for one reconcile pass: revisions, status, events, failure handling."""

from unittest.mock import MagicMock

from appspine.controller.phases import ReconcilePhase
from appspine.core.errors import CorruptRevisionError, DispatchError, RevisionConflict
from appspine.core.models import ApplicationPhase, ConditionStatus, ConditionType
from appspine.dispatch.cluster import PatchingApplier
from appspine.dispatch.results import DispatchStatus
from appspine.revision.store import HOLDER_ROLLOUT, HOLDER_STATUS, InMemoryRevisionStore
from tests._support.apps import WEB, backend, frontend, topology, web_app

DEPLOYMENT = ("apps/v1", "Deployment", "default", "frontend")
SERVICE = ("v1", "Service", "default", "frontend")


class HookedApplier:
    """Applier that runs *hook* before the first apply."""

    def __init__(self, inner, hook):
        self.inner = inner
        self.hook = hook
        self.fired = False

    def apply(self, cluster, resource):
        if not self.fired:
            self.fired = True
            self.hook()
        return self.inner.apply(cluster, resource)

    def delete(self, cluster, key):
        return self.inner.delete(cluster, key)


def prod_fleet(fleet, *names):
    for name in names:
        fleet.add_cluster(name, {"env": "prod"})
    return [topology("prod", clusterLabelSelector={"env": "prod"})]


# ── Happy path ──────────────────────────────────────────────────────


class TestFirstReconcile:
    def test_creates_revision_and_applies(self, make_reconciler, store, revisions, fleet, recorder):
        store.create(web_app())
        result = make_reconciler().reconcile(WEB)

        assert result.revision == "web-v1"
        assert result.dispatch_status == DispatchStatus.SUCCEEDED
        assert result.phase == ReconcilePhase.IDLE
        assert result.forget and not result.requeue
        assert fleet.clients["local"].keys() == {DEPLOYMENT, SERVICE}

        app = store.get(WEB)
        assert app.status.phase == ApplicationPhase.SUCCEEDED
        assert app.status.latest_revision == "web-v1"
        assert app.status.observed_generation == 1
        for cond in (ConditionType.RENDERED, ConditionType.DISPATCHED, ConditionType.READY):
            assert app.status.is_true(cond)
        assert app.status.get_condition(ConditionType.REVISED).reason == "Revised"
        assert [(s.name, s.cluster, s.component_revision) for s in app.status.services] == [
            ("frontend", "local", "frontend-v1")
        ]
        assert {e.kind for e in app.status.applied} == {"Deployment", "Service"}
        assert recorder.reasons_for("web") == ["Revised", "Applied"]

    def test_pins(self, make_reconciler, store, revisions):
        store.create(web_app())
        make_reconciler().reconcile(WEB)
        assert revisions.references(WEB) == {
            HOLDER_STATUS: 1,
            "target/local/frontend": 1,
        }

    def test_settled_callback(self, make_reconciler, store):
        settled = []
        store.create(web_app())
        make_reconciler(on_settled=settled.append).reconcile(WEB)
        assert settled == [WEB]

    def test_missing_application(self, make_reconciler):
        result = make_reconciler().reconcile(WEB)
        assert result.forget
        assert result.revision is None


class TestIdempotence:
    def test_second_pass_writes_nothing_to_clusters(self, make_reconciler, store, revisions, fleet):
        store.create(web_app())
        reconciler = make_reconciler()
        reconciler.reconcile(WEB)
        writes = list(fleet.clients["local"].writes)

        result = reconciler.reconcile(WEB)
        assert result.revision == "web-v1"
        assert len(revisions.list_revisions(WEB)) == 1
        assert fleet.clients["local"].writes == writes
        assert store.get(WEB).status.get_condition(ConditionType.REVISED).reason == "NoChange"

    def test_settled_status_is_not_rewritten(self, make_reconciler, store, recorder):
        store.create(web_app())
        reconciler = make_reconciler()
        reconciler.reconcile(WEB)
        reconciler.reconcile(WEB)
        version = store.get(WEB).metadata.resource_version
        events = recorder.reasons_for("web")

        reconciler.reconcile(WEB)
        assert store.get(WEB).metadata.resource_version == version
        assert recorder.reasons_for("web") == events


class TestSpecChange:
    def test_new_revision_rolled_out(self, make_reconciler, store, revisions, fleet):
        store.create(web_app())
        reconciler = make_reconciler()
        reconciler.reconcile(WEB)
        store.update_spec(WEB, {"components": [frontend("nginx:1.28")]})

        result = reconciler.reconcile(WEB)
        assert result.revision == "web-v2"
        live = fleet.clients["local"].get(DEPLOYMENT)
        assert live["spec"]["template"]["spec"]["containers"][0]["image"] == "nginx:1.28"
        app = store.get(WEB)
        assert app.status.latest_revision == "web-v2"
        assert app.status.observed_generation == 2
        assert revisions.references(WEB)[HOLDER_STATUS] == 2
        assert revisions.get(WEB, 2).component_revision("frontend").name == "frontend-v2"

    def test_removed_component_pruned(self, make_reconciler, store, fleet):
        store.create(web_app([frontend(), backend()]))
        reconciler = make_reconciler()
        reconciler.reconcile(WEB)
        store.update_spec(WEB, {"components": [frontend()]})
        reconciler.reconcile(WEB)

        assert fleet.clients["local"].keys() == {DEPLOYMENT, SERVICE}
        assert {e.component for e in store.get(WEB).status.applied} == {"frontend"}

    def test_dropped_cluster_cleaned_up(self, make_reconciler, store, revisions, fleet):
        fleet.add_cluster("a")
        fleet.add_cluster("b")
        store.create(web_app(policies=[topology("t", clusters=["a"])]))
        reconciler = make_reconciler()
        reconciler.reconcile(WEB)
        store.update_spec(
            WEB,
            {"components": [frontend()], "policies": [topology("t", clusters=["b"])]},
        )
        reconciler.reconcile(WEB)

        assert fleet.clients["a"].keys() == set()
        assert fleet.clients["b"].keys() == {DEPLOYMENT, SERVICE}
        assert "target/a/frontend" not in revisions.references(WEB)
        assert {e.cluster for e in store.get(WEB).status.applied} == {"b"}

    def test_drift_corrected_without_new_revision(
        self, make_reconciler, store, revisions, fleet, recorder
    ):
        store.create(web_app())
        reconciler = make_reconciler()
        reconciler.reconcile(WEB)
        fleet.clients["local"].patch(DEPLOYMENT, {"spec": {"replicas": 4}})

        reconciler.reconcile(WEB)
        assert fleet.clients["local"].get(DEPLOYMENT)["spec"]["replicas"] == 1
        assert len(revisions.list_revisions(WEB)) == 1
        assert "DriftCorrected" in recorder.reasons_for("web")


class TestWorkflow:
    def test_notification_after_deploy(self, make_reconciler, store, recorder):
        store.create(
            web_app(
                workflow=[
                    {"name": "ship", "type": "deploy"},
                    {"name": "tell", "type": "notification", "properties": {"message": "live"}},
                ]
            )
        )
        make_reconciler().reconcile(WEB)
        events = recorder.get_events_with_name("web")
        assert [e.message for e in events if e.reason == "WorkflowNotification"] == ["live"]
        assert [(s.name, s.phase) for s in store.get(WEB).status.workflow] == [
            ("ship", "succeeded"),
            ("tell", "succeeded"),
        ]


# ── Render failures ─────────────────────────────────────────────────


class TestRenderFailure:
    def test_condition_event_and_no_revision(self, make_reconciler, store, revisions, recorder):
        store.create(web_app([{"name": "db", "type": "postgres"}]))
        result = make_reconciler().reconcile(WEB)

        assert result.phase == ReconcilePhase.RENDER_FAILED
        assert result.forget and not result.requeue
        assert revisions.list_revisions(WEB) == []
        app = store.get(WEB)
        assert app.status.phase == ApplicationPhase.RENDER_FAILED
        cond = app.status.get_condition(ConditionType.RENDERED)
        assert cond.status == ConditionStatus.FALSE
        assert cond.reason == "DefinitionNotFound"
        assert "postgres" in cond.message
        assert recorder.reasons_for("web") == ["DefinitionNotFound"]

    def test_keeps_previous_revision_running(self, make_reconciler, store, fleet):
        store.create(web_app())
        reconciler = make_reconciler()
        reconciler.reconcile(WEB)
        store.update_spec(WEB, {"components": [frontend(replicas="three")]})

        reconciler.reconcile(WEB)
        app = store.get(WEB)
        assert app.status.latest_revision == "web-v1"
        assert fleet.clients["local"].keys() == {DEPLOYMENT, SERVICE}


# ── Dispatch failures ───────────────────────────────────────────────


class TestPartialFailure:
    def test_degraded(self, make_reconciler, store, revisions, fleet, recorder, settings):
        policies = prod_fleet(fleet, "a", "b", "c")
        fleet.clients["b"].fail_on(
            DispatchError("quota exceeded", reason="Forbidden"), operation="create"
        )
        store.create(web_app(policies=policies))
        result = make_reconciler().reconcile(WEB)

        assert result.dispatch_status == DispatchStatus.DEGRADED
        assert result.requeue
        assert result.max_delay == settings.degraded_requeue_ceiling_seconds

        app = store.get(WEB)
        assert app.status.phase == ApplicationPhase.DEGRADED
        assert app.status.latest_revision == "web-v1"
        ready = app.status.get_condition(ConditionType.READY)
        assert ready.status == ConditionStatus.FALSE
        assert "b: Forbidden" in ready.message
        assert [(t.cluster, t.outcome) for t in app.status.targets] == [
            ("a", "Applied"),
            ("b", "Failed"),
            ("c", "Applied"),
        ]
        unhealthy = [s for s in app.status.services if not s.healthy]
        assert [(s.cluster, s.revision) for s in unhealthy] == [("b", None)]
        assert "Degraded" in recorder.reasons_for("web")

        refs = revisions.references(WEB)
        assert refs[HOLDER_STATUS] == 1
        assert HOLDER_ROLLOUT not in refs
        assert "target/b/frontend" not in refs
        assert refs["target/a/frontend"] == refs["target/c/frontend"] == 1

    def test_retry_touches_only_failed_target(self, make_reconciler, store, revisions, fleet):
        policies = prod_fleet(fleet, "a", "b", "c")
        fleet.clients["b"].fail_on(
            DispatchError("quota exceeded", reason="Forbidden"), operation="create"
        )
        store.create(web_app(policies=policies))
        reconciler = make_reconciler()
        reconciler.reconcile(WEB)
        writes_a = list(fleet.clients["a"].writes)
        writes_c = list(fleet.clients["c"].writes)

        fleet.clients["b"].clear_faults()
        result = reconciler.reconcile(WEB)

        assert result.dispatch_status == DispatchStatus.SUCCEEDED
        assert result.revision == "web-v1"
        assert revisions.current_number(WEB) == 1
        assert fleet.clients["a"].writes == writes_a
        assert fleet.clients["c"].writes == writes_c
        assert fleet.clients["b"].keys() == {DEPLOYMENT, SERVICE}
        targets = {t.cluster: t.outcome for t in store.get(WEB).status.targets}
        assert targets == {"a": "Applied", "b": "Applied", "c": "Applied"}

    def test_failed_target_keeps_old_pin(self, make_reconciler, store, revisions, fleet):
        policies = prod_fleet(fleet, "a", "b")
        store.create(web_app(policies=policies))
        reconciler = make_reconciler()
        reconciler.reconcile(WEB)

        fleet.clients["b"].fail_on(TimeoutError("unreachable"), operation="get")
        store.update_spec(WEB, {"components": [frontend("nginx:2")], "policies": policies})
        reconciler.reconcile(WEB)

        refs = revisions.references(WEB)
        assert refs["target/a/frontend"] == 2
        assert refs["target/b/frontend"] == 1
        services = {s.cluster: s for s in store.get(WEB).status.services}
        assert services["b"].revision == "web-v1"
        assert not services["b"].healthy

    def test_all_failed(self, make_reconciler, store, revisions, fleet):
        fleet.clients["local"].fail_on(TimeoutError("unreachable"), operation="get")
        store.create(web_app())
        result = make_reconciler().reconcile(WEB)

        assert result.dispatch_status == DispatchStatus.FAILED
        assert result.requeue
        app = store.get(WEB)
        assert app.status.phase == ApplicationPhase.FAILED
        assert app.status.latest_revision is None
        # Still being rolled out, so still pinned.
        assert revisions.references(WEB) == {HOLDER_ROLLOUT: 1}


class TestStalled:
    def test_set_after_threshold_and_cleared_on_success(
        self, make_reconciler, store, fleet, recorder
    ):
        client = fleet.clients["local"]
        client.fail_on(TimeoutError("unreachable"), operation="get")
        store.create(web_app())
        reconciler = make_reconciler()

        reconciler.reconcile(WEB, retry_count=0)
        assert store.get(WEB).status.get_condition(ConditionType.STALLED) is None
        reconciler.reconcile(WEB, retry_count=2)
        stalled = store.get(WEB).status.get_condition(ConditionType.STALLED)
        assert stalled.status == ConditionStatus.TRUE
        assert "3 consecutive attempts" in stalled.message
        assert recorder.reasons_for("web").count("Stalled") == 1

        reconciler.reconcile(WEB, retry_count=3)
        assert recorder.reasons_for("web").count("Stalled") == 1

        client.clear_faults()
        reconciler.reconcile(WEB, retry_count=4)
        recovered = store.get(WEB).status.get_condition(ConditionType.STALLED)
        assert recovered.status == ConditionStatus.FALSE
        assert recovered.reason == "Recovered"


# ── Transient and fatal errors ──────────────────────────────────────


class TestTransientErrors:
    def test_registry_failure_requeues(self, make_reconciler, store, recorder):
        registry = MagicMock()
        registry.default_cluster.side_effect = ConnectionError("registry down")
        store.create(web_app())
        result = make_reconciler(registry=registry).reconcile(WEB)

        assert result.requeue and not result.forget
        assert result.phase == ReconcilePhase.APPLYING_RETRY
        assert result.max_delay is None
        assert "ClusterResolutionFailed" in recorder.reasons_for("web")

    def test_stalled_after_repeated_transient_errors(self, make_reconciler, store, recorder):
        registry = MagicMock()
        registry.default_cluster.side_effect = ConnectionError("registry down")
        store.create(web_app())
        make_reconciler(registry=registry).reconcile(WEB, retry_count=2)

        stalled = store.get(WEB).status.get_condition(ConditionType.STALLED)
        assert stalled.status == ConditionStatus.TRUE
        assert "registry down" in stalled.message
        assert "Stalled" in recorder.reasons_for("web")

    def test_unexpected_exception_is_transient(self, make_reconciler, store):
        revisions = MagicMock()
        revisions.get_latest.side_effect = RuntimeError("database is locked")
        store.create(web_app())
        result = make_reconciler(revisions=revisions).reconcile(WEB)
        assert result.requeue
        assert isinstance(result.error, RuntimeError)

    def test_spec_change_during_dispatch_conflicts(self, make_reconciler, store, fleet):
        store.create(web_app())
        applier = HookedApplier(
            PatchingApplier(fleet.client_for),
            lambda: store.update_spec(WEB, {"components": [frontend("nginx:2")]}),
        )
        reconciler = make_reconciler(applier=applier)
        result = reconciler.reconcile(WEB)
        assert result.requeue
        assert result.error.reason == "StatusConflict"

        result = reconciler.reconcile(WEB)
        assert result.revision == "web-v2"
        assert store.get(WEB).status.observed_generation == 2

    def test_status_conflict_keeps_reported_revision_pinned(
        self, make_reconciler, store, revisions, fleet, settings
    ):
        settings = settings.model_copy(update={"revision_history_limit": 1})
        client = fleet.clients["local"]
        store.create(web_app())
        make_reconciler(settings=settings).reconcile(WEB)

        client.fail_on(TimeoutError("unreachable"), operation="get")
        store.update_spec(WEB, {"components": [frontend("nginx:2")]})
        make_reconciler(settings=settings).reconcile(WEB)
        client.clear_faults()

        store.update_spec(WEB, {"components": [frontend("nginx:3")]})
        applier = HookedApplier(
            PatchingApplier(fleet.client_for),
            lambda: store.update_spec(WEB, {"components": [frontend("nginx:4")]}),
        )
        reconciler = make_reconciler(applier=applier, settings=settings)
        result = reconciler.reconcile(WEB)
        assert result.error.reason == "StatusConflict"

        assert store.get(WEB).status.latest_revision == "web-v1"
        refs = revisions.references(WEB)
        assert refs[HOLDER_STATUS] == 1
        assert refs[HOLDER_ROLLOUT] == 3

        reconciler.collect_garbage(WEB)
        assert [r.number for r in revisions.list_revisions(WEB)] == [1, 2, 3]


class TestRevisionRace:
    def test_concurrent_creator_wins(self, make_reconciler, store):
        class RacingStore(InMemoryRevisionStore):
            raced = False

            def create_next(self, app_id, render, *, generation, expected_number):
                if not self.raced:
                    self.raced = True
                    super().create_next(
                        app_id, render, generation=generation, expected_number=expected_number
                    )
                    raise RevisionConflict(app_id.key, expected_number, expected_number + 1)
                return super().create_next(
                    app_id, render, generation=generation, expected_number=expected_number
                )

        revisions = RacingStore()
        store.create(web_app())
        result = make_reconciler(revisions=revisions).reconcile(WEB)
        assert result.revision == "web-v1"
        assert result.dispatch_status == DispatchStatus.SUCCEEDED
        assert len(revisions.list_revisions(WEB)) == 1


class TestInvariantViolation:
    def test_corrupt_revision_forgets_key(self, make_reconciler, store, recorder):
        revisions = MagicMock()
        revisions.get_latest.side_effect = CorruptRevisionError("bad body")
        store.create(web_app())
        result = make_reconciler(revisions=revisions).reconcile(WEB)
        assert result.forget and not result.requeue
        assert isinstance(result.error, CorruptRevisionError)
        assert recorder.reasons_for("web") == ["CorruptRevision"]
