"""
App Spine - application reconciliation engine.

Turns declarative Application resources into concrete workload resources on
one or more target clusters, snapshots every distinct render as an immutable
ApplicationRevision, and keeps writing status back until live state matches.

Wiring everything by hand::

    from appspine import build_engine
    from appspine.dispatch import InMemoryFleet

    fleet = InMemoryFleet()
    fleet.add_cluster("local")
    engine = build_engine(fleet.client_for, fleet.registry())
    engine.manager.start()
    engine.store.create(Application.build("web", components=[...]))
    ...
    engine.close()
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from appspine.controller.manager import ControllerManager
from appspine.controller.reconciler import ApplicationReconciler
from appspine.core.events import AsyncEventRecorder, EventRecorder, LoggingEventRecorder
from appspine.core.models import AppID, Application
from appspine.core.settings import EngineSettings, get_settings
from appspine.core.store import InMemoryApplicationStore
from appspine.dispatch.cluster import ClusterClient, ClusterRef, ClusterRegistry, PatchingApplier
from appspine.dispatch.dispatcher import MultiClusterDispatcher
from appspine.render.definitions import DefinitionSet, builtin_definitions
from appspine.render.renderer import Renderer
from appspine.revision.store import InMemoryRevisionStore, RevisionStore

__version__ = "0.1.0"


@dataclass
class Engine:
    """Every wired component of one engine instance."""

    store: InMemoryApplicationStore
    renderer: Renderer
    revisions: RevisionStore
    dispatcher: MultiClusterDispatcher
    registry: ClusterRegistry
    recorder: EventRecorder
    reconciler: ApplicationReconciler
    manager: ControllerManager

    def close(self, timeout: float = 10.0) -> None:
        """Stop the manager, then the recorder's delivery thread if it has one."""
        self.manager.stop(timeout=timeout)
        close = getattr(self.recorder, "close", None)
        if close is not None:
            close()


def build_engine(
    client_for: Callable[[ClusterRef], ClusterClient],
    registry: ClusterRegistry,
    *,
    definitions: DefinitionSet | None = None,
    revisions: RevisionStore | None = None,
    store: InMemoryApplicationStore | None = None,
    recorder: EventRecorder | None = None,
    settings: EngineSettings | None = None,
) -> Engine:
    """Wire store, renderer, revision store, dispatcher and controller.

    Defaults: built-in definitions, in-memory stores, and events sent to the
    structured log through a non-blocking recorder.
    """
    settings = settings or get_settings()
    store = store or InMemoryApplicationStore()
    renderer = Renderer(definitions or builtin_definitions())
    revisions = revisions or InMemoryRevisionStore()
    dispatcher = MultiClusterDispatcher(
        PatchingApplier(client_for, conflict_retries=settings.apply_conflict_retries),
        max_parallel=settings.dispatch_parallelism,
    )
    if recorder is None:
        recorder = AsyncEventRecorder(LoggingEventRecorder(), maxsize=settings.event_buffer_size)
    reconciler = ApplicationReconciler(
        store, renderer, revisions, dispatcher, registry, recorder=recorder, settings=settings
    )
    manager = ControllerManager(reconciler, store, settings=settings)
    return Engine(
        store=store,
        renderer=renderer,
        revisions=revisions,
        dispatcher=dispatcher,
        registry=registry,
        recorder=recorder,
        reconciler=reconciler,
        manager=manager,
    )


__all__ = [
    "AppID",
    "Application",
    "ApplicationReconciler",
    "ControllerManager",
    "Engine",
    "EngineSettings",
    "__version__",
    "build_engine",
]
