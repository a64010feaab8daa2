"""Controller manager: watch → enqueue → worker pool.

Usage (programmatic)::

    manager = ControllerManager(reconciler, store, settings=settings)
    manager.start()          # workers + resync + store subscription
    store.create(app)        # subscription enqueues default/web
    manager.wait_idle(timeout=5)
    manager.stop()

Architecture:
    1. Store subscription (or ``enqueue``) adds Application keys to a
       de-duplicating :class:`WorkQueue`.
    2. ``concurrent_reconciles`` worker threads each take one key, run the
       reconciler to completion, and mark the key done.  The queue never
       hands a key to two workers at once.
    3. The reconcile result decides the follow-up: ``requeue`` goes back
       with per-key exponential backoff, ``forget`` clears the key's
       failure count.
    4. GC runs on its own single-thread executor, scheduled once a dispatch
       settles, coalesced per Application.
    5. A resync thread re-enqueues every Application periodically, which
       is what picks up render failures fixed by a definition change.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from appspine.controller.backoff import ExponentialBackoff
from appspine.controller.reconciler import ApplicationReconciler
from appspine.controller.workqueue import WorkQueue
from appspine.core.logging import get_logger
from appspine.core.models import AppID
from appspine.core.settings import EngineSettings, get_settings
from appspine.core.store import ApplicationStore

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ManagerStats:
    """Aggregate counters for one manager."""

    started_at: datetime = field(default_factory=_utcnow)
    reconciles: int = 0
    requeues: int = 0
    errors: int = 0
    gc_runs: int = 0
    gc_deleted: int = 0
    resyncs: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "uptime_seconds": round((_utcnow() - self.started_at).total_seconds(), 2),
            "reconciles": self.reconciles,
            "requeues": self.requeues,
            "errors": self.errors,
            "gc_runs": self.gc_runs,
            "gc_deleted": self.gc_deleted,
            "resyncs": self.resyncs,
        }


class ControllerManager:
    """Runs an :class:`ApplicationReconciler` over a worker pool."""

    def __init__(
        self,
        reconciler: ApplicationReconciler,
        store: ApplicationStore,
        settings: EngineSettings | None = None,
        queue: WorkQueue | None = None,
    ):
        self.settings = settings or get_settings()
        self.reconciler = reconciler
        self.store = store
        self.queue = queue or WorkQueue(
            ExponentialBackoff(
                base_delay=self.settings.backoff_base_seconds,
                max_delay=self.settings.backoff_max_seconds,
                jitter=True,
            )
        )
        if getattr(reconciler, "on_settled", None) is None:
            reconciler.on_settled = self.schedule_gc

        self._stats = ManagerStats()
        self._stats_lock = threading.Lock()
        self._workers: list[threading.Thread] = []
        self._shutdown = threading.Event()
        self._resync_thread: threading.Thread | None = None

        self._gc_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="revision-gc")
        self._gc_pending: set[AppID] = set()
        self._gc_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Start workers and resync in background threads; returns immediately."""
        logger.info(
            "manager.starting",
            workers=self.settings.concurrent_reconciles,
            resync_period_seconds=self.settings.resync_period_seconds,
        )
        subscribe = getattr(self.store, "subscribe", None)
        if subscribe is not None:
            subscribe(self.enqueue)
        for app in self.store.list():
            self.enqueue(app.app_id)

        for i in range(self.settings.concurrent_reconciles):
            t = threading.Thread(target=self._run_worker, name=f"reconcile-{i}", daemon=True)
            t.start()
            self._workers.append(t)

        if self.settings.resync_period_seconds > 0:
            self._resync_thread = threading.Thread(
                target=self._run_resync, name="resync", daemon=True
            )
            self._resync_thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        """Stop accepting work, let in-flight reconciles and GC finish."""
        logger.info("manager.stopping")
        self._shutdown.set()
        self.queue.shut_down()
        for t in self._workers:
            t.join(timeout=timeout)
        if self._resync_thread is not None:
            self._resync_thread.join(timeout=timeout)
        self._gc_pool.shutdown(wait=True)
        logger.info("manager.stopped", **self.get_stats().to_dict())

    def get_stats(self) -> ManagerStats:
        with self._stats_lock:
            return replace(self._stats)

    # ------------------------------------------------------------------ #
    # Work
    # ------------------------------------------------------------------ #

    def enqueue(self, app_id: AppID | str) -> None:
        key = app_id.key if isinstance(app_id, AppID) else app_id
        self.queue.add(key)

    def process_next(self, timeout: float | None = None) -> bool:
        """Take one key and reconcile it; False when nothing came in time."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            self._process(key)
        finally:
            self.queue.done(key)
        return True

    def _run_worker(self) -> None:
        while not self.queue.shutting_down:
            self.process_next()

    def _process(self, key: str) -> None:
        app_id = AppID.parse(key)
        try:
            result = self.reconciler.reconcile(app_id, retry_count=self.queue.num_requeues(key))
        except Exception:
            logger.exception("manager.reconcile_crashed", app=key)
            with self._stats_lock:
                self._stats.errors += 1
            self.queue.add_rate_limited(key)
            return

        with self._stats_lock:
            self._stats.reconciles += 1
            if result.error is not None:
                self._stats.errors += 1
            if result.requeue:
                self._stats.requeues += 1

        if result.requeue:
            delay = self.queue.add_rate_limited(key, result.max_delay)
            logger.debug("manager.requeued", app=key, delay_seconds=round(delay, 3))
        elif result.forget:
            self.queue.forget(key)

    def _run_resync(self) -> None:
        period = self.settings.resync_period_seconds
        while not self._shutdown.wait(period):
            try:
                apps = self.store.list()
            except Exception as e:
                logger.warning("manager.resync_failed", error=str(e))
                continue
            for app in apps:
                self.enqueue(app.app_id)
            with self._stats_lock:
                self._stats.resyncs += 1
            logger.debug("manager.resynced", applications=len(apps))

    # ------------------------------------------------------------------ #
    # GC
    # ------------------------------------------------------------------ #

    def schedule_gc(self, app_id: AppID) -> None:
        """Queue a GC pass for *app_id* unless one is already pending."""
        if self._shutdown.is_set():
            return
        with self._gc_lock:
            if app_id in self._gc_pending:
                return
            self._gc_pending.add(app_id)
        self._gc_pool.submit(self._run_gc, app_id)

    def _run_gc(self, app_id: AppID) -> None:
        with self._gc_lock:
            self._gc_pending.discard(app_id)
        try:
            report = self.reconciler.collect_garbage(app_id)
        except Exception as e:
            logger.error("gc.failed", app=app_id.key, error=str(e))
            return
        if report is None:
            return
        with self._stats_lock:
            self._stats.gc_runs += 1
            self._stats.gc_deleted += report.total_deleted

    def gc_idle(self) -> bool:
        with self._gc_lock:
            return not self._gc_pending

    # ------------------------------------------------------------------ #
    # Test / embedding helpers
    # ------------------------------------------------------------------ #

    def wait_idle(self, timeout: float = 10.0, include_delayed: bool = False) -> bool:
        """Block until no key is queued or processing and GC has drained.

        Delayed requeues are ignored unless *include_delayed* is set.
        Returns False if *timeout* expired first.
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            busy = len(self.queue) > 0 or self.queue.processing_count() > 0
            if include_delayed:
                busy = busy or self.queue.pending_delayed() > 0
            if not busy and self.gc_idle():
                # GC submitted by the last reconcile may still be running.
                remaining = max(0.0, deadline - time.monotonic())
                self._gc_pool.submit(lambda: None).result(timeout=remaining)
                return True
            time.sleep(0.01)
        return False
