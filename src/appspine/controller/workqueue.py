"""
De-duplicating work queue of Application keys.

WHY
───
Watches fire far more often than reconciles need to run: a burst of ten
edits to one Application should cost one or two reconciles, never ten, and
never two at once.  The queue gives three guarantees:

- a key waiting in the queue is stored once, however often it is added
- a key handed to a worker is not handed to another until ``done(key)``
- a key added while being processed is re-queued on ``done(key)``, so the
  latest state is always reconciled after the in-flight attempt

ARCHITECTURE
────────────
::

    add(key) ──► dirty ──► queue ──get()──► processing ──done()──┐
                   ▲                                             │
                   └──────────── re-added while processing ◄────┘

    add_after(key, delay)   ─ delayed add (one timer thread, heap-ordered)
    add_rate_limited(key)   ─ add_after with per-key exponential backoff
    forget(key)             ─ reset the key's failure count
    num_requeues(key)       ─ consecutive failures recorded for the key
    shut_down()             ─ wake every waiter; get() then returns None

Example::

    queue = WorkQueue(ExponentialBackoff(base_delay=0.5, max_delay=300))
    queue.add("default/web")
    key = queue.get()
    try:
        reconcile(key)
        queue.forget(key)
    except TransientInfraError:
        queue.add_rate_limited(key)
    finally:
        queue.done(key)
"""

from __future__ import annotations

import heapq
import threading
import time
from collections import deque

from appspine.controller.backoff import ExponentialBackoff


class WorkQueue:
    """Thread-safe key queue with de-duplication, delays and rate limiting."""

    def __init__(self, backoff: ExponentialBackoff | None = None):
        self._backoff = backoff or ExponentialBackoff()
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._shutting_down = False

        self._waiting: list[tuple[float, int, str]] = []
        self._ready_at: dict[str, float] = {}
        self._seq = 0
        self._timer_cond = threading.Condition()
        self._timer: threading.Thread | None = None

    # ------------------------------------------------------------------ #
    # Core queue
    # ------------------------------------------------------------------ #

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def get(self, timeout: float | None = None) -> str | None:
        """Block until a key is available.

        Returns ``None`` on shutdown, or when *timeout* expires first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)
            if not self._queue:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def is_processing(self, key: str) -> bool:
        with self._cond:
            return key in self._processing

    def processing_count(self) -> int:
        with self._cond:
            return len(self._processing)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._timer_cond:
            self._timer_cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    # ------------------------------------------------------------------ #
    # Delayed adds
    # ------------------------------------------------------------------ #

    def add_after(self, key: str, delay: float) -> None:
        """Add *key* once *delay* seconds have passed.

        If the key is already waiting, the earlier deadline wins.
        """
        if delay <= 0:
            self.add(key)
            return
        if self.shutting_down:
            return
        ready_at = time.monotonic() + delay
        with self._timer_cond:
            current = self._ready_at.get(key)
            if current is not None and current <= ready_at:
                return
            self._ready_at[key] = ready_at
            self._seq += 1
            heapq.heappush(self._waiting, (ready_at, self._seq, key))
            if self._timer is None:
                self._timer = threading.Thread(
                    target=self._run_timer, name="workqueue-delay", daemon=True
                )
                self._timer.start()
            self._timer_cond.notify()

    def _run_timer(self) -> None:
        while not self.shutting_down:
            due: list[str] = []
            with self._timer_cond:
                now = time.monotonic()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, key = heapq.heappop(self._waiting)
                    # Superseded entries stay in the heap until popped.
                    if self._ready_at.get(key) == ready_at:
                        del self._ready_at[key]
                        due.append(key)
                if not due:
                    timeout = self._waiting[0][0] - now if self._waiting else None
                    self._timer_cond.wait(timeout)
                    continue
            for key in due:
                self.add(key)

    def pending_delayed(self) -> int:
        with self._timer_cond:
            return len(self._ready_at)

    # ------------------------------------------------------------------ #
    # Rate limiting
    # ------------------------------------------------------------------ #

    def next_backoff(self, key: str, max_delay: float | None = None) -> float:
        """Record one more failure for *key* and return its backoff delay."""
        with self._cond:
            attempt = self._failures.get(key, 0)
            self._failures[key] = attempt + 1
        return self._backoff.next_delay(attempt, max_delay)

    def add_rate_limited(self, key: str, max_delay: float | None = None) -> float:
        """Requeue after the key's exponential backoff; returns the delay used."""
        delay = self.next_backoff(key, max_delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)
