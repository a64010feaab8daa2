"""
Revision store: create, read, pin and delete ApplicationRevisions.

ARCHITECTURE
────────────
::

    RevisionStore (protocol)
      ├── fingerprint(render)                 ─ content hash, change detection
      ├── get_latest / get / list_revisions   ─ reads
      ├── current_number(app)                 ─ highest number ever allocated
      ├── create_next(app, render, ...)       ─ compare-and-swap allocation
      ├── set_reference / clear_reference     ─ named pins ("holders")
      ├── list_referenced(app)                ─ numbers any holder pins
      ├── delete(app, n)                      ─ refuses pinned revisions
      ├── gc(app, retention_limit)            ─ retention pass, see gc.py
      └── purge(app)                          ─ deletion path, ignores pins

    InMemoryRevisionStore   dicts behind one lock
    SQLiteRevisionStore     sqlite3, see sqlite.py

Holders name why a revision must stay: ``status`` (what the Application
reports), ``rollout`` (being dispatched right now) and
``target/<cluster>/<component>`` (what a cluster is actually running).

Numbering: ``create_next`` succeeds only when ``expected_number`` is the
highest number ever allocated for the Application, and allocates the next
one.  The allocation counter is kept apart from the revisions themselves,
so deleting revisions never lets a number be issued twice.
"""

from __future__ import annotations

import threading
from typing import Protocol

from appspine.core.errors import RevisionConflict
from appspine.core.logging import get_logger
from appspine.core.models import AppID
from appspine.render.output import RenderOutput
from appspine.revision.gc import GCReport, collect_revisions
from appspine.revision.models import (
    ApplicationRevision,
    fingerprint,
    next_component_revisions,
)

logger = get_logger(__name__)

HOLDER_STATUS = "status"
HOLDER_ROLLOUT = "rollout"
TARGET_HOLDER_PREFIX = "target/"


def target_holder(cluster: str, component: str) -> str:
    return f"{TARGET_HOLDER_PREFIX}{cluster}/{component}"


class RevisionStore(Protocol):
    def fingerprint(self, render: RenderOutput) -> str: ...

    def get_latest(self, app_id: AppID) -> ApplicationRevision | None: ...

    def current_number(self, app_id: AppID) -> int: ...

    def create_next(
        self,
        app_id: AppID,
        render: RenderOutput,
        *,
        generation: int,
        expected_number: int,
    ) -> ApplicationRevision: ...

    def get(self, app_id: AppID, number: int) -> ApplicationRevision | None: ...

    def list_revisions(self, app_id: AppID) -> list[ApplicationRevision]: ...

    def set_reference(self, app_id: AppID, holder: str, number: int) -> None: ...

    def clear_reference(self, app_id: AppID, holder: str) -> None: ...

    def references(self, app_id: AppID) -> dict[str, int]: ...

    def list_referenced(self, app_id: AppID) -> set[int]: ...

    def delete(self, app_id: AppID, number: int) -> bool: ...

    def gc(self, app_id: AppID, retention_limit: int) -> GCReport: ...

    def purge(self, app_id: AppID) -> int: ...


class BaseRevisionStore:
    """Operations shared by every backend, written against the primitives."""

    @staticmethod
    def fingerprint(render: RenderOutput) -> str:
        return fingerprint(render)

    def references(self, app_id: AppID) -> dict[str, int]:
        raise NotImplementedError

    def list_referenced(self, app_id: AppID) -> set[int]:
        return set(self.references(app_id).values())

    def gc(self, app_id: AppID, retention_limit: int) -> GCReport:
        return collect_revisions(self, app_id, retention_limit)


class InMemoryRevisionStore(BaseRevisionStore):
    """Thread-safe in-memory revision store."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._revisions: dict[AppID, dict[int, ApplicationRevision]] = {}
        self._counters: dict[AppID, int] = {}
        self._component_counters: dict[AppID, dict[str, int]] = {}
        self._references: dict[AppID, dict[str, int]] = {}

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get_latest(self, app_id: AppID) -> ApplicationRevision | None:
        with self._lock:
            revisions = self._revisions.get(app_id)
            if not revisions:
                return None
            return revisions[max(revisions)]

    def current_number(self, app_id: AppID) -> int:
        with self._lock:
            return self._counters.get(app_id, 0)

    def get(self, app_id: AppID, number: int) -> ApplicationRevision | None:
        with self._lock:
            return self._revisions.get(app_id, {}).get(number)

    def list_revisions(self, app_id: AppID) -> list[ApplicationRevision]:
        with self._lock:
            revisions = self._revisions.get(app_id, {})
            return [revisions[n] for n in sorted(revisions)]

    # ------------------------------------------------------------------ #
    # Creation
    # ------------------------------------------------------------------ #

    def create_next(
        self,
        app_id: AppID,
        render: RenderOutput,
        *,
        generation: int,
        expected_number: int,
    ) -> ApplicationRevision:
        """Allocate ``expected_number + 1`` and persist the snapshot.

        Raises:
            RevisionConflict: If another creator already moved the counter.
        """
        with self._lock:
            current = self._counters.get(app_id, 0)
            if current != expected_number:
                raise RevisionConflict(app_id.key, expected_number, current)

            frozen = RenderOutput.from_dict(render.to_dict())
            components, counters = next_component_revisions(
                frozen,
                self.get_latest(app_id),
                self._component_counters.get(app_id, {}),
            )
            revision = ApplicationRevision(
                app_id=app_id,
                number=current + 1,
                fingerprint=fingerprint(frozen),
                render=frozen,
                generation=generation,
                components=components,
            )
            self._revisions.setdefault(app_id, {})[revision.number] = revision
            self._counters[app_id] = revision.number
            self._component_counters[app_id] = counters

        logger.info(
            "revision.created",
            app=app_id.key,
            revision=revision.name,
            fingerprint=revision.fingerprint[:12],
            generation=generation,
        )
        return revision

    # ------------------------------------------------------------------ #
    # References
    # ------------------------------------------------------------------ #

    def set_reference(self, app_id: AppID, holder: str, number: int) -> None:
        """Pin revision *number* under *holder*, replacing that holder's pin.

        Raises:
            KeyError: If the revision does not exist.
        """
        with self._lock:
            if number not in self._revisions.get(app_id, {}):
                raise KeyError(f"revision {number} of {app_id} does not exist")
            self._references.setdefault(app_id, {})[holder] = number

    def clear_reference(self, app_id: AppID, holder: str) -> None:
        with self._lock:
            self._references.get(app_id, {}).pop(holder, None)

    def references(self, app_id: AppID) -> dict[str, int]:
        with self._lock:
            return dict(self._references.get(app_id, {}))

    # ------------------------------------------------------------------ #
    # Deletion
    # ------------------------------------------------------------------ #

    def delete(self, app_id: AppID, number: int) -> bool:
        """Delete one revision unless something pins it."""
        with self._lock:
            if number in self._references.get(app_id, {}).values():
                return False
            return self._revisions.get(app_id, {}).pop(number, None) is not None

    def purge(self, app_id: AppID) -> int:
        """Remove every revision, pin and counter of *app_id*."""
        with self._lock:
            removed = len(self._revisions.pop(app_id, {}))
            self._references.pop(app_id, None)
            self._counters.pop(app_id, None)
            self._component_counters.pop(app_id, None)
        logger.info("revision.purged", app=app_id.key, deleted=removed)
        return removed
