"""SQLite-backed revision store.

Schema::

    appspine_revision_counters    (app, last_number)           allocation counter
    appspine_component_counters   (app, component, last_number)
    appspine_revisions            (app, number, ..., body)     one row per snapshot
    appspine_revision_references  (app, holder, number)        pins

``create_next`` runs inside ``BEGIN IMMEDIATE`` so the counter check and the
insert are one atomic step; the primary key on ``(app, number)`` is the
backstop when another connection races on the same file, and a violation
surfaces as :class:`~appspine.core.errors.RevisionConflict`.

Example::

    store = SQLiteRevisionStore("revisions.db")
    rev = store.create_next(app_id, render, generation=1, expected_number=0)
"""

from __future__ import annotations

import json
import sqlite3
import threading
from typing import Any

from appspine.core.errors import CorruptRevisionError, RevisionConflict
from appspine.core.hashing import canonical_json
from appspine.core.logging import get_logger
from appspine.core.models import AppID
from appspine.render.output import RenderOutput
from appspine.revision.models import (
    ApplicationRevision,
    fingerprint,
    next_component_revisions,
)
from appspine.revision.store import BaseRevisionStore

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS appspine_revision_counters (
    app TEXT PRIMARY KEY,
    last_number INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS appspine_component_counters (
    app TEXT NOT NULL,
    component TEXT NOT NULL,
    last_number INTEGER NOT NULL,
    PRIMARY KEY (app, component)
);
CREATE TABLE IF NOT EXISTS appspine_revisions (
    app TEXT NOT NULL,
    number INTEGER NOT NULL,
    name TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    generation INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    body TEXT NOT NULL,
    PRIMARY KEY (app, number)
);
CREATE TABLE IF NOT EXISTS appspine_revision_references (
    app TEXT NOT NULL,
    holder TEXT NOT NULL,
    number INTEGER NOT NULL,
    PRIMARY KEY (app, holder)
);
"""


class SQLiteRevisionStore(BaseRevisionStore):
    """Revision store persisted in a SQLite database.

    One connection is shared by all threads and guarded by a lock.
    """

    def __init__(self, path: str = ":memory:"):
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._lock = threading.RLock()
        with self._lock:
            self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def _load(self, app_id: AppID, row: tuple[Any, ...] | None) -> ApplicationRevision | None:
        if row is None:
            return None
        number, body = row
        try:
            return ApplicationRevision.from_dict(json.loads(body))
        except (ValueError, KeyError, TypeError) as e:
            raise CorruptRevisionError(
                f"stored revision {number} of {app_id} cannot be decoded: {e}", cause=e
            ).with_context(app=app_id.key, revision=str(number)) from e

    def get_latest(self, app_id: AppID) -> ApplicationRevision | None:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT number, body FROM appspine_revisions
                WHERE app = ? ORDER BY number DESC LIMIT 1
                """,
                (app_id.key,),
            ).fetchone()
        return self._load(app_id, row)

    def current_number(self, app_id: AppID) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT last_number FROM appspine_revision_counters WHERE app = ?",
                (app_id.key,),
            ).fetchone()
        return row[0] if row else 0

    def get(self, app_id: AppID, number: int) -> ApplicationRevision | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT number, body FROM appspine_revisions WHERE app = ? AND number = ?",
                (app_id.key, number),
            ).fetchone()
        return self._load(app_id, row)

    def list_revisions(self, app_id: AppID) -> list[ApplicationRevision]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT number, body FROM appspine_revisions WHERE app = ? ORDER BY number",
                (app_id.key,),
            ).fetchall()
        return [self._load(app_id, row) for row in rows]

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
            RevisionConflict: If the counter moved or the number is taken.
        """
        frozen = RenderOutput.from_dict(render.to_dict())
        with self._lock:
            cursor = self._conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                row = cursor.execute(
                    "SELECT last_number FROM appspine_revision_counters WHERE app = ?",
                    (app_id.key,),
                ).fetchone()
                current = row[0] if row else 0
                if current != expected_number:
                    raise RevisionConflict(app_id.key, expected_number, current)

                counters = dict(
                    cursor.execute(
                        """
                        SELECT component, last_number FROM appspine_component_counters
                        WHERE app = ?
                        """,
                        (app_id.key,),
                    ).fetchall()
                )
                latest = cursor.execute(
                    """
                    SELECT number, body FROM appspine_revisions
                    WHERE app = ? ORDER BY number DESC LIMIT 1
                    """,
                    (app_id.key,),
                ).fetchone()
                components, counters = next_component_revisions(
                    frozen, self._load(app_id, latest), counters
                )
                revision = ApplicationRevision(
                    app_id=app_id,
                    number=current + 1,
                    fingerprint=fingerprint(frozen),
                    render=frozen,
                    generation=generation,
                    components=components,
                )

                cursor.execute(
                    """
                    INSERT INTO appspine_revision_counters (app, last_number) VALUES (?, ?)
                    ON CONFLICT (app) DO UPDATE SET last_number = excluded.last_number
                    """,
                    (app_id.key, revision.number),
                )
                cursor.executemany(
                    """
                    INSERT INTO appspine_component_counters (app, component, last_number)
                    VALUES (?, ?, ?)
                    ON CONFLICT (app, component) DO UPDATE SET last_number = excluded.last_number
                    """,
                    [(app_id.key, name, n) for name, n in sorted(counters.items())],
                )
                cursor.execute(
                    """
                    INSERT INTO appspine_revisions
                        (app, number, name, fingerprint, generation, created_at, body)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        app_id.key,
                        revision.number,
                        revision.name,
                        revision.fingerprint,
                        generation,
                        revision.created_at.isoformat(),
                        canonical_json(revision.to_dict()),
                    ),
                )
                cursor.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                cursor.execute("ROLLBACK")
                raise RevisionConflict(app_id.key, expected_number, expected_number + 1) from e
            except BaseException:
                cursor.execute("ROLLBACK")
                raise

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
        """Pin revision *number* under *holder*.

        Raises:
            KeyError: If the revision does not exist.
        """
        with self._lock:
            exists = self._conn.execute(
                "SELECT 1 FROM appspine_revisions WHERE app = ? AND number = ?",
                (app_id.key, number),
            ).fetchone()
            if exists is None:
                raise KeyError(f"revision {number} of {app_id} does not exist")
            self._conn.execute(
                """
                INSERT INTO appspine_revision_references (app, holder, number) VALUES (?, ?, ?)
                ON CONFLICT (app, holder) DO UPDATE SET number = excluded.number
                """,
                (app_id.key, holder, number),
            )

    def clear_reference(self, app_id: AppID, holder: str) -> None:
        with self._lock:
            self._conn.execute(
                "DELETE FROM appspine_revision_references WHERE app = ? AND holder = ?",
                (app_id.key, holder),
            )

    def references(self, app_id: AppID) -> dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT holder, number FROM appspine_revision_references WHERE app = ?",
                (app_id.key,),
            ).fetchall()
        return dict(rows)

    # ------------------------------------------------------------------ #
    # Deletion
    # ------------------------------------------------------------------ #

    def delete(self, app_id: AppID, number: int) -> bool:
        """Delete one revision unless something pins it."""
        with self._lock:
            cursor = self._conn.execute(
                """
                DELETE FROM appspine_revisions
                WHERE app = ? AND number = ?
                  AND NOT EXISTS (
                      SELECT 1 FROM appspine_revision_references
                      WHERE app = ? AND number = ?
                  )
                """,
                (app_id.key, number, app_id.key, number),
            )
            return cursor.rowcount > 0

    def purge(self, app_id: AppID) -> int:
        with self._lock:
            cursor = self._conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                removed = cursor.execute(
                    "DELETE FROM appspine_revisions WHERE app = ?", (app_id.key,)
                ).rowcount
                for table in (
                    "appspine_revision_references",
                    "appspine_revision_counters",
                    "appspine_component_counters",
                ):
                    cursor.execute(f"DELETE FROM {table} WHERE app = ?", (app_id.key,))  # noqa: S608
                cursor.execute("COMMIT")
            except BaseException:
                cursor.execute("ROLLBACK")
                raise
        logger.info("revision.purged", app=app_id.key, deleted=removed)
        return removed
