"""Revision garbage collection.

Keeps at most ``retention_limit`` unreferenced revisions per Application,
deleting the oldest first.  Referenced revisions are never candidates, no
matter how old.  Each deletion stands alone: a failure is recorded in the
report and logged, the pass moves on, and the next pass sweeps it again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from appspine.core.logging import get_logger
from appspine.core.models import AppID

if TYPE_CHECKING:
    from appspine.revision.store import RevisionStore

logger = get_logger(__name__)


@dataclass
class GCReport:
    """Outcome of one GC pass for one Application."""

    app_id: AppID
    retention_limit: int
    deleted: list[int] = field(default_factory=list)
    kept_referenced: list[int] = field(default_factory=list)
    kept_unreferenced: list[int] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def total_deleted(self) -> int:
        return len(self.deleted)


def select_candidates(numbers: list[int], referenced: set[int], retention_limit: int) -> list[int]:
    """Oldest-first revision numbers that exceed the retention limit.

    ``retention_limit <= 0`` disables pruning.
    """
    if retention_limit <= 0:
        return []
    unreferenced = sorted(n for n in numbers if n not in referenced)
    excess = len(unreferenced) - retention_limit
    return unreferenced[:excess] if excess > 0 else []


def collect_revisions(store: RevisionStore, app_id: AppID, retention_limit: int) -> GCReport:
    """Run one GC pass against *store*."""
    report = GCReport(app_id=app_id, retention_limit=retention_limit)
    numbers = [r.number for r in store.list_revisions(app_id)]
    referenced = store.list_referenced(app_id)
    candidates = select_candidates(numbers, referenced, retention_limit)

    report.kept_referenced = sorted(n for n in numbers if n in referenced)
    report.kept_unreferenced = sorted(
        n for n in numbers if n not in referenced and n not in candidates
    )

    for number in candidates:
        try:
            if store.delete(app_id, number):
                report.deleted.append(number)
                logger.info("gc.deleted", app=app_id.key, revision=number)
            else:
                # Pinned between listing and deleting.
                report.kept_referenced.append(number)
        except Exception as exc:
            report.errors[number] = str(exc)
            logger.error("gc.error", app=app_id.key, revision=number, error=str(exc))

    if report.deleted or report.errors:
        logger.info(
            "gc.completed",
            app=app_id.key,
            deleted=report.total_deleted,
            errors=len(report.errors),
            retention_limit=retention_limit,
        )
    return report
