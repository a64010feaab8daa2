"""Immutable ApplicationRevision snapshots, their pins and retention."""

from appspine.revision.gc import GCReport, collect_revisions
from appspine.revision.models import (
    ApplicationRevision,
    ComponentRevision,
    fingerprint,
    revision_name,
)
from appspine.revision.sqlite import SQLiteRevisionStore
from appspine.revision.store import (
    HOLDER_ROLLOUT,
    HOLDER_STATUS,
    InMemoryRevisionStore,
    RevisionStore,
    target_holder,
)

__all__ = [
    "ApplicationRevision",
    "ComponentRevision",
    "GCReport",
    "HOLDER_ROLLOUT",
    "HOLDER_STATUS",
    "InMemoryRevisionStore",
    "RevisionStore",
    "SQLiteRevisionStore",
    "collect_revisions",
    "fingerprint",
    "revision_name",
    "target_holder",
]
