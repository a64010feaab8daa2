"""
Shared pytest fixtures for app-spine tests.

This module provides:
- Engine settings tuned for fast tests (tiny backoff, no resync)
- In-memory collaborators: Application store, revision store, fleet of
  fake clusters, event recorder
- A ``make_reconciler`` factory that wires them together
- Sample Applications live in ``tests._support.apps``

Usage:
    def test_something(make_reconciler, store):
        reconciler = make_reconciler()
        store.create(web_app())
        reconciler.reconcile(WEB)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from appspine.controller.reconciler import ApplicationReconciler
from appspine.core.events import MemoryEventRecorder
from appspine.core.settings import EngineSettings, clear_settings_cache
from appspine.core.store import InMemoryApplicationStore
from appspine.dispatch.cluster import InMemoryFleet, PatchingApplier
from appspine.dispatch.dispatcher import MultiClusterDispatcher
from appspine.render.definitions import builtin_definitions
from appspine.render.renderer import Renderer
from appspine.revision.store import InMemoryRevisionStore


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)
        if "end_to_end" in str(test_path) or "manager" in str(test_path):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture(autouse=True)
def _clean_settings_cache():
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        _env_file=None,
        revision_history_limit=10,
        concurrent_reconciles=4,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.1,
        degraded_requeue_ceiling_seconds=0.1,
        stall_threshold=3,
        resync_period_seconds=0,
    )


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def store() -> InMemoryApplicationStore:
    return InMemoryApplicationStore()


@pytest.fixture
def revisions() -> InMemoryRevisionStore:
    return InMemoryRevisionStore()


@pytest.fixture
def recorder() -> MemoryEventRecorder:
    return MemoryEventRecorder()


@pytest.fixture
def fleet() -> InMemoryFleet:
    fleet = InMemoryFleet()
    fleet.add_cluster("local")
    return fleet


@pytest.fixture
def renderer() -> Renderer:
    return Renderer(builtin_definitions())


@pytest.fixture
def make_reconciler(store, revisions, recorder, fleet, renderer, settings):
    """Factory: build a reconciler over the shared fixtures.

    Keyword arguments override any collaborator.
    """

    def _make(**overrides: Any) -> ApplicationReconciler:
        s = overrides.pop("settings", settings)
        applier = overrides.pop(
            "applier", PatchingApplier(fleet.client_for, conflict_retries=s.apply_conflict_retries)
        )
        kwargs = {
            "store": store,
            "renderer": renderer,
            "revisions": revisions,
            "dispatcher": MultiClusterDispatcher(applier, max_parallel=s.dispatch_parallelism),
            "registry": fleet.registry(default="local"),
            "recorder": recorder,
            "settings": s,
        }
        kwargs.update(overrides)
        return ApplicationReconciler(**kwargs)

    return _make
