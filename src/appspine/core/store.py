"""Application store: the API-server side of the Application resource.

The engine depends on the :class:`ApplicationStore` protocol only.
:class:`InMemoryApplicationStore` is a thread-safe in-process implementation
with the semantics the controller relies on:

- ``generation`` increments on every spec edit, never on status writes
- ``resource_version`` increments on every write; ``update_status`` is an
  optimistic-concurrency write and fails with
  :class:`~appspine.core.errors.StatusConflictError` when the caller's copy
  is stale
- ``delete`` only marks the Application; it disappears on ``finalize``
  once the controller has cleaned up
- ``subscribe`` callbacks fire on create, spec edit and delete (the
  stand-in for a watch), never on status writes

Reads return deep copies, so callers can mutate what they get back.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any, Protocol

from appspine.core.errors import StatusConflictError
from appspine.core.logging import get_logger
from appspine.core.models import AppID, Application, ApplicationSpec, utcnow

logger = get_logger(__name__)

WatchCallback = Callable[[AppID], None]


class ApplicationStore(Protocol):
    def get(self, app_id: AppID) -> Application | None: ...

    def list(self) -> list[Application]: ...

    def update_status(self, app: Application) -> Application: ...

    def finalize(self, app_id: AppID) -> None: ...


class InMemoryApplicationStore:
    """Thread-safe in-memory Application store."""

    def __init__(self) -> None:
        self._apps: dict[AppID, Application] = {}
        self._lock = threading.RLock()
        self._subscribers: list[WatchCallback] = []

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get(self, app_id: AppID) -> Application | None:
        with self._lock:
            app = self._apps.get(app_id)
            return app.model_copy(deep=True) if app is not None else None

    def list(self) -> list[Application]:
        with self._lock:
            return [app.model_copy(deep=True) for app in self._apps.values()]

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def create(self, app: Application) -> Application:
        """Store a new Application.

        Raises:
            ValueError: If an Application with the same identity exists.
        """
        with self._lock:
            if app.app_id in self._apps:
                raise ValueError(f"application {app.app_id} already exists")
            stored = app.model_copy(deep=True)
            stored.metadata.generation = 1
            stored.metadata.resource_version = 1
            stored.metadata.deletion_timestamp = None
            self._apps[app.app_id] = stored
            result = stored.model_copy(deep=True)
        self._notify(app.app_id)
        return result

    def update_spec(self, app_id: AppID, spec: ApplicationSpec | dict[str, Any]) -> Application:
        """Replace the spec, bumping ``generation``.

        Raises:
            KeyError: If the Application does not exist.
        """
        if isinstance(spec, dict):
            spec = ApplicationSpec.model_validate(spec)
        with self._lock:
            stored = self._apps[app_id]
            stored.spec = spec.model_copy(deep=True)
            stored.metadata.generation += 1
            stored.metadata.resource_version += 1
            result = stored.model_copy(deep=True)
        self._notify(app_id)
        return result

    def update_status(self, app: Application) -> Application:
        """Write ``app.status`` if ``app`` is not stale.

        Raises:
            StatusConflictError: If the Application changed since it was read.
            KeyError: If the Application no longer exists.
        """
        with self._lock:
            stored = self._apps.get(app.app_id)
            if stored is None:
                raise KeyError(f"application {app.app_id} not found")
            if stored.metadata.resource_version != app.metadata.resource_version:
                raise StatusConflictError(
                    f"application {app.app_id} modified: have resourceVersion "
                    f"{app.metadata.resource_version}, store has {stored.metadata.resource_version}"
                ).with_context(app=app.app_id.key)
            stored.status = app.status.model_copy(deep=True)
            stored.metadata.resource_version += 1
            return stored.model_copy(deep=True)

    def delete(self, app_id: AppID) -> None:
        """Mark for deletion; the object stays until :meth:`finalize`."""
        with self._lock:
            stored = self._apps.get(app_id)
            if stored is None or stored.deleting:
                return
            stored.metadata.deletion_timestamp = utcnow()
            stored.metadata.resource_version += 1
        self._notify(app_id)

    def finalize(self, app_id: AppID) -> None:
        with self._lock:
            self._apps.pop(app_id, None)
        logger.debug("store.finalized", app=app_id.key)

    # ------------------------------------------------------------------ #
    # Watch
    # ------------------------------------------------------------------ #

    def subscribe(self, callback: WatchCallback) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def _notify(self, app_id: AppID) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(app_id)
            except Exception as e:
                logger.warning("store.watch_callback_error", app=app_id.key, error=str(e))
