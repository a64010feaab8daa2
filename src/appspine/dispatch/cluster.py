"""
Target clusters, the cluster registry and the compare-and-patch applier.

ARCHITECTURE
────────────
::

    ClusterRegistry (protocol)          StaticClusterRegistry
      ├── resolve_clusters(props)       name and label-selector lookup
      ├── default_cluster()             used when no topology policy exists
      └── get(name)

    ClusterClient (protocol)            InMemoryClusterClient
      ├── get(key)                      one fake cluster API with
      ├── create(obj)                   resourceVersion preconditions and
      ├── patch(key, patch, rv)         fault injection for tests
      └── delete(key)

    Applier (protocol)                  PatchingApplier
      ├── apply(cluster, resource)      compare-and-patch over a ClusterClient
      └── delete(cluster, key)

The applier never blindly overwrites live state.  It reads the live object,
returns ``unchanged`` when every managed field already matches, and
otherwise sends a merge patch guarded by the live ``resourceVersion``.  A
concurrent writer makes the patch fail with ResourceConflictError and the
applier retries from a fresh read, a bounded number of times.

Every applied object carries a last-applied fingerprint annotation.  A live
object whose annotation matches the desired fingerprint but whose managed
fields differ was edited by someone else: that is drift, reported as
``drift_corrected`` once patched back.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from appspine.core.errors import (
    ClusterResolutionError,
    DispatchError,
    ResourceConflictError,
)
from appspine.core.hashing import content_hash
from appspine.core.logging import get_logger
from appspine.core.objects import deep_merge, get_path, matches_desired
from appspine.dispatch.results import ResourceOutcome
from appspine.render.output import ResourceKey, format_resource_key, resource_key

logger = get_logger(__name__)

LAST_APPLIED_ANNOTATION = "app.oam.dev/last-applied-fingerprint"


@dataclass(frozen=True)
class ClusterRef:
    """A named target cluster; ``endpoint`` is an opaque connection handle."""

    name: str
    labels: dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    endpoint: str = ""


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ClusterRegistry(Protocol):
    def resolve_clusters(self, placement: dict[str, Any]) -> list[ClusterRef]: ...

    def default_cluster(self) -> ClusterRef: ...

    def get(self, name: str) -> ClusterRef | None: ...


class StaticClusterRegistry:
    """Thread-safe registry over a fixed (but editable) set of clusters.

    Example::

        registry = StaticClusterRegistry(
            [ClusterRef("prod-eu", {"env": "prod"}), ClusterRef("prod-us", {"env": "prod"})],
            default="prod-eu",
        )
        registry.resolve_clusters({"clusterLabelSelector": {"env": "prod"}})
    """

    def __init__(self, clusters: list[ClusterRef] | None = None, default: str = "local"):
        self._clusters: dict[str, ClusterRef] = {c.name: c for c in clusters or []}
        self._default = default
        self._lock = threading.Lock()

    def register(self, cluster: ClusterRef) -> None:
        with self._lock:
            self._clusters[cluster.name] = cluster

    def unregister(self, name: str) -> None:
        with self._lock:
            self._clusters.pop(name, None)

    def get(self, name: str) -> ClusterRef | None:
        with self._lock:
            return self._clusters.get(name)

    def default_cluster(self) -> ClusterRef:
        cluster = self.get(self._default)
        if cluster is None:
            raise ClusterResolutionError(f"default cluster {self._default!r} is not registered")
        return cluster

    def resolve_clusters(self, placement: dict[str, Any]) -> list[ClusterRef]:
        """Clusters named in ``clusters`` plus those matching ``clusterLabelSelector``.

        Raises:
            ClusterResolutionError: If a named cluster is unknown or nothing matches.
        """
        names = placement.get("clusters") or []
        selector = placement.get("clusterLabelSelector")
        with self._lock:
            found: dict[str, ClusterRef] = {}
            for name in names:
                if name not in self._clusters:
                    raise ClusterResolutionError(f"cluster {name!r} is not registered")
                found[name] = self._clusters[name]
            if selector is not None:
                for cluster in self._clusters.values():
                    if all(cluster.labels.get(k) == v for k, v in selector.items()):
                        found[cluster.name] = cluster
        if not found:
            raise ClusterResolutionError(f"no registered cluster matches placement {placement}")
        return [found[n] for n in sorted(found)]


# ---------------------------------------------------------------------------
# Cluster API
# ---------------------------------------------------------------------------


class ClusterClient(Protocol):
    def get(self, key: ResourceKey) -> dict[str, Any] | None: ...

    def create(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    def patch(
        self,
        key: ResourceKey,
        patch: dict[str, Any],
        resource_version: str | None = None,
    ) -> dict[str, Any]: ...

    def delete(self, key: ResourceKey) -> bool: ...


class InMemoryClusterClient:
    """Fake cluster API server.

    Objects get a ``metadata.resourceVersion`` that moves on every write;
    ``patch`` with a stale ``resource_version`` raises ResourceConflictError.
    ``fail_on`` installs an exception raised by matching operations, and
    ``writes`` records every mutating call for assertions.
    """

    def __init__(self, name: str = "local"):
        self.name = name
        self._objects: dict[ResourceKey, dict[str, Any]] = {}
        self._version = 0
        self._lock = threading.Lock()
        self._faults: list[tuple[str | None, str | None, Exception, int | None]] = []
        self.writes: list[tuple[str, ResourceKey]] = []

    # -- fault injection ------------------------------------------------

    def fail_on(
        self,
        error: Exception,
        *,
        operation: str | None = None,
        kind: str | None = None,
        times: int | None = None,
    ) -> None:
        """Raise *error* from matching calls; ``times=None`` means forever."""
        with self._lock:
            self._faults.append((operation, kind, error, times))

    def clear_faults(self) -> None:
        with self._lock:
            self._faults.clear()

    def _check_fault(self, operation: str, kind: str) -> None:
        for i, (op, k, error, times) in enumerate(self._faults):
            if (op is None or op == operation) and (k is None or k == kind):
                if times is not None:
                    if times <= 1:
                        del self._faults[i]
                    else:
                        self._faults[i] = (op, k, error, times - 1)
                raise error

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    # -- API --------------------------------------------------------------

    def get(self, key: ResourceKey) -> dict[str, Any] | None:
        with self._lock:
            self._check_fault("get", key[1])
            obj = self._objects.get(key)
            return copy.deepcopy(obj) if obj is not None else None

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        key = resource_key(obj)
        with self._lock:
            self._check_fault("create", key[1])
            if key in self._objects:
                raise ResourceConflictError(f"{format_resource_key(key)} already exists")
            stored = copy.deepcopy(obj)
            stored.setdefault("metadata", {})["resourceVersion"] = self._next_version()
            self._objects[key] = stored
            self.writes.append(("create", key))
            return copy.deepcopy(stored)

    def patch(
        self,
        key: ResourceKey,
        patch: dict[str, Any],
        resource_version: str | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            self._check_fault("patch", key[1])
            live = self._objects.get(key)
            if live is None:
                raise DispatchError(f"{format_resource_key(key)} not found", reason="NotFound")
            current = live["metadata"]["resourceVersion"]
            if resource_version is not None and current != resource_version:
                raise ResourceConflictError(
                    f"{format_resource_key(key)} was modified: resourceVersion "
                    f"{resource_version} is stale"
                )
            patched = deep_merge(live, patch)
            patched["metadata"]["resourceVersion"] = self._next_version()
            self._objects[key] = patched
            self.writes.append(("patch", key))
            return copy.deepcopy(patched)

    def delete(self, key: ResourceKey) -> bool:
        with self._lock:
            self._check_fault("delete", key[1])
            existed = self._objects.pop(key, None) is not None
            if existed:
                self.writes.append(("delete", key))
            return existed

    # -- inspection -------------------------------------------------------

    def objects(self) -> list[dict[str, Any]]:
        with self._lock:
            items = sorted(self._objects.items(), key=lambda kv: str(kv[0]))
            return [copy.deepcopy(o) for _, o in items]

    def keys(self) -> set[ResourceKey]:
        with self._lock:
            return set(self._objects)


class InMemoryFleet:
    """A set of in-memory clusters with a matching registry.

    Example::

        fleet = InMemoryFleet()
        fleet.add_cluster("prod", {"env": "prod"})
        applier = PatchingApplier(fleet.client_for)
        registry = fleet.registry(default="prod")
    """

    def __init__(self) -> None:
        self.clusters: dict[str, ClusterRef] = {}
        self.clients: dict[str, InMemoryClusterClient] = {}

    def add_cluster(self, name: str, labels: dict[str, str] | None = None) -> InMemoryClusterClient:
        self.clusters[name] = ClusterRef(name, dict(labels or {}), endpoint=f"memory://{name}")
        self.clients[name] = InMemoryClusterClient(name)
        return self.clients[name]

    def client_for(self, cluster: ClusterRef) -> InMemoryClusterClient:
        try:
            return self.clients[cluster.name]
        except KeyError:
            raise DispatchError(
                f"no connection to cluster {cluster.name!r}", reason="ClusterUnreachable"
            ) from None

    def registry(self, default: str = "local") -> StaticClusterRegistry:
        return StaticClusterRegistry(list(self.clusters.values()), default=default)


# ---------------------------------------------------------------------------
# Applier
# ---------------------------------------------------------------------------


class Applier(Protocol):
    def apply(self, cluster: ClusterRef, resource: dict[str, Any]) -> ResourceOutcome: ...

    def delete(self, cluster: ClusterRef, key: ResourceKey) -> bool: ...


class PatchingApplier:
    """Compare-and-patch applier over per-cluster :class:`ClusterClient` handles."""

    def __init__(
        self,
        client_for: Callable[[ClusterRef], ClusterClient],
        conflict_retries: int = 3,
    ):
        self._client_for = client_for
        self.conflict_retries = conflict_retries

    def apply(self, cluster: ClusterRef, resource: dict[str, Any]) -> ResourceOutcome:
        """Converge one live object on *resource*.

        Raises:
            ResourceConflictError: If concurrent writers win every retry.
            AppSpineError: Whatever the cluster client raises.
        """
        client = self._client_for(cluster)
        key = resource_key(resource)
        fingerprint = content_hash(resource)
        desired = copy.deepcopy(resource)
        desired.setdefault("metadata", {}).setdefault("annotations", {})[
            LAST_APPLIED_ANNOTATION
        ] = fingerprint

        for attempt in range(self.conflict_retries + 1):
            live = client.get(key)
            if live is None:
                try:
                    client.create(desired)
                except ResourceConflictError:
                    # Created by someone else since the read.
                    continue
                return ResourceOutcome.CREATED

            if matches_desired(live, desired):
                return ResourceOutcome.UNCHANGED

            annotations = get_path(live, "metadata", "annotations", default={}) or {}
            drifted = annotations.get(LAST_APPLIED_ANNOTATION) == fingerprint
            try:
                client.patch(key, desired, resource_version=live["metadata"].get("resourceVersion"))
            except ResourceConflictError:
                logger.debug(
                    "apply.conflict_retry",
                    cluster=cluster.name,
                    resource=format_resource_key(key),
                    attempt=attempt + 1,
                )
                continue
            if drifted:
                logger.info(
                    "apply.drift_corrected",
                    cluster=cluster.name,
                    resource=format_resource_key(key),
                )
                return ResourceOutcome.DRIFT_CORRECTED
            return ResourceOutcome.CONFIGURED

        raise ResourceConflictError(
            f"{format_resource_key(key)} kept changing; gave up after "
            f"{self.conflict_retries + 1} attempts"
        ).with_context(cluster=cluster.name, resource=format_resource_key(key))

    def delete(self, cluster: ClusterRef, key: ResourceKey) -> bool:
        return self._client_for(cluster).delete(key)
