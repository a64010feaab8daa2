"""Render output: the intermediate representation between Renderer and Dispatcher.

A :class:`RenderOutput` is what gets fingerprinted and frozen into an
ApplicationRevision, so ``to_dict`` must be a pure function of content:
components are kept sorted by name and nothing time- or number-dependent is
ever stored here.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

ResourceKey = tuple[str, str, str | None, str]

CLUSTER_SCOPED_KINDS = frozenset(
    {"Namespace", "CustomResourceDefinition", "ClusterRole", "ClusterRoleBinding"}
)

# Kinds other resources commonly depend on; everything else applies after these.
KIND_PRIORITY = (
    "Namespace",
    "CustomResourceDefinition",
    "ServiceAccount",
    "Role",
    "ClusterRole",
    "RoleBinding",
    "ClusterRoleBinding",
    "ConfigMap",
    "Secret",
    "PersistentVolumeClaim",
)

_FOUNDATION_KINDS = frozenset({"Namespace", "CustomResourceDefinition"})


def resource_key(resource: dict[str, Any]) -> ResourceKey:
    """Identity of a manifest: (apiVersion, kind, namespace, name)."""
    meta = resource.get("metadata") or {}
    return (
        resource.get("apiVersion", ""),
        resource.get("kind", ""),
        meta.get("namespace"),
        meta.get("name", ""),
    )


def format_resource_key(key: ResourceKey) -> str:
    api_version, kind, namespace, name = key
    where = f"{namespace}/{name}" if namespace else name
    return f"{kind}.{api_version} {where}"


def _kind_rank(kind: str) -> int:
    try:
        return KIND_PRIORITY.index(kind)
    except ValueError:
        return len(KIND_PRIORITY)


def topological_order(dependencies: dict[str, list[str]]) -> list[str]:
    """Order names so each comes after everything it depends on.

    Ties break by name, so the result is deterministic.

    Raises:
        ValueError: If the dependencies contain a cycle; the message names
            the nodes involved.
    """
    remaining = {name: set(deps) & set(dependencies) for name, deps in dependencies.items()}
    order: list[str] = []
    while remaining:
        ready = sorted(name for name, deps in remaining.items() if not deps)
        if not ready:
            raise ValueError(f"dependency cycle among {sorted(remaining)}")
        for name in ready:
            order.append(name)
            del remaining[name]
        for deps in remaining.values():
            deps.difference_update(ready)
    return order


@dataclass(frozen=True)
class TraitMutation:
    """The patch one trait applied to its component's workload."""

    component: str
    trait: str
    patch: dict[str, Any]


@dataclass(frozen=True)
class RenderedComponent:
    name: str
    type: str
    workload: dict[str, Any]
    auxiliaries: tuple[dict[str, Any], ...] = ()
    traits: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()

    @property
    def resources(self) -> list[dict[str, Any]]:
        """Workload first, then auxiliary outputs in definition order."""
        return [self.workload, *self.auxiliaries]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "workload": copy.deepcopy(self.workload),
            "auxiliaries": [copy.deepcopy(a) for a in self.auxiliaries],
            "traits": list(self.traits),
            "dependsOn": list(self.depends_on),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RenderedComponent:
        return cls(
            name=data["name"],
            type=data["type"],
            workload=copy.deepcopy(data["workload"]),
            auxiliaries=tuple(copy.deepcopy(a) for a in data.get("auxiliaries", [])),
            traits=tuple(data.get("traits", [])),
            depends_on=tuple(data.get("dependsOn", [])),
        )


@dataclass(frozen=True)
class RenderedPolicy:
    name: str
    type: str
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RenderedStep:
    name: str
    type: str
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RenderOutput:
    """Everything one render of an Application produced."""

    app_name: str
    namespace: str
    components: tuple[RenderedComponent, ...] = ()
    mutations: tuple[TraitMutation, ...] = ()
    policies: tuple[RenderedPolicy, ...] = ()
    workflow: tuple[RenderedStep, ...] = ()

    def component(self, name: str) -> RenderedComponent:
        for comp in self.components:
            if comp.name == name:
                return comp
        raise KeyError(name)

    @property
    def component_names(self) -> list[str]:
        return [c.name for c in self.components]

    def policies_of_type(self, type_: str) -> list[RenderedPolicy]:
        return [p for p in self.policies if p.type == type_]

    def apply_order(self, components: list[str] | None = None) -> list[tuple[str, dict[str, Any]]]:
        """Resources as ``(component, manifest)`` pairs in dependency order.

        Namespaces and CRDs go first, then components in ``depends_on``
        order, and within a component by kind priority.  With *components*
        only those components' resources are returned.
        """
        wanted = set(components) if components is not None else set(self.component_names)
        topo = topological_order({c.name: list(c.depends_on) for c in self.components})
        position = {name: i for i, name in enumerate(topo)}

        ranked = []
        for comp in self.components:
            if comp.name not in wanted:
                continue
            for index, resource in enumerate(comp.resources):
                kind = resource.get("kind", "")
                rank = (
                    0 if kind in _FOUNDATION_KINDS else 1,
                    position[comp.name],
                    _kind_rank(kind),
                    index,
                )
                ranked.append((rank, comp.name, resource))
        ranked.sort(key=lambda item: item[0])
        return [(name, resource) for _, name, resource in ranked]

    # ------------------------------------------------------------------ #
    # Serialization
    # ------------------------------------------------------------------ #

    def to_dict(self) -> dict[str, Any]:
        return {
            "appName": self.app_name,
            "namespace": self.namespace,
            "components": [c.to_dict() for c in sorted(self.components, key=lambda c: c.name)],
            "mutations": [
                {"component": m.component, "trait": m.trait, "patch": copy.deepcopy(m.patch)}
                for m in self.mutations
            ],
            "policies": [
                {"name": p.name, "type": p.type, "properties": copy.deepcopy(p.properties)}
                for p in self.policies
            ],
            "workflow": [
                {"name": s.name, "type": s.type, "properties": copy.deepcopy(s.properties)}
                for s in self.workflow
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RenderOutput:
        return cls(
            app_name=data["appName"],
            namespace=data["namespace"],
            components=tuple(RenderedComponent.from_dict(c) for c in data.get("components", [])),
            mutations=tuple(
                TraitMutation(m["component"], m["trait"], copy.deepcopy(m["patch"]))
                for m in data.get("mutations", [])
            ),
            policies=tuple(
                RenderedPolicy(p["name"], p["type"], copy.deepcopy(p.get("properties", {})))
                for p in data.get("policies", [])
            ),
            workflow=tuple(
                RenderedStep(s["name"], s["type"], copy.deepcopy(s.get("properties", {})))
                for s in data.get("workflow", [])
            ),
        )
