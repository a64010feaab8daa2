"""Immutable revision snapshots.

Identity is by stable keys, never object references::

    AppID("default", "web")
      └── ApplicationRevision  web-v2  (number=2)
            ├── ComponentRevision  backend-v1
            └── ComponentRevision  frontend-v1   (unchanged since web-v1)

A ComponentRevision's number moves only when that component's own rendered
content changes, so traits and live bindings can name a component version
that stays put while other components of the Application churn.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from appspine.core.hashing import content_hash
from appspine.core.models import AppID, utcnow
from appspine.render.output import RenderedComponent, RenderOutput

REVISION_API_VERSION = "core.oam.dev/v1beta1"


def revision_name(app_name: str, number: int) -> str:
    return f"{app_name}-v{number}"


def fingerprint(render: RenderOutput) -> str:
    """SHA-256 over the canonical render output.

    Components are serialized in name order and mappings with sorted keys,
    so neither component order nor field order affects the result.
    """
    return content_hash(render.to_dict())


def component_fingerprint(component: RenderedComponent) -> str:
    return content_hash(component.to_dict())


@dataclass(frozen=True)
class ComponentRevision:
    component: str
    number: int
    fingerprint: str
    manifest: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return revision_name(self.component, self.number)

    def to_dict(self) -> dict[str, Any]:
        return {
            "component": self.component,
            "number": self.number,
            "fingerprint": self.fingerprint,
            "manifest": self.manifest,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ComponentRevision:
        return cls(
            component=data["component"],
            number=int(data["number"]),
            fingerprint=data["fingerprint"],
            manifest=data.get("manifest", {}),
        )


@dataclass(frozen=True)
class ApplicationRevision:
    """One frozen render of an Application.

    Never mutated after creation; the store only creates and deletes them.
    """

    app_id: AppID
    number: int
    fingerprint: str
    render: RenderOutput
    generation: int
    components: dict[str, ComponentRevision] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def name(self) -> str:
        return revision_name(self.app_id.name, self.number)

    def component_revision(self, component: str) -> ComponentRevision | None:
        return self.components.get(component)

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.app_id.namespace,
            "app": self.app_id.name,
            "number": self.number,
            "fingerprint": self.fingerprint,
            "generation": self.generation,
            "createdAt": self.created_at.isoformat(),
            "render": self.render.to_dict(),
            "components": {k: v.to_dict() for k, v in sorted(self.components.items())},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApplicationRevision:
        return cls(
            app_id=AppID(data["namespace"], data["app"]),
            number=int(data["number"]),
            fingerprint=data["fingerprint"],
            render=RenderOutput.from_dict(data["render"]),
            generation=int(data["generation"]),
            components={
                k: ComponentRevision.from_dict(v) for k, v in data.get("components", {}).items()
            },
            created_at=datetime.fromisoformat(data["createdAt"]),
        )

    def to_manifest(self) -> dict[str, Any]:
        """The ApplicationRevision resource as the API shows it."""
        return {
            "apiVersion": REVISION_API_VERSION,
            "kind": "ApplicationRevision",
            "metadata": {
                "name": self.name,
                "namespace": self.app_id.namespace,
                "labels": {"app.oam.dev/name": self.app_id.name},
                "creationTimestamp": self.created_at.isoformat(),
            },
            "spec": {
                "revisionNumber": self.number,
                "applicationSpecHash": self.fingerprint,
                "generation": self.generation,
                "render": self.render.to_dict(),
                "componentRevisions": {
                    k: v.name for k, v in sorted(self.components.items())
                },
            },
        }


def next_component_revisions(
    render: RenderOutput,
    previous: ApplicationRevision | None,
    counters: dict[str, int],
) -> tuple[dict[str, ComponentRevision], dict[str, int]]:
    """Component revisions for a new ApplicationRevision.

    A component whose fingerprint matches its entry in *previous* keeps that
    ComponentRevision; otherwise it gets ``counters[name] + 1``.  *counters*
    holds the highest number ever issued per component and is not modified;
    the updated counters are returned alongside.
    """
    updated = dict(counters)
    result: dict[str, ComponentRevision] = {}
    for comp in render.components:
        fp = component_fingerprint(comp)
        prior = previous.components.get(comp.name) if previous else None
        if prior is not None and prior.fingerprint == fp:
            result[comp.name] = prior
            continue
        number = updated.get(comp.name, 0) + 1
        updated[comp.name] = number
        result[comp.name] = ComponentRevision(comp.name, number, fp, comp.to_dict())
    return result, updated
