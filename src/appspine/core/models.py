"""Pydantic models for the Application resource.

The Application is owned by the external API store.  The engine reads
``metadata`` and ``spec`` and writes only ``status``.

Field names are snake_case in Python and camelCase on the wire, so the same
models validate YAML manifests and serialize status the way the API shows it::

    apiVersion: core.oam.dev/v1beta1
    kind: Application
    metadata:
      name: web
      namespace: default
    spec:
      components:
        - name: frontend
          type: webservice
          properties:
            image: nginx:1.27
          traits:
            - type: scaler
              properties: {replicas: 2}
      policies:
        - name: prod-only
          type: topology
          properties:
            clusters: [prod]

Tags:
    app-spine, models, pydantic, application, status, conditions
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AppID(NamedTuple):
    """Stable identity of an Application."""

    namespace: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, key: str) -> AppID:
        """Parse ``namespace/name``; a bare name means the ``default`` namespace."""
        if "/" in key:
            namespace, name = key.split("/", 1)
            return cls(namespace, name)
        return cls("default", key)

    def __str__(self) -> str:
        return self.key


# ---------------------------------------------------------------------------
# Spec
# ---------------------------------------------------------------------------


class TraitSpec(_Model):
    type: str = Field(..., min_length=1)
    properties: dict[str, Any] = Field(default_factory=dict)


class ComponentSpec(_Model):
    name: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    properties: dict[str, Any] = Field(default_factory=dict)
    traits: list[TraitSpec] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)


class PolicySpec(_Model):
    name: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    properties: dict[str, Any] = Field(default_factory=dict)


class WorkflowStepSpec(_Model):
    name: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    properties: dict[str, Any] = Field(default_factory=dict)


class WorkflowSpec(_Model):
    steps: list[WorkflowStepSpec] = Field(default_factory=list)


class ApplicationSpec(_Model):
    components: list[ComponentSpec] = Field(default_factory=list)
    policies: list[PolicySpec] = Field(default_factory=list)
    workflow: WorkflowSpec | None = None


class ObjectMeta(_Model):
    name: str = Field(..., min_length=1)
    namespace: str = "default"
    generation: int = 1
    resource_version: int = 0
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    creation_timestamp: datetime = Field(default_factory=utcnow)
    deletion_timestamp: datetime | None = None


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class ApplicationPhase(str, Enum):
    """Coarse phase shown in ``status.phase``."""

    PENDING = "Pending"
    RENDERING = "Rendering"
    RENDER_FAILED = "RenderFailed"
    APPLYING = "Applying"
    SUCCEEDED = "Succeeded"
    DEGRADED = "Degraded"
    FAILED = "Failed"
    DELETING = "Deleting"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionType:
    """Condition types written by the controller."""

    RENDERED = "Rendered"
    REVISED = "Revised"
    DISPATCHED = "Dispatched"
    READY = "Ready"
    STALLED = "Stalled"


class Condition(_Model):
    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(default_factory=utcnow)


class ServiceStatus(_Model):
    """Applied state of one component on one cluster."""

    name: str
    cluster: str
    healthy: bool = False
    revision: str | None = None
    component_revision: str | None = None
    message: str = ""


class TargetStatus(_Model):
    """Outcome of the last dispatch to one cluster."""

    cluster: str
    outcome: str
    reason: str = ""
    message: str = ""
    components: list[str] = Field(default_factory=list)


class AppliedResource(_Model):
    """Resource tracker entry: one resource the engine applied to a cluster."""

    cluster: str
    component: str
    api_version: str
    kind: str
    name: str
    namespace: str | None = None

    @property
    def resource_key(self) -> tuple[str, str, str | None, str]:
        return (self.api_version, self.kind, self.namespace, self.name)


class WorkflowStepStatus(_Model):
    name: str
    type: str
    phase: str
    message: str = ""


class ApplicationStatus(_Model):
    phase: ApplicationPhase = ApplicationPhase.PENDING
    conditions: list[Condition] = Field(default_factory=list)
    latest_revision: str | None = None
    observed_generation: int = 0
    services: list[ServiceStatus] = Field(default_factory=list)
    targets: list[TargetStatus] = Field(default_factory=list)
    applied: list[AppliedResource] = Field(default_factory=list)
    workflow: list[WorkflowStepStatus] = Field(default_factory=list)

    def get_condition(self, type_: str) -> Condition | None:
        for cond in self.conditions:
            if cond.type == type_:
                return cond
        return None

    def set_condition(
        self,
        type_: str,
        status: ConditionStatus,
        reason: str = "",
        message: str = "",
    ) -> Condition:
        """Upsert a condition.

        ``last_transition_time`` moves only when ``status`` changes.
        """
        existing = self.get_condition(type_)
        if existing is None:
            cond = Condition(type=type_, status=status, reason=reason, message=message)
            self.conditions.append(cond)
            return cond
        if existing.status != status:
            existing.last_transition_time = utcnow()
        existing.status = status
        existing.reason = reason
        existing.message = message
        return existing

    def is_true(self, type_: str) -> bool:
        cond = self.get_condition(type_)
        return cond is not None and cond.status == ConditionStatus.TRUE


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


class Application(_Model):
    api_version: str = "core.oam.dev/v1beta1"
    kind: str = "Application"
    metadata: ObjectMeta
    spec: ApplicationSpec = Field(default_factory=ApplicationSpec)
    status: ApplicationStatus = Field(default_factory=ApplicationStatus)

    @field_validator("kind")
    @classmethod
    def _kind_is_application(cls, v: str) -> str:
        if v != "Application":
            raise ValueError(f"expected kind Application, got {v!r}")
        return v

    @property
    def app_id(self) -> AppID:
        return AppID(self.metadata.namespace, self.metadata.name)

    @property
    def deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @classmethod
    def build(
        cls,
        name: str,
        components: list[dict[str, Any]] | None = None,
        policies: list[dict[str, Any]] | None = None,
        workflow: list[dict[str, Any]] | None = None,
        namespace: str = "default",
    ) -> Application:
        """Convenience constructor from plain dicts."""
        spec: dict[str, Any] = {
            "components": components or [],
            "policies": policies or [],
        }
        if workflow is not None:
            spec["workflow"] = {"steps": workflow}
        return cls.model_validate(
            {"metadata": {"name": name, "namespace": namespace}, "spec": spec}
        )

    @classmethod
    def from_yaml(cls, yaml_content: str) -> Application:
        """Parse and validate an Application manifest.

        Raises:
            ValueError: If YAML is invalid or doesn't match the schema.
        """
        import yaml

        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML: {e}") from e
        return cls.model_validate(data)

    def to_manifest(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
