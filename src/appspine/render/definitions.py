"""
Component, trait, policy and workflow-step definitions.

A definition gives a ``type`` name meaning: which parameters it accepts and,
for components and traits, which manifests it expands into.  The Renderer
looks every type up in a :class:`DefinitionSet` and raises
:class:`~appspine.core.errors.DefinitionNotFound` for unknown ones.

File Format (YAML, one definition per document):
    apiVersion: core.oam.dev/v1beta1
    kind: TraitDefinition
    metadata:
      name: scaler
    spec:
      appliesTo: [webservice, worker]
      parameters:
        replicas: {type: int, default: 1}
      patch:
        spec:
          replicas: "{{ parameter.replicas }}"

Tags:
    app-spine, render, definitions, yaml, parameters
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from appspine.core.errors import DefinitionNotFound, TemplateError
from appspine.core.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_API_VERSIONS = {"core.oam.dev/v1beta1"}

PARAMETER_TYPES = {"string", "int", "number", "bool", "object", "list", "any"}


@dataclass(frozen=True)
class ParameterSpec:
    """Declared parameter: type, whether it must be supplied, default value."""

    type: str = "any"
    required: bool = False
    default: Any = None

    def __post_init__(self) -> None:
        if self.type not in PARAMETER_TYPES:
            raise ValueError(
                f"unknown parameter type {self.type!r}; expected one of {sorted(PARAMETER_TYPES)}"
            )

    def accepts(self, value: Any) -> bool:
        if self.type == "any":
            return True
        if self.type == "string":
            return isinstance(value, str)
        if self.type == "bool":
            return isinstance(value, bool)
        if self.type == "int":
            return isinstance(value, int) and not isinstance(value, bool)
        if self.type == "number":
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        if self.type == "object":
            return isinstance(value, dict)
        return isinstance(value, list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | str) -> ParameterSpec:
        if isinstance(data, str):
            return cls(type=data)
        return cls(
            type=data.get("type", "any"),
            required=bool(data.get("required", False)),
            default=data.get("default"),
        )


def bind_parameters(
    kind: str,
    type_name: str,
    declared: dict[str, ParameterSpec],
    supplied: dict[str, Any],
) -> dict[str, Any]:
    """Validate *supplied* against *declared* and fill in defaults.

    Returns a dict holding every declared parameter; optional parameters with
    no default are ``None``.

    Raises:
        TemplateError: On an undeclared, missing or wrongly-typed parameter.
    """
    unknown = sorted(set(supplied) - set(declared))
    if unknown:
        raise TemplateError(f"{kind} {type_name!r} does not accept parameter(s) {unknown}")

    bound: dict[str, Any] = {}
    for name, param in declared.items():
        value = supplied.get(name)
        if value is None:
            if param.required:
                raise TemplateError(f"{kind} {type_name!r} requires parameter {name!r}")
            bound[name] = param.default
            continue
        if not param.accepts(value):
            raise TemplateError(
                f"{kind} {type_name!r} parameter {name!r} must be {param.type}, "
                f"got {type(value).__name__}"
            )
        bound[name] = value
    return bound


def _parameters(spec: dict[str, Any]) -> dict[str, ParameterSpec]:
    declared = spec.get("parameters") or {}
    return {name: ParameterSpec.from_dict(p or {}) for name, p in declared.items()}


@dataclass(frozen=True)
class ComponentDefinition:
    name: str
    workload: dict[str, Any]
    parameters: dict[str, ParameterSpec] = field(default_factory=dict)
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    description: str = ""

    @classmethod
    def from_spec(cls, name: str, spec: dict[str, Any]) -> ComponentDefinition:
        if not isinstance(spec.get("workload"), dict):
            raise ValueError(f"ComponentDefinition {name!r} has no workload template")
        return cls(
            name=name,
            workload=spec["workload"],
            parameters=_parameters(spec),
            outputs=dict(spec.get("outputs") or {}),
            description=spec.get("description", ""),
        )


@dataclass(frozen=True)
class TraitDefinition:
    """Trait: a merge patch for the workload and/or extra output resources.

    ``applies_to`` lists the component types the trait may attach to;
    ``("*",)`` allows any.
    """

    name: str
    parameters: dict[str, ParameterSpec] = field(default_factory=dict)
    patch: dict[str, Any] | None = None
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    applies_to: tuple[str, ...] = ("*",)
    description: str = ""

    def can_attach_to(self, component_type: str) -> bool:
        return "*" in self.applies_to or component_type in self.applies_to

    @classmethod
    def from_spec(cls, name: str, spec: dict[str, Any]) -> TraitDefinition:
        return cls(
            name=name,
            parameters=_parameters(spec),
            patch=spec.get("patch"),
            outputs=dict(spec.get("outputs") or {}),
            applies_to=tuple(spec.get("appliesTo") or ("*",)),
            description=spec.get("description", ""),
        )


@dataclass(frozen=True)
class PolicyDefinition:
    name: str
    parameters: dict[str, ParameterSpec] = field(default_factory=dict)
    description: str = ""

    @classmethod
    def from_spec(cls, name: str, spec: dict[str, Any]) -> PolicyDefinition:
        return cls(name=name, parameters=_parameters(spec), description=spec.get("description", ""))


@dataclass(frozen=True)
class WorkflowStepDefinition:
    name: str
    parameters: dict[str, ParameterSpec] = field(default_factory=dict)
    description: str = ""

    @classmethod
    def from_spec(cls, name: str, spec: dict[str, Any]) -> WorkflowStepDefinition:
        return cls(name=name, parameters=_parameters(spec), description=spec.get("description", ""))


Definition = ComponentDefinition | TraitDefinition | PolicyDefinition | WorkflowStepDefinition

_KINDS: dict[str, type] = {
    "ComponentDefinition": ComponentDefinition,
    "TraitDefinition": TraitDefinition,
    "PolicyDefinition": PolicyDefinition,
    "WorkflowStepDefinition": WorkflowStepDefinition,
}

_KIND_LABELS = {
    ComponentDefinition: "component",
    TraitDefinition: "trait",
    PolicyDefinition: "policy",
    WorkflowStepDefinition: "workflow step",
}


class DefinitionSet:
    """Lookup table of definitions by kind and type name.

    Example::

        defs = builtin_definitions()
        defs.load_yaml(open("my-traits.yaml").read())
        defs.trait("scaler").parameters["replicas"].default  # 1
    """

    def __init__(self, definitions: list[Definition] | None = None):
        self._defs: dict[type, dict[str, Definition]] = {cls: {} for cls in _KIND_LABELS}
        for definition in definitions or []:
            self.add(definition)

    def add(self, definition: Definition) -> None:
        """Register *definition*, replacing any same-kind definition with that name."""
        self._defs[type(definition)][definition.name] = definition

    def _get(self, cls: type, name: str) -> Any:
        try:
            return self._defs[cls][name]
        except KeyError:
            raise DefinitionNotFound(_KIND_LABELS[cls], name) from None

    def component(self, name: str) -> ComponentDefinition:
        return self._get(ComponentDefinition, name)

    def trait(self, name: str) -> TraitDefinition:
        return self._get(TraitDefinition, name)

    def policy(self, name: str) -> PolicyDefinition:
        return self._get(PolicyDefinition, name)

    def step(self, name: str) -> WorkflowStepDefinition:
        return self._get(WorkflowStepDefinition, name)

    def names(self, kind: str) -> list[str]:
        cls = _KINDS[kind]
        return sorted(self._defs[cls])

    def __len__(self) -> int:
        return sum(len(d) for d in self._defs.values())

    def copy(self) -> DefinitionSet:
        result = DefinitionSet()
        for defs in self._defs.values():
            for definition in defs.values():
                result.add(definition)
        return result

    # ------------------------------------------------------------------ #
    # YAML
    # ------------------------------------------------------------------ #

    def load_yaml(self, yaml_content: str) -> int:
        """Add every definition in a multi-document YAML string.

        Returns:
            Number of definitions loaded.

        Raises:
            ValueError: If YAML is invalid or a document is not a definition.
        """
        import yaml

        try:
            documents = [d for d in yaml.safe_load_all(yaml_content) if d is not None]
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML: {e}") from e

        for doc in documents:
            self.add(definition_from_dict(doc))
        logger.debug("definitions.loaded", count=len(documents))
        return len(documents)

    @classmethod
    def from_yaml(cls, yaml_content: str) -> DefinitionSet:
        result = cls()
        result.load_yaml(yaml_content)
        return result


def definition_from_dict(data: Any) -> Definition:
    """Parse one ``*Definition`` document.

    Raises:
        ValueError: If the document does not match the definition schema.
    """
    if not isinstance(data, dict):
        raise ValueError(f"Expected dict, got {type(data).__name__}")

    api_version = data.get("apiVersion")
    if api_version and api_version not in SUPPORTED_API_VERSIONS:
        raise ValueError(
            f"Unsupported apiVersion: {api_version}. Supported: {SUPPORTED_API_VERSIONS}"
        )

    kind = data.get("kind")
    if kind not in _KINDS:
        raise ValueError(f"Unknown definition kind {kind!r}; expected one of {sorted(_KINDS)}")

    name = (data.get("metadata") or {}).get("name")
    if not name:
        raise ValueError(f"{kind} is missing metadata.name")

    return _KINDS[kind].from_spec(name, data.get("spec") or {})


_BUILTIN_YAML = """
apiVersion: core.oam.dev/v1beta1
kind: ComponentDefinition
metadata:
  name: webservice
spec:
  description: Long-running, scalable service with a stable network endpoint.
  parameters:
    image: {type: string, required: true}
    port: {type: int, default: 80}
    replicas: {type: int, default: 1}
    cmd: {type: list}
    env: {type: list}
  workload:
    apiVersion: apps/v1
    kind: Deployment
    metadata:
      name: "{{ context.name }}"
      namespace: "{{ context.namespace }}"
    spec:
      replicas: "{{ parameter.replicas }}"
      selector:
        matchLabels:
          app.oam.dev/component: "{{ context.name }}"
      template:
        metadata:
          labels:
            app.oam.dev/component: "{{ context.name }}"
        spec:
          containers:
            - name: "{{ context.name }}"
              image: "{{ parameter.image }}"
              command: "{{ parameter.cmd }}"
              env: "{{ parameter.env }}"
              ports:
                - containerPort: "{{ parameter.port }}"
  outputs:
    service:
      apiVersion: v1
      kind: Service
      metadata:
        name: "{{ context.name }}"
        namespace: "{{ context.namespace }}"
      spec:
        selector:
          app.oam.dev/component: "{{ context.name }}"
        ports:
          - port: "{{ parameter.port }}"
            targetPort: "{{ parameter.port }}"
---
apiVersion: core.oam.dev/v1beta1
kind: ComponentDefinition
metadata:
  name: worker
spec:
  description: Long-running background worker without a network endpoint.
  parameters:
    image: {type: string, required: true}
    replicas: {type: int, default: 1}
    cmd: {type: list}
    env: {type: list}
  workload:
    apiVersion: apps/v1
    kind: Deployment
    metadata:
      name: "{{ context.name }}"
      namespace: "{{ context.namespace }}"
    spec:
      replicas: "{{ parameter.replicas }}"
      selector:
        matchLabels:
          app.oam.dev/component: "{{ context.name }}"
      template:
        metadata:
          labels:
            app.oam.dev/component: "{{ context.name }}"
        spec:
          containers:
            - name: "{{ context.name }}"
              image: "{{ parameter.image }}"
              command: "{{ parameter.cmd }}"
              env: "{{ parameter.env }}"
---
apiVersion: core.oam.dev/v1beta1
kind: ComponentDefinition
metadata:
  name: namespace
spec:
  description: A target namespace, applied before namespaced resources.
  parameters:
    labels: {type: object}
  workload:
    apiVersion: v1
    kind: Namespace
    metadata:
      name: "{{ context.name }}"
      labels: "{{ parameter.labels }}"
---
apiVersion: core.oam.dev/v1beta1
kind: TraitDefinition
metadata:
  name: scaler
spec:
  description: Set the replica count of the workload.
  appliesTo: [webservice, worker]
  parameters:
    replicas: {type: int, default: 1}
  patch:
    spec:
      replicas: "{{ parameter.replicas }}"
---
apiVersion: core.oam.dev/v1beta1
kind: TraitDefinition
metadata:
  name: labels
spec:
  description: Add labels to the workload.
  appliesTo: ["*"]
  parameters:
    labels: {type: object, required: true}
  patch:
    metadata:
      labels: "{{ parameter.labels }}"
---
apiVersion: core.oam.dev/v1beta1
kind: TraitDefinition
metadata:
  name: expose
spec:
  description: Expose the workload through an extra Service.
  appliesTo: [webservice, worker]
  parameters:
    port: {type: int, required: true}
    type: {type: string, default: ClusterIP}
  outputs:
    expose:
      apiVersion: v1
      kind: Service
      metadata:
        name: "{{ context.name }}-expose"
        namespace: "{{ context.namespace }}"
      spec:
        type: "{{ parameter.type }}"
        selector:
          app.oam.dev/component: "{{ context.name }}"
        ports:
          - port: "{{ parameter.port }}"
            targetPort: "{{ parameter.port }}"
---
apiVersion: core.oam.dev/v1beta1
kind: PolicyDefinition
metadata:
  name: topology
spec:
  description: Choose target clusters by name and/or label selector.
  parameters:
    clusters: {type: list}
    clusterLabelSelector: {type: object}
    components: {type: list}
---
apiVersion: core.oam.dev/v1beta1
kind: PolicyDefinition
metadata:
  name: override
spec:
  description: Merge property overrides into named components.
  parameters:
    components: {type: list, required: true}
---
apiVersion: core.oam.dev/v1beta1
kind: WorkflowStepDefinition
metadata:
  name: deploy
spec:
  description: Dispatch components to the clusters chosen by the listed policies.
  parameters:
    policies: {type: list}
---
apiVersion: core.oam.dev/v1beta1
kind: WorkflowStepDefinition
metadata:
  name: notification
spec:
  description: Emit an event once the preceding steps have run.
  parameters:
    message: {type: string, required: true}
"""


def builtin_definitions() -> DefinitionSet:
    """The definitions every engine ships with.

    Returns a fresh set each call; callers may add to it freely.
    """
    return DefinitionSet.from_yaml(_BUILTIN_YAML)
