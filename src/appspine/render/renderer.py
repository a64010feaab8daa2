"""
Renderer: Application spec + definitions -> RenderOutput.

Rendering is a pure function.  The same spec and definition set always give
an equal :class:`RenderOutput`, which is what makes revision fingerprints
meaningful: components are rendered in name order and nothing derived from
time, revision numbers or live state ever enters the output.

Pipeline
--------
1. shape checks on the spec (unique names, known and acyclic ``dependsOn``)
2. policies and workflow steps: definition lookup and parameter binding
3. ``override`` policies merged into component properties
4. per component: bind parameters, expand the workload and output
   templates, then apply each trait (patch merged into the workload, trait
   outputs appended)
5. shape checks on the result (identity fields, unique resource keys) and
   ownership labels stamped on every resource

Errors are :class:`~appspine.core.errors.RenderError` subclasses carrying the
app (and where known, component) in their context.
"""

from __future__ import annotations

from typing import Any

from appspine.core.errors import RenderError, ValidationError
from appspine.core.logging import get_logger
from appspine.core.models import AppID, ApplicationSpec, ComponentSpec
from appspine.core.objects import deep_merge
from appspine.render.definitions import DefinitionSet, bind_parameters
from appspine.render.output import (
    RenderedComponent,
    RenderedPolicy,
    RenderedStep,
    RenderOutput,
    TraitMutation,
    format_resource_key,
    resource_key,
    topological_order,
)
from appspine.render.template import expand

logger = get_logger(__name__)

LABEL_APP_NAME = "app.oam.dev/name"
LABEL_COMPONENT = "app.oam.dev/component"


class Renderer:
    """Renders Applications against one :class:`DefinitionSet`."""

    def __init__(self, definitions: DefinitionSet):
        self.definitions = definitions

    def render(self, app_id: AppID, spec: ApplicationSpec) -> RenderOutput:
        try:
            return self._render(app_id, spec)
        except RenderError as e:
            if e.context.app is None:
                e.with_context(app=app_id.key)
            raise

    def _render(self, app_id: AppID, spec: ApplicationSpec) -> RenderOutput:
        _check_unique("component", [c.name for c in spec.components])
        _check_unique("policy", [p.name for p in spec.policies])
        steps = spec.workflow.steps if spec.workflow else []
        _check_unique("workflow step", [s.name for s in steps])
        _check_dependencies(spec.components)

        policies = self._render_policies(spec)
        _check_policy_components(policies, {c.name for c in spec.components})
        workflow = self._render_workflow(steps, {p.name for p in policies})
        properties = _apply_overrides(spec.components, policies)

        components: list[RenderedComponent] = []
        mutations: list[TraitMutation] = []
        for comp in sorted(spec.components, key=lambda c: c.name):
            try:
                rendered, comp_mutations = self._render_component(
                    app_id, comp, properties[comp.name]
                )
            except RenderError as e:
                if e.context.component is None:
                    e.with_context(component=comp.name)
                raise
            components.append(rendered)
            mutations.extend(comp_mutations)

        _check_resources(components)

        output = RenderOutput(
            app_name=app_id.name,
            namespace=app_id.namespace,
            components=tuple(components),
            mutations=tuple(mutations),
            policies=tuple(policies),
            workflow=tuple(workflow),
        )
        logger.debug(
            "render.completed",
            app=app_id.key,
            components=len(components),
            resources=sum(len(c.resources) for c in components),
        )
        return output

    # ------------------------------------------------------------------ #
    # Policies and workflow
    # ------------------------------------------------------------------ #

    def _render_policies(self, spec: ApplicationSpec) -> list[RenderedPolicy]:
        result = []
        for policy in spec.policies:
            definition = self.definitions.policy(policy.type)
            bound = bind_parameters("policy", policy.type, definition.parameters, policy.properties)
            result.append(RenderedPolicy(policy.name, policy.type, _strip_none(bound)))
        return result

    def _render_workflow(self, steps: list, policy_names: set[str]) -> list[RenderedStep]:
        result = []
        for step in steps:
            definition = self.definitions.step(step.type)
            bound = _strip_none(
                bind_parameters("workflow step", step.type, definition.parameters, step.properties)
            )
            for name in bound.get("policies", []):
                if name not in policy_names:
                    raise ValidationError(
                        f"workflow step {step.name!r} references unknown policy {name!r}"
                    )
            result.append(RenderedStep(step.name, step.type, bound))
        return result

    # ------------------------------------------------------------------ #
    # Components
    # ------------------------------------------------------------------ #

    def _render_component(
        self,
        app_id: AppID,
        comp: ComponentSpec,
        properties: dict[str, Any],
    ) -> tuple[RenderedComponent, list[TraitMutation]]:
        definition = self.definitions.component(comp.type)
        params = bind_parameters("component", comp.type, definition.parameters, properties)
        context = {"name": comp.name, "appName": app_id.name, "namespace": app_id.namespace}

        workload = expand(definition.workload, params, context)
        auxiliaries = [expand(t, params, context) for _, t in sorted(definition.outputs.items())]

        mutations: list[TraitMutation] = []
        seen_traits: set[str] = set()
        for trait in comp.traits:
            if trait.type in seen_traits:
                raise ValidationError(
                    f"component {comp.name!r} has trait {trait.type!r} more than once"
                )
            seen_traits.add(trait.type)

            trait_def = self.definitions.trait(trait.type)
            if not trait_def.can_attach_to(comp.type):
                raise ValidationError(
                    f"trait {trait.type!r} cannot be applied to component type {comp.type!r}; "
                    f"applies to {list(trait_def.applies_to)}"
                )
            trait_params = bind_parameters(
                "trait", trait.type, trait_def.parameters, trait.properties
            )
            if trait_def.patch:
                patch = expand(trait_def.patch, trait_params, context) or {}
                workload = deep_merge(workload, patch)
                mutations.append(TraitMutation(comp.name, trait.type, patch))
            for _, template in sorted(trait_def.outputs.items()):
                auxiliaries.append(expand(template, trait_params, context))

        resources = [_stamp(r, app_id.name, comp.name) for r in [workload, *auxiliaries]]
        return (
            RenderedComponent(
                name=comp.name,
                type=comp.type,
                workload=resources[0],
                auxiliaries=tuple(resources[1:]),
                traits=tuple(t.type for t in comp.traits),
                depends_on=tuple(comp.depends_on),
            ),
            mutations,
        )


# ---------------------------------------------------------------------------
# Checks and helpers
# ---------------------------------------------------------------------------


def _check_unique(what: str, names: list[str]) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise ValidationError(f"duplicate {what} name {name!r}")
        seen.add(name)


def _check_dependencies(components: list[ComponentSpec]) -> None:
    known = {c.name for c in components}
    for comp in components:
        for dep in comp.depends_on:
            if dep not in known:
                raise ValidationError(
                    f"component {comp.name!r} depends on unknown component {dep!r}"
                ).with_context(component=comp.name)
    try:
        topological_order({c.name: list(c.depends_on) for c in components})
    except ValueError as e:
        raise ValidationError(str(e)) from e


def _check_policy_components(policies: list[RenderedPolicy], known: set[str]) -> None:
    for policy in policies:
        if policy.type != "topology":
            continue
        for name in policy.properties.get("components", []):
            if name not in known:
                raise ValidationError(
                    f"topology policy {policy.name!r} names unknown component {name!r}"
                )


def _apply_overrides(
    components: list[ComponentSpec],
    policies: list[RenderedPolicy],
) -> dict[str, dict[str, Any]]:
    """Component properties after every ``override`` policy, in declaration order."""
    properties = {c.name: dict(c.properties) for c in components}
    for policy in policies:
        if policy.type != "override":
            continue
        for entry in policy.properties.get("components", []):
            if not isinstance(entry, dict) or "name" not in entry:
                raise ValidationError(
                    f"override policy {policy.name!r} entries need a component name"
                )
            name = entry["name"]
            if name not in properties:
                raise ValidationError(
                    f"override policy {policy.name!r} names unknown component {name!r}"
                )
            properties[name] = deep_merge(properties[name], entry.get("properties") or {})
    return properties


def _check_resources(components: list[RenderedComponent]) -> None:
    owners: dict[tuple, str] = {}
    for comp in components:
        for resource in comp.resources:
            if not isinstance(resource, dict):
                raise ValidationError(
                    f"component {comp.name!r} rendered a non-object resource"
                ).with_context(component=comp.name)
            missing = [
                f
                for f, present in (
                    ("apiVersion", resource.get("apiVersion")),
                    ("kind", resource.get("kind")),
                    ("metadata.name", (resource.get("metadata") or {}).get("name")),
                )
                if not present
            ]
            if missing:
                raise ValidationError(
                    f"component {comp.name!r} rendered a resource missing {', '.join(missing)}"
                ).with_context(component=comp.name)
            key = resource_key(resource)
            if key in owners:
                raise ValidationError(
                    f"{format_resource_key(key)} is rendered by both "
                    f"{owners[key]!r} and {comp.name!r}"
                ).with_context(component=comp.name)
            owners[key] = comp.name


def _stamp(resource: dict[str, Any], app_name: str, component: str) -> dict[str, Any]:
    if not isinstance(resource, dict) or not isinstance(resource.get("metadata"), dict):
        return resource
    labels = dict(resource["metadata"].get("labels") or {})
    labels[LABEL_APP_NAME] = app_name
    labels[LABEL_COMPONENT] = component
    resource["metadata"]["labels"] = labels
    return resource


def _strip_none(params: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in params.items() if v is not None}
