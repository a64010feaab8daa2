"""Rendering: Application spec + definition set -> RenderOutput."""

from appspine.render.definitions import (
    ComponentDefinition,
    DefinitionSet,
    ParameterSpec,
    PolicyDefinition,
    TraitDefinition,
    WorkflowStepDefinition,
    builtin_definitions,
)
from appspine.render.output import (
    RenderedComponent,
    RenderedPolicy,
    RenderedStep,
    RenderOutput,
    TraitMutation,
    resource_key,
)
from appspine.render.renderer import Renderer

__all__ = [
    "ComponentDefinition",
    "DefinitionSet",
    "ParameterSpec",
    "PolicyDefinition",
    "RenderOutput",
    "RenderedComponent",
    "RenderedPolicy",
    "RenderedStep",
    "Renderer",
    "TraitDefinition",
    "TraitMutation",
    "WorkflowStepDefinition",
    "builtin_definitions",
    "resource_key",
]
