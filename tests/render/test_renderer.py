"""Tests for the Renderer."""

import pytest

from appspine.core.errors import DefinitionNotFound, RenderError, TemplateError, ValidationError
from appspine.core.models import AppID, ApplicationSpec
from appspine.render.definitions import ComponentDefinition, builtin_definitions
from appspine.render.renderer import LABEL_APP_NAME, LABEL_COMPONENT, Renderer
from appspine.revision.models import fingerprint
from tests._support.apps import WEB, backend, frontend, topology


def spec(components=None, policies=None, workflow=None) -> ApplicationSpec:
    data = {"components": components or [], "policies": policies or []}
    if workflow is not None:
        data["workflow"] = {"steps": workflow}
    return ApplicationSpec.model_validate(data)


# ── Happy path ──────────────────────────────────────────────────────


class TestRender:
    def test_webservice(self, renderer):
        out = renderer.render(WEB, spec([frontend(port=8080)]))
        comp = out.component("frontend")
        deployment = comp.workload
        assert deployment["kind"] == "Deployment"
        assert deployment["metadata"]["name"] == "frontend"
        assert deployment["metadata"]["namespace"] == "default"
        assert deployment["spec"]["replicas"] == 1
        container = deployment["spec"]["template"]["spec"]["containers"][0]
        assert container["image"] == "nginx:1.27"
        assert container["ports"] == [{"containerPort": 8080}]
        assert "command" not in container
        service = comp.auxiliaries[0]
        assert service["kind"] == "Service"
        assert service["spec"]["ports"][0]["port"] == 8080

    def test_ownership_labels(self, renderer):
        out = renderer.render(WEB, spec([frontend()]))
        for resource in out.component("frontend").resources:
            labels = resource["metadata"]["labels"]
            assert labels[LABEL_APP_NAME] == "web"
            assert labels[LABEL_COMPONENT] == "frontend"

    def test_components_sorted_by_name(self, renderer):
        out = renderer.render(WEB, spec([frontend(), backend()]))
        assert out.component_names == ["backend", "frontend"]

    def test_trait_patch_and_mutation(self, renderer):
        comp = frontend()
        comp["traits"] = [{"type": "scaler", "properties": {"replicas": 3}}]
        out = renderer.render(WEB, spec([comp]))
        assert out.component("frontend").workload["spec"]["replicas"] == 3
        assert out.mutations[0].trait == "scaler"
        assert out.mutations[0].patch == {"spec": {"replicas": 3}}
        assert out.component("frontend").traits == ("scaler",)

    def test_trait_outputs(self, renderer):
        comp = frontend()
        comp["traits"] = [{"type": "expose", "properties": {"port": 443, "type": "LoadBalancer"}}]
        out = renderer.render(WEB, spec([comp]))
        names = [r["metadata"]["name"] for r in out.component("frontend").resources]
        assert names == ["frontend", "frontend", "frontend-expose"]
        expose = out.component("frontend").auxiliaries[-1]
        assert expose["spec"]["type"] == "LoadBalancer"

    def test_labels_trait_keeps_ownership_labels(self, renderer):
        comp = frontend()
        comp["traits"] = [{"type": "labels", "properties": {"labels": {"team": "shop"}}}]
        labels = renderer.render(WEB, spec([comp])).component("frontend").workload["metadata"][
            "labels"
        ]
        assert labels["team"] == "shop"
        assert labels[LABEL_COMPONENT] == "frontend"

    def test_override_policy(self, renderer):
        policies = [
            {
                "name": "bigger",
                "type": "override",
                "properties": {
                    "components": [{"name": "frontend", "properties": {"replicas": 5}}]
                },
            }
        ]
        out = renderer.render(WEB, spec([frontend()], policies))
        assert out.component("frontend").workload["spec"]["replicas"] == 5

    def test_policies_and_workflow_bound(self, renderer):
        out = renderer.render(
            WEB,
            spec(
                [frontend()],
                [topology("prod", clusters=["prod"])],
                [{"name": "ship", "type": "deploy", "properties": {"policies": ["prod"]}}],
            ),
        )
        assert out.policies[0].properties == {"clusters": ["prod"]}
        assert out.workflow[0].properties == {"policies": ["prod"]}

    def test_pure_and_deterministic(self, renderer):
        s = spec([frontend(), backend()], [topology("all", clusterLabelSelector={"env": "prod"})])
        assert renderer.render(WEB, s) == renderer.render(WEB, s)

    def test_fingerprint_independent_of_component_order(self, renderer):
        a = renderer.render(WEB, spec([frontend(), backend()]))
        b = renderer.render(WEB, spec([backend(), frontend()]))
        assert fingerprint(a) == fingerprint(b)

    def test_fingerprint_tracks_content(self, renderer):
        a = renderer.render(WEB, spec([frontend("nginx:1.27")]))
        b = renderer.render(WEB, spec([frontend("nginx:1.28")]))
        assert fingerprint(a) != fingerprint(b)

    def test_namespace_from_app(self, renderer):
        out = renderer.render(AppID("shop", "web"), spec([frontend()]))
        assert out.namespace == "shop"
        assert out.component("frontend").workload["metadata"]["namespace"] == "shop"

    def test_empty_application(self, renderer):
        out = renderer.render(WEB, spec())
        assert out.components == ()


# ── Errors ──────────────────────────────────────────────────────────


class TestRenderErrors:
    def test_unknown_component_type(self, renderer):
        with pytest.raises(DefinitionNotFound) as exc_info:
            renderer.render(WEB, spec([{"name": "x", "type": "lambda"}]))
        assert exc_info.value.context.app == "default/web"
        assert exc_info.value.context.component == "x"

    def test_unknown_trait(self, renderer):
        comp = frontend()
        comp["traits"] = [{"type": "autoscaler"}]
        with pytest.raises(DefinitionNotFound):
            renderer.render(WEB, spec([comp]))

    def test_unknown_policy_type(self, renderer):
        with pytest.raises(DefinitionNotFound):
            renderer.render(WEB, spec([frontend()], [{"name": "p", "type": "canary"}]))

    def test_unknown_step_type(self, renderer):
        with pytest.raises(DefinitionNotFound):
            renderer.render(WEB, spec([frontend()], workflow=[{"name": "s", "type": "suspend"}]))

    def test_missing_required_parameter(self, renderer):
        with pytest.raises(TemplateError, match="requires parameter 'image'"):
            renderer.render(WEB, spec([{"name": "frontend", "type": "webservice"}]))

    def test_wrong_parameter_type(self, renderer):
        with pytest.raises(TemplateError):
            renderer.render(WEB, spec([frontend(port="80")]))

    @pytest.mark.parametrize(
        "components,policies,workflow,match",
        [
            ([frontend(), frontend()], None, None, "duplicate component name"),
            (
                [frontend()],
                [topology("p", clusters=["a"]), topology("p", clusters=["b"])],
                None,
                "duplicate policy name",
            ),
            (
                [frontend()],
                None,
                [{"name": "s", "type": "deploy"}, {"name": "s", "type": "deploy"}],
                "duplicate workflow step name",
            ),
        ],
    )
    def test_duplicate_names(self, renderer, components, policies, workflow, match):
        with pytest.raises(ValidationError, match=match):
            renderer.render(WEB, spec(components, policies, workflow))

    def test_unknown_dependency(self, renderer):
        comp = frontend()
        comp["dependsOn"] = ["db"]
        with pytest.raises(ValidationError, match="unknown component 'db'"):
            renderer.render(WEB, spec([comp]))

    def test_dependency_cycle(self, renderer):
        a = {"name": "a", "type": "worker", "properties": {"image": "x"}, "dependsOn": ["b"]}
        b = {"name": "b", "type": "worker", "properties": {"image": "x"}, "dependsOn": ["a"]}
        with pytest.raises(ValidationError, match="cycle"):
            renderer.render(WEB, spec([a, b]))

    def test_trait_not_applicable(self, renderer):
        comp = {"name": "ns", "type": "namespace", "traits": [{"type": "scaler"}]}
        with pytest.raises(ValidationError, match="cannot be applied"):
            renderer.render(WEB, spec([comp]))

    def test_duplicate_trait(self, renderer):
        comp = frontend()
        comp["traits"] = [{"type": "scaler"}, {"type": "scaler"}]
        with pytest.raises(ValidationError, match="more than once"):
            renderer.render(WEB, spec([comp]))

    def test_duplicate_resource_identity(self, renderer):
        # A component named like another component's trait output collides on the Service key.
        comp = frontend()
        comp["traits"] = [{"type": "expose", "properties": {"port": 80}}]
        clash = {"name": "frontend-expose", "type": "webservice", "properties": {"image": "x"}}
        with pytest.raises(ValidationError, match="rendered by both"):
            renderer.render(WEB, spec([comp, clash]))

    def test_resource_missing_identity(self):
        defs = builtin_definitions()
        defs.add(ComponentDefinition("broken", {"apiVersion": "v1", "metadata": {"name": "x"}}))
        with pytest.raises(ValidationError, match="missing kind"):
            Renderer(defs).render(WEB, spec([{"name": "b", "type": "broken"}]))

    def test_override_unknown_component(self, renderer):
        policies = [
            {"name": "o", "type": "override", "properties": {"components": [{"name": "nope"}]}}
        ]
        with pytest.raises(ValidationError, match="unknown component 'nope'"):
            renderer.render(WEB, spec([frontend()], policies))

    def test_topology_unknown_component(self, renderer):
        with pytest.raises(ValidationError, match="unknown component"):
            renderer.render(WEB, spec([frontend()], [topology("p", components=["db"])]))

    def test_deploy_step_unknown_policy(self, renderer):
        workflow = [{"name": "s", "type": "deploy", "properties": {"policies": ["prod"]}}]
        with pytest.raises(ValidationError, match="unknown policy 'prod'"):
            renderer.render(WEB, spec([frontend()], workflow=workflow))

    def test_all_render_errors_are_terminal(self, renderer):
        with pytest.raises(RenderError) as exc_info:
            renderer.render(WEB, spec([{"name": "x", "type": "lambda"}]))
        assert exc_info.value.retryable is False
