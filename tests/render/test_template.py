"""Tests for definition template expansion."""

import pytest

from appspine.core.errors import TemplateError
from appspine.render.template import expand

CTX = {"name": "frontend", "appName": "web", "namespace": "default"}


class TestWholePlaceholders:
    def test_raw_value_keeps_type(self):
        out = expand({"replicas": "{{ parameter.replicas }}"}, {"replicas": 3}, CTX)
        assert out == {"replicas": 3}

    def test_whitespace_tolerated(self):
        assert expand("{{parameter.port}}", {"port": 80}, CTX) == 80
        assert expand("  {{  parameter.port  }} ", {"port": 80}, CTX) == 80

    def test_structured_value_is_copied(self):
        env = [{"name": "A", "value": "1"}]
        out = expand({"env": "{{ parameter.env }}"}, {"env": env}, CTX)
        out["env"].append({"name": "B"})
        assert env == [{"name": "A", "value": "1"}]

    def test_none_drops_mapping_key(self):
        template = {"image": "{{ parameter.image }}", "command": "{{ parameter.cmd }}"}
        out = expand(template, {"image": "nginx", "cmd": None}, CTX)
        assert out == {"image": "nginx"}

    def test_none_drops_list_item(self):
        assert expand(["{{ parameter.a }}", "x"], {"a": None}, CTX) == ["x"]

    def test_context_values(self):
        out = expand(
            {"name": "{{ context.name }}", "ns": "{{ context.namespace }}"}, {}, CTX
        )
        assert out == {"name": "frontend", "ns": "default"}

    def test_dotted_path_into_object(self):
        params = {"labels": {"tier": "web"}}
        assert expand("{{ parameter.labels.tier }}", params, CTX) == "web"

    def test_missing_key_in_object_is_unset(self):
        out = expand({"t": "{{ parameter.labels.missing }}"}, {"labels": {}}, CTX)
        assert out == {}


class TestInterpolation:
    def test_embedded_placeholders(self):
        template = "{{ context.appName }}-{{ context.name }}:{{ parameter.port }}"
        out = expand(template, {"port": 8080}, CTX)
        assert out == "web-frontend:8080"

    def test_bool_interpolates_lowercase(self):
        assert expand("debug={{ parameter.debug }}", {"debug": True}, CTX) == "debug=true"

    def test_unset_cannot_interpolate(self):
        with pytest.raises(TemplateError, match="unset"):
            expand("img-{{ parameter.tag }}", {"tag": None}, CTX)

    def test_structured_cannot_interpolate(self):
        with pytest.raises(TemplateError, match="cannot be interpolated"):
            expand("env={{ parameter.env }}", {"env": [1]}, CTX)


class TestErrors:
    def test_undefined_parameter(self):
        with pytest.raises(TemplateError, match="undefined parameter 'port'"):
            expand("{{ parameter.port }}", {}, CTX)

    def test_undefined_context_key(self):
        with pytest.raises(TemplateError, match="undefined context 'revision'"):
            expand("{{ context.revision }}", {}, CTX)

    def test_non_placeholder_strings_untouched(self):
        assert expand("{{ not a placeholder }}", {}, CTX) == "{{ not a placeholder }}"
        assert expand(42, {}, CTX) == 42
