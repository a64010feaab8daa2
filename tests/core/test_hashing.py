"""Tests for hashing and nested-object helpers."""

from appspine.core.hashing import canonical_json, compute_hash, content_hash
from appspine.core.objects import deep_merge, get_path, matches_desired


class TestHashing:
    def test_key_order_irrelevant(self):
        assert content_hash({"a": 1, "b": {"c": 2, "d": 3}}) == content_hash(
            {"b": {"d": 3, "c": 2}, "a": 1}
        )

    def test_list_order_matters(self):
        assert content_hash([1, 2]) != content_hash([2, 1])

    def test_canonical_json_compact(self):
        assert canonical_json({"b": 1, "a": [2]}) == '{"a":[2],"b":1}'

    def test_compute_hash_length_and_order(self):
        assert len(compute_hash("default", "web")) == 32
        assert compute_hash("a", "b") != compute_hash("b", "a")
        assert len(compute_hash("x", length=8)) == 8


class TestDeepMerge:
    def test_nested_merge(self):
        base = {"spec": {"replicas": 1, "template": {"image": "a"}}}
        merged = deep_merge(base, {"spec": {"replicas": 3}})
        assert merged == {"spec": {"replicas": 3, "template": {"image": "a"}}}
        assert base["spec"]["replicas"] == 1

    def test_lists_replace(self):
        assert deep_merge({"ports": [1, 2]}, {"ports": [3]}) == {"ports": [3]}


class TestMatchesDesired:
    def test_extra_live_fields_ignored(self):
        live = {"spec": {"replicas": 2, "paused": False}, "status": {"ready": 2}}
        assert matches_desired(live, {"spec": {"replicas": 2}})

    def test_differing_field(self):
        assert not matches_desired({"spec": {"replicas": 1}}, {"spec": {"replicas": 2}})

    def test_missing_field(self):
        assert not matches_desired({"spec": {}}, {"spec": {"replicas": 2}})
        assert not matches_desired({}, {"spec": {"replicas": 2}})

    def test_get_path(self):
        obj = {"metadata": {"annotations": {"x": "1"}}}
        assert get_path(obj, "metadata", "annotations", "x") == "1"
        assert get_path(obj, "metadata", "labels", default={}) == {}
