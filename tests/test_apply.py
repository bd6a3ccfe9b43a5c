"""Unit tests for the field-owned apply merge."""

import pytest

from apply import (
    FieldConflictError,
    get_path,
    leaf_paths,
    merge_apply,
    set_path,
)


def service(port=5432, selector=None, **metadata):
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": "db", "namespace": "default", **metadata},
        "spec": {
            "selector": selector or {"app": "db"},
            "ports": [{"name": "db", "port": port, "targetPort": port}],
            "type": "ClusterIP",
        },
    }


class TestLeafPaths:
    """Tests for leaf path extraction."""

    def test_dicts_are_descended(self):
        paths = set(leaf_paths({"spec": {"a": 1, "b": {"c": 2}}}))
        assert paths == {("spec", "a"), ("spec", "b", "c")}

    def test_lists_are_atomic(self):
        paths = list(leaf_paths({"spec": {"ports": [{"port": 1}, {"port": 2}]}}))
        assert paths == [("spec", "ports")]

    def test_identity_and_status_skipped(self):
        obj = service()
        obj["status"] = {"loadBalancer": {}}
        obj["metadata"]["uid"] = "abc"
        paths = set(leaf_paths(obj))
        assert ("apiVersion",) not in paths
        assert ("kind",) not in paths
        assert ("metadata", "name") not in paths
        assert ("metadata", "uid") not in paths
        assert not any(p[0] == "status" for p in paths)

    def test_labels_are_owned(self):
        obj = service(labels={"workload.oam.crossplane.io": "uid-1"})
        assert ("metadata", "labels", "workload.oam.crossplane.io") in set(
            leaf_paths(obj)
        )

    def test_empty_dict_is_leaf(self):
        assert list(leaf_paths({"spec": {"selector": {}}})) == [("spec", "selector")]


class TestPathHelpers:
    """Tests for get_path and set_path."""

    def test_get_missing_returns_default(self):
        assert get_path({"a": {}}, ("a", "b"), "x") == "x"

    def test_get_through_scalar_returns_default(self):
        assert get_path({"a": 1}, ("a", "b")) is None

    def test_set_creates_intermediate(self):
        obj = {}
        set_path(obj, ("spec", "type"), "ClusterIP")
        assert obj == {"spec": {"type": "ClusterIP"}}

    def test_set_copies_value(self):
        value = [1, 2]
        obj = {}
        set_path(obj, ("a",), value)
        value.append(3)
        assert obj["a"] == [1, 2]


class TestMergeApply:
    """Tests for merge_apply."""

    def test_create(self):
        result = merge_apply(None, service(), None, "trait-a")

        assert result.changed is True
        assert result.spec_changed is True
        assert result.obj["spec"]["type"] == "ClusterIP"
        assert ("spec", "ports") in result.managed_fields["trait-a"]

    def test_identical_apply_is_noop(self):
        first = merge_apply(None, service(), None, "trait-a")
        second = merge_apply(first.obj, service(), first.managed_fields, "trait-a")

        assert second.changed is False
        assert second.spec_changed is False
        assert second.managed_fields == first.managed_fields

    def test_changed_port_bumps_spec(self):
        first = merge_apply(None, service(), None, "trait-a")
        second = merge_apply(
            first.obj, service(port=6543), first.managed_fields, "trait-a"
        )

        assert second.changed is True
        assert second.spec_changed is True
        assert second.obj["spec"]["ports"][0]["port"] == 6543

    def test_label_change_is_not_spec_change(self):
        first = merge_apply(None, service(), None, "trait-a")
        second = merge_apply(
            first.obj,
            service(labels={"team": "data"}),
            first.managed_fields,
            "trait-a",
        )

        assert second.changed is True
        assert second.spec_changed is False

    def test_unowned_fields_untouched(self):
        live = service()
        live["spec"]["clusterIP"] = "10.0.0.12"
        result = merge_apply(live, service(), {}, "trait-a")

        assert result.obj["spec"]["clusterIP"] == "10.0.0.12"

    def test_dropped_field_is_removed(self):
        payload = service()
        payload["spec"]["sessionAffinity"] = "ClientIP"
        first = merge_apply(None, payload, None, "trait-a")

        second = merge_apply(first.obj, service(), first.managed_fields, "trait-a")

        assert "sessionAffinity" not in second.obj["spec"]
        assert ("spec", "sessionAffinity") not in second.managed_fields["trait-a"]
        assert second.changed and second.spec_changed

    def test_dropped_map_key_is_removed(self):
        first = merge_apply(
            None, service(selector={"app": "db", "role": "primary"}), None, "trait-a"
        )

        second = merge_apply(
            first.obj,
            service(selector={"role": "primary"}),
            first.managed_fields,
            "trait-a",
        )

        assert second.obj["spec"]["selector"] == {"role": "primary"}

    def test_emptied_nested_map_is_pruned(self):
        first = merge_apply(None, service(labels={"tier": "db"}), None, "trait-a")

        second = merge_apply(first.obj, service(), first.managed_fields, "trait-a")

        assert "labels" not in second.obj["metadata"]
        assert second.obj["metadata"]["name"] == "db"

    def test_dropped_field_kept_when_shared(self):
        payload = service()
        payload["spec"]["sessionAffinity"] = "ClientIP"
        first = merge_apply(None, payload, None, "other")
        shared = merge_apply(first.obj, payload, first.managed_fields, "trait-a")

        second = merge_apply(shared.obj, service(), shared.managed_fields, "trait-a")

        assert second.obj["spec"]["sessionAffinity"] == "ClientIP"
        assert ("spec", "sessionAffinity") in second.managed_fields["other"]

    def test_conflict_without_force(self):
        first = merge_apply(None, service(), None, "other")

        with pytest.raises(FieldConflictError) as exc_info:
            merge_apply(first.obj, service(port=80), first.managed_fields, "trait-a")

        assert ("other", ("spec", "ports")) in exc_info.value.conflicts
        assert "spec.ports" in str(exc_info.value)

    def test_same_value_is_shared(self):
        first = merge_apply(None, service(), None, "other")
        second = merge_apply(first.obj, service(), first.managed_fields, "trait-a")

        assert ("spec", "ports") in second.managed_fields["other"]
        assert ("spec", "ports") in second.managed_fields["trait-a"]

    def test_force_transfers_ownership(self):
        first = merge_apply(None, service(), None, "other")
        second = merge_apply(
            first.obj, service(port=80), first.managed_fields, "trait-a", force=True
        )

        assert second.obj["spec"]["ports"][0]["port"] == 80
        assert ("spec", "ports") not in second.managed_fields.get("other", [])
        assert ("spec", "ports") in second.managed_fields["trait-a"]

    def test_status_is_preserved(self):
        live = service()
        live["status"] = {"loadBalancer": {}}
        result = merge_apply(live, service(), {}, "trait-a")

        assert result.obj["status"] == {"loadBalancer": {}}

    def test_live_is_not_mutated(self):
        live = service()
        merge_apply(live, service(port=1), {}, "trait-a")
        assert live["spec"]["ports"][0]["port"] == 5432
