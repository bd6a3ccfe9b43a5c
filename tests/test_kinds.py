"""Unit tests for workload kind classification."""

import pytest

from plugins.reconcilers.servicetrait.errors import (
    ERR_UNSUPPORTED_KIND,
    UnsupportedKindError,
)
from plugins.reconcilers.servicetrait.kinds import (
    ScalableWorkload,
    StatefulWorkload,
    classify,
)


class TestClassify:
    """Tests for classify()."""

    def test_statefulset(self, statefulset_manifest):
        workload = classify(statefulset_manifest)

        assert isinstance(workload, StatefulWorkload)
        assert workload.name == "db"
        assert workload.namespace == "default"
        assert workload.spec.selector.match_labels == {"app": "db"}
        assert workload.containers[0].ports[0].container_port == 5432

    def test_deployment(self, deployment_manifest):
        workload = classify(deployment_manifest)
        assert isinstance(workload, ScalableWorkload)

    def test_unknown_kind(self):
        obj = {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "x"}}

        with pytest.raises(UnsupportedKindError) as exc_info:
            classify(obj)

        assert exc_info.value.kind == "ConfigMap"
        assert str(exc_info.value).startswith(ERR_UNSUPPORTED_KIND)

    @pytest.mark.parametrize(
        "api_version", ["apps.kruise.io/v1beta1", "apps/v1beta2", ""]
    )
    def test_foreign_api_version_is_unsupported(
        self, statefulset_manifest, api_version
    ):
        statefulset_manifest["apiVersion"] = api_version

        with pytest.raises(UnsupportedKindError) as exc_info:
            classify(statefulset_manifest)

        assert exc_info.value.kind == "StatefulSet"
        assert "is not supported" in str(exc_info.value)

    def test_empty_kind(self):
        with pytest.raises(UnsupportedKindError):
            classify({"metadata": {"name": "x"}})

    def test_malformed_object_is_unsupported(self, statefulset_manifest):
        statefulset_manifest["spec"]["template"]["spec"]["containers"] = "postgres"

        with pytest.raises(UnsupportedKindError) as exc_info:
            classify(statefulset_manifest)

        assert "does not match the StatefulSet schema" in str(exc_info.value)

    def test_missing_name_is_unsupported(self, statefulset_manifest):
        del statefulset_manifest["metadata"]["name"]

        with pytest.raises(UnsupportedKindError):
            classify(statefulset_manifest)

    def test_no_containers(self, statefulset_manifest):
        statefulset_manifest["spec"]["template"]["spec"]["containers"] = []
        assert classify(statefulset_manifest).containers == []

    def test_unknown_fields_ignored(self, statefulset_manifest):
        statefulset_manifest["spec"]["podManagementPolicy"] = "Parallel"
        statefulset_manifest["status"] = {"readyReplicas": 1}

        assert isinstance(classify(statefulset_manifest), StatefulWorkload)
