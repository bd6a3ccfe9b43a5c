"""Unit tests for Service rendering."""

import pytest

from plugins.reconcilers.servicetrait.errors import (
    ERR_LOCATE_STATEFULSET,
    NoEligibleSourceError,
)
from plugins.reconcilers.servicetrait.service import (
    LABEL_KEY,
    find_service_source,
    render_service,
)


@pytest.fixture
def trait(trait_manifest):
    trait_manifest["metadata"]["uid"] = "trait-uid-1"
    return trait_manifest


class TestFindServiceSource:
    """Tests for find_service_source()."""

    def test_first_statefulset(self, statefulset_manifest):
        second = {
            **statefulset_manifest,
            "metadata": {"name": "db-2", "namespace": "default"},
        }
        source = find_service_source([statefulset_manifest, second])
        assert source.name == "db"

    def test_skips_other_kinds(self, deployment_manifest, statefulset_manifest):
        config_map = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "c"},
        }
        source = find_service_source(
            [config_map, deployment_manifest, statefulset_manifest]
        )
        assert source.name == "db"

    def test_skips_statefulset_without_containers(self, statefulset_manifest):
        empty = {
            "apiVersion": "apps/v1",
            "kind": "StatefulSet",
            "metadata": {"name": "empty", "namespace": "default"},
            "spec": {"template": {"spec": {"containers": []}}},
        }
        source = find_service_source([empty, statefulset_manifest])
        assert source.name == "db"

    def test_skips_statefulset_of_other_api_group(self, statefulset_manifest):
        foreign = {
            **statefulset_manifest,
            "apiVersion": "apps.kruise.io/v1beta1",
            "metadata": {"name": "kruise", "namespace": "default"},
        }
        source = find_service_source([foreign, statefulset_manifest])
        assert source.name == "db"

    def test_none_found(self, deployment_manifest):
        assert find_service_source([deployment_manifest]) is None
        assert find_service_source([]) is None


class TestRenderService:
    """Tests for render_service()."""

    def test_render(self, trait, statefulset_manifest):
        service = render_service(trait, [statefulset_manifest])

        assert service == {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": "db",
                "namespace": "default",
                "labels": {LABEL_KEY: "trait-uid-1"},
            },
            "spec": {
                "selector": {"app": "db"},
                "ports": [{"name": "db", "port": 5432, "targetPort": 5432}],
                "type": "ClusterIP",
            },
        }

    def test_only_first_port_of_first_container(self, trait, statefulset_manifest):
        containers = statefulset_manifest["spec"]["template"]["spec"]["containers"]
        containers[0]["ports"].append({"containerPort": 9187})
        containers.append({"name": "sidecar", "ports": [{"containerPort": 8080}]})

        service = render_service(trait, [statefulset_manifest])

        assert service["spec"]["ports"] == [
            {"name": "db", "port": 5432, "targetPort": 5432}
        ]

    def test_container_without_ports(self, trait, statefulset_manifest):
        statefulset_manifest["spec"]["template"]["spec"]["containers"][0]["ports"] = []

        service = render_service(trait, [statefulset_manifest])

        assert service["spec"]["ports"] == []
        assert service["spec"]["type"] == "ClusterIP"

    def test_selector_is_a_copy(self, trait, statefulset_manifest):
        service = render_service(trait, [statefulset_manifest])
        service["spec"]["selector"]["extra"] = "x"

        assert statefulset_manifest["spec"]["selector"]["matchLabels"] == {"app": "db"}

    def test_no_namespace(self, trait, statefulset_manifest):
        del statefulset_manifest["metadata"]["namespace"]

        service = render_service(trait, [statefulset_manifest])

        assert "namespace" not in service["metadata"]

    def test_no_source(self, trait, deployment_manifest):
        with pytest.raises(NoEligibleSourceError) as exc_info:
            render_service(trait, [deployment_manifest])
        assert str(exc_info.value).startswith(ERR_LOCATE_STATEFULSET)

    def test_empty_resources(self, trait):
        with pytest.raises(NoEligibleSourceError):
            render_service(trait, [])

    def test_statefulset_of_other_api_group_is_not_a_source(
        self, trait, statefulset_manifest
    ):
        statefulset_manifest["apiVersion"] = "apps.kruise.io/v1beta1"

        with pytest.raises(NoEligibleSourceError):
            render_service(trait, [statefulset_manifest])
