"""
Service rendering for the ServiceTrait.

Builds the Service that exposes a workload: one ClusterIP Service for the
first StatefulSet (with containers) among the workload's objects, exposing
the first port of its first container.
"""

import logging
from typing import Any, Dict, List, Optional

from plugins.reconcilers.servicetrait.errors import (
    NoEligibleSourceError,
    UnsupportedKindError,
)
from plugins.reconcilers.servicetrait.kinds import StatefulWorkload, classify

logger = logging.getLogger(__name__)

# Label binding a Service to the uid of the trait that created it
LABEL_KEY = "workload.oam.crossplane.io"

SERVICE_API_VERSION = "v1"
SERVICE_KIND = "Service"
SERVICE_TYPE_CLUSTER_IP = "ClusterIP"


def find_service_source(resources: List[Dict[str, Any]]) -> Optional[StatefulWorkload]:
    """
    Return the first StatefulSet with at least one container.

    Objects of other kinds, or that cannot be classified, are skipped.
    """
    for obj in resources:
        try:
            workload = classify(obj)
        except UnsupportedKindError as e:
            logger.debug(f"Skipping {obj.get('kind')} as a service source: {e}")
            continue

        if not isinstance(workload, StatefulWorkload):
            continue

        # This should never happen in practice
        if not workload.containers:
            logger.info(f"StatefulSet {workload.name} has no containers, skipping")
            continue

        return workload
    return None


def render_service(
    trait: Dict[str, Any], resources: List[Dict[str, Any]]
) -> Dict[str, Any]:
    """
    Render the Service for a trait's workload objects.

    Only the first port of the first container is exposed, even if more
    are declared; ports added later would otherwise need their own garbage
    collection.

    Args:
        trait: The ServiceTrait; its uid labels the Service.
        resources: The workload's managed objects, in resolution order.

    Returns:
        The Service manifest to apply.

    Raises:
        NoEligibleSourceError: If no StatefulSet with containers is found.
    """
    source = find_service_source(resources)
    if source is None:
        logger.info(f"Cannot locate any statefulset among {len(resources)} resources")
        raise NoEligibleSourceError(f"checked {len(resources)} resource(s)")

    logger.info(
        f"Rendering a service for statefulset {source.name} (uid {source.metadata.uid})"
    )

    ports: List[Dict[str, Any]] = []
    first_container = source.containers[0]
    if first_container.ports:
        container_port = first_container.ports[0].container_port
        ports.append(
            {
                "name": source.name,
                "port": container_port,
                "targetPort": container_port,
            }
        )

    metadata: Dict[str, Any] = {
        "name": source.name,
        "labels": {LABEL_KEY: trait["metadata"]["uid"]},
    }
    if source.namespace:
        metadata["namespace"] = source.namespace

    return {
        "apiVersion": SERVICE_API_VERSION,
        "kind": SERVICE_KIND,
        "metadata": metadata,
        "spec": {
            "selector": dict(source.spec.selector.match_labels),
            "ports": ports,
            "type": SERVICE_TYPE_CLUSTER_IP,
        },
    }
