"""
Workload resolution.

Turns a trait's workload reference into the concrete objects it stands for.
A native apps/v1 workload stands for itself; an OAM workload stands for the
objects its WorkloadDefinition declares as child resources.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from db import NotFoundError, StoreError, describe_object
from plugins.reconcilers.base import ReconcilerContext
from plugins.reconcilers.servicetrait.errors import (
    ChildResourcesNotFoundError,
    MissingAPIVersionError,
    UnsupportedAPIVersionError,
    WorkloadNotFoundError,
)
from plugins.reconcilers.servicetrait.kinds import APPS_API_VERSION

logger = logging.getLogger(__name__)

OAM_API_VERSION = "core.oam.dev/v1alpha2"
KIND_WORKLOAD_DEFINITION = "WorkloadDefinition"


class WorkloadSource(Enum):
    """How a workload reference is turned into managed objects."""

    COMPOSITE = OAM_API_VERSION
    NATIVE = APPS_API_VERSION

    @classmethod
    def from_api_version(cls, api_version: str) -> "WorkloadSource":
        """
        Select the resolution path for a workload apiVersion.

        Raises:
            MissingAPIVersionError: If api_version is empty.
            UnsupportedAPIVersionError: For any other unrecognised value.
        """
        if not api_version:
            raise MissingAPIVersionError()
        try:
            return cls(api_version)
        except ValueError:
            raise UnsupportedAPIVersionError(api_version) from None


def pluralize(kind: str) -> str:
    """Lower-cased English plural of a kind, as used in resource names."""
    word = kind.lower()
    if word.endswith("y") and word[-2:-1] not in ("a", "e", "i", "o", "u"):
        return word[:-1] + "ies"
    if word.endswith(("s", "x", "z", "ch", "sh")):
        return word + "es"
    return word + "s"


def definition_name(workload: Dict[str, Any]) -> str:
    """
    Name of the WorkloadDefinition for a workload: <plural>.<group>.

    e.g. StatefulSetWorkload in core.oam.dev/v1alpha2 is described by
    statefulsetworkloads.core.oam.dev.
    """
    group = workload.get("apiVersion", "").rpartition("/")[0]
    plural = pluralize(workload.get("kind", ""))
    return f"{plural}.{group}" if group else plural


def _owned_by(obj: Dict[str, Any], owner_uid: Optional[str]) -> bool:
    if not owner_uid:
        return False
    return any(
        ref.get("uid") == owner_uid
        for ref in obj.get("metadata", {}).get("ownerReferences", [])
    )


async def expand_workload(
    ctx: ReconcilerContext, workload: Dict[str, Any]
) -> List[Dict[str, Any]]:
    """
    List the objects a composite workload currently manages.

    Child resource kinds come from the workload's WorkloadDefinition; for each
    kind, in declaration order, the objects in the workload's namespace that
    match the kind's label selector and are owned by the workload are
    returned in creation order. An empty result is not an error.

    Raises:
        ChildResourcesNotFoundError: If the definition is missing or the
            objects cannot be listed.
    """
    metadata = workload.get("metadata", {})
    namespace = metadata.get("namespace", "")
    workload_uid = metadata.get("uid")
    name = definition_name(workload)

    try:
        definition = await ctx.get_object(
            OAM_API_VERSION, KIND_WORKLOAD_DEFINITION, "", name
        )
    except NotFoundError as e:
        raise ChildResourcesNotFoundError(
            f"workload definition {name} not found"
        ) from e
    except StoreError as e:
        raise ChildResourcesNotFoundError(str(e)) from e

    resources: List[Dict[str, Any]] = []
    for child in definition.get("spec", {}).get("childResourceKinds", []):
        try:
            candidates = await ctx.list_objects(
                child.get("apiVersion", ""),
                child.get("kind", ""),
                namespace=namespace,
                labels=child.get("selector") or None,
            )
        except StoreError as e:
            raise ChildResourcesNotFoundError(str(e)) from e
        resources.extend(c for c in candidates if _owned_by(c, workload_uid))

    logger.info(
        f"Workload {metadata.get('name')} manages {len(resources)} child resource(s)"
    )
    return resources


async def resolve_workload(
    ctx: ReconcilerContext, trait: Dict[str, Any]
) -> List[Dict[str, Any]]:
    """
    Resolve a trait's workload reference into the objects it manages.

    Args:
        ctx: Store access.
        trait: The trait; spec.workloadRef names the workload, which lives in
            the trait's namespace.

    Returns:
        The managed objects, in order: the workload itself for apps/v1
        workloads, or its child resources for OAM workloads.

    Raises:
        MissingAPIVersionError, UnsupportedAPIVersionError,
        WorkloadNotFoundError, ChildResourcesNotFoundError
    """
    ref = trait.get("spec", {}).get("workloadRef") or {}
    namespace = trait.get("metadata", {}).get("namespace", "")
    api_version = ref.get("apiVersion", "")
    kind = ref.get("kind", "")
    name = ref.get("name", "")

    source = WorkloadSource.from_api_version(api_version)

    try:
        workload = await ctx.get_object(api_version, kind, namespace, name)
    except StoreError as e:
        description = describe_object(api_version, kind, namespace, name)
        logger.error(f"Workload not found: {description}: {e}")
        raise WorkloadNotFoundError(str(e)) from e

    logger.info(
        f"Got the workload the trait is pointing to: {kind} {name} "
        f"(uid {workload.get('metadata', {}).get('uid')})"
    )

    if source is WorkloadSource.COMPOSITE:
        return await expand_workload(ctx, workload)

    logger.info(f"Workload {name} is a native {api_version} resource")
    return [workload]
