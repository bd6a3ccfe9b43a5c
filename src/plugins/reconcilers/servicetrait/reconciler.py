"""
ServiceTrait reconciler.

Exposes the workload a ServiceTrait points at through a Service: resolve the
workload, render the Service, apply it with a field-owned merge, delete the
Services this trait created earlier but no longer renders, and record the
outcome on the trait's status. Every failure is written to the trait's
Synced condition and retried after the controller's reconcile wait.
"""

import copy
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from db import ConflictError, NotFoundError, StoreError
from plugins.reconcilers.base import (
    ReconcilerContext,
    ReconcilerPlugin,
    ReconcileRequest,
    ReconcileResult,
    Watch,
    generation_changed,
)
from plugins.reconcilers.servicetrait.errors import (
    ERR_UPDATE_STATUS,
    ApplyConflictError,
    GarbageCollectionError,
    ServiceApplyError,
    TraitError,
)
from plugins.reconcilers.servicetrait.kinds import APPS_API_VERSION, KIND_STATEFULSET
from plugins.reconcilers.servicetrait.service import (
    LABEL_KEY,
    SERVICE_API_VERSION,
    SERVICE_KIND,
    render_service,
)
from plugins.reconcilers.servicetrait.workload import OAM_API_VERSION, resolve_workload

logger = logging.getLogger(__name__)

TRAIT_API_VERSION = OAM_API_VERSION
TRAIT_KIND = "ServiceTrait"

CONDITION_SYNCED = "Synced"
REASON_RECONCILE_SUCCESS = "ReconcileSuccess"
REASON_RECONCILE_ERROR = "ReconcileError"

SERVICE_TRAIT_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["workloadRef"],
    "properties": {
        "workloadRef": {
            "type": "object",
            "required": ["kind", "name"],
            "properties": {
                "apiVersion": {"type": "string"},
                "kind": {"type": "string", "minLength": 1},
                "name": {"type": "string", "minLength": 1},
            },
        },
    },
}


class ReconcilePhase(Enum):
    """Stages of a reconcile pass, in order."""

    PENDING = "pending"
    RESOLVING = "resolving"
    SYNTHESIZING = "synthesizing"
    APPLYING = "applying"
    COLLECTING = "collecting"
    READY = "ready"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def reconcile_success() -> Dict[str, str]:
    """Synced condition for a successful reconcile."""
    return {
        "type": CONDITION_SYNCED,
        "status": "True",
        "reason": REASON_RECONCILE_SUCCESS,
        "message": "",
    }


def reconcile_error(message: str) -> Dict[str, str]:
    """Synced condition for a failed reconcile."""
    return {
        "type": CONDITION_SYNCED,
        "status": "False",
        "reason": REASON_RECONCILE_ERROR,
        "message": message,
    }


def set_condition(status: Dict[str, Any], condition: Dict[str, str]) -> None:
    """
    Set a condition on a status, replacing any condition of the same type.

    lastTransitionTime only moves when the condition's status flips, so
    re-setting an identical condition leaves the status unchanged.
    """
    conditions = status.setdefault("conditions", [])
    for i, existing in enumerate(conditions):
        if existing.get("type") != condition["type"]:
            continue
        if all(existing.get(k) == v for k, v in condition.items()):
            return
        transition = (
            existing.get("lastTransitionTime")
            if existing.get("status") == condition["status"]
            else None
        )
        conditions[i] = {**condition, "lastTransitionTime": transition or _now()}
        return
    conditions.append({**condition, "lastTransitionTime": _now()})


def get_condition(
    status: Dict[str, Any], condition_type: str
) -> Optional[Dict[str, Any]]:
    """Return the condition of a type, if set."""
    for condition in status.get("conditions", []):
        if condition.get("type") == condition_type:
            return condition
    return None


def typed_reference(obj: Dict[str, Any]) -> Dict[str, str]:
    """Reference to an applied object, as recorded in status.resources."""
    metadata = obj.get("metadata", {})
    return {
        "apiVersion": obj.get("apiVersion", ""),
        "kind": obj.get("kind", ""),
        "name": metadata.get("name", ""),
        "uid": metadata.get("uid", ""),
    }


async def apply_service(
    ctx: ReconcilerContext, trait: Dict[str, Any], service: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Apply a rendered Service, owning exactly the fields it declares.

    The trait's name is the field manager and ownership is always forced:
    the trait is the sole authority over these fields.

    Raises:
        ApplyConflictError: If the store reports a conflicting write.
        ServiceApplyError: If the store fails otherwise.
    """
    field_manager = trait["metadata"]["name"]
    try:
        return await ctx.apply_object(service, field_manager=field_manager, force=True)
    except ConflictError as e:
        raise ApplyConflictError(str(e)) from e
    except StoreError as e:
        raise ServiceApplyError(str(e)) from e


async def collect_stale_services(
    ctx: ReconcilerContext, trait: Dict[str, Any], keep_uid: str
) -> List[Dict[str, Any]]:
    """
    Delete Services recorded on the trait other than the current one.

    Deletes are conditional on the recorded uid, so a Service that was
    re-created under the same name is never removed by mistake. Services
    already gone count as deleted.

    Returns:
        The references that were removed.

    Raises:
        GarbageCollectionError: If a delete fails for any other reason.
    """
    namespace = trait.get("metadata", {}).get("namespace", "")
    removed = []
    for ref in trait.get("status", {}).get("resources") or []:
        if ref.get("uid") == keep_uid:
            continue

        described = f"{ref.get('name')} (uid {ref.get('uid')})"
        try:
            await ctx.delete_object(
                ref.get("apiVersion") or SERVICE_API_VERSION,
                ref.get("kind") or SERVICE_KIND,
                namespace,
                ref.get("name", ""),
                uid=ref.get("uid"),
            )
            logger.info(f"Removed stale service {described}")
        except NotFoundError:
            logger.info(f"Stale service {described} already gone")
        except StoreError as e:
            raise GarbageCollectionError(f"service {described}: {e}") from e
        removed.append(ref)
    return removed


class ServiceTraitReconciler(ReconcilerPlugin):
    """
    Reconciles ServiceTraits into Services.

    Triggered by changes to ServiceTraits, and by generation changes to
    StatefulSets and Services, which are mapped back to the traits that
    depend on them.
    """

    @property
    def name(self) -> str:
        return "servicetrait"

    @property
    def resource_types(self) -> List[str]:
        return [TRAIT_KIND]

    @property
    def watches(self) -> List[Watch]:
        return [
            Watch(TRAIT_API_VERSION, TRAIT_KIND),
            Watch(
                APPS_API_VERSION,
                KIND_STATEFULSET,
                mapper=self._traits_for_workload,
                event_filter=generation_changed,
            ),
            Watch(
                SERVICE_API_VERSION,
                SERVICE_KIND,
                mapper=self._traits_for_service,
                event_filter=generation_changed,
            ),
        ]

    def spec_schema(self, kind: str) -> Optional[Dict[str, Any]]:
        return SERVICE_TRAIT_SPEC_SCHEMA if kind == TRAIT_KIND else None

    async def reconcile(
        self, request: ReconcileRequest, ctx: ReconcilerContext
    ) -> ReconcileResult:
        logger.info(f"Reconcile Service Trait {request}")

        try:
            trait = await ctx.get_object(
                TRAIT_API_VERSION, TRAIT_KIND, request.namespace, request.name
            )
        except NotFoundError:
            logger.info(f"ServiceTrait {request} no longer exists")
            return ReconcileResult(success=True, message="ServiceTrait not found")
        except StoreError as e:
            logger.error(f"Cannot get ServiceTrait {request}: {e}")
            return ReconcileResult(
                success=False, message=str(e), requeue_after=ctx.reconcile_wait
            )

        logger.info(
            f"Got the service trait {request}, workloadRef "
            f"{trait.get('spec', {}).get('workloadRef')}"
        )
        status = copy.deepcopy(trait.get("status") or {})
        phase = ReconcilePhase.PENDING

        try:
            phase = ReconcilePhase.RESOLVING
            resources = await resolve_workload(ctx, trait)

            phase = ReconcilePhase.SYNTHESIZING
            service = render_service(trait, resources)

            phase = ReconcilePhase.APPLYING
            applied = await apply_service(ctx, trait, service)
            applied_uid = applied["metadata"]["uid"]
            logger.info(
                f"Successfully applied service {service['metadata']['name']} "
                f"(uid {applied_uid})"
            )

            phase = ReconcilePhase.COLLECTING
            await collect_stale_services(ctx, trait, applied_uid)
        except TraitError as e:
            logger.error(f"ServiceTrait {request} failed while {phase.value}: {e}")
            # Recorded services stay so the next pass can still collect them
            set_condition(status, reconcile_error(e.condition_message))
            return await self._write_status(
                ctx,
                trait,
                status,
                ReconcileResult(
                    success=False, message=str(e), requeue_after=ctx.reconcile_wait
                ),
            )

        status["resources"] = [typed_reference(applied)]
        set_condition(status, reconcile_success())
        logger.info(f"ServiceTrait {request} is {ReconcilePhase.READY.value}")
        return await self._write_status(
            ctx,
            trait,
            status,
            ReconcileResult(success=True, message="Service applied"),
        )

    async def _write_status(
        self,
        ctx: ReconcilerContext,
        trait: Dict[str, Any],
        status: Dict[str, Any],
        result: ReconcileResult,
    ) -> ReconcileResult:
        """Persist the trait status; a failed write turns into a retry."""
        try:
            await ctx.update_status(trait, status)
        except StoreError as e:
            logger.error(
                f"{ERR_UPDATE_STATUS} for ServiceTrait "
                f"{trait['metadata']['name']}: {e}"
            )
            return ReconcileResult(
                success=False,
                message=f"{ERR_UPDATE_STATUS}: {e}",
                requeue_after=ctx.reconcile_wait,
            )
        return result

    async def _traits_for_workload(
        self, obj: Dict[str, Any], ctx: ReconcilerContext
    ) -> List[ReconcileRequest]:
        """Traits that reference a StatefulSet directly or through its owner."""
        metadata = obj.get("metadata", {})
        namespace = metadata.get("namespace", "")
        targets = {(obj.get("apiVersion"), obj.get("kind"), metadata.get("name"))}
        for owner in metadata.get("ownerReferences", []):
            targets.add(
                (owner.get("apiVersion"), owner.get("kind"), owner.get("name"))
            )

        traits = await ctx.list_objects(
            TRAIT_API_VERSION, TRAIT_KIND, namespace=namespace
        )
        requests = []
        for trait in traits:
            ref = trait.get("spec", {}).get("workloadRef") or {}
            if (ref.get("apiVersion"), ref.get("kind"), ref.get("name")) in targets:
                requests.append(ReconcileRequest(namespace, trait["metadata"]["name"]))
        return requests

    async def _traits_for_service(
        self, obj: Dict[str, Any], ctx: ReconcilerContext
    ) -> List[ReconcileRequest]:
        """The trait whose uid labels the Service."""
        metadata = obj.get("metadata", {})
        owner_uid = (metadata.get("labels") or {}).get(LABEL_KEY)
        if not owner_uid:
            return []

        namespace = metadata.get("namespace", "")
        traits = await ctx.list_objects(
            TRAIT_API_VERSION, TRAIT_KIND, namespace=namespace
        )
        return [
            ReconcileRequest(namespace, trait["metadata"]["name"])
            for trait in traits
            if trait["metadata"].get("uid") == owner_uid
        ]
