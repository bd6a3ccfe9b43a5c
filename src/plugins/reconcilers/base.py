"""
Reconciler Plugin Base - Abstract interface for reconciler plugins.

Reconciler plugins own the reconciliation logic for one resource type. They
declare which object kinds they watch and reconcile one object per call;
the controller decides when to call them and serves their retry requests.
Reconcilers are discovered via Python entry points.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from db import DatabaseManager
from events import EventType, ObjectEvent

logger = logging.getLogger(__name__)

DEFAULT_RECONCILE_WAIT = 30


@dataclass(frozen=True)
class ReconcileRequest:
    """Identity of the object to reconcile."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass
class ReconcileResult:
    """Result from a reconciler's reconcile() call."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[int] = None


EventFilter = Callable[[ObjectEvent], bool]
RequestMapper = Callable[
    [Dict[str, Any], "ReconcilerContext"], Awaitable[List[ReconcileRequest]]
]


def generation_changed(event: ObjectEvent) -> bool:
    """
    Pass creations, deletions and modifications that changed the generation.

    Status writes and metadata-only churn leave the generation alone and
    are filtered out.
    """
    if event.event_type != EventType.MODIFIED or event.old_obj is None:
        return True
    old_generation = event.old_obj.get("metadata", {}).get("generation")
    new_generation = event.obj.get("metadata", {}).get("generation")
    return old_generation != new_generation


@dataclass(frozen=True)
class Watch:
    """
    A kind of object whose changes trigger reconciliation.

    A watch without a mapper is a primary watch: the changed object is itself
    reconciled. Secondary watches map the changed object to the requests of
    the objects that depend on it.
    """

    api_version: str
    kind: str
    mapper: Optional[RequestMapper] = None
    event_filter: Optional[EventFilter] = None

    @property
    def is_primary(self) -> bool:
        return self.mapper is None

    def matches(self, event: ObjectEvent) -> bool:
        """Check whether an event concerns this watch and passes its filter."""
        if event.api_version != self.api_version or event.kind != self.kind:
            return False
        return self.event_filter is None or self.event_filter(event)

    async def map(
        self, obj: Dict[str, Any], ctx: "ReconcilerContext"
    ) -> List[ReconcileRequest]:
        """Map a changed object to the requests it triggers."""
        if self.mapper is None:
            metadata = obj.get("metadata", {})
            return [ReconcileRequest(metadata.get("namespace", ""), metadata["name"])]
        return await self.mapper(obj, ctx)


class ReconcilerContext:
    """
    Context provided to reconciler plugins by the controller.

    Gives reconcilers access to the object store and the retry delay to
    request when a reconcile fails.
    """

    def __init__(
        self,
        db: DatabaseManager,
        shutdown_event: Optional[asyncio.Event] = None,
        reconcile_wait: int = DEFAULT_RECONCILE_WAIT,
    ):
        self.db = db
        self.shutdown_event = shutdown_event or asyncio.Event()
        self.reconcile_wait = reconcile_wait

    async def get_object(
        self, api_version: str, kind: str, namespace: str, name: str
    ) -> Dict[str, Any]:
        """
        Get an object from the store.

        Raises:
            NotFoundError: If the object does not exist.
        """
        return await self.db.get_object(api_version, kind, namespace, name)

    async def list_objects(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """List objects of a type, optionally by namespace and labels."""
        return await self.db.list_objects(
            api_version, kind, namespace=namespace, labels=labels
        )

    async def apply_object(
        self, obj: Dict[str, Any], field_manager: str, force: bool = True
    ) -> Dict[str, Any]:
        """
        Apply an object with a field-owned merge.

        Args:
            obj: The fields the caller declares.
            field_manager: The owner of the declared fields.
            force: Take over fields owned by other managers.

        Returns:
            The live object after the apply.
        """
        return await self.db.apply_object(obj, field_manager, force=force)

    async def delete_object(
        self,
        api_version: str,
        kind: str,
        namespace: str,
        name: str,
        uid: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Delete an object, optionally only if it still has the given uid.

        Raises:
            NotFoundError: If no matching object exists.
        """
        return await self.db.delete_object(api_version, kind, namespace, name, uid=uid)

    async def update_status(
        self, obj: Dict[str, Any], status: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Persist an object's status.

        Raises:
            ConflictError: If the object changed since it was read.
        """
        return await self.db.update_status(obj, status)


class ReconcilerPlugin(ABC):
    """
    Abstract base class for reconciler plugins.

    Reconciler plugins own the reconciliation logic for a resource type.
    The controller calls reconcile() for one object at a time and never
    runs two reconciles for the same object concurrently.

    Reconcilers are discovered via Python entry points in the
    'servicetrait.reconcilers' group.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this reconciler."""
        pass

    @property
    @abstractmethod
    def resource_types(self) -> List[str]:
        """Resource kinds this reconciler owns."""
        pass

    @property
    @abstractmethod
    def watches(self) -> List[Watch]:
        """
        Object kinds whose changes trigger reconciliation.

        Declared once; the controller reads it at startup.
        """
        pass

    @abstractmethod
    async def reconcile(
        self, request: ReconcileRequest, ctx: ReconcilerContext
    ) -> ReconcileResult:
        """
        Reconcile a single object.

        Args:
            request: Namespace and name of the object to reconcile.
            ctx: ReconcilerContext for store access.

        Returns:
            ReconcileResult; requeue_after asks the controller to retry.
        """
        pass

    def spec_schema(self, kind: str) -> Optional[Dict[str, Any]]:
        """
        JSON Schema for the spec of an owned resource kind.

        Used by input plugins to validate submitted objects. Returns None
        when the reconciler does not validate that kind.
        """
        return None
