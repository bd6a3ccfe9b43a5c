"""Pytest configuration and fixtures."""

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from apply import FieldConflictError, merge_apply
from db import ConflictError, NotFoundError, describe_object, object_identity
from events import EventBus, EventType, ObjectEvent
from plugins.reconcilers.base import ReconcilerContext

ObjectKey = Tuple[str, str, str, str]


class FakeStore:
    """
    In-memory stand-in for DatabaseManager.

    Uses the real field-ownership merge, so applies, generations and
    resourceVersions behave like the PostgreSQL store. Failures can be
    injected per operation through ``fail``.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self.objects: Dict[ObjectKey, Dict[str, Any]] = {}
        self.managed_fields: Dict[ObjectKey, Dict[str, List[Any]]] = {}
        self.event_bus = event_bus
        self.fail: Dict[str, Exception] = {}
        self.calls: List[Tuple[str, Any]] = []

    def _check(self, operation: str) -> None:
        if operation in self.fail:
            raise self.fail[operation]

    async def _publish(self, event_type, obj, old_obj=None):
        if self.event_bus:
            await self.event_bus.publish(
                ObjectEvent.from_object(event_type, obj, old_obj)
            )

    def put(
        self, obj: Dict[str, Any], field_manager: str = "test", force: bool = True
    ) -> Dict[str, Any]:
        """Apply an object synchronously without publishing events."""
        applied, _ = self._apply(obj, field_manager, force)
        return applied

    def find(self, api_version, kind, namespace, name) -> Optional[Dict[str, Any]]:
        obj = self.objects.get((api_version, kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def _apply(self, obj, field_manager, force):
        key = object_identity(obj)
        api_version, kind, namespace, name = key
        live = self.objects.get(key)
        try:
            result = merge_apply(
                copy.deepcopy(live) if live else None,
                obj,
                self.managed_fields.get(key),
                field_manager,
                force=force,
            )
        except FieldConflictError as e:
            raise ConflictError(str(e)) from e

        if live is not None and not result.changed:
            self.managed_fields[key] = result.managed_fields
            return copy.deepcopy(live), copy.deepcopy(live)

        merged = result.obj
        merged["apiVersion"] = api_version
        merged["kind"] = kind
        metadata = merged.setdefault("metadata", {})
        metadata["name"] = name
        if namespace:
            metadata["namespace"] = namespace
        if live is None:
            metadata["uid"] = str(uuid.uuid4())
            metadata["generation"] = 1
            metadata["resourceVersion"] = "1"
            metadata["creationTimestamp"] = datetime.now(timezone.utc).isoformat()
        else:
            metadata["generation"] = live["metadata"]["generation"] + (
                1 if result.spec_changed else 0
            )
            metadata["resourceVersion"] = str(
                int(live["metadata"]["resourceVersion"]) + 1
            )

        self.objects[key] = merged
        self.managed_fields[key] = result.managed_fields
        return copy.deepcopy(merged), copy.deepcopy(live) if live else None

    async def get_object(self, api_version, kind, namespace, name):
        self.calls.append(("get_object", (api_version, kind, namespace, name)))
        self._check("get_object")
        obj = self.find(api_version, kind, namespace, name)
        if obj is None:
            raise NotFoundError(
                f"{describe_object(api_version, kind, namespace, name)} not found"
            )
        return obj

    async def list_objects(self, api_version, kind, namespace=None, labels=None):
        self.calls.append(("list_objects", (api_version, kind, namespace, labels)))
        self._check("list_objects")
        items = []
        for (av, k, ns, _), obj in self.objects.items():
            if (av, k) != (api_version, kind):
                continue
            if namespace is not None and ns != namespace:
                continue
            obj_labels = obj.get("metadata", {}).get("labels") or {}
            if labels and any(obj_labels.get(lk) != lv for lk, lv in labels.items()):
                continue
            items.append(copy.deepcopy(obj))
        return items

    async def apply_object(self, obj, field_manager, force=False):
        self.calls.append(("apply_object", (copy.deepcopy(obj), field_manager, force)))
        self._check("apply_object")
        applied, live = self._apply(obj, field_manager, force)
        if live is None:
            await self._publish(EventType.CREATED, applied)
        elif applied != live:
            await self._publish(EventType.MODIFIED, applied, live)
        return applied

    async def delete_object(self, api_version, kind, namespace, name, uid=None):
        self.calls.append(("delete_object", (api_version, kind, namespace, name, uid)))
        self._check("delete_object")
        key = (api_version, kind, namespace, name)
        live = self.objects.get(key)
        if live is None or (uid is not None and live["metadata"]["uid"] != uid):
            raise NotFoundError(
                f"{describe_object(api_version, kind, namespace, name)} not found"
            )
        del self.objects[key]
        self.managed_fields.pop(key, None)
        await self._publish(EventType.DELETED, live)
        return copy.deepcopy(live)

    async def update_status(self, obj, status):
        self.calls.append(("update_status", copy.deepcopy(status)))
        self._check("update_status")
        key = object_identity(obj)
        live = self.objects.get(key)
        if live is None:
            raise NotFoundError(f"{describe_object(*key)} not found")
        expected = obj.get("metadata", {}).get("resourceVersion")
        if expected is not None and live["metadata"]["resourceVersion"] != expected:
            raise ConflictError(f"{describe_object(*key)} has been modified")
        if (live.get("status") or {}) == status:
            return copy.deepcopy(live)

        old = copy.deepcopy(live)
        live["status"] = copy.deepcopy(status)
        live["metadata"]["resourceVersion"] = str(
            int(live["metadata"]["resourceVersion"]) + 1
        )
        await self._publish(EventType.MODIFIED, copy.deepcopy(live), old)
        return copy.deepcopy(live)

    def operations(self, name: str) -> List[Any]:
        """Arguments of every recorded call to an operation."""
        return [args for op, args in self.calls if op == name]


@pytest.fixture
def store():
    """In-memory object store."""
    return FakeStore()


@pytest.fixture
def ctx(store):
    """Reconciler context over the in-memory store."""
    return ReconcilerContext(db=store, reconcile_wait=30)


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def statefulset_manifest():
    """A StatefulSet exposing one port."""
    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {"name": "db", "namespace": "default"},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": {"app": "db"}},
            "template": {
                "metadata": {"labels": {"app": "db"}},
                "spec": {
                    "containers": [
                        {
                            "name": "postgres",
                            "image": "postgres:16",
                            "ports": [{"containerPort": 5432}],
                        }
                    ]
                },
            },
        },
    }


@pytest.fixture
def deployment_manifest():
    """A Deployment; never a Service source."""
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "web", "namespace": "default"},
        "spec": {
            "selector": {"matchLabels": {"app": "web"}},
            "template": {
                "spec": {
                    "containers": [
                        {"name": "web", "ports": [{"containerPort": 8080}]}
                    ]
                }
            },
        },
    }


@pytest.fixture
def trait_manifest():
    """A ServiceTrait pointing at the 'db' StatefulSet."""
    return {
        "apiVersion": "core.oam.dev/v1alpha2",
        "kind": "ServiceTrait",
        "metadata": {"name": "db-service", "namespace": "default"},
        "spec": {
            "workloadRef": {
                "apiVersion": "apps/v1",
                "kind": "StatefulSet",
                "name": "db",
            }
        },
    }


@pytest.fixture
def workload_definition():
    """Definition of the composite StatefulSetWorkload kind."""
    return {
        "apiVersion": "core.oam.dev/v1alpha2",
        "kind": "WorkloadDefinition",
        "metadata": {"name": "statefulsetworkloads.core.oam.dev"},
        "spec": {
            "definitionRef": {"name": "statefulsetworkloads.core.oam.dev"},
            "childResourceKinds": [
                {"apiVersion": "apps/v1", "kind": "StatefulSet"},
            ],
        },
    }


@pytest.fixture
def composite_workload():
    """A composite workload of the StatefulSetWorkload kind."""
    return {
        "apiVersion": "core.oam.dev/v1alpha2",
        "kind": "StatefulSetWorkload",
        "metadata": {"name": "db-workload", "namespace": "default"},
        "spec": {"image": "postgres:16"},
    }
