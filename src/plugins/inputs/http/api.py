"""
HTTP Input Plugin - REST API for object management.

This plugin provides a FastAPI-based REST API for applying, reading and
deleting objects in the store, and for watching object events.
"""

import asyncio
import json
import logging
import os
import re
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from db import ConflictError, NotFoundError, StoreError
from events import EventBus, ObjectEvent
from plugins.base import ObjectCallback
from plugins.inputs.base import InputPlugin
from plugins.registry import get_registry
from validation import validate_spec_against_schema

logger = logging.getLogger(__name__)

# Validation constants
# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, dots
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9.-]{0,251}[a-z0-9])?$")
MAX_NAME_LENGTH = 253
MAX_MANIFEST_SIZE = 1024 * 1024  # 1MB max per manifest

DEFAULT_FIELD_MANAGER = "traitctl"


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters, "
            f"'-' or '.', and must start and end with an alphanumeric character"
        )
    return value


def validate_json_size(
    value: Optional[Dict[str, Any]], field_name: str
) -> Optional[Dict[str, Any]]:
    """Validate that JSON data doesn't exceed size limits."""
    if value is not None:
        json_str = json.dumps(value)
        if len(json_str) > MAX_MANIFEST_SIZE:
            raise ValueError(
                f"{field_name} exceeds maximum size of {MAX_MANIFEST_SIZE // 1024}KB"
            )
    return value


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    """Translate object store errors raised while performing an action."""
    try:
        yield
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StoreError as e:
        logger.error(f"Error {action}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


def parse_label_selector(selector: Optional[str]) -> Optional[Dict[str, str]]:
    """
    Parse an equality label selector such as 'app=db,tier=backend'.

    Raises:
        ValueError: If a term is not of the form key=value
    """
    if not selector:
        return None
    labels: Dict[str, str] = {}
    for term in selector.split(","):
        key, sep, value = term.strip().partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid label selector term: '{term}'")
        labels[key.strip()] = value.lstrip("=").strip()
    return labels


# Object models


class ObjectMetadata(BaseModel):
    """Metadata of a submitted manifest; server-managed fields are ignored."""

    name: str = Field(..., description="Object name", example="my-trait")
    namespace: Optional[str] = Field(None, description="Namespace", example="default")
    labels: Optional[Dict[str, str]] = Field(None, description="Object labels")

    class Config:
        extra = "allow"

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "metadata.name")

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: Optional[str]) -> Optional[str]:
        if v:
            return validate_name_format(v, "metadata.namespace")
        return v


class ObjectManifest(BaseModel):
    """Request model for applying an object."""

    api_version: str = Field(
        ..., alias="apiVersion", example="core.oam.dev/v1alpha2"
    )
    kind: str = Field(..., example="ServiceTrait")
    metadata: ObjectMetadata
    spec: Optional[Dict[str, Any]] = Field(
        default=None, description="Desired state of the object"
    )

    class Config:
        extra = "allow"
        populate_by_name = True

    @field_validator("api_version", "kind")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("apiVersion and kind cannot be empty")
        return v

    @field_validator("spec")
    @classmethod
    def validate_spec_size(
        cls, v: Optional[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        return validate_json_size(v, "spec")

    def to_object(self) -> Dict[str, Any]:
        """The manifest as a plain object, in its wire field names."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ObjectList(BaseModel):
    """Response model for a list of objects."""

    items: List[Dict[str, Any]]


class PluginInfo(BaseModel):
    """Response model for input plugin information."""

    name: str
    version: str


class ReconcilerInfo(BaseModel):
    """Response model for reconciler plugin information."""

    name: str
    resource_types: List[str]
    watches: List[str]


class HTTPInputPlugin(InputPlugin):
    """
    Input plugin that provides a REST API for object management.

    Implements the standard InputPlugin interface using FastAPI.
    """

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.log_level: str = "info"
        self.server = None
        self._on_object_event: Optional[ObjectCallback] = None
        self._db_manager = None
        self._event_bus: Optional[EventBus] = None
        self._config: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP plugin configuration from environment variables."""
        return {
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8000")),
            "log_level": os.getenv("LOG_LEVEL", "INFO").lower(),
            "cors_enabled": os.getenv("CORS_ENABLED", "false").lower() == "true",
            "cors_origins": os.getenv("CORS_ORIGINS", "*").split(","),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the HTTP API plugin."""
        self._config = config
        self.host = config.get("host", "0.0.0.0")
        self.port = config.get("port", 8000)
        self.log_level = config.get("log_level", "info")

        self.app = FastAPI(
            title="ServiceTrait Operator API",
            description="Object store API for the ServiceTrait operator",
            version="1.0.0",
        )

        if config.get("cors_enabled"):
            self.app.add_middleware(
                CORSMiddleware,
                allow_origins=config.get("cors_origins", ["*"]),
                allow_methods=["*"],
                allow_headers=["*"],
            )

        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_db_manager(self, db_manager) -> None:
        """Set the database manager instance."""
        self._db_manager = db_manager

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Set the event bus instance for streaming events."""
        self._event_bus = event_bus

    def _store(self):
        """The object store, or 503 while none is attached."""
        if not self._db_manager:
            raise HTTPException(status_code=503, detail="Database not available")
        return self._db_manager

    async def _notify(self, event_type: str, obj: Dict[str, Any]) -> None:
        if self._on_object_event:
            await self._on_object_event(event_type, obj)

    async def _read(
        self, api_version: str, kind: str, namespace: str, name: str
    ) -> Dict[str, Any]:
        store = self._store()
        with store_errors("getting object"):
            return await store.get_object(api_version, kind, namespace, name)

    async def _delete(
        self,
        api_version: str,
        kind: str,
        namespace: str,
        name: str,
        uid: Optional[str],
    ) -> Dict[str, Any]:
        store = self._store()
        with store_errors("deleting object"):
            deleted = await store.delete_object(
                api_version, kind, namespace, name, uid=uid
            )
        await self._notify("deleted", deleted)
        return {"message": "Object deleted", "uid": deleted["metadata"]["uid"]}

    async def _request_reconcile(
        self, api_version: str, kind: str, namespace: str, name: str
    ) -> Dict[str, Any]:
        obj = await self._read(api_version, kind, namespace, name)
        await self._notify("reconcile", obj)
        return {"message": "Reconciliation triggered", "name": name}

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        Configures the following endpoint groups:
        - Health check: GET /
        - Objects: PUT/GET /api/v1/objects
        - Namespaced objects: /api/v1/namespaces/{ns}/objects/{kind}/{name}
        - Cluster-scoped objects: /api/v1/objects/{kind}/{name}
        - Reconciliation: POST .../{kind}/{name}/reconcile
        - Plugin discovery: /api/v1/plugins/{inputs,reconcilers}
        - Event streaming: GET /api/v1/events

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "servicetrait-operator"}

        # ==================== Object Endpoints ====================

        @self.app.put("/api/v1/objects")
        async def apply_object(
            manifest: ObjectManifest,
            fieldManager: str = DEFAULT_FIELD_MANAGER,
            force: bool = False,
        ):
            """Apply a manifest; only the fields it declares are written."""
            store = self._store()
            obj = manifest.to_object()

            schema = get_registry().get_spec_schema(manifest.kind)
            if schema is not None:
                is_valid, error = validate_spec_against_schema(
                    obj.get("spec") or {}, schema
                )
                if not is_valid:
                    raise HTTPException(
                        status_code=400, detail=f"Spec validation failed: {error}"
                    )

            with store_errors("applying object"):
                applied = await store.apply_object(
                    obj, field_manager=fieldManager, force=force
                )
            await self._notify("applied", applied)
            return applied

        @self.app.get("/api/v1/objects", response_model=ObjectList)
        async def list_objects(
            apiVersion: str,
            kind: str,
            namespace: Optional[str] = None,
            labelSelector: Optional[str] = None,
        ):
            """List objects of a type with optional namespace and label filters."""
            store = self._store()
            try:
                labels = parse_label_selector(labelSelector)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

            with store_errors("listing objects"):
                items = await store.list_objects(
                    apiVersion, kind, namespace=namespace, labels=labels
                )
            return ObjectList(items=items)

        @self.app.get("/api/v1/namespaces/{namespace}/objects/{kind}/{name}")
        async def get_namespaced_object(
            namespace: str, kind: str, name: str, apiVersion: str
        ):
            """Get a namespaced object."""
            return await self._read(apiVersion, kind, namespace, name)

        @self.app.delete("/api/v1/namespaces/{namespace}/objects/{kind}/{name}")
        async def delete_namespaced_object(
            namespace: str,
            kind: str,
            name: str,
            apiVersion: str,
            uid: Optional[str] = None,
        ):
            """Delete a namespaced object, optionally only if its uid matches."""
            return await self._delete(apiVersion, kind, namespace, name, uid)

        @self.app.post(
            "/api/v1/namespaces/{namespace}/objects/{kind}/{name}/reconcile",
            status_code=202,
        )
        async def trigger_namespaced_reconciliation(
            namespace: str, kind: str, name: str, apiVersion: str
        ):
            """Manually trigger reconciliation of a namespaced object."""
            return await self._request_reconcile(apiVersion, kind, namespace, name)

        @self.app.get("/api/v1/objects/{kind}/{name}")
        async def get_cluster_object(kind: str, name: str, apiVersion: str):
            """Get a cluster-scoped object."""
            return await self._read(apiVersion, kind, "", name)

        @self.app.delete("/api/v1/objects/{kind}/{name}")
        async def delete_cluster_object(
            kind: str, name: str, apiVersion: str, uid: Optional[str] = None
        ):
            """Delete a cluster-scoped object."""
            return await self._delete(apiVersion, kind, "", name, uid)

        # ==================== Plugin Discovery ====================

        @self.app.get("/api/v1/plugins/inputs", response_model=List[PluginInfo])
        async def list_input_plugins():
            """List registered input plugins."""
            registry = get_registry()
            return [
                PluginInfo(**registry.get_input_plugin_info(name))
                for name in registry.list_input_plugins()
            ]

        @self.app.get(
            "/api/v1/plugins/reconcilers", response_model=List[ReconcilerInfo]
        )
        async def list_reconciler_plugins():
            """List registered reconciler plugins and what they watch."""
            registry = get_registry()
            return [
                ReconcilerInfo(**registry.get_reconciler_plugin_info(name))
                for name in registry.list_reconciler_plugins()
            ]

        # ==================== Event Streaming ====================

        @self.app.get("/api/v1/events")
        async def stream_events(
            kind: Optional[str] = None, namespace: Optional[str] = None
        ):
            """SSE stream of object events.

            Optionally filter by kind and namespace.
            """
            if not self._event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            def filter_fn(event: ObjectEvent) -> bool:
                if kind and event.kind != kind:
                    return False
                return namespace is None or event.namespace == namespace

            subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    logger.debug(f"Event stream {subscriber_id} closed by client")
                finally:
                    await self._event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def start(self, on_object_event: ObjectCallback) -> None:
        """Start the HTTP server."""
        self._on_object_event = on_object_event
        self._setup_routes()

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP input plugin on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP input plugin")
        if self.server:
            self.server.should_exit = True

    async def health_check(self) -> tuple[bool, str]:
        """Check if the HTTP API is healthy."""
        if self.server and self.server.started:
            return True, "HTTP API is running"
        return False, "HTTP API is not running"
