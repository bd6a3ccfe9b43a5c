"""
Database Manager - PostgreSQL-backed object store.

Stores API objects (traits, workloads, workload definitions, services) with
Kubernetes-like identity: a generated uid, a generation bumped on content
changes, a resourceVersion bumped on every write, and field ownership for
server-side-apply style writes. Every write is published on the event bus.
"""

import asyncpg
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from apply import FieldConflictError, merge_apply
from events import EventBus, EventType, ObjectEvent
from migrate import run_migrations

logger = logging.getLogger(__name__)

# Metadata fields populated by the store, never persisted in the body
SERVER_METADATA_FIELDS = ("uid", "generation", "resourceVersion", "creationTimestamp")


class StoreError(Exception):
    """Raised when the object store cannot complete an operation."""


class NotFoundError(StoreError):
    """Raised when an object does not exist (or fails a uid precondition)."""


class ConflictError(StoreError):
    """Raised on field ownership or resourceVersion conflicts."""


def object_identity(obj: Dict[str, Any]) -> Tuple[str, str, str, str]:
    """
    Extract (apiVersion, kind, namespace, name) from an object.

    Raises:
        ValueError: If apiVersion, kind or metadata.name is missing
    """
    metadata = obj.get("metadata") or {}
    api_version = obj.get("apiVersion") or ""
    kind = obj.get("kind") or ""
    name = metadata.get("name") or ""
    if not api_version or not kind or not name:
        raise ValueError("Object must declare apiVersion, kind and metadata.name")
    return api_version, kind, metadata.get("namespace") or "", name


def describe_object(api_version: str, kind: str, namespace: str, name: str) -> str:
    """Human-readable object identity for logs and errors."""
    location = f"{namespace}/{name}" if namespace else name
    return f"{kind}.{api_version} {location}"


class DatabaseManager:
    """Manages the PostgreSQL object store for the controller."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
        event_bus: Optional[EventBus] = None,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None
        self._event_bus = event_bus

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Set the event bus that receives an event for every write."""
        self._event_bus = event_bus

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a pooled connection, translating database errors to StoreError."""
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except asyncpg.UniqueViolationError as e:
            raise ConflictError(f"Object already exists: {e}") from e
        except asyncpg.PostgresError as e:
            raise StoreError(f"Database error: {e}") from e

    async def _publish(
        self,
        event_type: EventType,
        obj: Dict[str, Any],
        old_obj: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._event_bus:
            await self._event_bus.publish(
                ObjectEvent.from_object(event_type, obj, old_obj)
            )

    # ==================== Read Methods ====================

    async def get_object(
        self, api_version: str, kind: str, namespace: str, name: str
    ) -> Dict[str, Any]:
        """
        Get an object by its identity.

        Raises:
            NotFoundError: If the object does not exist
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM objects
                WHERE api_version = $1 AND kind = $2
                  AND namespace = $3 AND name = $4
                """,
                api_version,
                kind,
                namespace,
                name,
            )
        if not row:
            raise NotFoundError(
                f"{describe_object(api_version, kind, namespace, name)} not found"
            )
        return self._parse_object_row(row)

    async def list_objects(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        List objects of a type, in creation order.

        Args:
            api_version: Object apiVersion
            kind: Object kind
            namespace: Restrict to a namespace (None lists all namespaces)
            labels: Only return objects carrying all of these labels
        """
        query = "SELECT * FROM objects WHERE api_version = $1 AND kind = $2"
        params: List[Any] = [api_version, kind]

        if namespace is not None:
            params.append(namespace)
            query += f" AND namespace = ${len(params)}"

        if labels:
            params.append(json.dumps(labels))
            query += f" AND labels @> ${len(params)}::jsonb"

        query += " ORDER BY id ASC"

        async with self._connection() as conn:
            rows = await conn.fetch(query, *params)
        return [self._parse_object_row(row) for row in rows]

    # ==================== Write Methods ====================

    async def apply_object(
        self,
        obj: Dict[str, Any],
        field_manager: str,
        force: bool = False,
    ) -> Dict[str, Any]:
        """
        Create or update an object with a field-owned merge.

        Only the fields present in obj are written and claimed by
        field_manager. Fields it applied before and dropped now are removed
        unless another manager owns them; other live fields are untouched.
        Applying an identical payload again writes nothing.

        Args:
            obj: The object as declared by the caller
            field_manager: Name of the writer claiming the applied fields
            force: Take over fields owned by other managers

        Returns:
            The live object after the apply

        Raises:
            ConflictError: If another manager owns an applied field and
                force is False
            ValueError: If the object has no apiVersion, kind or name
        """
        api_version, kind, namespace, name = object_identity(obj)

        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT * FROM objects
                    WHERE api_version = $1 AND kind = $2
                      AND namespace = $3 AND name = $4
                    FOR UPDATE
                    """,
                    api_version,
                    kind,
                    namespace,
                    name,
                )
                live = self._parse_object_row(row) if row else None
                current_fields = (
                    json.loads(row["managed_fields"])
                    if row and row["managed_fields"]
                    else {}
                )

                try:
                    result = merge_apply(
                        live, obj, current_fields, field_manager, force=force
                    )
                except FieldConflictError as e:
                    raise ConflictError(str(e)) from e

                managed_fields = self._dump_managed_fields(result.managed_fields)

                if live is None:
                    new_row = await conn.fetchrow(
                        """
                        INSERT INTO objects
                            (uid, api_version, kind, namespace, name,
                             labels, body, managed_fields)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        RETURNING *
                        """,
                        uuid.uuid4(),
                        api_version,
                        kind,
                        namespace,
                        name,
                        json.dumps(self._labels(result.obj)),
                        json.dumps(self._body(result.obj)),
                        managed_fields,
                    )
                elif not result.changed and managed_fields == json.dumps(
                    current_fields, sort_keys=True
                ):
                    description = describe_object(api_version, kind, namespace, name)
                    logger.debug(
                        f"Apply of {description} by {field_manager} is a no-op"
                    )
                    return live
                else:
                    new_row = await conn.fetchrow(
                        """
                        UPDATE objects
                        SET labels = $1,
                            body = $2,
                            managed_fields = $3,
                            generation = generation + $4,
                            resource_version = resource_version + 1,
                            updated_at = NOW()
                        WHERE id = $5
                        RETURNING *
                        """,
                        json.dumps(self._labels(result.obj)),
                        json.dumps(self._body(result.obj)),
                        managed_fields,
                        1 if result.spec_changed else 0,
                        row["id"],
                    )

        applied = self._parse_object_row(new_row)
        if live is None:
            logger.info(
                f"Created {describe_object(api_version, kind, namespace, name)} "
                f"(uid {applied['metadata']['uid']}) by {field_manager}"
            )
            await self._publish(EventType.CREATED, applied)
        else:
            logger.info(
                f"Updated {describe_object(api_version, kind, namespace, name)} "
                f"to generation {applied['metadata']['generation']} by {field_manager}"
            )
            await self._publish(EventType.MODIFIED, applied, live)
        return applied

    async def delete_object(
        self,
        api_version: str,
        kind: str,
        namespace: str,
        name: str,
        uid: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Delete an object.

        Args:
            uid: Precondition; only delete if the live object has this uid

        Returns:
            The deleted object

        Raises:
            NotFoundError: If no object matches (including the uid precondition)
        """
        query = """
            DELETE FROM objects
            WHERE api_version = $1 AND kind = $2
              AND namespace = $3 AND name = $4
        """
        params: List[Any] = [api_version, kind, namespace, name]
        if uid is not None:
            try:
                params.append(uuid.UUID(str(uid)))
            except ValueError:
                raise NotFoundError(f"Invalid uid precondition: {uid}")
            query += " AND uid = $5"
        query += " RETURNING *"

        async with self._connection() as conn:
            row = await conn.fetchrow(query, *params)

        identity = describe_object(api_version, kind, namespace, name)
        if not row:
            suffix = f" with uid {uid}" if uid is not None else ""
            raise NotFoundError(f"{identity}{suffix} not found")

        deleted = self._parse_object_row(row)
        logger.info(f"Deleted {identity} (uid {deleted['metadata']['uid']})")
        await self._publish(EventType.DELETED, deleted)
        return deleted

    async def update_status(
        self, obj: Dict[str, Any], status: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Replace the status of an object.

        The object's metadata.resourceVersion, when present, is used as an
        optimistic concurrency precondition. An unchanged status is not
        written.

        Returns:
            The live object after the update

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If the object changed since it was read
        """
        api_version, kind, namespace, name = object_identity(obj)
        expected_version = obj.get("metadata", {}).get("resourceVersion")
        identity = describe_object(api_version, kind, namespace, name)

        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT * FROM objects
                    WHERE api_version = $1 AND kind = $2
                      AND namespace = $3 AND name = $4
                    FOR UPDATE
                    """,
                    api_version,
                    kind,
                    namespace,
                    name,
                )
                if not row:
                    raise NotFoundError(f"{identity} not found")

                live = self._parse_object_row(row)
                if (
                    expected_version is not None
                    and str(row["resource_version"]) != str(expected_version)
                ):
                    raise ConflictError(
                        f"{identity} has been modified "
                        f"(resourceVersion {row['resource_version']}, "
                        f"expected {expected_version})"
                    )

                current_status = json.loads(row["status"]) if row["status"] else {}
                if current_status == status:
                    return live

                new_row = await conn.fetchrow(
                    """
                    UPDATE objects
                    SET status = $1,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE id = $2
                    RETURNING *
                    """,
                    json.dumps(status),
                    row["id"],
                )

        updated = self._parse_object_row(new_row)
        logger.debug(f"Updated status of {identity}")
        await self._publish(EventType.MODIFIED, updated, live)
        return updated

    # ==================== Helpers ====================

    def _parse_object_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """
        Rebuild an API object from a database row.

        The stored body holds the user-declared fields; identity, generation,
        resourceVersion and status are filled in from their columns.

        Args:
            row: An asyncpg.Record from the objects table

        Returns:
            The object as a plain dict
        """
        body = row["body"]
        obj = json.loads(body) if isinstance(body, str) else dict(body or {})
        metadata = obj.setdefault("metadata", {})
        metadata["name"] = row["name"]
        if row["namespace"]:
            metadata["namespace"] = row["namespace"]
        metadata["uid"] = str(row["uid"])
        metadata["generation"] = row["generation"]
        metadata["resourceVersion"] = str(row["resource_version"])
        created_at = row.get("created_at")
        if created_at is not None:
            metadata["creationTimestamp"] = created_at.isoformat() + "Z"
        obj["apiVersion"] = row["api_version"]
        obj["kind"] = row["kind"]

        status = row["status"]
        status = json.loads(status) if isinstance(status, str) else status
        if status:
            obj["status"] = status
        return obj

    def _body(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Strip status and server-populated metadata before persisting."""
        body = {k: v for k, v in obj.items() if k != "status"}
        body["metadata"] = {
            k: v
            for k, v in (obj.get("metadata") or {}).items()
            if k not in SERVER_METADATA_FIELDS
        }
        return body

    def _labels(self, obj: Dict[str, Any]) -> Dict[str, str]:
        return (obj.get("metadata") or {}).get("labels") or {}

    def _dump_managed_fields(self, managed_fields: Dict[str, List[Any]]) -> str:
        return json.dumps(
            {
                manager: [list(p) for p in paths]
                for manager, paths in managed_fields.items()
            },
            sort_keys=True,
        )
