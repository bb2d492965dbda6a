"""
Database Manager - PostgreSQL-backed versioned object store.

Stores managed objects and their owned secrets. Every write bumps the
object's resource version; patches are rejected when the caller's base
version is stale. Changes are announced with LISTEN/NOTIFY.
"""

import asyncio
import base64
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

import asyncpg

from errors import AlreadyExistsError, ConflictError, NotFoundError, UnavailableError
from events import ObjectEvent
from migrate import run_migrations
from objects import ManagedObject, ObjectKey
from patch import apply_merge_patch
from store import ObjectStore, OwnerReference, Secret

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "object_events"

# Errors that mean "the database could not be reached", as opposed to a
# query being rejected.
_UNAVAILABLE_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    ConnectionError,
    asyncio.TimeoutError,
)

WatchCallback = Callable[[ObjectEvent], Awaitable[None]]


class DatabaseManager(ObjectStore):
    """Manages PostgreSQL operations for the object store."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None
        self._listen_conn: Optional[asyncpg.Connection] = None
        self._on_notification: Optional[Callable[..., None]] = None
        self._watch_tasks: Set[asyncio.Task] = set()

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        try:
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
        except _UNAVAILABLE_ERRORS + (OSError,) as e:
            raise UnavailableError(f"Cannot connect to PostgreSQL: {e}") from e
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Stop watching and close the connection pool."""
        await self.unwatch()
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

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
        """Acquire a pooled connection, mapping connectivity failures."""
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except _UNAVAILABLE_ERRORS as e:
            raise UnavailableError(f"Database unavailable: {e}") from e

    # ==================== Object Methods ====================

    async def create_object(
        self,
        kind: str,
        namespace: str,
        name: str,
        spec: Optional[Dict[str, Any]] = None,
        labels: Optional[Dict[str, str]] = None,
        finalizers: Optional[List[str]] = None,
    ) -> ManagedObject:
        """
        Create a new object.

        Objects are created unclaimed: the engine adds its own finalizer.

        Args:
            kind: Object kind (e.g., 'NodeAllocationRequest')
            namespace: Namespace
            name: Object name, unique per kind and namespace
            spec: Request parameters
            labels: Optional labels
            finalizers: Optional initial finalizers

        Raises:
            AlreadyExistsError: If the identity is already taken
        """
        async with self._connection() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO objects (uid, kind, namespace, name, spec, labels, finalizers)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    RETURNING *
                    """,
                    str(uuid.uuid4()),
                    kind,
                    namespace,
                    name,
                    json.dumps(spec or {}),
                    json.dumps(labels or {}),
                    json.dumps(finalizers or []),
                )
            except asyncpg.exceptions.UniqueViolationError as e:
                raise AlreadyExistsError(
                    f"{kind}/{namespace}/{name} already exists"
                ) from e

        obj = self._parse_object_row(row)
        logger.info(f"Created object {obj.key} at version {obj.resource_version}")
        return obj

    async def get_object(self, key: ObjectKey) -> ManagedObject:
        """Get an object by identity."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM objects WHERE kind = $1 AND namespace = $2 AND name = $3",
                key.kind,
                key.namespace,
                key.name,
            )
        if not row:
            raise NotFoundError(f"{key} not found")
        return self._parse_object_row(row)

    async def list_objects(
        self,
        kind: Optional[str] = None,
        namespace: Optional[str] = None,
        limit: int = 100,
    ) -> List[ManagedObject]:
        """List objects with optional filters."""
        async with self._connection() as conn:
            query = "SELECT * FROM objects WHERE 1=1"
            params: List[Any] = []
            param_count = 0

            if kind:
                param_count += 1
                query += f" AND kind = ${param_count}"
                params.append(kind)

            if namespace:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            param_count += 1
            query += f" ORDER BY namespace, name LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
        return [self._parse_object_row(row) for row in rows]

    async def list_keys(self, kind: str) -> List[ObjectKey]:
        """List the identities of all objects of a kind."""
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT namespace, name FROM objects WHERE kind = $1",
                kind,
            )
        return [ObjectKey(kind, row["namespace"], row["name"]) for row in rows]

    async def update_spec(
        self,
        key: ObjectKey,
        spec: Dict[str, Any],
        base_version: Optional[str] = None,
    ) -> ManagedObject:
        """
        Replace an object's spec.

        The generation is bumped when the spec actually changes.

        Args:
            key: Object identity
            spec: New spec
            base_version: Optional optimistic-concurrency precondition

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If base_version is given and stale
        """
        async with self._connection() as conn:
            async with conn.transaction():
                current = await self._lock_object(conn, key)
                self._check_version(current, base_version)
                if current.deleting:
                    raise ConflictError(f"{key} is being deleted")
                if current.spec == spec:
                    return current

                row = await conn.fetchrow(
                    """
                    UPDATE objects
                    SET spec = $1,
                        generation = generation + 1,
                        resource_version = nextval('object_resource_version_seq'),
                        updated_at = NOW()
                    WHERE uid = $2
                    RETURNING *
                    """,
                    json.dumps(spec),
                    current.uid,
                )

        updated = self._parse_object_row(row)
        logger.info(f"Updated {key} to generation {updated.generation}")
        return updated

    async def delete_object(self, key: ObjectKey) -> Optional[ManagedObject]:
        """
        Request deletion of an object.

        Objects without finalizers are erased at once. Otherwise the deletion
        timestamp is set (once) and the object stays until its finalizers
        are removed.

        Returns:
            The object marked for deletion, or None if it was erased.

        Raises:
            NotFoundError: If the object does not exist
        """
        async with self._connection() as conn:
            async with conn.transaction():
                current = await self._lock_object(conn, key)

                if not current.finalizers:
                    await conn.execute("DELETE FROM objects WHERE uid = $1", current.uid)
                    logger.info(f"Deleted {key} (no finalizers)")
                    return None

                if current.deleting:
                    return current

                row = await conn.fetchrow(
                    """
                    UPDATE objects
                    SET deletion_timestamp = NOW(),
                        resource_version = nextval('object_resource_version_seq'),
                        updated_at = NOW()
                    WHERE uid = $1
                    RETURNING *
                    """,
                    current.uid,
                )

        marked = self._parse_object_row(row)
        logger.info(f"Marked {key} for deletion, waiting on: {list(marked.finalizers)}")
        return marked

    async def patch_meta(
        self, key: ObjectKey, base_version: str, delta: Dict[str, Any]
    ) -> Optional[ManagedObject]:
        """Apply a merge patch to finalizers and labels."""
        _check_channel(delta, "metadata")
        async with self._connection() as conn:
            async with conn.transaction():
                current = await self._lock_object(conn, key)
                self._check_version(current, base_version)

                view = apply_merge_patch(current.metadata_view(), delta)
                metadata = view.get("metadata") or {}
                finalizers = list(metadata.get("finalizers") or [])
                labels = dict(metadata.get("labels") or {})

                if current.deleting and not finalizers:
                    # Last finalizer gone: the store erases the object and
                    # owned secrets cascade.
                    await conn.execute("DELETE FROM objects WHERE uid = $1", current.uid)
                    logger.info(f"Erased {key}: all finalizers removed")
                    return None

                row = await conn.fetchrow(
                    """
                    UPDATE objects
                    SET finalizers = $1,
                        labels = $2,
                        resource_version = nextval('object_resource_version_seq'),
                        updated_at = NOW()
                    WHERE uid = $3
                    RETURNING *
                    """,
                    json.dumps(finalizers),
                    json.dumps(labels),
                    current.uid,
                )

        return self._parse_object_row(row)

    async def patch_status(
        self, key: ObjectKey, base_version: str, delta: Dict[str, Any]
    ) -> ManagedObject:
        """Apply a merge patch to the status subresource."""
        _check_channel(delta, "status")
        async with self._connection() as conn:
            async with conn.transaction():
                current = await self._lock_object(conn, key)
                self._check_version(current, base_version)

                view = apply_merge_patch(current.status_view(), delta)
                row = await conn.fetchrow(
                    """
                    UPDATE objects
                    SET status = $1,
                        resource_version = nextval('object_resource_version_seq'),
                        updated_at = NOW()
                    WHERE uid = $2
                    RETURNING *
                    """,
                    json.dumps(view.get("status") or {}),
                    current.uid,
                )

        return self._parse_object_row(row)

    async def _lock_object(
        self, conn: asyncpg.Connection, key: ObjectKey
    ) -> ManagedObject:
        row = await conn.fetchrow(
            """
            SELECT * FROM objects
            WHERE kind = $1 AND namespace = $2 AND name = $3
            FOR UPDATE
            """,
            key.kind,
            key.namespace,
            key.name,
        )
        if not row:
            raise NotFoundError(f"{key} not found")
        return self._parse_object_row(row)

    def _check_version(self, current: ManagedObject, base_version: Optional[str]) -> None:
        if base_version is not None and current.resource_version != base_version:
            raise ConflictError(
                f"{current.key} was modified: expected version {base_version}, "
                f"found {current.resource_version}",
                current_version=current.resource_version,
            )

    # ==================== Secret Methods ====================

    async def create_or_update_secret(
        self,
        namespace: str,
        name: str,
        data: Dict[str, bytes],
        owner: Optional[OwnerReference] = None,
    ) -> Secret:
        """
        Create a secret or reconcile an existing one.

        Only writes when data or owner differ from what is stored.
        """
        encoded = _encode_secret_data(data)
        async with self._connection() as conn:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    "SELECT * FROM secrets WHERE namespace = $1 AND name = $2 FOR UPDATE",
                    namespace,
                    name,
                )

                if existing is None:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO secrets (
                            namespace, name, data, owner_kind, owner_name, owner_uid
                        )
                        VALUES ($1, $2, $3, $4, $5, $6)
                        RETURNING *
                        """,
                        namespace,
                        name,
                        json.dumps(encoded),
                        owner.kind if owner else None,
                        owner.name if owner else None,
                        owner.uid if owner else None,
                    )
                    logger.info(f"Created secret {namespace}/{name}")
                    return self._parse_secret_row(row)

                current = self._parse_secret_row(existing)
                if current.data == data and current.owner == owner:
                    return current

                row = await conn.fetchrow(
                    """
                    UPDATE secrets
                    SET data = $1,
                        owner_kind = $2,
                        owner_name = $3,
                        owner_uid = $4,
                        resource_version = nextval('object_resource_version_seq'),
                        updated_at = NOW()
                    WHERE id = $5
                    RETURNING *
                    """,
                    json.dumps(encoded),
                    owner.kind if owner else None,
                    owner.name if owner else None,
                    owner.uid if owner else None,
                    existing["id"],
                )
                logger.info(f"Updated secret {namespace}/{name}")
                return self._parse_secret_row(row)

    async def get_secret(self, namespace: str, name: str) -> Optional[Secret]:
        """Get a secret by namespace and name."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM secrets WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
        if not row:
            return None
        return self._parse_secret_row(row)

    async def list_secrets(self, namespace: str) -> List[Secret]:
        """List secrets in a namespace."""
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM secrets WHERE namespace = $1 ORDER BY name",
                namespace,
            )
        return [self._parse_secret_row(row) for row in rows]

    # ==================== Watch ====================

    async def watch(self, callback: WatchCallback) -> None:
        """
        Start delivering change notifications to ``callback``.

        Holds one dedicated connection that LISTENs on the object_events
        channel until :meth:`unwatch` is called.
        """
        self._ensure_connected()
        if self._listen_conn is not None:
            raise RuntimeError("Already watching")

        def on_notification(connection, pid, channel, payload):
            try:
                event = ObjectEvent.from_notification(payload)
            except ValueError as e:
                logger.warning(str(e))
                return
            task = asyncio.ensure_future(callback(event))
            self._watch_tasks.add(task)
            task.add_done_callback(self._watch_tasks.discard)

        try:
            conn = await self.pool.acquire()
        except _UNAVAILABLE_ERRORS as e:
            raise UnavailableError(f"Cannot start watch: {e}") from e
        try:
            await conn.add_listener(NOTIFY_CHANNEL, on_notification)
        except _UNAVAILABLE_ERRORS as e:
            await self.pool.release(conn)
            raise UnavailableError(f"Cannot start watch: {e}") from e
        self._listen_conn = conn
        self._on_notification = on_notification
        logger.info(f"Listening on channel {NOTIFY_CHANNEL}")

    async def unwatch(self) -> None:
        """Stop delivering change notifications."""
        if self._listen_conn is None:
            return
        conn = self._listen_conn
        self._listen_conn = None
        try:
            await conn.remove_listener(NOTIFY_CHANNEL, self._on_notification)
        finally:
            await self.pool.release(conn)
        logger.info(f"Stopped listening on channel {NOTIFY_CHANNEL}")

    # ==================== Row Parsing ====================

    def _parse_object_row(self, row: asyncpg.Record) -> ManagedObject:
        """
        Parse an objects row into a ManagedObject snapshot.

        JSONB columns arrive as text and are decoded here.
        """
        result = dict(row)
        return ManagedObject(
            kind=result["kind"],
            namespace=result["namespace"],
            name=result["name"],
            uid=str(result["uid"]),
            resource_version=str(result["resource_version"]),
            generation=result.get("generation", 1),
            creation_timestamp=result.get("created_at"),
            deletion_timestamp=result.get("deletion_timestamp"),
            finalizers=tuple(_load_json(result.get("finalizers"), [])),
            labels=_load_json(result.get("labels"), {}),
            spec=_load_json(result.get("spec"), {}),
            status=_load_json(result.get("status"), {}),
        )

    def _parse_secret_row(self, row: asyncpg.Record) -> Secret:
        result = dict(row)
        owner = None
        if result.get("owner_uid"):
            owner = OwnerReference(
                kind=result["owner_kind"],
                name=result["owner_name"],
                uid=result["owner_uid"],
            )
        return Secret(
            namespace=result["namespace"],
            name=result["name"],
            data=_decode_secret_data(_load_json(result.get("data"), {})),
            owner=owner,
            resource_version=str(result.get("resource_version", "")),
        )


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _check_channel(delta: Dict[str, Any], channel: str) -> None:
    unexpected = set(delta) - {channel}
    if unexpected:
        raise ValueError(
            f"Patch for the {channel} channel cannot touch: {sorted(unexpected)}"
        )


def _encode_secret_data(data: Dict[str, bytes]) -> Dict[str, str]:
    return {k: base64.b64encode(v).decode("ascii") for k, v in data.items()}


def _decode_secret_data(data: Dict[str, str]) -> Dict[str, bytes]:
    return {k: base64.b64decode(v) for k, v in data.items()}
