"""
Database Manager - PostgreSQL object store for Pub/Sub sources.

Stores source objects (spec, status, finalizers), their reconcile
scheduling state and the reconciliation history. Writes made by the
reconcile driver are guarded by the object's resource_version.
"""

import asyncpg
import hashlib
import json
import logging
import uuid
from typing import Any, Dict, List, Optional

from migrate import run_migrations

logger = logging.getLogger(__name__)


class ConflictError(Exception):
    """The object changed (or disappeared) since it was read."""


class AlreadyExistsError(Exception):
    """An object with the same namespace and name already exists."""


class DatabaseManager:
    """PostgreSQL-backed store of Pub/Sub source objects."""

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

    async def connect(self):
        """Open the connection pool."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Bring the schema up to date with the bundled migrations."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Object Methods ====================

    async def create_source(
        self,
        namespace: str,
        name: str,
        spec: Dict[str, Any],
        annotations: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a new Pub/Sub source.

        Raises:
            AlreadyExistsError: namespace/name is taken
        """
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO pubsub_sources (
                        namespace, name, uid, spec, spec_hash, annotations
                    )
                    VALUES ($1, $2, $3, $4, $5, $6)
                    RETURNING *
                    """,
                    namespace,
                    name,
                    uuid.uuid4(),
                    json.dumps(spec),
                    self._calculate_spec_hash(spec),
                    json.dumps(annotations or {}),
                )
            except asyncpg.UniqueViolationError as e:
                raise AlreadyExistsError(f"{namespace}/{name} already exists") from e

        logger.info(f"Created PubSubSource {namespace}/{name}")
        return self._parse_source_row(row)

    async def update_source(
        self,
        namespace: str,
        name: str,
        spec: Dict[str, Any],
        annotations: Optional[Dict[str, str]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Replace the spec (and annotations) of a source.

        The generation only moves when the spec actually changed.

        Returns:
            The updated object, or None if it does not exist.
        """
        spec_hash = self._calculate_spec_hash(spec)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE pubsub_sources
                SET spec = $3,
                    generation = CASE WHEN spec_hash = $4
                                      THEN generation ELSE generation + 1 END,
                    spec_hash = $4,
                    annotations = COALESCE($5, annotations),
                    resource_version = resource_version + 1,
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE namespace = $1 AND name = $2
                RETURNING *
                """,
                namespace,
                name,
                json.dumps(spec),
                spec_hash,
                json.dumps(annotations) if annotations is not None else None,
            )
        if not row:
            return None
        logger.info(f"Updated PubSubSource {namespace}/{name}")
        return self._parse_source_row(row)

    async def get_source(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM pubsub_sources WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
        return self._parse_source_row(row) if row else None

    async def list_sources(
        self, namespace: Optional[str] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        """List sources, optionally restricted to one namespace."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM pubsub_sources WHERE 1=1"
            params: List[Any] = []
            param_count = 0

            if namespace:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            param_count += 1
            query += f" ORDER BY namespace, name LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
        return [self._parse_source_row(row) for row in rows]

    async def mark_for_deletion(self, namespace: str, name: str) -> Optional[bool]:
        """
        Record delete intent on a source.

        An object without finalizers is removed immediately.

        Returns:
            True if the object was removed, False if it now awaits
            finalization, None if it does not exist.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                finalizers = await conn.fetchval(
                    """
                    UPDATE pubsub_sources
                    SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                        resource_version = resource_version + 1,
                        next_reconcile_time = NOW(),
                        updated_at = NOW()
                    WHERE namespace = $1 AND name = $2
                    RETURNING finalizers
                    """,
                    namespace,
                    name,
                )
                if finalizers is None:
                    return None
                if self._parse_json(finalizers, []):
                    logger.info(f"Marked PubSubSource {namespace}/{name} for deletion")
                    return False
                await self._hard_delete(conn, namespace, name)
                return True

    # ==================== Optimistic Writes ====================

    async def update_status(
        self,
        namespace: str,
        name: str,
        status: Dict[str, Any],
        resource_version: int,
    ) -> int:
        """
        Write the status of a source.

        Returns:
            The new resource version.

        Raises:
            ConflictError: The object changed since ``resource_version``
        """
        async with self.pool.acquire() as conn:
            new_version = await conn.fetchval(
                """
                UPDATE pubsub_sources
                SET status = $3,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE namespace = $1 AND name = $2 AND resource_version = $4
                RETURNING resource_version
                """,
                namespace,
                name,
                json.dumps(status),
                resource_version,
            )
        if new_version is None:
            raise ConflictError(
                f"{namespace}/{name} changed since resource version {resource_version}"
            )
        return new_version

    async def add_finalizer(
        self, namespace: str, name: str, finalizer: str, resource_version: int
    ) -> int:
        """
        Add a finalizer to a source. No-op if already present.

        Returns:
            The new resource version.

        Raises:
            ConflictError: The object changed since ``resource_version``
        """
        async with self.pool.acquire() as conn:
            new_version = await conn.fetchval(
                """
                UPDATE pubsub_sources
                SET finalizers = CASE
                        WHEN NOT finalizers @> to_jsonb($3::text)
                        THEN finalizers || to_jsonb($3::text)
                        ELSE finalizers
                    END,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE namespace = $1 AND name = $2 AND resource_version = $4
                RETURNING resource_version
                """,
                namespace,
                name,
                finalizer,
                resource_version,
            )
        if new_version is None:
            raise ConflictError(
                f"{namespace}/{name} changed since resource version {resource_version}"
            )
        return new_version

    async def remove_finalizer(
        self, namespace: str, name: str, finalizer: str, resource_version: int
    ) -> bool:
        """
        Remove a finalizer from a source.

        A source being deleted is removed for good once its last finalizer
        is gone.

        Returns:
            True if the object was removed.

        Raises:
            ConflictError: The object changed since ``resource_version``
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE pubsub_sources
                    SET finalizers = COALESCE(
                            (SELECT jsonb_agg(elem)
                             FROM jsonb_array_elements(finalizers) AS elem
                             WHERE elem #>> '{}' != $3),
                            '[]'::jsonb
                        ),
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE namespace = $1 AND name = $2 AND resource_version = $4
                    RETURNING finalizers, deletion_timestamp
                    """,
                    namespace,
                    name,
                    finalizer,
                    resource_version,
                )
                if row is None:
                    raise ConflictError(
                        f"{namespace}/{name} changed since resource version "
                        f"{resource_version}"
                    )
                if row["deletion_timestamp"] is None or self._parse_json(
                    row["finalizers"], []
                ):
                    return False
                await self._hard_delete(conn, namespace, name)
                return True

    async def _hard_delete(
        self, conn: asyncpg.Connection, namespace: str, name: str
    ) -> None:
        await conn.execute(
            "DELETE FROM pubsub_sources WHERE namespace = $1 AND name = $2",
            namespace,
            name,
        )
        logger.info(f"Hard-deleted PubSubSource {namespace}/{name}")

    # ==================== Scheduling ====================

    async def get_keys_needing_reconciliation(self, limit: int = 10) -> List[str]:
        """
        Get the keys of sources that need a reconcile pass.

        Similar to a Kubernetes work queue fed by informers: never
        reconciled, new generations, due retries and resyncs, deletions.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT namespace, name
                FROM pubsub_sources
                WHERE last_reconcile_time IS NULL
                   OR generation > COALESCE((status->>'observedGeneration')::int, 0)
                   OR next_reconcile_time <= NOW()
                ORDER BY
                    deletion_timestamp IS NULL,
                    next_reconcile_time ASC NULLS FIRST
                LIMIT $1
                """,
                limit,
            )
        return [f"{row['namespace']}/{row['name']}" for row in rows]

    async def record_failure(self, namespace: str, name: str) -> int:
        """
        Count a failed pass.

        Returns:
            The consecutive failure count, or 0 if the object is gone.
        """
        async with self.pool.acquire() as conn:
            count = await conn.fetchval(
                """
                UPDATE pubsub_sources
                SET failure_count = failure_count + 1
                WHERE namespace = $1 AND name = $2
                RETURNING failure_count
                """,
                namespace,
                name,
            )
        return count or 0

    async def schedule_reconcile(
        self,
        namespace: str,
        name: str,
        delay_seconds: float,
        reset_failures: bool = False,
    ) -> None:
        """Schedule the next pass of a source after a pass finished."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE pubsub_sources
                SET next_reconcile_time = NOW() + INTERVAL '1 second' * $3::float8,
                    last_reconcile_time = NOW(),
                    failure_count = CASE WHEN $4::boolean THEN 0 ELSE failure_count END
                WHERE namespace = $1 AND name = $2
                """,
                namespace,
                name,
                float(delay_seconds),
                reset_failures,
            )

    async def mark_for_reconciliation(self, namespace: str, name: str) -> bool:
        """Manually trigger reconciliation for a source."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE pubsub_sources
                SET next_reconcile_time = NOW()
                WHERE namespace = $1 AND name = $2
                """,
                namespace,
                name,
            )
        return result != "UPDATE 0"

    # ==================== History ====================

    async def record_reconciliation(
        self,
        namespace: str,
        name: str,
        success: bool,
        phase: str,
        message: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        trigger_reason: Optional[str] = None,
    ) -> None:
        """Record a reconcile pass in history. Passes on removed objects are skipped."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO reconciliation_history (
                    source_id, generation, success, phase,
                    message, duration_seconds, trigger_reason
                )
                SELECT id, generation, $3, $4, $5, $6, $7
                FROM pubsub_sources
                WHERE namespace = $1 AND name = $2
                """,
                namespace,
                name,
                success,
                phase,
                message,
                duration_seconds,
                trigger_reason,
            )

    async def get_reconciliation_history(
        self, namespace: str, name: str, limit: int = 10
    ) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT h.*
                FROM reconciliation_history h
                JOIN pubsub_sources s ON s.id = h.source_id
                WHERE s.namespace = $1 AND s.name = $2
                ORDER BY h.reconcile_time DESC
                LIMIT $3
                """,
                namespace,
                name,
                limit,
            )
        return [dict(row) for row in rows]

    # ==================== Helpers ====================

    @staticmethod
    def _parse_json(value: Any, default: Any) -> Any:
        if value is None:
            return default
        return json.loads(value) if isinstance(value, str) else value

    def _parse_source_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """
        Parse a source row, converting JSON fields.

        Args:
            row: An asyncpg.Record from a query on pubsub_sources

        Returns:
            A dictionary with JSON fields (spec, annotations, status,
            finalizers) parsed and the uid as a string
        """
        result = dict(row)
        result["uid"] = str(result["uid"])
        result["spec"] = self._parse_json(result.get("spec"), {})
        result["annotations"] = self._parse_json(result.get("annotations"), {})
        result["status"] = self._parse_json(result.get("status"), {})
        result["finalizers"] = self._parse_json(result.get("finalizers"), []) or []
        return result

    def _calculate_spec_hash(self, spec: Dict[str, Any]) -> str:
        """Calculate a hash of the spec for change detection."""
        spec_string = json.dumps(spec, sort_keys=True)
        return hashlib.sha256(spec_string.encode()).hexdigest()
