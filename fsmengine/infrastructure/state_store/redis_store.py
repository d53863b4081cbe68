"""Redis-based state store implementation.

This module provides a Redis implementation of the StateStore interface for
deployments where several engine instances share entities. Entity locks are
Redis locks (``SET NX PX`` with a token), commits are ``MULTI``/``EXEC``
transactions guarded by ``WATCH`` on the entity key.

Example:
    ```python
    import os
    os.environ["REDIS_URL"] = "redis://localhost:6379/0"

    from fsmengine.infrastructure.state_store.redis_store import RedisStateStore

    store = RedisStateStore()
    entity = await store.get_entity("order", "123")
    await store.close()
    ```
"""

import json
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from redis.asyncio import Redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import LockError, RedisError, WatchError

from fsmengine.domain.errors import (
    AlreadyExistsError,
    ConcurrentModificationError,
    NotFoundError,
    StoreError,
    TransitionTimeoutError,
)
from fsmengine.domain.interfaces.state_store import StateStore
from fsmengine.domain.models.entity import EntityRecord
from fsmengine.domain.models.history import HistoryQuery, HistoryRecord
from fsmengine.domain.models.machine import MachineConfig

logger = structlog.get_logger(__name__)

# Redis key patterns (relative to the key prefix)
KEY_PATTERN_MACHINE = "machine:{machine}"
KEY_MACHINES = "machines"
KEY_PATTERN_ENTITY = "entity:{machine}:{entity_id}"
KEY_PATTERN_STATE_INDEX = "state-index:{machine}:{state}"
KEY_PATTERN_HISTORY = "history:{machine}:{entity_id}"
KEY_PATTERN_HISTORY_INDEX = "history-index:{machine}"
KEY_HISTORY_SEQUENCE = "history:sequence"
KEY_PATTERN_LOCK = "lock:{machine}:{entity_id}"

DEFAULT_KEY_PREFIX = "fsm:"
DEFAULT_LOCK_TTL = 30.0  # seconds
DEFAULT_MAX_WATCH_RETRIES = 10


class RedisStateStore(StateStore):
    """Redis-based implementation of StateStore interface.

    Layout:
        - ``machine:{machine}``: machine configuration as JSON, names in the
          ``machines`` set
        - ``entity:{machine}:{entity_id}``: entity record as JSON
        - ``state-index:{machine}:{state}``: set of entity ids in a state
        - ``history:{machine}:{entity_id}``: list of history records as JSON
        - ``history-index:{machine}``: set of entity ids with history
        - ``history:sequence``: counter for history surrogate ids

    Unlike a cache, this store never falls back to memory on connection
    errors: every backend failure surfaces as StoreError so callers know the
    operation was not committed.

    Attributes:
        _redis: Redis async client instance
        _connection_pool: Redis connection pool
        _prefix: Prefix prepended to every key
        _lock_ttl: Expiry of entity locks in seconds
    """

    def __init__(
        self,
        redis_url: str | None = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        lock_ttl: float = DEFAULT_LOCK_TTL,
        connection_timeout: int = 5,
        max_connections: int = 10,
        client: Redis | None = None,
    ) -> None:
        """Initialize RedisStateStore with connection configuration.

        Args:
            redis_url: Redis connection URL. If None, reads from REDIS_URL
                environment variable.
            key_prefix: Prefix for all keys written by this store.
            lock_ttl: Seconds after which an abandoned entity lock expires.
            connection_timeout: Connection timeout in seconds (default: 5).
            max_connections: Maximum connections in the pool (default: 10).
            client: Pre-built Redis client (must use decode_responses=True).
                When given, redis_url is ignored.

        Raises:
            StoreError: If neither a client nor a connection URL is available.
        """
        self._prefix = key_prefix
        self._lock_ttl = lock_ttl
        self._connection_pool: ConnectionPool | None = None

        if client is not None:
            self._redis_url = redis_url
            self._redis = client
            return

        self._redis_url = redis_url or os.getenv("REDIS_URL")
        if not self._redis_url:
            raise StoreError(
                "Redis connection URL not provided. Set REDIS_URL environment variable "
                "or pass redis_url parameter."
            )

        try:
            self._connection_pool = ConnectionPool.from_url(
                self._redis_url,
                max_connections=max_connections,
                socket_connect_timeout=connection_timeout,
                socket_timeout=connection_timeout,
                decode_responses=True,
            )
            self._redis = Redis(connection_pool=self._connection_pool)
        except (RedisError, ValueError) as e:
            raise StoreError(f"Failed to initialize Redis connection: {e}") from e

    def _key(self, pattern: str, **kwargs: str) -> str:
        return self._prefix + pattern.format(**kwargs)

    def _entity_key(self, machine: str, entity_id: str) -> str:
        return self._key(KEY_PATTERN_ENTITY, machine=machine, entity_id=entity_id)

    def _index_key(self, machine: str, state: str) -> str:
        return self._key(KEY_PATTERN_STATE_INDEX, machine=machine, state=state)

    def _history_key(self, machine: str, entity_id: str) -> str:
        return self._key(KEY_PATTERN_HISTORY, machine=machine, entity_id=entity_id)

    async def save_machine_config(self, config: MachineConfig) -> None:
        """Save a machine configuration (upsert by machine name)."""
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(
                    self._key(KEY_PATTERN_MACHINE, machine=config.machine),
                    config.model_dump_json(),
                )
                pipe.sadd(self._key(KEY_MACHINES), config.machine)
                await pipe.execute()
        except RedisError as e:
            raise StoreError(f"Failed to save machine {config.machine}: {e}") from e

    async def get_machine_config(self, machine: str) -> MachineConfig | None:
        """Retrieve a machine configuration by name."""
        try:
            raw = await self._redis.get(self._key(KEY_PATTERN_MACHINE, machine=machine))
        except RedisError as e:
            raise StoreError(f"Failed to get machine {machine}: {e}") from e
        if raw is None:
            return None
        try:
            return MachineConfig.model_validate_json(raw)
        except ValueError as e:
            raise StoreError(f"Stored configuration of machine {machine} is unreadable: {e}") from e

    async def list_machine_names(self) -> list[str]:
        """List all stored machine names, sorted."""
        try:
            names = await self._redis.smembers(self._key(KEY_MACHINES))  # type: ignore[misc]
        except RedisError as e:
            raise StoreError(f"Failed to list machines: {e}") from e
        return sorted(names)

    @asynccontextmanager
    async def entity_lock(
        self,
        machine: str,
        entity_id: str,
        timeout: float | None = None,
    ) -> AsyncIterator[None]:
        """Hold a Redis lock on one (machine, entity_id) pair.

        The lock expires after ``lock_ttl`` seconds so a crashed holder
        cannot block an entity forever; the commit's changetime check guards
        against a holder that outlived its lock.
        """
        lock = self._redis.lock(
            self._key(KEY_PATTERN_LOCK, machine=machine, entity_id=entity_id),
            timeout=self._lock_ttl,
            blocking_timeout=timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            raise StoreError(f"Failed to acquire lock on {machine}:{entity_id}: {e}") from e
        if not acquired:
            raise TransitionTimeoutError(
                f"Timed out after {timeout}s waiting for lock on {machine}:{entity_id}"
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                logger.warning(
                    "Entity lock expired before release",
                    machine=machine,
                    entity_id=entity_id,
                    lock_ttl=self._lock_ttl,
                    error=str(e),
                )

    async def get_entity(self, machine: str, entity_id: str) -> EntityRecord | None:
        """Retrieve an entity record."""
        try:
            raw = await self._redis.get(self._entity_key(machine, entity_id))
        except RedisError as e:
            raise StoreError(f"Failed to get entity {machine}:{entity_id}: {e}") from e
        if raw is None:
            return None
        return self._load_entity(raw)

    async def create_entity(self, entity: EntityRecord, history: HistoryRecord) -> HistoryRecord:
        """Insert a new entity together with its creation history record."""
        entity_key = self._entity_key(entity.machine, entity.entity_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                for _ in range(DEFAULT_MAX_WATCH_RETRIES):
                    try:
                        await pipe.watch(entity_key)
                        if await pipe.exists(entity_key):
                            raise AlreadyExistsError(
                                f"Entity {entity.entity_id} already exists "
                                f"in machine {entity.machine}"
                            )
                        record = history.model_copy(update={"id": await self._next_history_id()})
                        pipe.multi()
                        pipe.set(entity_key, entity.model_dump_json())
                        pipe.sadd(self._index_key(entity.machine, entity.state), entity.entity_id)
                        self._queue_history(pipe, record)
                        await pipe.execute()
                        return record
                    except WatchError:
                        continue
        except RedisError as e:
            raise StoreError(
                f"Failed to create entity {entity.machine}:{entity.entity_id}: {e}"
            ) from e
        raise StoreError(
            f"Failed to create entity {entity.machine}:{entity.entity_id}: too much contention"
        )

    async def commit(
        self,
        entity: EntityRecord | None,
        history: HistoryRecord | None,
        expected_changetime: datetime | None = None,
    ) -> HistoryRecord | None:
        """Atomically overwrite an entity and/or append a history record."""
        if entity is not None:
            machine, entity_id = entity.key
        elif history is not None:
            machine, entity_id = history.machine, history.entity_id
        else:
            raise StoreError("Nothing to commit")
        if (
            history is not None
            and entity is not None
            and (history.machine, history.entity_id) != entity.key
        ):
            raise StoreError("Entity and history record belong to different entities")

        entity_key = self._entity_key(machine, entity_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(entity_key)
                raw = await pipe.get(entity_key)
                if raw is None:
                    raise NotFoundError(f"Entity {entity_id} does not exist in machine {machine}")
                current = self._load_entity(raw)
                if expected_changetime is not None and current.changetime != expected_changetime:
                    raise ConcurrentModificationError(
                        f"Entity {machine}:{entity_id} changed since it was read"
                    )

                record = None
                if history is not None:
                    record = history.model_copy(update={"id": await self._next_history_id()})

                pipe.multi()
                if entity is not None:
                    pipe.set(entity_key, entity.model_dump_json())
                    pipe.srem(self._index_key(machine, current.state), entity_id)
                    pipe.sadd(self._index_key(machine, entity.state), entity_id)
                if record is not None:
                    self._queue_history(pipe, record)
                await pipe.execute()
                return record
        except WatchError as e:
            raise ConcurrentModificationError(
                f"Entity {machine}:{entity_id} changed during commit"
            ) from e
        except RedisError as e:
            raise StoreError(f"Failed to commit {machine}:{entity_id}: {e}") from e

    async def find_entity_ids(self, machine: str, state: str) -> list[str]:
        """Return the ids of all entities of ``machine`` in ``state``."""
        try:
            ids = await self._redis.smembers(self._index_key(machine, state))  # type: ignore[misc]
        except RedisError as e:
            raise StoreError(f"Failed to find entities of {machine} in {state}: {e}") from e
        return sorted(ids)

    async def get_history(self, machine: str, entity_id: str) -> list[HistoryRecord]:
        """Return an entity's history ordered by (changetime, id)."""
        try:
            raw_records = await self._redis.lrange(  # type: ignore[misc]
                self._history_key(machine, entity_id), 0, -1
            )
        except RedisError as e:
            raise StoreError(f"Failed to get history of {machine}:{entity_id}: {e}") from e
        records = [self._load_history(raw) for raw in raw_records]
        return sorted(records, key=HistoryRecord.sort_key)

    async def query_history(self, query: HistoryQuery) -> list[HistoryRecord]:
        """Return history records matching ``query``.

        Without a machine filter this walks every machine's history index,
        which is meant for audits rather than hot paths.
        """
        try:
            if query.machine is not None:
                machines = [query.machine]
            else:
                machines = await self.list_machine_names()

            candidates: list[HistoryRecord] = []
            for machine in machines:
                if query.entity_id is not None:
                    entity_ids = [query.entity_id]
                else:
                    entity_ids = sorted(
                        await self._redis.smembers(  # type: ignore[misc]
                            self._key(KEY_PATTERN_HISTORY_INDEX, machine=machine)
                        )
                    )
                for entity_id in entity_ids:
                    candidates.extend(await self.get_history(machine, entity_id))
        except RedisError as e:
            raise StoreError(f"Failed to query history: {e}") from e

        results = sorted((r for r in candidates if query.matches(r)), key=HistoryRecord.sort_key)
        return query.paginate(results)

    async def check_connection(self) -> bool:
        """Check if Redis connection is healthy."""
        try:
            await self._redis.ping()
            return True
        except RedisError:
            return False

    async def close(self) -> None:
        """Close Redis connection and cleanup resources."""
        await self._redis.aclose()
        if self._connection_pool:
            await self._connection_pool.disconnect()

    async def _next_history_id(self) -> int:
        return int(await self._redis.incr(self._key(KEY_HISTORY_SEQUENCE)))

    def _queue_history(self, pipe: object, record: HistoryRecord) -> None:
        pipe.rpush(  # type: ignore[attr-defined]
            self._history_key(record.machine, record.entity_id), record.model_dump_json()
        )
        pipe.sadd(  # type: ignore[attr-defined]
            self._key(KEY_PATTERN_HISTORY_INDEX, machine=record.machine), record.entity_id
        )

    @staticmethod
    def _load_entity(raw: str) -> EntityRecord:
        try:
            return EntityRecord(**json.loads(raw))
        except ValueError as e:
            raise StoreError(f"Stored entity is unreadable: {e}") from e

    @staticmethod
    def _load_history(raw: str) -> HistoryRecord:
        try:
            return HistoryRecord(**json.loads(raw))
        except ValueError as e:
            raise StoreError(f"Stored history record is unreadable: {e}") from e
