"""State store implementations."""

from fsmengine.infrastructure.state_store.memory_store import InMemoryStateStore
from fsmengine.infrastructure.state_store.redis_store import RedisStateStore

__all__ = ["InMemoryStateStore", "RedisStateStore"]
