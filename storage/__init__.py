"""Position and trade-history persistence."""
from storage.memory_store import InMemoryStateStore
from storage.redis_store import RedisStateStore

__all__ = ["InMemoryStateStore", "RedisStateStore"]
