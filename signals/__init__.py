"""Signal sources: where trade proposals come from."""
from signals.static_source import StaticSignalSource
from signals.redis_source import RedisSignalSource

__all__ = ["StaticSignalSource", "RedisSignalSource"]
