"""
Redis signal source.

The external generator LPUSHes signal JSON onto {prefix}:signals:inbox;
the bot pops from the other end (FIFO). Every accepted signal is also
written to {prefix}:signals:latest (hash symbol -> JSON) for reversal checks.
"""
import json
from typing import Optional

import redis.asyncio as aioredis
from loguru import logger

from config import RedisConfig
from models import Signal


class RedisSignalSource:

    def __init__(self, client: aioredis.Redis, prefix: str = "autotrader"):
        self._r = client
        self._inbox = f"{prefix}:signals:inbox"
        self._latest = f"{prefix}:signals:latest"

    @classmethod
    def from_config(cls, cfg: RedisConfig) -> "RedisSignalSource":
        client = aioredis.Redis(host=cfg.host, port=cfg.port, db=cfg.db,
                                decode_responses=True, socket_connect_timeout=5)
        return cls(client, cfg.prefix)

    async def publish(self, signal: Signal) -> None:
        await self._r.lpush(self._inbox, json.dumps(signal.to_dict()))

    async def current_signal(self, symbol: str) -> Optional[Signal]:
        raw = await self._r.hget(self._latest, symbol)
        if not raw:
            return None
        try:
            return Signal.from_dict(json.loads(raw))
        except (ValueError, KeyError) as e:
            logger.warning(f"Discarding malformed latest signal for {symbol}: {e}")
            return None

    async def next_signal(self) -> Optional[Signal]:
        """Pop the oldest proposal. Malformed payloads are logged and dropped."""
        while True:
            raw = await self._r.rpop(self._inbox)
            if raw is None:
                return None
            try:
                signal = Signal.from_dict(json.loads(raw))
            except (ValueError, KeyError, TypeError) as e:
                logger.error(f"Dropping malformed signal payload: {e} | {raw[:200]}")
                continue
            await self._r.hset(self._latest, signal.symbol, raw)
            return signal

    async def close(self) -> None:
        await self._r.aclose()
