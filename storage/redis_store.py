"""
Redis-backed state store.

Keys (all under the configured prefix):
    {prefix}:positions            hash  id -> position JSON (open and closed)
    {prefix}:positions:open       set   ids of positions not yet CLOSED
    {prefix}:history              list  TradeHistory JSON, append-only
    {prefix}:history:{YYYY-MM-DD} list  same records bucketed by UTC exit date
"""
import json
from datetime import date, timezone
from decimal import Decimal
from typing import List, Optional

import redis.asyncio as aioredis
from loguru import logger

from config import RedisConfig
from models import Position, PositionStatus, TradeHistory, to_decimal

HISTORY_DAY_TTL_SEC = 14 * 24 * 3600


class RedisStateStore:
    """IStateStore over redis.asyncio. Multi-key writes go through MULTI/EXEC."""

    def __init__(self, client: aioredis.Redis, prefix: str = "autotrader"):
        self._r = client
        self._prefix = prefix

    @classmethod
    def from_config(cls, cfg: RedisConfig) -> "RedisStateStore":
        client = aioredis.Redis(host=cfg.host, port=cfg.port, db=cfg.db,
                                decode_responses=True, socket_connect_timeout=5)
        logger.info(f"Redis state store → {cfg.host}:{cfg.port}/{cfg.db} ({cfg.prefix})")
        return cls(client, cfg.prefix)

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix,) + parts)

    async def close(self) -> None:
        await self._r.aclose()

    # ── Positions ────────────────────────────────────────────────────────

    async def save_position(self, position: Position) -> None:
        async with self._r.pipeline(transaction=True) as pipe:
            pipe.hset(self._key("positions"), position.id, json.dumps(position.to_dict()))
            if position.is_closed:
                pipe.srem(self._key("positions", "open"), position.id)
            else:
                pipe.sadd(self._key("positions", "open"), position.id)
            await pipe.execute()

    async def get_open_positions(self) -> List[Position]:
        ids = sorted(await self._r.smembers(self._key("positions", "open")))
        if not ids:
            return []
        raw = await self._r.hmget(self._key("positions"), ids)
        positions = [Position.from_dict(json.loads(r)) for r in raw if r]
        positions.sort(key=lambda p: p.open_time)
        return [p for p in positions if not p.is_closed]

    async def get_position(self, position_id: str) -> Optional[Position]:
        raw = await self._r.hget(self._key("positions"), position_id)
        return Position.from_dict(json.loads(raw)) if raw else None

    async def update_position(self, position: Position) -> None:
        if not await self._r.hexists(self._key("positions"), position.id):
            raise KeyError(f"unknown position {position.id}")
        await self.save_position(position)

    async def close_position(self, position: Position, history: List[TradeHistory]) -> None:
        if not await self._r.hexists(self._key("positions"), position.id):
            raise KeyError(f"unknown position {position.id}")
        final = Position.from_dict(position.to_dict())
        final.status = PositionStatus.CLOSED
        final.remaining_size = Decimal("0")
        async with self._r.pipeline(transaction=True) as pipe:
            pipe.hset(self._key("positions"), final.id, json.dumps(final.to_dict()))
            pipe.srem(self._key("positions", "open"), final.id)
            for record in history:
                self._queue_history(pipe, record, json.dumps(record.to_dict()))
            await pipe.execute()

    # ── History ──────────────────────────────────────────────────────────

    def _day_key(self, day: date) -> str:
        return self._key("history", day.isoformat())

    def _queue_history(self, pipe, history: TradeHistory, record: str) -> None:
        day_key = self._day_key(history.exit_time.astimezone(timezone.utc).date())
        pipe.rpush(self._key("history"), record)
        pipe.rpush(day_key, record)
        pipe.expire(day_key, HISTORY_DAY_TTL_SEC)

    async def append_history(self, history: TradeHistory) -> None:
        async with self._r.pipeline(transaction=True) as pipe:
            self._queue_history(pipe, history, json.dumps(history.to_dict()))
            await pipe.execute()

    async def get_history(self, day: Optional[date] = None) -> List[TradeHistory]:
        key = self._day_key(day) if day else self._key("history")
        return [TradeHistory.from_dict(json.loads(r)) for r in await self._r.lrange(key, 0, -1)]

    async def daily_realized_pnl(self, day: date) -> Decimal:
        records = await self._r.lrange(self._day_key(day), 0, -1)
        return sum((to_decimal(json.loads(r)["pnl"]) for r in records), Decimal("0"))
