"""
In-memory state store for paper runs and tests.
"""
import asyncio
import copy
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from loguru import logger

from models import DailyStats, Position, PositionStatus, TradeHistory


class InMemoryStateStore:
    """
    Dict-backed IStateStore. Positions are deep-copied on the way in and out so
    callers never share mutable state with the store.
    """

    def __init__(self):
        self._positions: Dict[str, Position] = {}
        self._history: List[TradeHistory] = []
        self._lock = asyncio.Lock()

    async def save_position(self, position: Position) -> None:
        async with self._lock:
            self._positions[position.id] = copy.deepcopy(position)
        logger.debug(f"Saved position {position.id}")

    async def get_open_positions(self) -> List[Position]:
        async with self._lock:
            return [copy.deepcopy(p) for p in self._positions.values() if not p.is_closed]

    async def get_position(self, position_id: str) -> Optional[Position]:
        async with self._lock:
            p = self._positions.get(position_id)
            return copy.deepcopy(p) if p else None

    async def update_position(self, position: Position) -> None:
        async with self._lock:
            if position.id not in self._positions:
                raise KeyError(f"unknown position {position.id}")
            self._positions[position.id] = copy.deepcopy(position)

    async def close_position(self, position: Position, history: List[TradeHistory]) -> None:
        """Replace the record with its CLOSED form and append the exit rows in one step."""
        final = copy.deepcopy(position)
        final.status = PositionStatus.CLOSED
        final.remaining_size = Decimal("0")
        async with self._lock:
            if position.id not in self._positions:
                raise KeyError(f"unknown position {position.id}")
            self._positions[position.id] = final
            self._history.extend(history)

    async def append_history(self, history: TradeHistory) -> None:
        async with self._lock:
            self._history.append(history)

    async def get_history(self, day: Optional[date] = None) -> List[TradeHistory]:
        async with self._lock:
            records = list(self._history)
        if day is None:
            return records
        return [h for h in records if h.exit_time.date() == day]

    async def daily_realized_pnl(self, day: date) -> Decimal:
        return DailyStats.from_history(await self.get_history(), day).realized_pnl
