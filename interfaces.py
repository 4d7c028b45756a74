"""
Protocol interfaces for dependency injection (DIP — Dependency Inversion Principle).

The execution core depends on these abstractions, not on concrete
implementations.  This allows swapping live ↔ paper ↔ mock exchanges and
Redis ↔ in-memory persistence without touching business logic.
"""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from models import (
    Balance, ExchangePosition, Order, Position, Signal, TradeHistory,
)


# ── Exchange Adapter ─────────────────────────────────────────────────────────

@runtime_checkable
class IExchangeAdapter(Protocol):
    """
    Exchange access. Every method raises exchange.errors.ExchangeError with a
    classified ErrorKind on failure; callers never see raw client exceptions.
    """

    async def fetch_balance(self) -> Dict[str, Balance]: ...

    async def fetch_price(self, symbol: str) -> Decimal: ...

    async def create_order(self, symbol: str, side: str, type: str, amount: Decimal,
                           price: Optional[Decimal] = None,
                           params: Optional[Dict[str, Any]] = None) -> Order: ...

    async def create_stop_loss(self, symbol: str, side: str, amount: Decimal,
                               stop_price: Decimal) -> Order: ...

    async def create_take_profit(self, symbol: str, side: str, amount: Decimal,
                                 price: Decimal) -> Order: ...

    async def cancel_order(self, order_id: str, symbol: str) -> None: ...

    async def fetch_order(self, order_id: str, symbol: str) -> Order: ...

    async def fetch_open_orders(self, symbol: Optional[str] = None) -> List[Order]: ...

    async def fetch_positions(self, symbol: Optional[str] = None) -> List[ExchangePosition]: ...

    async def set_leverage(self, symbol: str, leverage: int) -> None: ...

    async def fetch_status(self) -> str: ...

    async def close(self) -> None: ...


# ── Signal Source ────────────────────────────────────────────────────────────

@runtime_checkable
class ISignalSource(Protocol):
    """Latest trade proposal per symbol (also used for reversal checks)."""

    async def current_signal(self, symbol: str) -> Optional[Signal]: ...

    async def next_signal(self) -> Optional[Signal]:
        """Pop the oldest proposal awaiting execution, if any."""
        ...


# ── State Store ──────────────────────────────────────────────────────────────

@runtime_checkable
class IStateStore(Protocol):
    """Durable home of open positions and the append-only trade history."""

    async def save_position(self, position: Position) -> None: ...

    async def get_open_positions(self) -> List[Position]: ...

    async def get_position(self, position_id: str) -> Optional[Position]: ...

    async def update_position(self, position: Position) -> None: ...

    async def close_position(self, position: Position, history: List[TradeHistory]) -> None:
        """Store the final CLOSED record and its exit rows atomically."""

    async def append_history(self, history: TradeHistory) -> None: ...

    async def get_history(self, day: Optional[date] = None) -> List[TradeHistory]: ...

    async def daily_realized_pnl(self, day: date) -> Decimal: ...


# ── Notifier ─────────────────────────────────────────────────────────────────

@runtime_checkable
class INotifier(Protocol):
    """Outbound alerts. Fire-and-forget: implementations must not raise."""

    async def send_trade_alert(self, kind: str, payload: Dict[str, Any]) -> None: ...

    async def send_risk_alert(self, message: str) -> None: ...
