"""
Paper Exchange Adapter
In-memory exchange for dry runs and development without API access
"""
from __future__ import annotations

import itertools
import time
from collections import defaultdict, deque
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional

from loguru import logger

from exchange.errors import ErrorKind, ExchangeError
from models import Balance, ExchangePosition, Order, to_decimal

DEFAULT_PRICES = {
    "BTC/USDT": Decimal("45000"),
    "ETH/USDT": Decimal("2500"),
    "SOL/USDT": Decimal("100"),
    "BNB/USDT": Decimal("300"),
}


class PaperExchangeAdapter:
    """
    Mock exchange.

    Features:
    - Fixed starting balance, settable per-symbol prices
    - Market orders fill instantly at the current price
    - Stop-loss / take-profit orders rest until cancelled
    - Fault injection (fail_next) for exercising retry paths
    """

    def __init__(self, balances: Optional[Dict[str, Decimal]] = None,
                 prices: Optional[Dict[str, Decimal]] = None):
        starting = balances or {"USDT": Decimal("10000"), "BTC": Decimal("0.5"),
                                "ETH": Decimal("5")}
        self._balances = {k: to_decimal(v) for k, v in starting.items()}
        self._prices: Dict[str, Decimal] = dict(DEFAULT_PRICES)
        for sym, p in (prices or {}).items():
            self._prices[sym] = to_decimal(p)
        self._orders: Dict[str, Order] = {}
        self._ids = itertools.count(1)
        self._faults: Dict[str, Deque[ExchangeError]] = defaultdict(deque)
        self.status = "ok"
        self.leverage: Dict[str, int] = {}
        self.created_orders: List[Order] = []
        self.cancelled_orders: List[str] = []
        self.calls: List[str] = []
        logger.info("🎭 Exchange: Mock mode enabled (no real trading)")

    # ── Test / simulation controls ───────────────────────────────────────

    def set_price(self, symbol: str, price) -> None:
        self._prices[symbol] = to_decimal(price)

    def set_balance(self, currency: str, amount) -> None:
        self._balances[currency] = to_decimal(amount)

    def fail_next(self, operation: str, kind: ErrorKind, times: int = 1,
                  message: str = "injected failure") -> None:
        """Make the next `times` calls of `operation` raise ExchangeError(kind)."""
        for _ in range(times):
            self._faults[operation].append(ExchangeError(kind, message, operation))

    def mark_filled(self, order_id: str) -> None:
        """Simulate the exchange executing a resting order."""
        order = self._orders[order_id]
        order.filled, order.remaining, order.status = order.amount, Decimal("0"), "closed"

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if self._faults[operation]:
            raise self._faults[operation].popleft()

    # ── Adapter API ──────────────────────────────────────────────────────

    async def test_connection(self) -> bool:
        self._enter("test_connection")
        logger.info("✅ Mock connection successful")
        return True

    async def fetch_balance(self) -> Dict[str, Balance]:
        self._enter("fetch_balance")
        return {cur: Balance(currency=cur, free=amt, used=Decimal("0"), total=amt)
                for cur, amt in self._balances.items() if amt > 0}

    async def fetch_price(self, symbol: str) -> Decimal:
        self._enter("fetch_price")
        return self._prices.get(symbol, Decimal("100"))

    async def create_order(self, symbol: str, side: str, type: str, amount: Decimal,
                           price: Optional[Decimal] = None,
                           params: Optional[Dict[str, Any]] = None) -> Order:
        self._enter("create_order")
        if amount <= 0:
            raise ExchangeError(ErrorKind.REJECTED, f"invalid amount {amount}", "create_order")
        fill_price = price if (type == "limit" and price is not None) else \
            self._prices.get(symbol, Decimal("100"))
        return self._new_order(symbol, side, type, amount, fill_price, filled=True)

    async def create_stop_loss(self, symbol: str, side: str, amount: Decimal,
                               stop_price: Decimal) -> Order:
        self._enter("create_stop_loss")
        return self._new_order(symbol, side, "stop_market", amount, stop_price, filled=False)

    async def create_take_profit(self, symbol: str, side: str, amount: Decimal,
                                 price: Decimal) -> Order:
        self._enter("create_take_profit")
        return self._new_order(symbol, side, "take_profit", amount, price, filled=False)

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        self._enter("cancel_order")
        order = self._orders.get(order_id)
        if order is None or order.status != "open":
            raise ExchangeError(ErrorKind.REJECTED, f"order {order_id} not open", "cancel_order")
        order.status = "canceled"
        self.cancelled_orders.append(order_id)
        logger.info(f"🎭 Mock: Cancelled order {order_id}")

    async def fetch_order(self, order_id: str, symbol: str) -> Order:
        self._enter("fetch_order")
        order = self._orders.get(order_id)
        if order is None:
            raise ExchangeError(ErrorKind.REJECTED, f"order {order_id} not found", "fetch_order")
        return order

    async def fetch_open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        self._enter("fetch_open_orders")
        return [o for o in self._orders.values()
                if o.status == "open" and (symbol is None or o.symbol == symbol)]

    async def fetch_positions(self, symbol: Optional[str] = None) -> List[ExchangePosition]:
        self._enter("fetch_positions")
        return []

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        self._enter("set_leverage")
        self.leverage[symbol] = leverage

    async def fetch_status(self) -> str:
        self._enter("fetch_status")
        return self.status

    async def close(self) -> None:
        return None

    # ── Helpers ──────────────────────────────────────────────────────────

    def _new_order(self, symbol, side, type_, amount, price, filled: bool) -> Order:
        amount = to_decimal(amount)
        order = Order(
            id=f"MOCK_{next(self._ids)}", symbol=symbol, side=side, type=type_,
            price=to_decimal(price), amount=amount,
            filled=amount if filled else Decimal("0"),
            remaining=Decimal("0") if filled else amount,
            status="closed" if filled else "open",
            timestamp=int(time.time() * 1000))
        self._orders[order.id] = order
        self.created_orders.append(order)
        return order

    def orders_by_type(self, type_: str) -> List[Order]:
        return [o for o in self.created_orders if o.type == type_]
