"""
ccxt Exchange Adapter
Live exchange access through ccxt.async_support

Supports:
- Testnet (sandbox) and production environments
- Reduce-only stop-loss / take-profit trigger orders
- Error classification into ErrorKind at the boundary
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import ccxt.async_support as ccxt
from loguru import logger

from config import ExchangeConfig
from exchange.errors import ErrorKind, ExchangeError
from models import Balance, ExchangePosition, Order, to_decimal

T = TypeVar("T")


def classify_error(operation: str, error: Exception) -> ExchangeError:
    """Map a ccxt exception onto the structured ErrorKind taxonomy."""
    message = str(error) or error.__class__.__name__
    # Order matters: subclasses are checked before their bases.
    if isinstance(error, ccxt.AuthenticationError):
        kind = ErrorKind.AUTH
    elif isinstance(error, (ccxt.RateLimitExceeded, ccxt.DDoSProtection)):
        kind = ErrorKind.RATE_LIMIT
    elif isinstance(error, ccxt.InsufficientFunds):
        kind = ErrorKind.INSUFFICIENT_BALANCE
    elif isinstance(error, ccxt.OnMaintenance):
        kind = ErrorKind.MAINTENANCE
    elif isinstance(error, (ccxt.InvalidOrder, ccxt.BadRequest, ccxt.BadSymbol,
                            ccxt.ArgumentsRequired, ccxt.NotSupported)):
        kind = ErrorKind.REJECTED
    elif isinstance(error, (ccxt.RequestTimeout, ccxt.NetworkError,
                            ccxt.ExchangeNotAvailable)):
        kind = ErrorKind.NETWORK
    else:
        kind = ErrorKind.UNKNOWN
    return ExchangeError(kind, message, operation)


def _to_order(raw: Dict[str, Any]) -> Order:
    return Order(
        id=str(raw["id"]),
        symbol=raw.get("symbol") or "",
        side=raw.get("side") or "",
        type=raw.get("type") or "",
        price=to_decimal(raw.get("average") or raw.get("price") or 0),
        amount=to_decimal(raw.get("amount") or 0),
        filled=to_decimal(raw.get("filled") or 0),
        remaining=to_decimal(raw.get("remaining") or 0),
        status=raw.get("status") or "open",
        timestamp=int(raw.get("timestamp") or datetime.now(timezone.utc).timestamp() * 1000),
    )


class CcxtExchangeAdapter:
    """Unified ccxt-backed exchange adapter."""

    def __init__(self, cfg: ExchangeConfig):
        self.cfg = cfg
        exchange_cls = getattr(ccxt, cfg.exchange_id)
        self.exchange = exchange_cls({
            "apiKey": cfg.api_key,
            "secret": cfg.secret,
            "enableRateLimit": True,
            "options": {"recvWindow": cfg.recv_window_ms},
        })
        if cfg.testnet:
            self.exchange.set_sandbox_mode(True)
            logger.info(f"🧪 Exchange: {cfg.exchange_id} testnet mode enabled")
        else:
            logger.info(f"💰 Exchange: {cfg.exchange_id} production mode enabled")
        self._markets_loaded = False

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        except ccxt.BaseError as e:
            raise classify_error(operation, e) from e

    async def _ensure_markets(self) -> None:
        if not self._markets_loaded:
            await self._call("load_markets", self.exchange.load_markets)
            self._markets_loaded = True

    async def _amount(self, symbol: str, amount: Decimal) -> float:
        await self._ensure_markets()
        return float(self.exchange.amount_to_precision(symbol, float(amount)))

    # ── Connectivity ─────────────────────────────────────────────────────

    async def test_connection(self) -> bool:
        """Check connectivity via server time. Failures raise so callers can retry them."""
        ts = await self._call("fetch_time", self.exchange.fetch_time)
        logger.info(f"✅ Connected to exchange (server time: "
                    f"{datetime.fromtimestamp(ts / 1000, timezone.utc).isoformat()})")
        return True

    async def fetch_status(self) -> str:
        try:
            status = await self._call("fetch_status", self.exchange.fetch_status)
        except ExchangeError as e:
            if e.kind is ErrorKind.REJECTED:
                return "ok"  # exchange does not expose a status endpoint
            raise
        return (status or {}).get("status") or "ok"

    # ── Account ──────────────────────────────────────────────────────────

    async def fetch_balance(self) -> Dict[str, Balance]:
        raw = await self._call("fetch_balance", self.exchange.fetch_balance)
        totals = raw.get("total") or {}
        return {
            cur: Balance(currency=cur,
                         free=to_decimal(raw.get("free", {}).get(cur) or 0),
                         used=to_decimal(raw.get("used", {}).get(cur) or 0),
                         total=to_decimal(total))
            for cur, total in totals.items() if total and total > 0
        }

    async def fetch_price(self, symbol: str) -> Decimal:
        ticker = await self._call("fetch_price", lambda: self.exchange.fetch_ticker(symbol))
        last = ticker.get("last")
        if not last:
            raise ExchangeError(ErrorKind.UNKNOWN, f"no last price for {symbol}", "fetch_price")
        return to_decimal(last)

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await self._call("set_leverage", lambda: self.exchange.set_leverage(leverage, symbol))

    async def fetch_positions(self, symbol: Optional[str] = None) -> List[ExchangePosition]:
        symbols = [symbol] if symbol else None
        try:
            raw = await self._call("fetch_positions",
                                   lambda: self.exchange.fetch_positions(symbols))
        except ExchangeError as e:
            if e.kind is ErrorKind.REJECTED:
                logger.warning("⚠️  Positions not available (spot trading mode)")
                return []
            raise
        return [
            ExchangePosition(
                symbol=p["symbol"], side=p.get("side") or "",
                contracts=to_decimal(p.get("contracts") or 0),
                entry_price=to_decimal(p.get("entryPrice") or 0),
                mark_price=to_decimal(p.get("markPrice") or 0),
                unrealized_pnl=to_decimal(p.get("unrealizedPnl") or 0),
                leverage=int(p.get("leverage") or 1),
                liquidation_price=to_decimal(p["liquidationPrice"])
                if p.get("liquidationPrice") else None)
            for p in raw if (p.get("contracts") or 0) > 0
        ]

    # ── Orders ───────────────────────────────────────────────────────────

    async def create_order(self, symbol: str, side: str, type: str, amount: Decimal,
                           price: Optional[Decimal] = None,
                           params: Optional[Dict[str, Any]] = None) -> Order:
        qty = await self._amount(symbol, amount)
        px = float(price) if price is not None else None
        logger.info(f"📤 Creating {side} order for {qty} {symbol} @ {type}")
        raw = await self._call("create_order", lambda: self.exchange.create_order(
            symbol, type, side, qty, px, params or {}))
        logger.info(f"✅ Order created: {raw['id']}")
        return _to_order(raw)

    async def create_stop_loss(self, symbol: str, side: str, amount: Decimal,
                               stop_price: Decimal) -> Order:
        qty = await self._amount(symbol, amount)
        logger.info(f"🛡️ Creating stop loss at {stop_price} for {symbol}")
        raw = await self._call("create_stop_loss", lambda: self.exchange.create_order(
            symbol, "market", side, qty, None,
            {"stopLossPrice": float(stop_price), "reduceOnly": True}))
        logger.info(f"✅ Stop loss created: {raw['id']}")
        return _to_order(raw)

    async def create_take_profit(self, symbol: str, side: str, amount: Decimal,
                                 price: Decimal) -> Order:
        qty = await self._amount(symbol, amount)
        logger.info(f"🎯 Creating take profit at {price} for {symbol}")
        raw = await self._call("create_take_profit", lambda: self.exchange.create_order(
            symbol, "market", side, qty, None,
            {"takeProfitPrice": float(price), "reduceOnly": True}))
        logger.info(f"✅ Take profit created: {raw['id']}")
        return _to_order(raw)

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        await self._call("cancel_order", lambda: self.exchange.cancel_order(order_id, symbol))
        logger.info(f"✅ Order cancelled: {order_id}")

    async def fetch_order(self, order_id: str, symbol: str) -> Order:
        raw = await self._call("fetch_order", lambda: self.exchange.fetch_order(order_id, symbol))
        return _to_order(raw)

    async def fetch_open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        raw = await self._call("fetch_open_orders",
                               lambda: self.exchange.fetch_open_orders(symbol))
        return [_to_order(o) for o in raw]

    async def close(self) -> None:
        await self.exchange.close()
