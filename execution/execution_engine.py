"""
Execution Engine
Places entries and protective orders, and owns every write to a Position
"""
import asyncio
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from loguru import logger

from config import ExecutionConfig, INSUFFICIENT_BALANCE_HALT
from exchange.errors import ErrorKind, ExchangeError
from execution.request_layer import ResilientRequestLayer
from execution.risk_engine import RiskEngine
from interfaces import IExchangeAdapter, INotifier, IStateStore
from models import (
    CloseReason, ExecutionResult, Order, Position, PositionStatus, Signal,
    SignalAction, TakeProfitTarget, TradeHistory, utc_now,
)
from monitoring.metrics import POSITION_EXITS, REALIZED_PNL, SIGNAL_EXECUTIONS

# Remainders smaller than this fraction of the original size are treated as dust
_DUST_FRACTION = Decimal("1e-9")


class ExecutionEngine:
    """
    Execution engine that manages the position lifecycle.

    Workflow:
    1. Receive trading signal
    2. Check risk limits (RiskEngine) — no order is placed on rejection
    3. Place entry order for the risk-adjusted size
    4. Place stop-loss and take-profit orders (best effort)
    5. Persist and announce the position
    6. Close / partially close on request from the monitor or an operator

    Every exchange call goes through the ResilientRequestLayer.
    """

    def __init__(self, exchange: IExchangeAdapter, requests: ResilientRequestLayer,
                 store: IStateStore, notifier: INotifier, risk_engine: RiskEngine,
                 config: Optional[ExecutionConfig] = None,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        self._exchange = exchange
        self._requests = requests
        self._store = store
        self._notifier = notifier
        self.risk_engine = risk_engine
        self.config = config or ExecutionConfig()
        self._sleep = sleep or asyncio.sleep
        self._locks: Dict[str, asyncio.Lock] = {}
        self._busy: Set[str] = set()
        self._accepting = True
        self._halt_reason: Optional[str] = None
        self._halt_kind: Optional[ErrorKind] = None
        self.on_halt: Optional[Callable[[str], Awaitable[None]]] = None
        self._stats = {"signals": 0, "opened": 0, "rejected": 0, "failed": 0,
                       "closes": 0, "partial_closes": 0}
        logger.info(f"Initialized Execution Engine (quote={self.config.quote_currency}, "
                    f"fee={self.config.fee_rate}, "
                    f"insufficient_balance={self.config.insufficient_balance_policy})")

    # ── Lifecycle / state ────────────────────────────────────────────────

    @property
    def halted(self) -> bool:
        return self._halt_reason is not None

    @property
    def halt_reason(self) -> Optional[str]:
        return self._halt_reason

    @property
    def halt_kind(self) -> Optional[ErrorKind]:
        """Error kind that caused the halt; None for operator halts."""
        return self._halt_kind

    @property
    def accepting_signals(self) -> bool:
        return self._accepting and not self.halted

    def stop_accepting(self) -> None:
        """Refuse future signals; in-flight work is left to finish."""
        self._accepting = False

    def resume(self) -> None:
        """Accept signals again and clear any halt (operator action)."""
        if self._halt_reason:
            logger.warning(f"Clearing halt: {self._halt_reason}")
        self._halt_reason = None
        self._halt_kind = None
        self._accepting = True

    async def halt(self, reason: str, kind: Optional[ErrorKind] = None) -> None:
        """Stop automated trading. Sends exactly one risk alert."""
        if self.halted:
            return
        self._halt_reason = reason
        self._halt_kind = kind
        logger.critical(f"🛑 Trading halted: {reason}")
        await self._notify_risk(f"Trading halted: {reason}")
        if self.on_halt:
            try:
                await self.on_halt(reason)
            except Exception as e:
                logger.error(f"on_halt callback failed: {e}")

    def is_busy(self, position_id: str) -> bool:
        """True while a close / partial close / stop update holds the position."""
        return position_id in self._busy

    # ── Entry ────────────────────────────────────────────────────────────

    async def execute_signal(self, signal: Signal) -> ExecutionResult:
        """Execute trading signal. Returns an ExecutionResult, never raises on exchange errors."""
        self._stats["signals"] += 1
        if not self._accepting:
            return ExecutionResult(False, reason="ENGINE_STOPPED")
        if self.halted:
            return ExecutionResult(False, reason="ENGINE_HALTED")
        if signal.action is SignalAction.HOLD:
            return ExecutionResult(False, reason="HOLD_SIGNAL")

        logger.info(f"EXECUTING: {signal.symbol} {signal.action.value} "
                    f"conf={signal.confidence:.0f} entry={signal.entry} "
                    f"sl={signal.stop_loss} tps={[str(p) for p in signal.take_profits]} "
                    f"{signal.leverage}x")
        try:
            balance = await self.quote_balance()
        except ExchangeError as e:
            return await self._fail_terminal(e, signal)
        open_positions = await self._store.get_open_positions()
        daily_pnl = await self._store.daily_realized_pnl(utc_now().date())

        decision = self.risk_engine.evaluate(signal, balance, open_positions, daily_pnl)
        if not decision.allowed:
            self._stats["rejected"] += 1
            SIGNAL_EXECUTIONS.labels("rejected").inc()
            await self._notify_risk(
                f"Signal {signal.symbol} {signal.action.value} rejected: {decision.reason}")
            return ExecutionResult(False, reason=decision.reason)

        try:
            await self._set_leverage(signal)
            order = await self._place_entry(signal, decision.adjusted_size)
            order = await self._await_fill(order, signal.symbol)
        except ExchangeError as e:
            return await self._fail_terminal(e, signal)

        if order.filled <= 0:
            self._stats["failed"] += 1
            SIGNAL_EXECUTIONS.labels("unfilled").inc()
            await self._notify_risk(f"Entry for {signal.symbol} not filled; signal skipped")
            return ExecutionResult(False, reason="ENTRY_NOT_FILLED")

        position = self._build_position(signal, order)
        await self._place_protective_orders(position)
        try:
            await self._store.save_position(position)
        except Exception as e:
            logger.critical(f"Position {position.id} open on exchange but NOT persisted: {e}")
            await self._notify_risk(f"Failed to persist open position {position.id} "
                                    f"({position.symbol} {position.size}): {e}")
            raise

        self._stats["opened"] += 1
        SIGNAL_EXECUTIONS.labels("opened").inc()
        logger.info(f"Position opened: {position.id} {position.side.value} "
                    f"{position.size} {position.symbol} @ {position.entry_price}")
        await self._notify_trade("POSITION_OPENED", position.to_dict())
        return ExecutionResult(True, position=position)

    async def quote_balance(self) -> Decimal:
        balances = await self._requests.submit("fetch_balance", self._exchange.fetch_balance)
        bal = balances.get(self.config.quote_currency)
        return bal.total if bal else Decimal("0")

    async def _set_leverage(self, signal: Signal) -> None:
        try:
            await self._requests.submit("set_leverage", self._exchange.set_leverage,
                                        signal.symbol, signal.leverage)
        except ExchangeError as e:
            if e.kind is ErrorKind.AUTH:
                raise
            logger.warning(f"Could not set {signal.leverage}x on {signal.symbol}: {e}")

    async def _place_entry(self, signal: Signal, size: Decimal) -> Order:
        price = signal.entry if signal.order_type == "limit" else None
        return await self._requests.submit(
            "create_order", self._exchange.create_order, signal.symbol,
            signal.side.entry_order_side, signal.order_type, size, price)

    async def _await_fill(self, order: Order, symbol: str) -> Order:
        """Poll a resting entry for a bounded time; cancel any unfilled remainder."""
        if order.is_filled:
            return order
        waited = 0.0
        while waited < self.config.fill_timeout_sec:
            await self._sleep(self.config.fill_poll_sec)
            waited += self.config.fill_poll_sec
            order = await self._requests.submit("fetch_order", self._exchange.fetch_order,
                                                order.id, symbol)
            if order.is_filled:
                return order
        logger.warning(f"Entry {order.id} filled {order.filled}/{order.amount} "
                       f"after {waited:.0f}s; cancelling remainder")
        try:
            await self._requests.submit("cancel_order", self._exchange.cancel_order,
                                        order.id, symbol)
        except ExchangeError as e:
            if e.kind is not ErrorKind.REJECTED:
                raise
        return await self._requests.submit("fetch_order", self._exchange.fetch_order,
                                           order.id, symbol)

    def _build_position(self, signal: Signal, order: Order) -> Position:
        filled = order.filled
        entry_price = order.price if order.price > 0 else signal.entry
        targets = [
            TakeProfitTarget(level=i + 1, price=price, size_percent=pct)
            for i, (price, pct) in enumerate(zip(signal.take_profits, signal.target_percents()))
        ]
        return Position(
            id=f"pos_{uuid.uuid4().hex[:12]}",
            symbol=signal.symbol,
            side=signal.side,
            entry_price=entry_price,
            size=filled,
            remaining_size=filled,
            leverage=signal.leverage,
            stop_loss=signal.stop_loss,
            take_profits=targets,
            signal_id=signal.signal_id,
            ai_confidence=signal.confidence,
            initial_margin=entry_price * filled / Decimal(signal.leverage),
            best_price=entry_price,
            entry_order_id=order.id,
        )

    async def _place_protective_orders(self, position: Position) -> None:
        """Stop-loss + one take-profit per target. Failures are logged, never rolled back."""
        failures: List[str] = []
        exit_side = position.side.exit_order_side
        try:
            sl = await self._requests.submit(
                "create_stop_loss", self._exchange.create_stop_loss, position.symbol,
                exit_side, position.remaining_size, position.stop_loss)
            position.stop_order_id = sl.id
        except ExchangeError as e:
            logger.error(f"Stop-loss order failed for {position.id}: {e}")
            failures.append(f"stop-loss @ {position.stop_loss}: {e.kind.value}")

        for target in position.take_profits:
            qty = self._target_quantity(position, target)
            try:
                tp = await self._requests.submit(
                    "create_take_profit", self._exchange.create_take_profit,
                    position.symbol, exit_side, qty, target.price)
                target.order_id = tp.id
            except ExchangeError as e:
                logger.error(f"Take-profit TP{target.level} failed for {position.id}: {e}")
                failures.append(f"TP{target.level} @ {target.price}: {e.kind.value}")

        if failures:
            await self._notify_risk(
                f"Position {position.id} ({position.symbol}) open with software-side "
                f"protection only; failed orders: {', '.join(failures)}")

    # ── Exits ────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _position_guard(self, position_id: str):
        lock = self._locks.setdefault(position_id, asyncio.Lock())
        async with lock:
            self._busy.add(position_id)
            try:
                yield
            finally:
                self._busy.discard(position_id)

    async def close_position(self, position: Position, reason: CloseReason,
                             price: Decimal) -> Optional[TradeHistory]:
        """
        Close the whole remaining size. No-op if the position is already closed.

        Protective orders the exchange already executed are booked under their own
        reason and only the rest is sent as a market exit.
        """
        async with self._position_guard(position.id):
            current = await self._store.get_position(position.id)
            if current is None or current.is_closed:
                logger.info(f"Close {position.id} ({reason.value}) skipped: already closed")
                return None

            records = await self._cancel_resting_orders(current)
            qty = current.remaining_size
            if qty > 0:
                try:
                    order = await self._market_exit(current, qty)
                except ExchangeError as e:
                    await self._handle_exit_failure(current, reason, e)
                    records += await self._replace_stop_order(current)
                    await self._persist_exits(current, records)
                    self._record_exits(records)
                    return None
                exit_price = order.price if order.price > 0 else price
                records.append(self._build_history(current, qty, exit_price, reason))
                current.remaining_size = Decimal("0")
            await self._persist_exits(current, records)

        self._locks.pop(position.id, None)
        if not records:
            logger.warning(f"Position {current.id} had nothing left to close; marked CLOSED")
            return None
        self._stats["closes"] += 1
        self._record_exits(records)
        history = records[-1]
        pnl = sum((h.pnl for h in records), Decimal("0"))
        logger.info(f"Position closed: {current.id} P&L=${pnl:+.2f} ({history.close_reason.value})")
        await self._notify_trade("POSITION_CLOSED", {
            "position": current.to_dict(), "history": history.to_dict(),
            "fills": [h.to_dict() for h in records]})
        return history

    async def partial_close(self, position: Position, target: TakeProfitTarget,
                            price: Decimal) -> Optional[TradeHistory]:
        """Realise one take-profit target. Idempotent for already-filled targets."""
        async with self._position_guard(position.id):
            current = await self._store.get_position(position.id)
            if current is None or current.is_closed:
                return None
            tgt = current.target(target.level)
            if tgt is None or tgt.filled:
                logger.debug(f"TP{target.level} of {position.id} already filled; no-op")
                return None
            qty = self._target_quantity(current, tgt)
            if qty <= 0:
                return None

            executed = None
            if tgt.order_id:
                executed = await self._settle_resting_order(current, tgt.order_id)
                tgt.order_id = None

            if executed is not None:
                records = [self._apply_fill(current, executed, CloseReason.TAKE_PROFIT, tgt.price)]
            else:
                try:
                    order = await self._market_exit(current, qty)
                except ExchangeError as e:
                    await self._handle_exit_failure(current, CloseReason.TAKE_PROFIT, e)
                    await self._store.update_position(current)
                    return None
                exit_price = order.price if order.price > 0 else price
                records = [self._build_history(current, qty, exit_price, CloseReason.TAKE_PROFIT)]
                current.remaining_size -= qty

            tgt.filled = True
            if current.remaining_size > 0:
                records += await self._replace_stop_order(current)
            if current.remaining_size <= 0:
                records += await self._cancel_resting_orders(current)
            await self._persist_exits(current, records)

        history = records[0]
        self._stats["partial_closes"] += 1
        self._record_exits(records)
        if current.is_closed:
            self._locks.pop(position.id, None)
        logger.info(f"TP{tgt.level} hit: {current.id} closed {history.size} @ {history.exit_price} "
                    f"P&L=${history.pnl:+.2f}, remaining={current.remaining_size}")
        await self._notify_trade("TAKE_PROFIT_FILLED", {
            "position": current.to_dict(), "history": history.to_dict(), "level": tgt.level})
        if len(records) > 1 and current.is_closed:
            await self._notify_trade("POSITION_CLOSED", {
                "position": current.to_dict(), "history": records[-1].to_dict(),
                "fills": [h.to_dict() for h in records]})
        return history

    async def update_stop_loss(self, position: Position, new_stop: Optional[Decimal],
                               best_price: Optional[Decimal] = None) -> bool:
        """
        Trailing-stop bookkeeping. Records the best price seen and moves the stop
        only when the new level tightens it.

        Returns:
            True if the stop moved
        """
        records: List[TradeHistory] = []
        async with self._position_guard(position.id):
            current = await self._store.get_position(position.id)
            if current is None or current.is_closed:
                return False
            if best_price is not None and (
                    current.best_price is None
                    or (best_price - current.best_price) * current.side.direction > 0):
                current.best_price = best_price
            moved = False
            if new_stop is not None and current.is_tighter_stop(new_stop):
                records = await self._settle_stop_order(current)
                if current.remaining_size > 0:
                    old_stop = current.stop_loss
                    current.stop_loss = new_stop
                    current.trailing_active = True
                    moved = True
                    await self._arm_stop_order(current)
                    logger.info(f"Trailing stop {current.id}: {old_stop} → {new_stop}")
                else:
                    records += await self._cancel_resting_orders(current)
            await self._persist_exits(current, records)

        if records:
            self._record_exits(records)
        if current.is_closed:
            self._locks.pop(position.id, None)
            self._stats["closes"] += 1
            await self._notify_trade("POSITION_CLOSED", {
                "position": current.to_dict(), "history": records[-1].to_dict(),
                "fills": [h.to_dict() for h in records]})
        if moved:
            await self._notify_trade("STOP_MOVED", {
                "position_id": current.id, "symbol": current.symbol,
                "stop_loss": str(current.stop_loss)})
        return moved

    async def manual_close(self, position_id: str) -> bool:
        """Operator close at market. Returns False if unknown or already closed."""
        position = await self._store.get_position(position_id)
        if position is None or position.is_closed:
            logger.warning(f"Manual close: position {position_id} not open")
            return False
        price = await self._requests.submit("fetch_price", self._exchange.fetch_price,
                                            position.symbol)
        return await self.close_position(position, CloseReason.MANUAL, price) is not None

    # ── Helpers ──────────────────────────────────────────────────────────

    def _target_quantity(self, position: Position, target: TakeProfitTarget) -> Decimal:
        """size × percent, with the final target absorbing the remainder when the split is full."""
        qty = min(position.size * target.size_percent / Decimal("100"), position.remaining_size)
        unfilled = position.unfilled_targets()
        total_pct = sum((t.size_percent for t in position.take_profits), Decimal("0"))
        if unfilled and unfilled[-1].level == target.level and total_pct >= Decimal("99.99"):
            others = sum((position.size * t.size_percent / Decimal("100")
                          for t in unfilled if t.level != target.level), Decimal("0"))
            qty = position.remaining_size - others
        if position.remaining_size - qty <= position.size * _DUST_FRACTION:
            qty = position.remaining_size
        return max(qty, Decimal("0"))

    async def _market_exit(self, position: Position, qty: Decimal) -> Order:
        return await self._requests.submit(
            "create_order", self._exchange.create_order, position.symbol,
            position.side.exit_order_side, "market", qty, None, {"reduceOnly": True})

    async def _cancel_order(self, symbol: str, order_id: str) -> bool:
        """
        Cancel a resting order.

        Returns:
            False when the exchange reports the order is no longer open
        """
        try:
            await self._requests.submit("cancel_order", self._exchange.cancel_order,
                                        order_id, symbol)
            return True
        except ExchangeError as e:
            if e.kind is ErrorKind.REJECTED:
                return False
            raise

    async def _settle_resting_order(self, position: Position, order_id: str) -> Optional[Order]:
        """
        Cancel a resting order.

        Returns:
            The order when the exchange had already executed it, else None
        """
        try:
            if await self._cancel_order(position.symbol, order_id):
                return None
            order = await self._requests.submit("fetch_order", self._exchange.fetch_order,
                                                order_id, position.symbol)
        except ExchangeError as e:
            logger.warning(f"Could not cancel {order_id} for {position.id}: {e}")
            return None
        return order if order.filled > 0 else None

    def _apply_fill(self, position: Position, order: Order, reason: CloseReason,
                    fallback_price: Decimal) -> TradeHistory:
        """Book an exit the exchange executed on its own and shrink the position by it."""
        qty = min(order.filled, position.remaining_size)
        price = order.price if order.price > 0 else fallback_price
        history = self._build_history(position, qty, price, reason)
        position.remaining_size -= qty
        logger.info(f"{reason.value} order {order.id} of {position.id} already executed: "
                    f"{qty} @ {price}")
        return history

    async def _settle_stop_order(self, position: Position) -> List[TradeHistory]:
        if not position.stop_order_id:
            return []
        order = await self._settle_resting_order(position, position.stop_order_id)
        position.stop_order_id = None
        if order is None or position.remaining_size <= 0:
            return []
        return [self._apply_fill(position, order, CloseReason.STOP_LOSS, position.stop_loss)]

    async def _cancel_resting_orders(self, position: Position) -> List[TradeHistory]:
        """Cancel every protective order, booking the ones that already executed."""
        records: List[TradeHistory] = []
        for target in position.unfilled_targets():
            if not target.order_id:
                continue
            order = await self._settle_resting_order(position, target.order_id)
            target.order_id = None
            if order is not None and position.remaining_size > 0:
                target.filled = True
                records.append(self._apply_fill(position, order, CloseReason.TAKE_PROFIT,
                                                target.price))
        records += await self._settle_stop_order(position)
        return records

    async def _arm_stop_order(self, position: Position) -> None:
        if position.remaining_size <= 0:
            return
        try:
            sl = await self._requests.submit(
                "create_stop_loss", self._exchange.create_stop_loss, position.symbol,
                position.side.exit_order_side, position.remaining_size, position.stop_loss)
            position.stop_order_id = sl.id
        except ExchangeError as e:
            logger.error(f"Stop re-arm failed for {position.id}; software stop only: {e}")

    async def _replace_stop_order(self, position: Position) -> List[TradeHistory]:
        """Re-arm the exchange stop for the remaining size, booking it first if it already fired."""
        records = await self._settle_stop_order(position)
        await self._arm_stop_order(position)
        return records

    async def _persist_exits(self, position: Position, records: List[TradeHistory]) -> None:
        """Write the position together with the exits that reduced it."""
        if position.remaining_size <= 0:
            position.remaining_size = Decimal("0")
            position.status = PositionStatus.CLOSED
            await self._store.close_position(position, records)
            return
        if records:
            position.status = PositionStatus.PARTIAL_CLOSED
        for history in records:
            await self._store.append_history(history)
        await self._store.update_position(position)

    def _record_exits(self, records: List[TradeHistory]) -> None:
        for history in records:
            POSITION_EXITS.labels(history.close_reason.value).inc()
            REALIZED_PNL.inc(float(history.pnl))

    def _build_history(self, position: Position, qty: Decimal, exit_price: Decimal,
                       reason: CloseReason) -> TradeHistory:
        gross = (exit_price - position.entry_price) * qty * position.side.direction
        fees = (position.entry_price + exit_price) * qty * self.config.fee_rate
        pnl = gross - fees
        margin = position.entry_price * qty / Decimal(position.leverage)
        now = utc_now()
        return TradeHistory(
            position_id=position.id,
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            entry_time=position.open_time,
            exit_time=now,
            close_reason=reason,
            size=qty,
            pnl=pnl,
            pnl_percent=float(pnl / margin * 100) if margin > 0 else 0.0,
            fees=fees,
            holding_time=(now - position.open_time).total_seconds(),
        )

    async def _fail_terminal(self, error: ExchangeError, signal: Signal) -> ExecutionResult:
        """One notification per terminal failure; AUTH (and by policy INSUFFICIENT_BALANCE) halt."""
        self._stats["failed"] += 1
        SIGNAL_EXECUTIONS.labels("failed").inc()
        context = f"{signal.symbol} {signal.action.value}"
        if error.kind is ErrorKind.AUTH:
            await self.halt(f"authentication failure during {context}: {error}", ErrorKind.AUTH)
        elif error.kind is ErrorKind.INSUFFICIENT_BALANCE:
            if self.config.insufficient_balance_policy == INSUFFICIENT_BALANCE_HALT:
                await self.halt(f"insufficient balance during {context}: {error}",
                                ErrorKind.INSUFFICIENT_BALANCE)
            else:
                await self._notify_risk(f"Insufficient balance, signal skipped: {context}")
        elif error.kind is ErrorKind.REJECTED:
            logger.warning(f"Order rejected, skipping signal {context}: {error}")
            await self._notify_risk(f"Order rejected, signal skipped: {context}: {error}")
        else:
            logger.error(f"Signal {context} failed: {error}")
            await self._notify_risk(f"Signal {context} failed ({error.kind.value}): {error}")
        return ExecutionResult(False, reason=error.kind.name)

    async def _handle_exit_failure(self, position: Position, reason: CloseReason,
                                   error: ExchangeError) -> None:
        logger.error(f"Exit ({reason.value}) failed for {position.id}: {error}")
        if error.kind is ErrorKind.AUTH:
            await self.halt(f"authentication failure closing {position.id}: {error}", ErrorKind.AUTH)
        else:
            await self._notify_risk(f"Failed to close {position.id} ({position.symbol}, "
                                    f"{reason.value}): {error}")

    async def _notify_trade(self, kind: str, payload: Dict[str, Any]) -> None:
        try:
            await self._notifier.send_trade_alert(kind, payload)
        except Exception as e:
            logger.error(f"Trade alert {kind} failed: {e}")

    async def _notify_risk(self, message: str) -> None:
        try:
            await self._notifier.send_risk_alert(message)
        except Exception as e:
            logger.error(f"Risk alert failed: {e}")

    def get_statistics(self) -> Dict[str, Any]:
        """Get execution statistics."""
        return {
            **self._stats,
            "halted": self.halted,
            "halt_reason": self._halt_reason,
            "accepting": self.accepting_signals,
            "busy_positions": sorted(self._busy),
            "requests": self._requests.get_stats(),
        }
