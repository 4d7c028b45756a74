"""
Position Monitor
Periodic exit-rule evaluation for every open position: stop-loss, take-profit
ladder, trailing stop and signal reversal. Never mutates a Position itself;
every change is requested from the ExecutionEngine.
"""
import asyncio
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from config import MonitorConfig
from exchange.errors import ErrorKind, ExchangeError
from execution.execution_engine import ExecutionEngine
from execution.request_layer import ResilientRequestLayer
from interfaces import IExchangeAdapter, INotifier, ISignalSource, IStateStore
from models import CloseReason, Position, PositionSide, SignalAction, utc_now
from monitoring.metrics import MONITOR_TICKS, OPEN_POSITIONS


class PositionMonitor:
    """
    Timer-driven watcher. At most one tick runs at a time; a timer firing while
    a tick is still in flight is skipped, not queued.
    """

    def __init__(self, engine: ExecutionEngine, exchange: IExchangeAdapter,
                 requests: ResilientRequestLayer, store: IStateStore,
                 signals: ISignalSource, notifier: INotifier,
                 config: Optional[MonitorConfig] = None,
                 clock: Optional[Callable[[], float]] = None):
        self._engine = engine
        self._exchange = exchange
        self._requests = requests
        self._store = store
        self._signals = signals
        self._notifier = notifier
        self.config = config or MonitorConfig()
        self._clock = clock or time.monotonic
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._paused = False
        self._last_status_poll: Optional[float] = None
        self._stats = {"ticks": 0, "skipped": 0, "errors": 0, "stop_exits": 0,
                       "tp_exits": 0, "reversals": 0, "trailing_moves": 0}
        logger.info(f"Initialized Position Monitor (interval={self.config.interval_sec}s, "
                    f"trailing={self.config.trailing_enabled}, "
                    f"reversal={self.config.reversal_enabled})")

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        """True while the exchange reports maintenance."""
        return self._paused

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._timer_loop(), name="position-monitor")
        logger.info("📡 Position monitor started")

    async def stop(self) -> None:
        """Stop the timer and wait for an in-flight tick to finish."""
        if not self._running:
            return
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        if self._tick_task is not None and not self._tick_task.done():
            await self._tick_task
        logger.info(f"Position monitor stopped: {self._stats}")

    async def _timer_loop(self):
        while self._running:
            self.trigger()
            await asyncio.sleep(self.config.interval_sec)

    def trigger(self) -> bool:
        """
        Spawn a tick unless one is in flight.

        Returns:
            False if the tick was skipped
        """
        if self._tick_task is not None and not self._tick_task.done():
            self._stats["skipped"] += 1
            MONITOR_TICKS.labels("skipped").inc()
            logger.debug("Monitor tick skipped: previous tick still running")
            return False
        self._tick_task = asyncio.create_task(self.tick())
        return True

    # ── Tick ─────────────────────────────────────────────────────────────

    async def tick(self) -> None:
        """One pass over all open positions. Never raises."""
        self._stats["ticks"] += 1
        try:
            if self._paused and not await self._poll_maintenance():
                MONITOR_TICKS.labels("paused").inc()
                return

            positions = await self._store.get_open_positions()
            OPEN_POSITIONS.set(len(positions))
            if not positions:
                MONITOR_TICKS.labels("idle").inc()
                return

            if self.config.flatten_on_daily_loss and await self._daily_loss_breached():
                await self._flatten(positions)
                MONITOR_TICKS.labels("flattened").inc()
                return

            for position in positions:
                if self._paused:
                    break
                if self._engine.is_busy(position.id):
                    logger.debug(f"{position.id} busy, skipping this tick")
                    continue
                try:
                    await self.check_position(position)
                except ExchangeError as e:
                    self._stats["errors"] += 1
                    if e.kind is ErrorKind.MAINTENANCE:
                        await self._enter_maintenance(e)
                        break
                    if e.kind is ErrorKind.AUTH:
                        await self._engine.halt(f"authentication failure while monitoring: {e}",
                                                ErrorKind.AUTH)
                        break
                    logger.error(f"Error monitoring {position.id} ({position.symbol}): {e}")
                except Exception:
                    self._stats["errors"] += 1
                    logger.exception(f"Unexpected error monitoring {position.id}")
            MONITOR_TICKS.labels("ok").inc()
        except ExchangeError as e:
            self._stats["errors"] += 1
            MONITOR_TICKS.labels("error").inc()
            if e.kind is ErrorKind.MAINTENANCE:
                await self._enter_maintenance(e)
            else:
                logger.error(f"Monitor tick failed: {e}")
        except Exception:
            self._stats["errors"] += 1
            MONITOR_TICKS.labels("error").inc()
            logger.exception("Monitor tick failed")

    async def check_position(self, position: Position) -> None:
        """Evaluate exit rules in order: stop, targets (ascending), trailing, reversal."""
        price = await self._requests.submit("fetch_price", self._exchange.fetch_price,
                                            position.symbol)

        if position.stop_triggered(price):
            logger.warning(f"🛑 Stop hit {position.id} {position.symbol} "
                           f"@ {price} (stop {position.stop_loss})")
            if await self._engine.close_position(position, CloseReason.STOP_LOSS, price):
                self._stats["stop_exits"] += 1
            return

        for target in position.unfilled_targets():
            if not position.target_triggered(target, price):
                break
            logger.info(f"🎯 TP{target.level} reached {position.id} @ {price} "
                        f"(target {target.price})")
            if await self._engine.partial_close(position, target, price):
                self._stats["tp_exits"] += 1
            refreshed = await self._store.get_position(position.id)
            if refreshed is None or refreshed.is_closed:
                return
            position = refreshed

        if self.config.trailing_enabled:
            await self._trail(position, price)

        if self.config.reversal_enabled:
            await self._check_reversal(position, price)

    async def _trail(self, position: Position, price: Decimal) -> None:
        direction = position.side.direction
        best = position.best_price if position.best_price is not None else position.entry_price
        if (price - best) * direction > 0:
            best = price

        activation = position.entry_price * self.config.trailing_activation_percent / Decimal("100")
        new_stop = None
        if position.trailing_active or (best - position.entry_price) * direction >= activation:
            offset = best * self.config.trailing_offset_percent / Decimal("100")
            candidate = best - offset * direction
            if position.is_tighter_stop(candidate):
                new_stop = candidate

        if new_stop is None and best == position.best_price:
            return
        if await self._engine.update_stop_loss(position, new_stop, best):
            self._stats["trailing_moves"] += 1

    async def _check_reversal(self, position: Position, price: Decimal) -> None:
        try:
            signal = await self._signals.current_signal(position.symbol)
        except Exception as e:
            logger.warning(f"Signal lookup failed for {position.symbol}: {e}")
            return
        if signal is None or signal.confidence < self.config.reversal_min_confidence:
            return
        opposite = SignalAction.SELL if position.side is PositionSide.LONG else SignalAction.BUY
        if signal.action is not opposite:
            return
        logger.warning(f"🔄 Signal reversal on {position.symbol}: {signal.action.value} "
                       f"conf={signal.confidence:.0f}, closing {position.id}")
        if await self._engine.close_position(position, CloseReason.SIGNAL_REVERSE, price):
            self._stats["reversals"] += 1

    # ── Maintenance ──────────────────────────────────────────────────────

    async def _enter_maintenance(self, error: ExchangeError) -> None:
        if self._paused:
            return
        self._paused = True
        self._last_status_poll = self._clock()
        logger.warning(f"🔧 Exchange maintenance, monitoring paused: {error}")
        await self._alert(f"Exchange under maintenance; position monitoring paused ({error})")

    async def _poll_maintenance(self) -> bool:
        """Returns True once the exchange reports normal status again."""
        now = self._clock()
        if self._last_status_poll is not None and \
                now - self._last_status_poll < self.config.maintenance_poll_sec:
            return False
        self._last_status_poll = now
        try:
            status = await self._requests.submit("fetch_status", self._exchange.fetch_status)
        except ExchangeError as e:
            logger.debug(f"Status poll failed during maintenance: {e}")
            return False
        if status != "ok":
            logger.info(f"Exchange status still '{status}'")
            return False
        self._paused = False
        logger.info("✅ Exchange back online, monitoring resumed")
        return True

    # ── Daily loss flatten ───────────────────────────────────────────────

    async def _daily_loss_breached(self) -> bool:
        balance = await self._engine.quote_balance()
        pnl = await self._store.daily_realized_pnl(utc_now().date())
        return self._engine.risk_engine.daily_loss_limit_hit(balance, pnl)

    async def _flatten(self, positions: List[Position]) -> None:
        logger.critical(f"Daily loss limit breached, flattening {len(positions)} position(s)")
        await self._alert(f"Daily loss limit breached; closing {len(positions)} open position(s)")
        for position in positions:
            try:
                price = await self._requests.submit("fetch_price", self._exchange.fetch_price,
                                                    position.symbol)
                await self._engine.close_position(position, CloseReason.RISK_LIMIT, price)
            except ExchangeError as e:
                logger.error(f"Flatten failed for {position.id}: {e}")

    async def _alert(self, message: str) -> None:
        try:
            await self._notifier.send_risk_alert(message)
        except Exception as e:
            logger.error(f"Risk alert failed: {e}")

    def get_status(self) -> Dict[str, Any]:
        return {**self._stats, "running": self._running, "paused": self._paused}
