"""
AutoTrader — leveraged position autopilot.

This is the thin composition shell. All behavior lives in the services the
ServiceContainer builds:
  execution/request_layer.py     — serialized, retried exchange access
  execution/risk_engine.py       — pre-trade limits + sizing
  execution/execution_engine.py  — entries, protective orders, exits
  execution/position_monitor.py  — periodic exit-rule evaluation

Usage:
    python bot.py run --paper
    python bot.py positions
    python bot.py history --day 2026-01-31
"""
import asyncio
import json
import signal as _signal
import sys
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import Optional

project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

import redis.asyncio as aioredis
import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from config import BotConfig, get_config
from container import ServiceContainer
from exchange.errors import ErrorKind, ExchangeError
from models import DailyStats, ExecutionResult, Signal, utc_now
from monitoring.metrics import start_metrics_server

LOG_FORMAT = ("<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
              "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>")

SIGNAL_POLL_SEC = 1.0
CONTROL_POLL_SEC = 1

app = typer.Typer(help="Leveraged position autopilot")
console = Console()


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Replace loguru's default sink; optionally add a rotating file sink."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file:
        logger.add(log_file, level=level.upper(), format=LOG_FORMAT,
                   rotation="10 MB", retention=5, enqueue=True)


# ═══════════════════════════════════════════════════════════════════════
# Bot
# ═══════════════════════════════════════════════════════════════════════

class TradingBot:
    """Control surface: start / stop / manual_close / execute_signal."""

    def __init__(self, container: Optional[ServiceContainer] = None):
        self.container = container or ServiceContainer()
        self.cfg: BotConfig = self.container.cfg
        self.engine = self.container.engine
        self.monitor = self.container.monitor
        self._running = False
        self._signal_task: Optional[asyncio.Task] = None
        self._control_task: Optional[asyncio.Task] = None
        self._monitor_stop: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self.engine.on_halt = self._on_halt

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        logger.info("=" * 60)
        logger.info(f"AUTOTRADER starting ({'PAPER' if self.cfg.exchange.use_mock else self.cfg.exchange.exchange_id})")
        logger.info("=" * 60)
        requests = self.container.requests
        requests.start()
        try:
            connected = await requests.submit("test_connection", self.container.exchange.test_connection)
        except ExchangeError as e:
            if e.kind is ErrorKind.AUTH:
                logger.critical(f"Exchange rejected the credentials: {e}")
                await requests.stop()
                raise
            logger.error(f"❌ Connection failed: {e}")
            connected = False
        if not connected:
            logger.warning("Exchange connectivity check failed; continuing, requests will retry")
        if self.cfg.metrics.enabled:
            start_metrics_server(self.cfg.metrics.port)
        self.engine.resume()
        self._running = True
        self._stopping = asyncio.Event()
        self.monitor.start()
        self._signal_task = asyncio.create_task(self._signal_loop(), name="signal-loop")
        if self.cfg.redis.enabled:
            self._control_task = asyncio.create_task(self._control_loop(), name="control-loop")
        logger.info(f"✓ Bot running, watching {', '.join(self.cfg.symbol_list)}")

    async def stop(self) -> None:
        """
        Refuse new signals and stop ticking. The loops finish the signal or
        command they are handling, so an entry or close is never cut in half.
        """
        if not self._running:
            return
        self._running = False
        self.engine.stop_accepting()
        self._stopping.set()
        await asyncio.gather(*(t for t in (self._signal_task, self._control_task) if t is not None))
        if self._monitor_stop is not None:
            await self._monitor_stop
        await self.monitor.stop()
        await self.container.requests.stop()
        await self.container.aclose()
        logger.info(f"Bot stopped: {self.engine.get_statistics()}")

    async def resume(self) -> None:
        """Clear a halt and restart the monitor if it was stopped by it."""
        if self._monitor_stop is not None:
            await self._monitor_stop
            self._monitor_stop = None
        self.engine.resume()
        if self._running:
            self.monitor.start()

    async def manual_close(self, position_id: str) -> bool:
        return await self.engine.manual_close(position_id)

    async def execute_signal(self, signal: Signal) -> ExecutionResult:
        if signal.symbol not in self.cfg.symbol_list:
            logger.warning(f"Signal for unwatched symbol {signal.symbol}")
        return await self.engine.execute_signal(signal)

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "engine": self.engine.get_statistics(),
            "monitor": self.monitor.get_status(),
        }

    # ── Loops ────────────────────────────────────────────────────────────

    async def _on_halt(self, reason: str) -> None:
        # Exits keep running unless the exchange refused our credentials, when every call fails anyway.
        if self.engine.halt_kind is not ErrorKind.AUTH:
            logger.warning(f"Entries halted, position monitor keeps running: {reason}")
            return
        # A halt can be raised from inside a monitor tick, so the stop is not awaited here
        logger.warning(f"Stopping position monitor after halt: {reason}")
        self._monitor_stop = asyncio.create_task(self.monitor.stop(), name="monitor-stop")

    async def _idle(self, delay: float) -> None:
        """Wait between polls, waking early when the bot stops."""
        try:
            await asyncio.wait_for(self._stopping.wait(), delay)
        except asyncio.TimeoutError:
            pass

    async def _signal_loop(self):
        signals = self.container.signals
        while self._running:
            try:
                signal = await signals.next_signal()
            except Exception as e:
                logger.error(f"Signal source error: {e}")
                signal = None
            if signal is None:
                await self._idle(SIGNAL_POLL_SEC)
                continue
            result = await self.execute_signal(signal)
            logger.info(f"Signal {signal.symbol} {signal.action.value}: "
                        f"{'opened ' + result.position.id if result.success else result.reason}")

    async def _control_loop(self):
        rc = self.cfg.redis
        client = aioredis.Redis(host=rc.host, port=rc.port, db=rc.db,
                                decode_responses=True, socket_connect_timeout=5)
        commands, status_key = f"{rc.prefix}:control", f"{rc.prefix}:status"
        try:
            while self._running:
                try:
                    await client.set(status_key, json.dumps(self.get_status(), default=str))
                    item = await client.blpop([commands], timeout=CONTROL_POLL_SEC)
                except aioredis.RedisError as e:
                    logger.warning(f"Control channel error: {e}")
                    await self._idle(CONTROL_POLL_SEC)
                    continue
                if item:
                    await self._handle_command(item[1])
        finally:
            await client.aclose()

    async def _handle_command(self, raw: str) -> None:
        try:
            cmd = json.loads(raw)
        except json.JSONDecodeError:
            logger.error(f"Ignoring malformed control command: {raw[:200]}")
            return
        action = cmd.get("cmd")
        logger.info(f"Control command: {cmd}")
        if action == "close":
            try:
                ok = await self.manual_close(str(cmd.get("position_id", "")))
            except ExchangeError as e:
                logger.error(f"Manual close {cmd.get('position_id')} failed: {e}")
                return
            logger.info(f"Manual close {cmd.get('position_id')}: {'done' if ok else 'not open'}")
        elif action == "halt":
            await self.engine.halt(cmd.get("reason") or "operator halt")
        elif action == "resume":
            await self.resume()
        else:
            logger.warning(f"Unknown control command: {action}")


# ═══════════════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════════════

def _build_container(paper: bool) -> ServiceContainer:
    cfg = get_config()
    if paper:
        cfg = replace(cfg, exchange=replace(cfg.exchange, mock_mode=True))
    return ServiceContainer(cfg)


async def _run_until_signalled(bot: TradingBot) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (_signal.SIGINT, _signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    await bot.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        await bot.stop()


@app.command()
def run(
    paper: bool = typer.Option(False, "--paper", help="Force the in-memory paper exchange"),
    log_level: Optional[str] = typer.Option(None, "--log-level", "-l"),
    log_file: str = typer.Option("logs/autotrader.log", "--log-file"),
):
    """Run the autopilot until SIGINT/SIGTERM."""
    configure_logging(log_level or get_config().log_level, log_file)
    bot = TradingBot(_build_container(paper))
    asyncio.run(_run_until_signalled(bot))


@app.command()
def positions():
    """Show open positions from the state store."""
    async def _load():
        container = ServiceContainer()
        try:
            return await container.store.get_open_positions()
        finally:
            await container.aclose()

    rows = asyncio.run(_load())
    table = Table(title="Open positions", show_header=True, header_style="bold magenta")
    for col in ("ID", "Symbol", "Side", "Entry", "Remaining", "Stop", "Targets", "Status"):
        table.add_column(col)
    for p in rows:
        targets = " ".join(f"{'✓' if t.filled else '·'}{t.price}" for t in p.take_profits)
        side = f"[green]{p.side.value}[/green]" if p.side.value == "LONG" else f"[red]{p.side.value}[/red]"
        table.add_row(p.id, p.symbol, side, str(p.entry_price), str(p.remaining_size),
                      str(p.stop_loss), targets, p.status.value)
    console.print(table)


@app.command()
def history(
    day: Optional[str] = typer.Option(None, "--day", "-d", help="UTC date YYYY-MM-DD (default: today)"),
):
    """Show realised exits and the day's aggregate."""
    target = date.fromisoformat(day) if day else utc_now().date()

    async def _load():
        container = ServiceContainer()
        try:
            return await container.store.get_history(target)
        finally:
            await container.aclose()

    records = asyncio.run(_load())
    table = Table(title=f"Trade history {target.isoformat()}", show_header=True,
                  header_style="bold magenta")
    for col in ("Position", "Symbol", "Side", "Size", "Entry", "Exit", "Reason", "PnL"):
        table.add_column(col)
    for h in records:
        colour = "green" if h.pnl >= 0 else "red"
        table.add_row(h.position_id, h.symbol, h.side.value, str(h.size), str(h.entry_price),
                      str(h.exit_price), h.close_reason.value, f"[{colour}]{h.pnl:+.2f}[/{colour}]")
    console.print(table)
    stats = DailyStats.from_history(records, target)
    console.print(f"trades={stats.trades} wins={stats.wins} losses={stats.losses} "
                  f"pnl={stats.realized_pnl:+.2f} fees={stats.fees:.2f}")


if __name__ == "__main__":
    app()
