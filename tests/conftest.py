"""
Shared fixtures: paper exchange, in-memory store, recording notifier and a
request layer whose sleeps are recorded instead of waited.
"""
import asyncio
import sys
from dataclasses import replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config import ExecutionConfig, MonitorConfig, RiskConfig
from exchange.paper_adapter import PaperExchangeAdapter
from execution.execution_engine import ExecutionEngine
from execution.position_monitor import PositionMonitor
from execution.request_layer import ResilientRequestLayer
from execution.risk_engine import RiskEngine
from models import Position, PositionSide, Signal, SignalAction, TakeProfitTarget
from signals.static_source import StaticSignalSource
from storage.memory_store import InMemoryStateStore

SYMBOL = "BTC/USDT"


class RecordingNotifier:
    """INotifier double that keeps every alert."""

    def __init__(self):
        self.trade_alerts: List[Tuple[str, Dict[str, Any]]] = []
        self.risk_alerts: List[str] = []

    async def send_trade_alert(self, kind: str, payload: Dict[str, Any]) -> None:
        self.trade_alerts.append((kind, payload))

    async def send_risk_alert(self, message: str) -> None:
        self.risk_alerts.append(message)

    def kinds(self) -> List[str]:
        return [k for k, _ in self.trade_alerts]


class RecordingSleep:
    """Drop-in for asyncio.sleep that records the requested delays."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


def exit_orders(paper: PaperExchangeAdapter, side: str = "sell"):
    """Market orders that reduce a position."""
    return [o for o in paper.created_orders if o.type == "market" and o.side == side]


@pytest.fixture
def risk_config():
    return RiskConfig(
        max_position_size_percent=Decimal("2"),
        max_daily_loss_percent=Decimal("5"),
        max_open_positions=3,
        allowed_leverage=frozenset({1, 2, 3, 5, 10}),
        min_account_balance=Decimal("100"),
    )


@pytest.fixture
def exec_config():
    return ExecutionConfig(
        quote_currency="USDT",
        fee_rate=Decimal("0"),
        fill_timeout_sec=3,
        fill_poll_sec=1,
        insufficient_balance_policy="halt",
    )


@pytest.fixture
def monitor_config():
    return MonitorConfig(
        interval_sec=0.01,
        trailing_enabled=False,
        trailing_activation_percent=Decimal("1"),
        trailing_offset_percent=Decimal("0.5"),
        reversal_enabled=False,
        reversal_min_confidence=60.0,
        maintenance_poll_sec=0,
        flatten_on_daily_loss=False,
    )


@pytest.fixture
def paper():
    return PaperExchangeAdapter(prices={SYMBOL: Decimal("100"), "ETH/USDT": Decimal("50")})


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def signals():
    return StaticSignalSource()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
async def layer(sleeper):
    requests = ResilientRequestLayer(max_attempts=3, base_delay=1.0, rate_limit_cooldown=60.0,
                                     min_spacing=0, sleep=sleeper)
    yield requests
    await requests.stop()


@pytest.fixture
def risk(risk_config):
    return RiskEngine(risk_config)


@pytest.fixture
def engine(paper, layer, store, notifier, risk, exec_config, sleeper):
    return ExecutionEngine(paper, layer, store, notifier, risk, exec_config, sleep=sleeper)


@pytest.fixture
def make_monitor(engine, paper, layer, store, signals, notifier, monitor_config):
    def _make(**overrides):
        cfg = replace(monitor_config, **overrides)
        return PositionMonitor(engine, paper, layer, store, signals, notifier, cfg)
    return _make


@pytest.fixture
def monitor(make_monitor):
    return make_monitor()


@pytest.fixture
def make_signal():
    def _make(**overrides):
        fields = dict(
            symbol=SYMBOL,
            action=SignalAction.BUY,
            confidence=80.0,
            entry_price=Decimal("100"),
            stop_loss=Decimal("95"),
            take_profits=[Decimal("110"), Decimal("120")],
            leverage=5,
        )
        fields.update(overrides)
        return Signal(**fields)
    return _make


@pytest.fixture
def make_position():
    counter = iter(range(1, 1000))

    def _make(**overrides):
        fields = dict(
            id=f"pos_test{next(counter)}",
            symbol=SYMBOL,
            side=PositionSide.LONG,
            entry_price=Decimal("100"),
            size=Decimal("10"),
            remaining_size=Decimal("10"),
            leverage=5,
            stop_loss=Decimal("95"),
            take_profits=[TakeProfitTarget(1, Decimal("110"), Decimal("100"))],
        )
        fields.update(overrides)
        return Position(**fields)
    return _make
