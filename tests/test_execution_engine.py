"""Execution engine: entries, protective orders, exits and error policies."""
import asyncio
from dataclasses import replace
from decimal import Decimal

import pytest

from conftest import SYMBOL, exit_orders
from exchange.errors import ErrorKind
from exchange.paper_adapter import PaperExchangeAdapter
from execution.execution_engine import ExecutionEngine
from models import CloseReason, PositionSide, PositionStatus, SignalAction
from storage.memory_store import InMemoryStateStore


async def open_position(engine, make_signal, **overrides):
    result = await engine.execute_signal(make_signal(**overrides))
    assert result.success, result.reason
    return result.position


# ── Entry ────────────────────────────────────────────────────────────────────

async def test_opens_position_with_protective_orders(engine, paper, store, notifier, make_signal):
    result = await engine.execute_signal(make_signal())

    assert result.success
    pos = result.position
    assert pos.side is PositionSide.LONG
    assert pos.size == pos.remaining_size == Decimal("40")
    assert pos.entry_price == Decimal("100")
    assert pos.initial_margin == Decimal("800")  # 100 * 40 / 5
    assert paper.leverage[SYMBOL] == 5

    stops = paper.orders_by_type("stop_market")
    tps = paper.orders_by_type("take_profit")
    assert [(o.side, o.amount, o.price) for o in stops] == [("sell", Decimal("40"), Decimal("95"))]
    assert [(o.amount, o.price) for o in tps] == [(Decimal("20"), Decimal("110")),
                                                 (Decimal("20"), Decimal("120"))]
    assert pos.stop_order_id == stops[0].id
    assert [t.order_id for t in pos.take_profits] == [o.id for o in tps]

    assert [p.id for p in await store.get_open_positions()] == [pos.id]
    assert notifier.kinds() == ["POSITION_OPENED"]
    assert notifier.risk_alerts == []


async def test_short_entry_uses_sell_side(engine, paper, make_signal):
    pos = await open_position(engine, make_signal, action=SignalAction.SELL,
                              stop_loss=Decimal("105"), take_profits=[Decimal("90")])

    assert pos.side is PositionSide.SHORT
    assert paper.created_orders[0].side == "sell"
    assert paper.orders_by_type("stop_market")[0].side == "buy"
    assert paper.orders_by_type("take_profit")[0].amount == pos.size


async def test_custom_target_split(engine, paper, make_signal):
    await open_position(engine, make_signal, take_profit_percents=[30, 70])

    assert [o.amount for o in paper.orders_by_type("take_profit")] == [Decimal("12"), Decimal("28")]


async def test_rejected_signal_places_no_order(engine, paper, notifier, make_signal):
    result = await engine.execute_signal(make_signal(leverage=7))

    assert not result.success
    assert result.reason == "LEVERAGE_NOT_ALLOWED"
    assert "create_order" not in paper.calls
    assert paper.created_orders == []
    assert len(notifier.risk_alerts) == 1


async def test_daily_loss_breaker_blocks_entries(engine, paper, store, make_signal):
    pos = await open_position(engine, make_signal)
    paper.set_price(SYMBOL, "80")
    await engine.close_position(pos, CloseReason.STOP_LOSS, Decimal("80"))  # -800 today

    result = await engine.execute_signal(make_signal())

    assert result.reason == "DAILY_LOSS_LIMIT_HIT"
    assert len(await store.get_open_positions()) == 0


async def test_hold_signal_is_ignored(engine, paper, make_signal):
    result = await engine.execute_signal(make_signal(action=SignalAction.HOLD))

    assert result.reason == "HOLD_SIGNAL"
    assert paper.calls == []


async def test_auth_failure_halts_engine(engine, paper, notifier, make_signal):
    paper.fail_next("create_order", ErrorKind.AUTH)

    result = await engine.execute_signal(make_signal())

    assert result.reason == "AUTH"
    assert engine.halted
    assert len(notifier.risk_alerts) == 1
    assert (await engine.execute_signal(make_signal())).reason == "ENGINE_HALTED"
    assert len(notifier.risk_alerts) == 1


async def test_insufficient_balance_halts_by_default(engine, paper, notifier, make_signal):
    paper.fail_next("create_order", ErrorKind.INSUFFICIENT_BALANCE)

    result = await engine.execute_signal(make_signal())

    assert result.reason == "INSUFFICIENT_BALANCE"
    assert engine.halted
    assert len(notifier.risk_alerts) == 1


async def test_insufficient_balance_skip_policy(paper, layer, store, notifier, risk, exec_config,
                                                sleeper, make_signal):
    engine = ExecutionEngine(paper, layer, store, notifier, risk,
                             replace(exec_config, insufficient_balance_policy="skip"),
                             sleep=sleeper)
    paper.fail_next("create_order", ErrorKind.INSUFFICIENT_BALANCE)

    result = await engine.execute_signal(make_signal())

    assert not result.success
    assert not engine.halted
    assert len(notifier.risk_alerts) == 1
    assert (await engine.execute_signal(make_signal())).success


async def test_rejected_order_skips_signal_and_continues(engine, paper, notifier, make_signal):
    paper.fail_next("create_order", ErrorKind.REJECTED)

    result = await engine.execute_signal(make_signal())

    assert result.reason == "REJECTED"
    assert not engine.halted
    assert len(notifier.risk_alerts) == 1
    assert (await engine.execute_signal(make_signal())).success


async def test_transient_failures_are_retried_silently(engine, paper, notifier, sleeper, make_signal):
    paper.fail_next("fetch_balance", ErrorKind.NETWORK, times=2)

    result = await engine.execute_signal(make_signal())

    assert result.success
    assert sleeper.calls[:2] == [1.0, 2.0]
    assert notifier.risk_alerts == []


async def test_exhausted_retries_notify_once(engine, paper, notifier, make_signal):
    paper.fail_next("fetch_balance", ErrorKind.NETWORK, times=3)

    result = await engine.execute_signal(make_signal())

    assert result.reason == "NETWORK"
    assert not engine.halted
    assert len(notifier.risk_alerts) == 1


async def test_protective_order_failure_keeps_position(engine, paper, store, notifier, make_signal):
    paper.fail_next("create_stop_loss", ErrorKind.REJECTED)

    result = await engine.execute_signal(make_signal())

    assert result.success
    assert result.position.stop_order_id is None
    assert len(await store.get_open_positions()) == 1
    assert len(notifier.risk_alerts) == 1
    assert "stop-loss" in notifier.risk_alerts[0]


class RestingLimitPaper(PaperExchangeAdapter):
    """Limit orders rest instead of filling instantly."""

    async def create_order(self, symbol, side, type, amount, price=None, params=None):
        if type != "limit":
            return await super().create_order(symbol, side, type, amount, price, params)
        self._enter("create_order")
        return self._new_order(symbol, side, type, amount, price, filled=False)


async def test_unfilled_limit_entry_is_cancelled(layer, store, notifier, risk, exec_config,
                                                 sleeper, make_signal):
    paper = RestingLimitPaper(prices={SYMBOL: Decimal("101")})
    engine = ExecutionEngine(paper, layer, store, notifier, risk, exec_config, sleep=sleeper)

    result = await engine.execute_signal(make_signal(order_type="limit"))

    assert result.reason == "ENTRY_NOT_FILLED"
    assert paper.cancelled_orders == [paper.created_orders[0].id]
    assert paper.calls.count("fetch_order") == 4  # 3 polls + final state
    assert sleeper.calls == [1, 1, 1]
    assert await store.get_open_positions() == []
    assert len(notifier.risk_alerts) == 1


# ── Exits ────────────────────────────────────────────────────────────────────

async def test_close_position_books_pnl(engine, paper, store, notifier, make_signal):
    pos = await open_position(engine, make_signal)
    paper.set_price(SYMBOL, "110")

    history = await engine.close_position(pos, CloseReason.MANUAL, Decimal("110"))

    assert history.pnl == Decimal("400")
    assert history.size == Decimal("40")
    assert history.pnl_percent == pytest.approx(50.0)  # 400 / 800 margin
    assert history.close_reason is CloseReason.MANUAL
    stored = await store.get_position(pos.id)
    assert stored.status is PositionStatus.CLOSED
    assert stored.remaining_size == 0
    assert await store.get_open_positions() == []
    assert [o.amount for o in exit_orders(paper)] == [Decimal("40")]
    assert set(paper.cancelled_orders) == {pos.stop_order_id} | {t.order_id for t in pos.take_profits}
    assert notifier.kinds()[-1] == "POSITION_CLOSED"


async def test_short_pnl_and_fees(paper, layer, store, notifier, risk, exec_config, sleeper,
                                  make_signal):
    engine = ExecutionEngine(paper, layer, store, notifier, risk,
                             replace(exec_config, fee_rate=Decimal("0.001")), sleep=sleeper)
    pos = await open_position(engine, make_signal, action=SignalAction.SELL,
                              stop_loss=Decimal("105"), take_profits=[Decimal("90")])
    paper.set_price(SYMBOL, "90")

    history = await engine.close_position(pos, CloseReason.TAKE_PROFIT, Decimal("90"))

    # size 200 / 5 = 40; gross (100 - 90) * 40; fees (100 + 90) * 40 * 0.001
    assert history.fees == Decimal("7.6")
    assert history.pnl == Decimal("400") - Decimal("7.6")
    assert exit_orders(paper, side="buy")[0].amount == Decimal("40")


async def test_close_is_idempotent(engine, paper, make_signal):
    pos = await open_position(engine, make_signal)

    first = await engine.close_position(pos, CloseReason.MANUAL, Decimal("100"))
    second = await engine.close_position(pos, CloseReason.STOP_LOSS, Decimal("100"))

    assert first is not None
    assert second is None
    assert len(exit_orders(paper)) == 1


async def test_concurrent_closes_send_one_order(engine, paper, store, make_signal):
    pos = await open_position(engine, make_signal)

    results = await asyncio.gather(
        engine.close_position(pos, CloseReason.MANUAL, Decimal("100")),
        engine.close_position(pos, CloseReason.STOP_LOSS, Decimal("100")),
    )

    assert sum(r is not None for r in results) == 1
    assert len(exit_orders(paper)) == 1
    assert len(await store.get_history()) == 1


async def test_failed_close_keeps_position_and_rearms_stop(engine, paper, store, notifier,
                                                           make_signal):
    pos = await open_position(engine, make_signal)
    paper.fail_next("create_order", ErrorKind.REJECTED)

    assert await engine.close_position(pos, CloseReason.STOP_LOSS, Decimal("94")) is None

    stored = await store.get_position(pos.id)
    assert stored.status is PositionStatus.OPEN
    assert stored.remaining_size == Decimal("40")
    assert stored.stop_order_id not in (None, pos.stop_order_id)
    assert len(notifier.risk_alerts) == 1
    assert not engine.halted


async def test_partial_close_then_final_target(engine, paper, store, make_signal):
    pos = await open_position(engine, make_signal)
    paper.set_price(SYMBOL, "111")

    first = await engine.partial_close(pos, pos.take_profits[0], Decimal("111"))

    assert first.size == Decimal("20")
    assert first.close_reason is CloseReason.TAKE_PROFIT
    stored = await store.get_position(pos.id)
    assert stored.status is PositionStatus.PARTIAL_CLOSED
    assert stored.remaining_size == Decimal("20")
    assert stored.take_profits[0].filled
    new_stop = stored.stop_order_id
    assert new_stop != pos.stop_order_id
    assert paper.orders_by_type("stop_market")[-1].amount == Decimal("20")

    paper.set_price(SYMBOL, "121")
    last = await engine.partial_close(stored, stored.take_profits[1], Decimal("121"))

    assert last.size == Decimal("20")
    final = await store.get_position(pos.id)
    assert final.status is PositionStatus.CLOSED
    assert final.remaining_size == 0
    assert new_stop in paper.cancelled_orders
    assert len(await store.get_history()) == 2


async def test_partial_close_is_idempotent(engine, paper, make_signal):
    pos = await open_position(engine, make_signal)
    target = pos.take_profits[0]

    first = await engine.partial_close(pos, target, Decimal("111"))
    again = await engine.partial_close(pos, target, Decimal("111"))

    assert first is not None
    assert again is None
    assert len(exit_orders(paper)) == 1


async def test_partial_close_of_target_filled_on_exchange(engine, paper, store, make_signal):
    pos = await open_position(engine, make_signal)
    paper.mark_filled(pos.take_profits[0].order_id)

    history = await engine.partial_close(pos, pos.take_profits[0], Decimal("112"))

    assert history.exit_price == Decimal("110")
    assert exit_orders(paper) == []
    assert (await store.get_position(pos.id)).remaining_size == Decimal("20")


async def test_close_after_stop_executed_on_exchange(engine, paper, store, make_signal):
    pos = await open_position(engine, make_signal)
    paper.mark_filled(pos.stop_order_id)
    paper.set_price(SYMBOL, "94")

    history = await engine.close_position(pos, CloseReason.STOP_LOSS, Decimal("94"))

    assert exit_orders(paper) == []
    assert history.close_reason is CloseReason.STOP_LOSS
    assert history.size == Decimal("40")
    assert history.exit_price == Decimal("95")
    assert (await store.get_position(pos.id)).is_closed
    assert len(await store.get_history()) == 1


async def test_close_books_take_profit_executed_on_exchange(engine, paper, store, make_signal):
    pos = await open_position(engine, make_signal)
    paper.mark_filled(pos.take_profits[0].order_id)
    paper.set_price(SYMBOL, "104")

    history = await engine.close_position(pos, CloseReason.MANUAL, Decimal("104"))

    assert [o.amount for o in exit_orders(paper)] == [Decimal("20")]
    rows = await store.get_history()
    assert [(h.size, h.close_reason) for h in rows] == [
        (Decimal("20"), CloseReason.TAKE_PROFIT), (Decimal("20"), CloseReason.MANUAL)]
    assert rows[0].exit_price == Decimal("110")
    assert history == rows[1]
    final = await store.get_position(pos.id)
    assert final.is_closed
    assert final.take_profits[0].filled


async def test_stop_update_after_stop_executed_closes_position(engine, paper, store, notifier,
                                                               make_signal):
    pos = await open_position(engine, make_signal)
    paper.mark_filled(pos.stop_order_id)

    assert not await engine.update_stop_loss(pos, Decimal("98"), Decimal("103"))

    stored = await store.get_position(pos.id)
    assert stored.is_closed
    assert stored.stop_loss == Decimal("95")
    (history,) = await store.get_history()
    assert history.close_reason is CloseReason.STOP_LOSS
    assert "POSITION_CLOSED" in notifier.kinds()
    assert "STOP_MOVED" not in notifier.kinds()


class WriteLogStore(InMemoryStateStore):
    """Records (status, remaining_size) of every position write."""

    def __init__(self):
        super().__init__()
        self.writes = []

    async def update_position(self, position):
        self.writes.append((position.status, position.remaining_size))
        await super().update_position(position)

    async def close_position(self, position, history):
        self.writes.append((position.status, position.remaining_size))
        await super().close_position(position, history)


async def test_closed_status_and_zero_size_are_written_together(paper, layer, notifier, risk,
                                                                exec_config, sleeper, make_signal):
    store = WriteLogStore()
    engine = ExecutionEngine(paper, layer, store, notifier, risk, exec_config, sleep=sleeper)
    pos = await open_position(engine, make_signal)

    await engine.partial_close(pos, pos.take_profits[0], Decimal("111"))
    await engine.close_position(pos, CloseReason.MANUAL, Decimal("104"))

    assert all((status is PositionStatus.CLOSED) == (remaining == 0)
               for status, remaining in store.writes)
    assert store.writes[-1] == (PositionStatus.CLOSED, Decimal("0"))


async def test_update_stop_loss_never_loosens(engine, store, make_signal):
    pos = await open_position(engine, make_signal)

    assert await engine.update_stop_loss(pos, Decimal("98"), Decimal("103"))
    assert not await engine.update_stop_loss(pos, Decimal("97"), Decimal("102"))

    stored = await store.get_position(pos.id)
    assert stored.stop_loss == Decimal("98")
    assert stored.best_price == Decimal("103")
    assert stored.trailing_active


async def test_manual_close(engine, paper, store, make_signal):
    pos = await open_position(engine, make_signal)
    paper.set_price(SYMBOL, "104")

    assert await engine.manual_close(pos.id)
    assert not await engine.manual_close(pos.id)
    assert not await engine.manual_close("pos_unknown")

    (history,) = await store.get_history()
    assert history.close_reason is CloseReason.MANUAL
    assert history.exit_price == Decimal("104")


async def test_stop_accepting_refuses_signals(engine, paper, make_signal):
    engine.stop_accepting()

    result = await engine.execute_signal(make_signal())

    assert result.reason == "ENGINE_STOPPED"
    assert paper.calls == []


async def test_halt_runs_callback_once(engine, notifier):
    reasons = []

    async def on_halt(reason):
        reasons.append(reason)

    engine.on_halt = on_halt
    await engine.halt("operator")
    await engine.halt("again")

    assert reasons == ["operator"]
    assert len(notifier.risk_alerts) == 1
    engine.resume()
    assert engine.accepting_signals
