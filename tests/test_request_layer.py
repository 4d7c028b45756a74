"""Resilient request layer: backoff, rate-limit cooldown, FIFO serialization, shutdown."""
import asyncio

import pytest

from conftest import RecordingSleep
from exchange.errors import ErrorKind, ExchangeError, RequestLayerClosed
from execution.request_layer import ResilientRequestLayer


class Flaky:
    """Raises the queued errors in order, then returns `result`."""

    def __init__(self, *errors: ErrorKind, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise ExchangeError(self.errors.pop(0), "boom", "fetch_price")
        return self.result


async def test_two_transient_failures_then_success(layer, sleeper):
    fn = Flaky(ErrorKind.NETWORK, ErrorKind.NETWORK, result=42)

    assert await layer.submit("fetch_price", fn) == 42
    assert fn.calls == 3
    assert sleeper.calls == [1.0, 2.0]  # base + 2 x base
    assert sum(sleeper.calls) == 3.0


async def test_gives_up_after_max_attempts(layer, sleeper):
    fn = Flaky(ErrorKind.UNKNOWN, ErrorKind.NETWORK, ErrorKind.NETWORK)

    with pytest.raises(ExchangeError) as exc:
        await layer.submit("fetch_price", fn)
    assert exc.value.kind is ErrorKind.NETWORK
    assert fn.calls == 3
    assert sleeper.calls == [1.0, 2.0]


@pytest.mark.parametrize("kind", [ErrorKind.AUTH, ErrorKind.REJECTED,
                                  ErrorKind.INSUFFICIENT_BALANCE, ErrorKind.MAINTENANCE])
async def test_non_retryable_errors_surface_immediately(layer, sleeper, kind):
    fn = Flaky(kind)

    with pytest.raises(ExchangeError) as exc:
        await layer.submit("create_order", fn)
    assert exc.value.kind is kind
    assert fn.calls == 1
    assert sleeper.calls == []


async def test_rate_limit_waits_cooldown_once(layer, sleeper):
    fn = Flaky(ErrorKind.RATE_LIMIT)

    assert await layer.submit("fetch_balance", fn) == "ok"
    assert fn.calls == 2
    assert sleeper.calls == [60.0]


async def test_second_rate_limit_surfaces(layer, sleeper):
    fn = Flaky(ErrorKind.RATE_LIMIT, ErrorKind.RATE_LIMIT)

    with pytest.raises(ExchangeError) as exc:
        await layer.submit("fetch_balance", fn)
    assert exc.value.kind is ErrorKind.RATE_LIMIT
    assert fn.calls == 2
    assert sleeper.calls == [60.0]


async def test_rate_limit_cooldown_does_not_consume_retry_budget(layer, sleeper):
    fn = Flaky(ErrorKind.RATE_LIMIT, ErrorKind.NETWORK, ErrorKind.NETWORK)

    assert await layer.submit("fetch_price", fn) == "ok"
    assert fn.calls == 4
    assert sleeper.calls == [60.0, 1.0, 2.0]


async def test_arguments_are_forwarded(layer):
    async def add(a, b, scale=1):
        return (a + b) * scale

    assert await layer.submit("add", add, 2, 3, scale=10) == 50


async def test_calls_run_in_submission_order_one_at_a_time(layer):
    order, active, peak = [], 0, 0

    async def call(i):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0)
        order.append(i)
        active -= 1
        return i

    results = await asyncio.gather(*(layer.submit("op", call, i) for i in range(6)))

    assert results == list(range(6))
    assert order == list(range(6))
    assert peak == 1


async def test_error_is_delivered_to_its_own_caller_only(layer):
    async def ok():
        return "fine"

    bad = Flaky(ErrorKind.REJECTED)
    results = await asyncio.gather(layer.submit("a", ok), layer.submit("b", bad),
                                   layer.submit("c", ok), return_exceptions=True)

    assert results[0] == "fine" and results[2] == "fine"
    assert isinstance(results[1], ExchangeError)


async def test_min_spacing_between_calls():
    sleeper = RecordingSleep()
    layer = ResilientRequestLayer(min_spacing=0.2, sleep=sleeper, clock=lambda: 0.0)

    async def noop():
        return None

    await layer.submit("a", noop)
    await layer.submit("b", noop)
    await layer.stop()

    assert sleeper.calls == [pytest.approx(0.2)]


async def test_stop_drains_queued_work_then_refuses(layer):
    async def slow(i):
        await asyncio.sleep(0)
        return i

    pending = [asyncio.create_task(layer.submit("op", slow, i)) for i in range(3)]
    await asyncio.sleep(0)
    await layer.stop()

    assert [await t for t in pending] == [0, 1, 2]
    assert not layer.is_running
    with pytest.raises(RequestLayerClosed):
        await layer.submit("op", slow, 99)


async def test_stats_track_outcomes(layer):
    await layer.submit("op", Flaky(ErrorKind.NETWORK))
    with pytest.raises(ExchangeError):
        await layer.submit("op", Flaky(ErrorKind.AUTH))

    stats = layer.get_stats()
    assert stats["succeeded"] == 1
    assert stats["failed"] == 1
    assert stats["retries"] == 1
