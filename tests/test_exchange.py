"""Exchange boundary: ccxt error classification and the paper adapter."""
from decimal import Decimal

import ccxt.async_support as ccxt
import pytest

from exchange.ccxt_adapter import _to_order, classify_error
from exchange.errors import ErrorKind, ExchangeError
from exchange.paper_adapter import PaperExchangeAdapter
from interfaces import IExchangeAdapter


@pytest.mark.parametrize("error,kind", [
    (ccxt.AuthenticationError("bad key"), ErrorKind.AUTH),
    (ccxt.PermissionDenied("ip not whitelisted"), ErrorKind.AUTH),
    (ccxt.RateLimitExceeded("429"), ErrorKind.RATE_LIMIT),
    (ccxt.DDoSProtection("slow down"), ErrorKind.RATE_LIMIT),
    (ccxt.InsufficientFunds("margin"), ErrorKind.INSUFFICIENT_BALANCE),
    (ccxt.OnMaintenance("upgrade"), ErrorKind.MAINTENANCE),
    (ccxt.InvalidOrder("min notional"), ErrorKind.REJECTED),
    (ccxt.OrderNotFound("unknown order"), ErrorKind.REJECTED),
    (ccxt.BadSymbol("no such market"), ErrorKind.REJECTED),
    (ccxt.RequestTimeout("timeout"), ErrorKind.NETWORK),
    (ccxt.ExchangeNotAvailable("502"), ErrorKind.NETWORK),
    (ccxt.NetworkError("reset"), ErrorKind.NETWORK),
    (ccxt.ExchangeError("weird"), ErrorKind.UNKNOWN),
])
def test_classify_error(error, kind):
    classified = classify_error("create_order", error)

    assert classified.kind is kind
    assert str(classified).startswith("[create_order]")


def test_retryable_kinds():
    assert ExchangeError(ErrorKind.NETWORK, "x").retryable
    assert ExchangeError(ErrorKind.UNKNOWN, "x").retryable
    for kind in (ErrorKind.AUTH, ErrorKind.REJECTED, ErrorKind.INSUFFICIENT_BALANCE,
                 ErrorKind.MAINTENANCE, ErrorKind.RATE_LIMIT):
        assert not ExchangeError(kind, "x").retryable


def test_order_normalisation_prefers_average_price():
    order = _to_order({"id": 123, "symbol": "BTC/USDT", "side": "buy", "type": "market",
                       "price": None, "average": 64123.5, "amount": 0.01, "filled": 0.01,
                       "remaining": 0, "status": "closed", "timestamp": 1700000000000})

    assert order.id == "123"
    assert order.price == Decimal("64123.5")
    assert order.is_filled


async def test_paper_adapter_contract():
    paper = PaperExchangeAdapter()

    assert isinstance(paper, IExchangeAdapter)
    assert await paper.test_connection()
    assert (await paper.fetch_balance())["USDT"].total == Decimal("10000")
    assert await paper.fetch_price("ETH/USDT") == Decimal("2500")

    stop = await paper.create_stop_loss("ETH/USDT", "sell", Decimal("1"), Decimal("2400"))
    assert [o.id for o in await paper.fetch_open_orders("ETH/USDT")] == [stop.id]
    await paper.cancel_order(stop.id, "ETH/USDT")
    with pytest.raises(ExchangeError) as exc:
        await paper.cancel_order(stop.id, "ETH/USDT")
    assert exc.value.kind is ErrorKind.REJECTED

    with pytest.raises(ExchangeError):
        await paper.create_order("ETH/USDT", "buy", "market", Decimal("0"))
