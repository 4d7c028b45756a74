"""Notifiers never raise into the trading path."""
import json

import httpx

from interfaces import INotifier
from monitoring.notifier import LogNotifier, WebhookNotifier


async def test_webhook_posts_json():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200)

    notifier = WebhookNotifier("https://hooks.example/alert",
                               client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    await notifier.send_trade_alert("POSITION_OPENED", {"symbol": "BTC/USDT", "size": "40"})
    await notifier.send_risk_alert("halted")
    await notifier.close()

    assert [b["type"] for b in seen] == ["trade", "risk"]
    assert seen[0]["kind"] == "POSITION_OPENED"
    assert seen[0]["payload"]["size"] == "40"
    assert "halted" in seen[1]["text"]


async def test_webhook_failure_is_swallowed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    notifier = WebhookNotifier("https://hooks.example/alert",
                               client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    await notifier.send_risk_alert("exchange down")
    await notifier.send_trade_alert("POSITION_CLOSED", {"position": {"symbol": "ETH/USDT"}})
    await notifier.close()


async def test_log_notifier():
    notifier = LogNotifier()

    assert isinstance(notifier, INotifier)
    await notifier.send_trade_alert("STOP_MOVED", {"symbol": "BTC/USDT"})
    await notifier.send_risk_alert("daily loss limit")
