"""
Notifiers
Trade and risk alerts. Delivery is fire-and-forget: failures are logged and
never propagate into the trading path.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from config import NotifierConfig


class LogNotifier:
    """Writes alerts to the log. Default when no webhook is configured."""

    async def send_trade_alert(self, kind: str, payload: Dict[str, Any]) -> None:
        logger.info(f"📣 {kind}: {payload}")

    async def send_risk_alert(self, message: str) -> None:
        logger.warning(f"🚨 RISK: {message}")


class WebhookNotifier:
    """
    POSTs JSON alerts to a webhook (Slack/Discord-compatible "text" field plus
    the structured payload).
    """

    def __init__(self, url: str, timeout: float = 5.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.session = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": "AutoTrader/1.0", "Content-Type": "application/json"},
        )
        self._fallback = LogNotifier()
        logger.info(f"Initialized webhook notifier → {url}")

    @classmethod
    def from_config(cls, cfg: NotifierConfig) -> "WebhookNotifier":
        return cls(cfg.webhook_url, cfg.timeout_sec)

    async def send_trade_alert(self, kind: str, payload: Dict[str, Any]) -> None:
        text = f"{kind}: {payload.get('symbol') or payload.get('position', {}).get('symbol', '')}"
        await self._post({"type": "trade", "kind": kind, "text": text, "payload": payload})

    async def send_risk_alert(self, message: str) -> None:
        await self._post({"type": "risk", "text": f"🚨 {message}"})

    async def _post(self, body: Dict[str, Any]) -> None:
        body["sent_at"] = datetime.now(timezone.utc).isoformat()
        try:
            response = await self.session.post(self.url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Webhook delivery failed: {e}")
            if body["type"] == "risk":
                await self._fallback.send_risk_alert(body["text"])

    async def close(self) -> None:
        await self.session.aclose()
