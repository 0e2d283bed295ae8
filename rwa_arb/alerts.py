# rwa_arb/alerts.py
"""
Chat notifications for the spread monitor.

Delivery is best-effort: `notify()` schedules the send in the background and
returns at once. A failed webhook is logged and otherwise ignored, it never
reaches the monitor loop.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Set

import aiohttp

from .config import AlertSettings
from .models import Route, SpreadResult

BRIDGE_EXECUTED = "BRIDGE_EXECUTED"
SPREAD_DETECTED_LOW_LIQUIDITY = "SPREAD_DETECTED_LOW_LIQUIDITY"
ERROR = "ERROR"


@dataclass(frozen=True, slots=True)
class AlertEvent:
    type: str
    route: Optional[Route] = None
    result: Optional[SpreadResult] = None
    tx_id: Optional[str] = None
    error: Optional[str] = None
    simulated: bool = False


def format_message(event: AlertEvent) -> Optional[str]:
    """Markdown body for an event, or None for event types we do not announce."""
    if event.type == BRIDGE_EXECUTED:
        r = event.result
        lines = [
            "🔵 *RWA Bridge Simulated (Dry Run)*" if event.simulated else "⚡ *RWA Bridge Executed*",
            f"Token: `{event.route.symbol}`",
            f"Route: {event.route.src_chain} → {event.route.dest_chain}",
            f"Spread: *{r.spread_bps:.1f} bps*",
            f"Src: ${r.src.price:.4f} | Dst: ${r.dest.price:.4f}",
        ]
        if not event.simulated:
            lines.append(f"Tx: `{event.tx_id}`")
        return "\n".join(lines)
    if event.type == SPREAD_DETECTED_LOW_LIQUIDITY:
        r = event.result
        return "\n".join([
            "📊 *Spread Detected (Low Liquidity)*",
            f"Token: `{event.route.symbol}`",
            f"Spread: {r.spread_bps:.1f} bps",
            f"Available: ${r.available_liquidity:.0f} (below minimum)",
        ])
    if event.type == ERROR:
        return "\n".join([
            "❌ *Monitor Error*",
            f"Pair: `{event.route.label if event.route else 'unknown'}`",
            f"Error: {event.error}",
        ])
    return None


class AlertEngine:
    TELEGRAM_URL = "https://api.telegram.org/bot{token}/sendMessage"

    def __init__(self, settings: AlertSettings, logger: logging.Logger, timeout: float = 10.0):
        self.settings = settings
        self.logger = logger
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        s = self.settings
        return s.enabled and bool(s.slack_webhook_url or (s.telegram_bot_token and s.telegram_chat_id))

    def notify(self, event: AlertEvent):
        """Fire-and-forget. Returns immediately; failures are only logged."""
        if not self.enabled:
            return
        task = asyncio.create_task(self.send(event))
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Alert delivery crashed: {task.exception()}")

    async def send(self, event: AlertEvent):
        msg = format_message(event)
        if not msg:
            return
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        await asyncio.gather(self._send_slack(msg), self._send_telegram(msg))

    async def _send_slack(self, text: str):
        url = self.settings.slack_webhook_url
        if not url:
            return
        try:
            async with self._session.post(url, json={"text": text}) as resp:
                if resp.status >= 400:
                    self.logger.error(f"Slack alert failed: HTTP {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"Slack alert failed: {e}")

    async def _send_telegram(self, text: str):
        token, chat_id = self.settings.telegram_bot_token, self.settings.telegram_chat_id
        if not token or not chat_id:
            return
        url = self.TELEGRAM_URL.format(token=token)
        payload = {"chat_id": chat_id, "text": text, "parse_mode": "Markdown"}
        try:
            async with self._session.post(url, json=payload) as resp:
                if resp.status >= 400:
                    self.logger.error(f"Telegram alert failed: HTTP {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"Telegram alert failed: {e}")

    async def drain(self):
        """Waits for every in-flight notification."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def shutdown(self):
        await self.drain()
        if self._session:
            await self._session.close()
            self._session = None
