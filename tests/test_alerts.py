import time
from decimal import Decimal

import aiohttp
import pytest

from conftest import DEST_FEED, SRC_FEED
from rwa_arb.alerts import (BRIDGE_EXECUTED, ERROR, SPREAD_DETECTED_LOW_LIQUIDITY,
                            AlertEngine, AlertEvent, format_message)
from rwa_arb.config import AlertSettings
from rwa_arb.models import PriceReading, SpreadResult


def _result(route, liquidity="196.80"):
    def reading(chain, feed, price):
        return PriceReading(chain=chain, feed=feed, price=Decimal(price), updated_at=0,
                            round_id=1, answered_in_round=1, decimals=8, observed_at=0.0)
    return SpreadResult(route=route, src=reading("sepolia", SRC_FEED, "98.40"),
                        dest=reading("mumbai", DEST_FEED, "99.20"), spread_bps=81.30081,
                        available_liquidity=Decimal(liquidity), liquidity_tokens=Decimal(2),
                        timestamp=time.time())


class _Response:
    def __init__(self, status):
        self.status = status

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, status=200, error=None):
        self.status = status
        self.error = error
        self.posts = []

    def post(self, url, json=None):
        self.posts.append((url, json))
        if self.error:
            raise self.error
        return _Response(self.status)

    async def close(self):
        pass


def test_bridge_message_has_route_spread_and_tx(route):
    msg = format_message(AlertEvent(type=BRIDGE_EXECUTED, route=route, result=_result(route), tx_id="0xabc"))

    assert "RWA Bridge Executed" in msg
    assert "sepolia → mumbai" in msg
    assert "81.3 bps" in msg
    assert "$98.4000" in msg
    assert "`0xabc`" in msg


def test_low_liquidity_message_shows_available_amount(route):
    msg = format_message(AlertEvent(type=SPREAD_DETECTED_LOW_LIQUIDITY, route=route, result=_result(route)))

    assert "Low Liquidity" in msg
    assert "$197" in msg


def test_error_message_without_route():
    msg = format_message(AlertEvent(type=ERROR, error="boom"))

    assert "unknown" in msg
    assert "boom" in msg


def test_unknown_event_type_is_not_announced():
    assert format_message(AlertEvent(type="SOMETHING_ELSE")) is None


def test_disabled_engine_schedules_nothing(logger):
    engine = AlertEngine(AlertSettings(enabled=True), logger)

    assert engine.enabled is False
    engine.notify(AlertEvent(type=ERROR, error="x"))
    assert engine._pending == set()


async def test_notify_posts_to_slack_and_telegram(logger, route):
    settings = AlertSettings(slack_webhook_url="https://hooks.slack.test/x",
                             telegram_bot_token="123:abc", telegram_chat_id="42")
    engine = AlertEngine(settings, logger)
    engine._session = FakeSession()

    engine.notify(AlertEvent(type=ERROR, route=route, error="boom"))
    await engine.drain()

    urls = [u for u, _ in engine._session.posts]
    assert "https://hooks.slack.test/x" in urls
    assert "https://api.telegram.org/bot123:abc/sendMessage" in urls
    telegram = [p for u, p in engine._session.posts if "telegram" in u][0]
    assert telegram["chat_id"] == "42"
    assert telegram["parse_mode"] == "Markdown"


@pytest.mark.parametrize("session", [
    FakeSession(status=500),
    FakeSession(error=aiohttp.ClientConnectionError("refused")),
])
async def test_delivery_failures_are_swallowed(logger, route, session):
    engine = AlertEngine(AlertSettings(slack_webhook_url="https://hooks.slack.test/x"), logger)
    engine._session = session

    await engine.send(AlertEvent(type=ERROR, route=route, error="boom"))
    engine.notify(AlertEvent(type=ERROR, route=route, error="boom"))
    await engine.shutdown()

    assert len(session.posts) == 2


def test_simulated_bridge_is_labelled_as_dry_run(route):
    msg = format_message(AlertEvent(type=BRIDGE_EXECUTED, route=route, result=_result(route), simulated=True))

    assert "Simulated (Dry Run)" in msg
    assert "Executed" not in msg
    assert "Tx:" not in msg
