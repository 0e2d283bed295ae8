import logging
from decimal import Decimal

import pytest

from rwa_arb.audit import AuditChain, MemoryAuditStore
from rwa_arb.chain_engine import TxReceipt
from rwa_arb.config import MonitorSettings
from rwa_arb.errors import UnknownChainError
from rwa_arb.models import Route

NOW = 1_700_000_000
SIGNER = "0x00000000000000000000000000000000000000Aa"
HUB = "0x00000000000000000000000000000000000000Bb"

SRC_FEED = "0x0000000000000000000000000000000000000001"
DEST_FEED = "0x0000000000000000000000000000000000000003"
SRC_TOKEN = "0x0000000000000000000000000000000000000011"
DEST_TOKEN = "0x0000000000000000000000000000000000000013"


def clock():
    return float(NOW)


def make_route(src="sepolia", dest="mumbai", symbol="OUSG") -> Route:
    return Route(
        symbol=symbol,
        src_chain=src,
        dest_chain=dest,
        src_chain_id=11155111 if src == "sepolia" else 80001,
        dest_chain_id=80001 if dest == "mumbai" else 11155111,
        dest_chain_selector=12532609583862916517,
        src_feed=SRC_FEED if src == "sepolia" else DEST_FEED,
        dest_feed=DEST_FEED if dest == "mumbai" else SRC_FEED,
        src_token=SRC_TOKEN if src == "sepolia" else DEST_TOKEN,
        dest_token=DEST_TOKEN if dest == "mumbai" else SRC_TOKEN,
    )


class FakeGateway:
    """In-memory stand-in for ChainGateway. Prices are set in USD and stored as raw feed answers."""

    def __init__(self):
        self.rounds = {}
        self.feed_decs = {}
        self.read_errors = {}
        self.hubs = {"sepolia": HUB, "mumbai": HUB}
        self.balances = {}
        self.token_decs = 18
        self.balance_error = None
        self.quote = (81, 5, 10 ** 15)
        self.current_allowance = 0
        self.approvals = []
        self.bridges = []
        self.bridge_error = None
        self.signer_address = SIGNER
        self.anchors = []

    # --- test setup helpers ---

    def set_price(self, chain, feed, price, decimals=8, age=60, round_id=100, answered_in_round=None):
        answer = int(Decimal(str(price)).scaleb(decimals))
        answered = round_id if answered_in_round is None else answered_in_round
        self.rounds[(chain, feed)] = (round_id, answer, NOW - age, NOW - age, answered)
        self.feed_decs[(chain, feed)] = decimals

    def set_liquidity(self, chain, token, tokens):
        self.balances[(chain, token)] = int(Decimal(str(tokens)).scaleb(self.token_decs))

    # --- ChainGateway surface ---

    async def latest_round_data(self, chain, feed):
        if (chain, feed) in self.read_errors:
            raise self.read_errors[(chain, feed)]
        if (chain, feed) not in self.rounds:
            raise UnknownChainError(f"No feed {feed} on {chain}")
        return self.rounds[(chain, feed)]

    async def feed_decimals(self, chain, feed):
        return self.feed_decs.get((chain, feed), 8)

    def hub_address(self, chain):
        return self.hubs.get(chain)

    async def token_balance(self, chain, token, holder):
        if self.balance_error:
            raise self.balance_error
        return self.balances.get((chain, token), 0)

    async def token_decimals(self, chain, token):
        return self.token_decs

    async def allowance(self, chain, token, spender):
        return self.current_allowance

    async def bridge_quote(self, chain, token, amount, selector):
        return self.quote

    async def approve(self, chain, token, spender, amount):
        self.approvals.append((chain, token, spender, amount))
        self.current_allowance = amount
        return TxReceipt(tx_hash="0xapprove", block_number=41)

    async def bridge_and_swap(self, chain, token, amount, selector, receiver, link_fee, value):
        if self.bridge_error:
            raise self.bridge_error
        self.bridges.append((chain, token, amount, selector, receiver, link_fee, value))
        return TxReceipt(tx_hash=f"0xbridge{len(self.bridges)}", block_number=42)

    async def anchor_audit(self, chain, address, digest):
        self.anchors.append((chain, address, digest))
        return TxReceipt(tx_hash="0xanchor", block_number=43)


class RecordingAlerts:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)


@pytest.fixture
def logger():
    return logging.getLogger("rwa_arb.tests")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def route():
    return make_route()


@pytest.fixture
def settings():
    return MonitorSettings(
        poll_interval_seconds=0.01,
        tick_timeout_seconds=5,
        rpc_timeout_seconds=0.005,
        spread_threshold_bps=50,
        min_arbitrage_usd=Decimal("1000"),
    )


@pytest.fixture
async def audit(logger):
    chain = AuditChain(MemoryAuditStore(), "test-secret", logger, region="test")
    await chain.start()
    yield chain
    await chain.stop()

