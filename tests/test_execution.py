import time
from dataclasses import replace
from decimal import Decimal

import pytest

from conftest import DEST_FEED, HUB, SIGNER, SRC_FEED, SRC_TOKEN
from rwa_arb.chain_engine import ChainGateway
from rwa_arb.errors import TransactionFailedError
from rwa_arb.execution import BridgeOrchestrator
from rwa_arb.models import (AuditType, BridgeState, BridgeStatus, PriceReading,
                            SpreadResult)


def _reading(chain, feed, price):
    return PriceReading(chain=chain, feed=feed, price=Decimal(price), updated_at=0,
                        round_id=1, answered_in_round=1, decimals=8, observed_at=60.0)


@pytest.fixture
def spread(route):
    return SpreadResult(
        route=route,
        src=_reading("sepolia", SRC_FEED, "98.40"),
        dest=_reading("mumbai", DEST_FEED, "99.20"),
        spread_bps=81.3,
        available_liquidity=Decimal("5018.40"),
        liquidity_tokens=Decimal("51"),
        timestamp=time.time(),
    )


@pytest.fixture
def orchestrator(gateway, audit, logger):
    return BridgeOrchestrator(gateway, audit, logger, threshold_bps=50)


async def test_successful_bridge_walks_every_state(orchestrator, gateway, audit, route, spread):
    outcome = await orchestrator.execute_bridge(route, spread)

    assert outcome.status is BridgeStatus.EXECUTED
    assert outcome.states == (BridgeState.QUOTED, BridgeState.APPROVED,
                              BridgeState.SUBMITTED, BridgeState.CONFIRMED)
    assert outcome.tx_id == "0xbridge1"
    assert outcome.block_number == 42

    entries = await audit.list()
    assert [e.entry_type for e in entries] == [AuditType.BRIDGE_EXECUTED]
    assert entries[0].details["tx_id"] == "0xbridge1"


async def test_trial_amount_is_95_percent_of_liquidity(orchestrator, gateway, route, spread):
    await orchestrator.execute_bridge(route, spread)

    # floor(51 * 0.95) = 48 tokens, 18 decimals
    chain, token, amount, selector, receiver, link_fee, value = gateway.bridges[0]
    assert amount == 48 * 10 ** 18
    assert token == SRC_TOKEN
    assert selector == route.dest_chain_selector
    assert receiver == SIGNER
    assert link_fee == 0
    assert value == 10 ** 15


async def test_approval_is_sent_when_allowance_is_short(orchestrator, gateway, route, spread):
    await orchestrator.execute_bridge(route, spread)

    assert gateway.approvals == [("sepolia", SRC_TOKEN, HUB, 48 * 10 ** 18)]


async def test_approval_is_skipped_when_allowance_suffices(orchestrator, gateway, route, spread):
    gateway.current_allowance = 10 ** 30

    outcome = await orchestrator.execute_bridge(route, spread)

    assert outcome.status is BridgeStatus.EXECUTED
    assert gateway.approvals == []


async def test_closed_window_never_submits(orchestrator, gateway, audit, route, spread):
    gateway.quote = (30, 5, 10 ** 15)

    outcome = await orchestrator.execute_bridge(route, spread)

    assert outcome.status is BridgeStatus.FAILED
    assert outcome.final_state is BridgeState.FAILED
    assert "SpreadInvalidatedError" in outcome.error
    assert outcome.quoted_spread_bps == 30
    assert gateway.bridges == []
    assert gateway.approvals == []
    entries = await audit.list()
    assert [e.entry_type for e in entries] == [AuditType.BRIDGE_FAILED]


async def test_submission_failure_is_recorded_not_raised(orchestrator, gateway, audit, route, spread):
    gateway.bridge_error = TransactionFailedError("Transaction reverted on sepolia", "0xdead")

    outcome = await orchestrator.execute_bridge(route, spread)

    assert outcome.status is BridgeStatus.FAILED
    assert outcome.states[-2] is BridgeState.SUBMITTED
    assert "0xdead" in outcome.error
    entries = await audit.list()
    assert entries[0].entry_type is AuditType.BRIDGE_FAILED
    assert entries[0].details["states"] == ["QUOTED", "APPROVED", "SUBMITTED", "FAILED"]


async def test_dust_liquidity_fails_before_quoting(orchestrator, gateway, route, spread):
    dust = replace(spread, liquidity_tokens=Decimal("0.5"))

    outcome = await orchestrator.execute_bridge(route, dust)

    assert outcome.status is BridgeStatus.FAILED
    assert "InsufficientLiquidityError" in outcome.error
    assert outcome.states == (BridgeState.FAILED,)


async def test_dry_run_signs_nothing(gateway, audit, logger, route, spread):
    orchestrator = BridgeOrchestrator(gateway, audit, logger, threshold_bps=50, dry_run=True)

    outcome = await orchestrator.execute_bridge(route, spread)

    assert outcome.status is BridgeStatus.SIMULATED
    assert gateway.approvals == []
    assert gateway.bridges == []
    entries = await audit.list()
    assert entries[0].entry_type is AuditType.BRIDGE_SIMULATED


async def test_keyless_dry_run_is_simulated(audit, logger, route, spread, monkeypatch):
    gateway = ChainGateway({}, logger, private_key=None)

    async def token_decimals(chain, token):
        return 18

    async def bridge_quote(chain, token, amount, selector):
        return (81, 5, 10 ** 15)

    monkeypatch.setattr(gateway, "token_decimals", token_decimals)
    monkeypatch.setattr(gateway, "bridge_quote", bridge_quote)
    orchestrator = BridgeOrchestrator(gateway, audit, logger, threshold_bps=50, dry_run=True)

    outcome = await orchestrator.execute_bridge(route, spread)

    assert gateway.signer_address is None
    assert await gateway.allowance("sepolia", SRC_TOKEN, HUB) == 0
    assert outcome.status is BridgeStatus.SIMULATED
    assert outcome.error is None
    assert (await audit.list())[0].entry_type is AuditType.BRIDGE_SIMULATED
