# rwa_arb/execution.py
import logging
from decimal import ROUND_FLOOR, Decimal
from typing import List, Optional

from .audit import AuditChain
from .errors import (InsufficientAllowanceError, InsufficientLiquidityError,
                     SpreadInvalidatedError)
from .models import (AuditType, BridgeOutcome, BridgeState, BridgeStatus,
                     Route, SpreadResult)

LIQUIDITY_SAFETY_MARGIN = Decimal("0.95")


class _Attempt:
    """Mutable scratch state of one bridge attempt; frozen into a BridgeOutcome at the end."""
    def __init__(self):
        self.states: List[BridgeState] = []
        self.amount = 0
        self.quoted_spread_bps: Optional[int] = None
        self.protocol_fee: Optional[int] = None
        self.ccip_fee: Optional[int] = None
        self.tx_id: Optional[str] = None
        self.block_number: Optional[int] = None

    def enter(self, state: BridgeState):
        self.states.append(state)


class BridgeOrchestrator:
    """
    Turns a confirmed spread into an on-chain bridgeAndSwap.

    QUOTED -> APPROVED -> SUBMITTED -> CONFIRMED, or FAILED from any state.
    Never retries: the monitor re-evaluates from scratch on its next tick.
    Every terminal outcome is written to the audit chain before it is returned.
    """
    def __init__(self, gateway, audit: AuditChain, logger: logging.Logger,
                 threshold_bps: float, dry_run: bool = False,
                 safety_margin: Decimal = LIQUIDITY_SAFETY_MARGIN):
        self.gateway = gateway
        self.audit = audit
        self.logger = logger
        self.threshold_bps = threshold_bps
        self.dry_run = dry_run
        self.safety_margin = safety_margin

    async def execute_bridge(self, route: Route, spread: SpreadResult) -> BridgeOutcome:
        self.logger.info(f"⚡ BRIDGE TRIGGERED: {route.label} | Spread: {spread.spread_bps:.1f} bps")
        attempt = _Attempt()
        try:
            await self._quote(route, spread, attempt)
            if self.dry_run:
                try:
                    await self._check_allowance(route, attempt.amount)
                except InsufficientAllowanceError as e:
                    self.logger.info(f"🔵 DRY RUN: approval of {e.required} would be sent first")
                self.logger.info(f"🔵 DRY RUN: Bridge simulated | {route.label} | Amount: {attempt.amount}")
                outcome = self._finish(route, spread, attempt, BridgeStatus.SIMULATED)
            else:
                await self._approve(route, attempt)
                await self._submit(route, attempt)
                outcome = self._finish(route, spread, attempt, BridgeStatus.EXECUTED)
                self.logger.info(f"✅ SUCCESS: {route.label} | Tx: {attempt.tx_id} | Block: {attempt.block_number}")
        except Exception as e:
            attempt.enter(BridgeState.FAILED)
            outcome = self._finish(route, spread, attempt, BridgeStatus.FAILED, error=e)
            reached = attempt.states[-2].value if len(attempt.states) > 1 else "nothing"
            self.logger.warning(f"⚠️ BRIDGE FAILED: {route.label} | Reached: {reached} | {e}")

        await self._record(outcome)
        return outcome

    # --- States ---

    async def _quote(self, route: Route, spread: SpreadResult, attempt: _Attempt):
        """Re-validates the opportunity against a fresh on-chain quote."""
        decimals = await self.gateway.token_decimals(route.src_chain, route.src_token)
        trial_tokens = (spread.liquidity_tokens * self.safety_margin).to_integral_value(rounding=ROUND_FLOOR)
        amount = int(trial_tokens.scaleb(int(decimals)))
        if amount <= 0:
            raise InsufficientLiquidityError(f"No bridgeable amount for {route.label}")

        onchain_bps, protocol_fee, ccip_fee = await self.gateway.bridge_quote(
            route.src_chain, route.src_token, amount, route.dest_chain_selector)

        attempt.amount = amount
        attempt.quoted_spread_bps = onchain_bps
        attempt.protocol_fee = protocol_fee
        attempt.ccip_fee = ccip_fee
        self.logger.info(f"   On-chain spread: {onchain_bps} bps | Protocol fee: {protocol_fee} | CCIP fee: {ccip_fee} wei")

        if onchain_bps < self.threshold_bps:
            raise SpreadInvalidatedError(onchain_bps, self.threshold_bps)
        attempt.enter(BridgeState.QUOTED)

    async def _check_allowance(self, route: Route, amount: int) -> int:
        hub = self.gateway.hub_address(route.src_chain)
        current = await self.gateway.allowance(route.src_chain, route.src_token, hub)
        if current < amount:
            raise InsufficientAllowanceError(current, amount)
        return current

    async def _approve(self, route: Route, attempt: _Attempt):
        try:
            await self._check_allowance(route, attempt.amount)
        except InsufficientAllowanceError as e:
            self.logger.info(f"   Allowance {e.current} < {e.required}. Approving hub...")
            hub = self.gateway.hub_address(route.src_chain)
            receipt = await self.gateway.approve(route.src_chain, route.src_token, hub, attempt.amount)
            self.logger.info(f"   Approved {attempt.amount} | Tx: {receipt.tx_hash}")
        attempt.enter(BridgeState.APPROVED)

    async def _submit(self, route: Route, attempt: _Attempt):
        receiver = self.gateway.signer_address
        attempt.enter(BridgeState.SUBMITTED)
        receipt = await self.gateway.bridge_and_swap(
            route.src_chain, route.src_token, attempt.amount, route.dest_chain_selector,
            receiver, 0, value=attempt.ccip_fee)
        attempt.tx_id = receipt.tx_hash
        attempt.block_number = receipt.block_number
        attempt.enter(BridgeState.CONFIRMED)

    # --- Outcome ---

    def _finish(self, route: Route, spread: SpreadResult, attempt: _Attempt,
                status: BridgeStatus, error: Exception = None) -> BridgeOutcome:
        return BridgeOutcome(
            route=route,
            spread=spread,
            status=status,
            final_state=attempt.states[-1] if attempt.states else BridgeState.FAILED,
            states=tuple(attempt.states),
            tx_id=attempt.tx_id,
            block_number=attempt.block_number,
            amount=attempt.amount,
            quoted_spread_bps=attempt.quoted_spread_bps,
            protocol_fee=attempt.protocol_fee,
            ccip_fee=attempt.ccip_fee,
            error=None if error is None else f"{type(error).__name__}: {error}",
        )

    async def _record(self, outcome: BridgeOutcome):
        entry_type = {
            BridgeStatus.EXECUTED: AuditType.BRIDGE_EXECUTED,
            BridgeStatus.FAILED: AuditType.BRIDGE_FAILED,
            BridgeStatus.SIMULATED: AuditType.BRIDGE_SIMULATED,
        }[outcome.status]
        await self.audit.append(entry_type, outcome.route.label, amount=outcome.amount, details={
            "status": outcome.status.value,
            "states": [s.value for s in outcome.states],
            "detected_spread_bps": outcome.spread.spread_bps,
            "quoted_spread_bps": outcome.quoted_spread_bps,
            "src_price": outcome.spread.src.price,
            "dest_price": outcome.spread.dest.price,
            "ccip_fee": outcome.ccip_fee,
            "protocol_fee": outcome.protocol_fee,
            "tx_id": outcome.tx_id,
            "block_number": outcome.block_number,
            "error": outcome.error,
        })
