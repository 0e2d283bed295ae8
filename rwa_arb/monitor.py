# rwa_arb/monitor.py
import asyncio
import logging
import time
from typing import Dict, List, Optional

from .alerts import (BRIDGE_EXECUTED, ERROR, SPREAD_DETECTED_LOW_LIQUIDITY,
                     AlertEngine, AlertEvent)
from .anchor import AuditAnchor
from .audit import AuditChain
from .config import MonitorSettings
from .execution import BridgeOrchestrator
from .models import AuditType, BridgeStatus, Route, RouteStatus, SpreadResult
from .spread import SpreadEvaluator


class MonitorLoop:
    """
    Periodic driver: evaluates every route once per tick, in order, and decides
    whether to bridge, to flag a low-liquidity spread, or to do nothing.
    A failing route is recorded and skipped; it never stops the loop.
    """
    def __init__(self, routes: List[Route], evaluator: SpreadEvaluator, orchestrator: BridgeOrchestrator,
                 audit: AuditChain, alerts: AlertEngine, settings: MonitorSettings, logger: logging.Logger,
                 anchor: Optional[AuditAnchor] = None, anchor_every_ticks: int = 0):
        self.routes = routes
        self.evaluator = evaluator
        self.orchestrator = orchestrator
        self.audit = audit
        self.alerts = alerts
        self.settings = settings
        self.logger = logger
        self.anchor = anchor
        self.anchor_every_ticks = anchor_every_ticks

        self.iteration = 0
        self.running = False
        self.status: Dict[str, RouteStatus] = {r.label: RouteStatus(route=r) for r in routes}
        self._inflight: Optional[asyncio.Task] = None

    async def run(self, max_ticks: Optional[int] = None):
        self.running = True
        self.logger.info(f"🚀 Monitoring {len(self.routes)} routes every {self.settings.poll_interval_seconds:.0f}s "
                         f"| Threshold: {self.settings.spread_threshold_bps:.0f} bps")
        while self.running:
            start_tick = time.monotonic()
            try:
                await asyncio.wait_for(self.tick(), self.settings.tick_timeout_seconds)
            except asyncio.TimeoutError:
                self.logger.error(f"⏱️ Tick #{self.iteration} exceeded {self.settings.tick_timeout_seconds:.0f}s")
                try:
                    await self.audit.append(AuditType.ERROR, "monitor", details={
                        "stage": "tick", "tick": self.iteration, "error": "tick timed out"})
                except Exception as e:
                    self._report_unhandled("monitor", None, e)
            except Exception as e:
                self._report_unhandled(f"tick #{self.iteration}", None, e)

            if max_ticks is not None and self.iteration >= max_ticks:
                break
            elapsed = time.monotonic() - start_tick
            await asyncio.sleep(max(0, self.settings.poll_interval_seconds - elapsed))
        self.running = False

    def stop(self):
        self.running = False

    async def tick(self):
        self.iteration += 1
        self.logger.info(f"── Tick #{self.iteration} ─────────────────────────")
        for route in self.routes:
            try:
                await self.process_route(route)
            except Exception as e:
                # usually the audit store itself; the next route and tick still run
                self._report_unhandled(route.label, route, e)
                self._set_status(route, None, "ERROR")

        if self.anchor and self.anchor_every_ticks and self.iteration % self.anchor_every_ticks == 0:
            try:
                await self.anchor.anchor_batch()
            except Exception as e:
                self.logger.error(f"❌ Audit anchoring failed: {e}")

    async def process_route(self, route: Route):
        try:
            result = await self.evaluator.evaluate(route)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            self.logger.error(f"❌ Error checking {route.label}: {error}")
            await self.audit.append(AuditType.ERROR, route.label, details={"stage": "evaluate", "error": error})
            self.alerts.notify(AlertEvent(type=ERROR, route=route, error=error))
            self._set_status(route, None, "ERROR")
            return

        self.logger.info(f"   {route.label} | Src: ${result.src.price:.4f} | Dst: ${result.dest.price:.4f} "
                         f"| Spread: {result.spread_bps:.1f} bps | Liquidity: ${result.available_liquidity:,.0f}")

        if result.spread_bps < self.settings.spread_threshold_bps:
            self._set_status(route, result, "-")
            return

        self.logger.info(f"   ⚡ SPREAD OPPORTUNITY DETECTED: {result.spread_bps:.1f} bps")
        await self.audit.append(AuditType.SPREAD_DETECTED, route.label,
                                amount=result.available_liquidity, details=self._spread_details(result))

        if result.available_liquidity < self.settings.min_arbitrage_usd:
            self.logger.warning(f"   ⚠️ Spread found but liquidity below minimum (${self.settings.min_arbitrage_usd})")
            await self.audit.append(AuditType.SPREAD_DETECTED_LOW_LIQUIDITY, route.label,
                                    amount=result.available_liquidity, details=self._spread_details(result))
            self.alerts.notify(AlertEvent(type=SPREAD_DETECTED_LOW_LIQUIDITY, route=route, result=result))
            self._set_status(route, result, "LOW LIQUIDITY")
            return

        await self._trigger(route, result)

    async def _trigger(self, route: Route, result: SpreadResult):
        # one signer: never start a bridge while a previous one is still settling
        if self._inflight is not None and not self._inflight.done():
            self.logger.warning(f"   ⏳ Bridge still in flight, skipping {route.label} this tick")
            self._set_status(route, result, "SKIPPED")
            return
        self._inflight = asyncio.create_task(self._bridge_and_report(route, result))
        self._inflight.add_done_callback(lambda task: self._on_bridge_done(route, task))
        # shielded: a tick timeout must not abandon a transaction before it is audited
        try:
            await asyncio.shield(self._inflight)
        except asyncio.CancelledError:
            raise
        except Exception:
            return  # reported by _on_bridge_done

    def _on_bridge_done(self, route: Route, task: asyncio.Task):
        # the awaiting tick may have timed out already; collect the result here
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._report_unhandled(f"bridge {route.label}", route, error)

    async def _bridge_and_report(self, route: Route, result: SpreadResult):
        outcome = await self.orchestrator.execute_bridge(route, result)
        if outcome.status is BridgeStatus.FAILED:
            self.alerts.notify(AlertEvent(type=ERROR, route=route, result=result, error=outcome.error))
            self._set_status(route, result, "BRIDGE FAILED")
        else:
            simulated = outcome.status is BridgeStatus.SIMULATED
            self.alerts.notify(AlertEvent(type=BRIDGE_EXECUTED, route=route, result=result,
                                          tx_id=outcome.tx_id, simulated=simulated))
            self._set_status(route, result, outcome.status.value)
        return outcome

    def _report_unhandled(self, where: str, route: Optional[Route], error: BaseException):
        message = f"{type(error).__name__}: {error}"
        self.logger.critical(f"🚨 UNHANDLED FAILURE in {where}: {message}")
        self.alerts.notify(AlertEvent(type=ERROR, route=route, error=message))

    @staticmethod
    def _spread_details(result: SpreadResult) -> dict:
        return {
            "spread_bps": result.spread_bps,
            "src_price": result.src.price,
            "dest_price": result.dest.price,
            "liquidity_tokens": result.liquidity_tokens,
        }

    def _set_status(self, route: Route, result: Optional[SpreadResult], action: str):
        self.status[route.label] = RouteStatus(
            route=route,
            spread_bps=result.spread_bps if result else None,
            src_price=result.src.price if result else None,
            dest_price=result.dest.price if result else None,
            liquidity_usd=result.available_liquidity if result else None,
            action=action,
        )
