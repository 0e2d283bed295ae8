# main.py
import argparse
import asyncio
import sys
from typing import List

import questionary
from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from rwa_arb.alerts import AlertEngine
from rwa_arb.anchor import AuditAnchor
from rwa_arb.audit import AuditChain, CsvAuditStore, MemoryAuditStore
from rwa_arb.chain_engine import ChainGateway
from rwa_arb.config import AppConfig, load_config
from rwa_arb.errors import ConfigError
from rwa_arb.execution import BridgeOrchestrator
from rwa_arb.liquidity import LiquidityProbe
from rwa_arb.logger import setup_console_logger
from rwa_arb.models import Route
from rwa_arb.monitor import MonitorLoop
from rwa_arb.oracle import PriceOracleClient
from rwa_arb.spread import SpreadEvaluator

ACTION_STYLES = {
    "EXECUTED": "green",
    "SIMULATED": "cyan",
    "LOW LIQUIDITY": "yellow",
    "SKIPPED": "yellow",
    "BRIDGE FAILED": "red",
    "ERROR": "red",
}

# --- UI HELPER FUNCTIONS ---

def startup_selection(routes: List[Route]) -> List[Route]:
    """Interactive CLI to select which configured routes to monitor."""
    print("\n🚀 RWA CROSS-CHAIN SPREAD MONITOR \n")
    labels = questionary.checkbox(
        "Select Routes to Monitor:",
        choices=[questionary.Choice(r.label, checked=True) for r in routes],
    ).ask()
    if not labels:
        print("No routes selected. Exiting.")
        sys.exit()
    return [r for r in routes if r.label in labels]


def generate_dashboard(monitor: MonitorLoop, dry_run: bool) -> Layout:
    """
    Creates the Rich Console Dashboard layout.
    Shows the last observed prices, spread and action per route.
    """
    table = Table(title=f"📡 Cross-Chain Spreads | Tick #{monitor.iteration}")
    table.add_column("Route", style="cyan")
    table.add_column("Src (USD)", justify="right")
    table.add_column("Dst (USD)", justify="right")
    table.add_column("Spread (bps)", justify="right", style="magenta")
    table.add_column("Liquidity (USD)", justify="right", style="green")
    table.add_column("Action")

    threshold = monitor.settings.spread_threshold_bps
    for status in monitor.status.values():
        spread = "-" if status.spread_bps is None else f"{status.spread_bps:.1f}"
        if status.spread_bps is not None and status.spread_bps >= threshold:
            spread = f"[bold]{spread}[/bold]"
        style = ACTION_STYLES.get(status.action)
        table.add_row(
            status.route.label,
            "-" if status.src_price is None else f"${status.src_price:,.4f}",
            "-" if status.dest_price is None else f"${status.dest_price:,.4f}",
            spread,
            "-" if status.liquidity_usd is None else f"${status.liquidity_usd:,.0f}",
            f"[{style}]{status.action}[/{style}]" if style else status.action,
        )

    layout = Layout()
    layout.split_column(Layout(name="top"), Layout(name="bottom"))
    layout["top"].update(Panel(table))

    mode = "[bold cyan]DRY RUN[/bold cyan]" if dry_run else "[bold red]LIVE[/bold red]"
    footer = Panel(f"{mode} | Threshold: {threshold:.0f} bps | "
                   f"Min arbitrage: ${monitor.settings.min_arbitrage_usd:,.0f}", style="white on blue")
    layout["bottom"].update(footer)
    layout["bottom"].size = 3

    return layout

# --- MAIN CONTROLLER ---

class SpreadMonitorApp:
    def __init__(self, config: AppConfig, routes: List[Route]):
        self.config = config
        self.routes = routes
        self.logger = setup_console_logger("RwaArb", config.log_level, logfile="logs/monitor.log")

        store = MemoryAuditStore() if config.audit.store == "memory" else CsvAuditStore(config.audit.path)
        self.audit = AuditChain(store, config.audit.secret, self.logger, region=config.region)
        self.gateway = ChainGateway(
            config.chains, self.logger,
            private_key=config.private_key,
            rpc_timeout=config.monitor.rpc_timeout_seconds,
            receipt_timeout=config.monitor.receipt_timeout_seconds,
        )
        self.alerts = AlertEngine(config.alerts, self.logger)
        self.monitor = None

    def _build_monitor(self) -> MonitorLoop:
        m = self.config.monitor
        oracle = PriceOracleClient(self.gateway, self.logger, max_age=m.max_price_age_seconds)
        evaluator = SpreadEvaluator(oracle, LiquidityProbe(self.gateway, self.logger), self.logger)
        orchestrator = BridgeOrchestrator(
            self.gateway, self.audit, self.logger,
            threshold_bps=m.spread_threshold_bps,
            dry_run=self.config.dry_run,
            safety_margin=m.liquidity_safety_margin,
        )
        anchor = None
        if self.config.audit.anchor.enabled:
            anchor = AuditAnchor(self.gateway, self.audit, self.config.audit.anchor, self.logger)
        return MonitorLoop(
            self.routes, evaluator, orchestrator, self.audit, self.alerts, m, self.logger,
            anchor=anchor, anchor_every_ticks=self.config.audit.anchor.every_ticks,
        )

    async def verify_audit(self) -> bool:
        await self.audit.start()
        try:
            ok = await self.audit.verify()
        finally:
            await self.audit.stop()
        print("✅ Audit chain intact." if ok else "🚨 AUDIT CHAIN BROKEN. See logs/monitor.log.")
        return ok

    async def run(self, once: bool = False):
        try:
            print("Initializing Diagnostic Checks...")
            await self.audit.start()
            if not await self.audit.verify():
                print("🚨 Audit chain failed verification at startup. Investigate before trading.")
                return

            if not await self.gateway.initialize():
                print("❌ Diagnostic Failed. Check RPC endpoints.")
                return

            self.monitor = self._build_monitor()
            task = asyncio.create_task(self.monitor.run(max_ticks=1 if once else None))

            console = Console()
            with Live(console=console, refresh_per_second=2) as live:
                while not task.done():
                    live.update(generate_dashboard(self.monitor, self.config.dry_run))
                    await asyncio.sleep(0.5)
                live.update(generate_dashboard(self.monitor, self.config.dry_run))
            await task
        finally:
            print("Shutting down resources...")
            if self.monitor:
                self.monitor.stop()
            await self.alerts.shutdown()
            await self.audit.stop()
            await self.gateway.shutdown()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="RWA cross-chain spread monitor")
    parser.add_argument("--config", default="config.yaml", help="Path to the YAML config file")
    parser.add_argument("--all-routes", action="store_true", help="Monitor every configured route without prompting")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--verify", action="store_true", help="Verify the audit chain and exit")
    return parser.parse_args(argv)


if __name__ == "__main__":
    args = parse_args()
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"❌ {e}")
        sys.exit(1)

    try:
        if args.verify:
            app = SpreadMonitorApp(config, config.routes)
            sys.exit(0 if asyncio.run(app.verify_audit()) else 2)

        routes = config.routes if args.all_routes else startup_selection(config.routes)
        app = SpreadMonitorApp(config, routes)
        try:
            import uvloop
            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        except ImportError:
            pass
        asyncio.run(app.run(once=args.once))
    except KeyboardInterrupt:
        print("\n🛑 Monitor Stopped by User.")
        sys.exit()
