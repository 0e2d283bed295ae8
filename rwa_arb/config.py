# rwa_arb/config.py
"""
Configuration loading for the spread monitor.

Everything lives in one YAML file (default `config.yaml`). Endpoints and
addresses may reference environment variables as `${NAME}`; a `.env` file in
the working directory is loaded first. Secrets (private key, audit secret,
webhook tokens) are only ever read from the environment.
"""
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from web3 import Web3

from .errors import ConfigError
from .models import Route


@dataclass
class ChainConfig:
    name: str
    rpc_url: str
    chain_id: int
    ccip_selector: int
    bridge_hub: Optional[str] = None
    feeds: Dict[str, str] = field(default_factory=dict)
    tokens: Dict[str, str] = field(default_factory=dict)


@dataclass
class MonitorSettings:
    poll_interval_seconds: float = 30.0
    tick_timeout_seconds: float = 25.0
    rpc_timeout_seconds: float = 10.0
    spread_threshold_bps: float = 50.0
    min_arbitrage_usd: Decimal = Decimal("1000")
    protocol_fee_bps: int = 50
    max_price_age_seconds: int = 3600
    liquidity_safety_margin: Decimal = Decimal("0.95")
    receipt_timeout_seconds: float = 120.0


@dataclass
class AnchorSettings:
    enabled: bool = False
    chain: Optional[str] = None
    address: Optional[str] = None
    batch_size: int = 50
    every_ticks: int = 10


@dataclass
class AuditSettings:
    store: str = "csv"
    path: str = "logs/audit_chain.csv"
    secret: str = ""
    anchor: AnchorSettings = field(default_factory=AnchorSettings)


@dataclass
class AlertSettings:
    enabled: bool = True
    slack_webhook_url: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None


@dataclass
class AppConfig:
    environment: str
    dry_run: bool
    log_level: str
    region: str
    monitor: MonitorSettings
    audit: AuditSettings
    alerts: AlertSettings
    chains: Dict[str, ChainConfig]
    routes: List[Route]
    private_key: Optional[str] = None


def _expand(value):
    """Recursively substitute ${VAR} references. Unset variables become empty strings."""
    if isinstance(value, str):
        expanded = os.path.expandvars(value)
        # expandvars leaves unknown references untouched
        return "" if expanded.startswith("${") and expanded.endswith("}") else expanded
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand(v) for v in value]
    return value


def _or_none(value) -> Optional[str]:
    return value if value else None


def load_config(path: str = "config.yaml", env_file: Optional[str] = ".env") -> AppConfig:
    """
    Reads, interpolates and validates the configuration file.
    Raises ConfigError listing every problem found.
    """
    if env_file:
        load_dotenv(env_file)
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e

    return parse_config(_expand(raw), os.environ)


def parse_config(raw: dict, env) -> AppConfig:
    problems: List[str] = []

    system = raw.get("system", {}) or {}
    mon = raw.get("monitor", {}) or {}
    audit_raw = raw.get("audit", {}) or {}
    anchor_raw = audit_raw.get("anchor", {}) or {}
    alerts_raw = raw.get("alerts", {}) or {}

    dry_run = bool(system.get("dry_run", False))

    try:
        monitor = MonitorSettings(
            poll_interval_seconds=float(mon.get("poll_interval_seconds", 30)),
            tick_timeout_seconds=float(mon.get("tick_timeout_seconds", 25)),
            rpc_timeout_seconds=float(mon.get("rpc_timeout_seconds", 10)),
            spread_threshold_bps=float(mon.get("spread_threshold_bps") or 0),
            min_arbitrage_usd=Decimal(str(mon.get("min_arbitrage_usd", 1000))),
            protocol_fee_bps=int(mon.get("protocol_fee_bps", 50)),
            max_price_age_seconds=int(mon.get("max_price_age_seconds", 3600)),
            liquidity_safety_margin=Decimal(str(mon.get("liquidity_safety_margin", "0.95"))),
            receipt_timeout_seconds=float(mon.get("receipt_timeout_seconds", 120)),
        )
    except (TypeError, ValueError, ArithmeticError) as e:
        raise ConfigError(f"Invalid monitor settings: {e}") from e

    if mon.get("spread_threshold_bps") in (None, ""):
        problems.append("monitor.spread_threshold_bps is missing")
    elif monitor.spread_threshold_bps <= 0:
        problems.append("monitor.spread_threshold_bps must be > 0")
    if monitor.poll_interval_seconds <= 0:
        problems.append("monitor.poll_interval_seconds must be > 0")
    if monitor.rpc_timeout_seconds >= monitor.poll_interval_seconds:
        problems.append("monitor.rpc_timeout_seconds must be shorter than the poll interval")
    if monitor.min_arbitrage_usd < 0:
        problems.append("monitor.min_arbitrage_usd must be >= 0")
    if not (Decimal(0) < monitor.liquidity_safety_margin <= Decimal(1)):
        problems.append("monitor.liquidity_safety_margin must be in (0, 1]")

    # --- Chains ---
    chains: Dict[str, ChainConfig] = {}
    for name, c in (raw.get("chains") or {}).items():
        c = c or {}
        if not c.get("rpc_url"):
            problems.append(f"chains.{name}.rpc_url is missing")
        try:
            chain = ChainConfig(
                name=name,
                rpc_url=c.get("rpc_url", ""),
                chain_id=int(c.get("chain_id", 0)),
                ccip_selector=int(c.get("ccip_selector", 0)),
                bridge_hub=_or_none(c.get("bridge_hub")),
                feeds=dict(c.get("feeds") or {}),
                tokens=dict(c.get("tokens") or {}),
            )
        except (TypeError, ValueError) as e:
            problems.append(f"chains.{name}: {e}")
            continue
        for label, addr in [("bridge_hub", chain.bridge_hub)] + \
                [(f"feeds.{s}", a) for s, a in chain.feeds.items()] + \
                [(f"tokens.{s}", a) for s, a in chain.tokens.items()]:
            if addr and not Web3.is_address(addr):
                problems.append(f"chains.{name}.{label} is not a valid address: {addr}")
        chains[name] = chain

    # --- Routes ---
    routes: List[Route] = []
    for i, r in enumerate(raw.get("routes") or []):
        symbol, src, dest = r.get("symbol"), r.get("src"), r.get("dest")
        if src not in chains or dest not in chains:
            problems.append(f"routes[{i}]: unknown chain in {src} -> {dest}")
            continue
        if src == dest:
            problems.append(f"routes[{i}]: source and destination are both {src}")
            continue
        s, d = chains[src], chains[dest]
        missing = [n for n, v in [
            (f"chains.{src}.feeds.{symbol}", s.feeds.get(symbol)),
            (f"chains.{dest}.feeds.{symbol}", d.feeds.get(symbol)),
            (f"chains.{src}.tokens.{symbol}", s.tokens.get(symbol)),
            (f"chains.{dest}.tokens.{symbol}", d.tokens.get(symbol)),
        ] if not v]
        if missing:
            problems.append(f"routes[{i}] ({symbol}): missing {', '.join(missing)}")
            continue
        routes.append(Route(
            symbol=symbol,
            src_chain=src,
            dest_chain=dest,
            src_chain_id=s.chain_id,
            dest_chain_id=d.chain_id,
            dest_chain_selector=d.ccip_selector,
            src_feed=s.feeds[symbol],
            dest_feed=d.feeds[symbol],
            src_token=s.tokens[symbol],
            dest_token=d.tokens[symbol],
        ))
    if not routes and not problems:
        problems.append("no routes configured")

    # --- Audit ---
    anchor = AnchorSettings(
        enabled=bool(anchor_raw.get("enabled", False)),
        chain=_or_none(anchor_raw.get("chain")),
        address=_or_none(anchor_raw.get("address")),
        batch_size=int(anchor_raw.get("batch_size", 50)),
        every_ticks=int(anchor_raw.get("every_ticks", 10)),
    )
    if anchor.enabled:
        if anchor.chain not in chains:
            problems.append(f"audit.anchor.chain is not a configured chain: {anchor.chain}")
        if not anchor.address or not Web3.is_address(anchor.address):
            problems.append("audit.anchor.address must be a valid address when anchoring is enabled")

    audit = AuditSettings(
        store=audit_raw.get("store", "csv"),
        path=audit_raw.get("path", "logs/audit_chain.csv"),
        secret=env.get("AUDIT_SECRET", ""),
        anchor=anchor,
    )
    if audit.store not in ("csv", "memory"):
        problems.append(f"audit.store must be 'csv' or 'memory', got {audit.store!r}")
    if not audit.secret:
        problems.append("AUDIT_SECRET is not set")

    alerts = AlertSettings(
        enabled=bool(alerts_raw.get("enabled", True)),
        slack_webhook_url=_or_none(env.get("SLACK_WEBHOOK_URL")),
        telegram_bot_token=_or_none(env.get("TELEGRAM_BOT_TOKEN")),
        telegram_chat_id=_or_none(env.get("TELEGRAM_CHAT_ID")),
    )

    private_key = _or_none(env.get("PRIVATE_KEY"))
    if not private_key and not dry_run:
        problems.append("PRIVATE_KEY is required unless system.dry_run is true")

    if problems:
        raise ConfigError("Invalid configuration:\n  - " + "\n  - ".join(problems))

    return AppConfig(
        environment=system.get("environment", "testnet"),
        dry_run=dry_run,
        log_level=str(system.get("log_level", "INFO")).upper(),
        region=system.get("region") or env.get("REGION", "unknown"),
        monitor=monitor,
        audit=audit,
        alerts=alerts,
        chains=chains,
        routes=routes,
        private_key=private_key,
    )
