# rwa_arb/models.py
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple
import time

GENESIS_HASH = "GENESIS"


class BridgeState(Enum):
    """
    Enum representing the lifecycle states of a bridge attempt.
    """
    QUOTED = "QUOTED"
    APPROVED = "APPROVED"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class BridgeStatus(Enum):
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    SIMULATED = "SIMULATED"


class AuditType(Enum):
    MINT = "MINT"
    BURN = "BURN"
    SPREAD_DETECTED = "SPREAD_DETECTED"
    SPREAD_DETECTED_LOW_LIQUIDITY = "SPREAD_DETECTED_LOW_LIQUIDITY"
    BRIDGE_EXECUTED = "BRIDGE_EXECUTED"
    BRIDGE_FAILED = "BRIDGE_FAILED"
    BRIDGE_SIMULATED = "BRIDGE_SIMULATED"
    ERROR = "ERROR"
    ANCHOR = "ANCHOR"


@dataclass(frozen=True, slots=True)
class Route:
    """
    One monitored direction: buy on the source chain, settle on the destination.
    The mirrored direction is a separate Route.
    """
    symbol: str
    src_chain: str
    dest_chain: str
    src_chain_id: int
    dest_chain_id: int
    dest_chain_selector: int
    src_feed: str
    dest_feed: str
    src_token: str
    dest_token: str

    @property
    def label(self) -> str:
        return f"{self.symbol} {self.src_chain}->{self.dest_chain}"


@dataclass(frozen=True, slots=True)
class PriceReading:
    """
    A single validated oracle answer. Produced fresh on every poll.
    """
    chain: str
    feed: str
    price: Decimal
    updated_at: int
    round_id: int
    answered_in_round: int
    decimals: int
    observed_at: float

    @property
    def age(self) -> float:
        """Returns the age of the answer in seconds at observation time."""
        return self.observed_at - self.updated_at


@dataclass(frozen=True, slots=True)
class SpreadResult:
    route: Route
    src: PriceReading
    dest: PriceReading
    spread_bps: float
    available_liquidity: Decimal  # USD-equivalent
    liquidity_tokens: Decimal
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class BridgeOutcome:
    """
    Terminal result of one BridgeOrchestrator attempt. Immutable once recorded.
    """
    route: Route
    spread: SpreadResult
    status: BridgeStatus
    final_state: BridgeState
    states: Tuple[BridgeState, ...]
    tx_id: Optional[str] = None
    block_number: Optional[int] = None
    amount: int = 0
    quoted_spread_bps: Optional[int] = None
    protocol_fee: Optional[int] = None
    ccip_fee: Optional[int] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is not BridgeStatus.FAILED


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """
    One finalized link of the audit hash chain.
    `seq` is assigned by the store and is not part of the hashed payload.
    """
    seq: int
    entry_type: AuditType
    subject: str
    amount: Optional[str]
    details: Dict[str, Any]
    region: str
    timestamp: str
    previous_hash: str
    hash: str
    signature: str

    def payload(self) -> Dict[str, Any]:
        return {
            "type": self.entry_type.value,
            "subject": self.subject,
            "amount": self.amount,
            "details": self.details,
            "region": self.region,
            "timestamp": self.timestamp,
            "previous_hash": self.previous_hash,
        }


@dataclass(frozen=True, slots=True)
class RouteStatus:
    """Last observed state of a route, rendered by the console dashboard."""
    route: Route
    spread_bps: Optional[float] = None
    src_price: Optional[Decimal] = None
    dest_price: Optional[Decimal] = None
    liquidity_usd: Optional[Decimal] = None
    action: str = "-"
    updated_at: float = field(default_factory=time.time)
