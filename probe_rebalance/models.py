"""
Data model for cl-probe-rebalance

All entities are built fresh per invocation from data fetched when the
call starts; nothing here is persisted.

Amounts:
- *tokens fields are whole satoshis
- *mtokens fields are millisatoshis
Both are plain Python ints, so the x1000 scaling never loses precision.
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional


DEFAULT_RESERVE_RATIO = 0.01


def default_reserve(capacity: int, reserve_ratio: float = DEFAULT_RESERVE_RATIO) -> int:
    """Reserve assumed when the channel does not report one: ceil(capacity * ratio)."""
    # Decimal keeps e.g. 700 * 0.01 from rounding up to 8
    return math.ceil(Decimal(capacity) * Decimal(str(reserve_ratio)))


@dataclass
class Channel:
    """One of our own channels, as reported by listpeerchannels."""
    id: str                          # short channel id
    capacity: int
    local_balance: int
    remote_balance: int
    partner_public_key: str
    is_active: bool
    local_reserve: Optional[int] = None
    commit_transaction_fee: int = 0

    def reserve(self, reserve_ratio: float = DEFAULT_RESERVE_RATIO) -> int:
        if self.local_reserve:
            return self.local_reserve
        return default_reserve(self.capacity, reserve_ratio)

    def usable_outbound(self, reserve_ratio: float = DEFAULT_RESERVE_RATIO) -> int:
        """Local balance left to send after the reserve and the commitment fee."""
        return self.local_balance - self.reserve(reserve_ratio) - self.commit_transaction_fee


@dataclass
class Policy:
    """Forwarding policy of public_key for one direction of a channel."""
    public_key: str
    base_fee_mtokens: int = 0
    fee_rate: int = 0                # parts per million
    cltv_delta: int = 0
    min_htlc_mtokens: int = 0
    max_htlc_mtokens: Optional[int] = None
    is_disabled: bool = False


@dataclass
class GraphChannel:
    """A channel from the public graph, optionally used as a route hop."""
    id: str
    policies: List[Policy] = field(default_factory=list)
    capacity: Optional[int] = None
    destination: Optional[str] = None  # next node when used as a hop

    def policy_of(self, public_key: str) -> Optional[Policy]:
        return next((p for p in self.policies if p.public_key == public_key), None)

    def policy_not_of(self, public_key: str) -> Optional[Policy]:
        return next((p for p in self.policies if p.public_key != public_key), None)


@dataclass
class PathHop:
    """
    One element of a path hint.

    The first hop names only the entry peer; every later hop names the
    channel used to reach public_key and the policy charged on it.
    """
    public_key: str
    channel: Optional[str] = None
    base_fee_mtokens: Optional[int] = None
    fee_rate: Optional[int] = None
    cltv_delta: Optional[int] = None
    channel_capacity: Optional[int] = None


@dataclass
class RouteHop:
    """A concrete hop: deliver forward_mtokens to public_key over channel."""
    channel: str
    public_key: str
    direction: int
    forward_mtokens: int
    fee_mtokens: int                 # fee charged by the node sending this hop
    timeout: int                     # absolute CLTV expiry at this hop
    channel_capacity: Optional[int] = None


@dataclass
class Route:
    """
    A payable hop sequence.

    mtokens is the total sent by us (amount plus fees), fee_mtokens the
    total fee. tokens and fee are the same values in whole satoshis.
    """
    hops: List[RouteHop]
    mtokens: int
    fee_mtokens: int
    timeout: int
    height: int
    payment_secret: Optional[str] = None
    path: List[GraphChannel] = field(default_factory=list, repr=False)  # channels the route was built from

    @property
    def tokens(self) -> int:
        return self.mtokens // 1000

    @property
    def fee(self) -> int:
        return self.fee_mtokens // 1000

    @property
    def channels(self) -> List[str]:
        return [hop.channel for hop in self.hops]

    @property
    def destination(self) -> str:
        return self.hops[-1].public_key


@dataclass
class ProbeAttempt:
    """Result of one execute_probe run."""
    route: Optional[Route] = None
    attempted_paths: List[List[str]] = field(default_factory=list)
    latency_ms: Optional[int] = None


@dataclass
class ProbeOutcome:
    """What a probe (and optional payment) found."""
    attempted_paths: Optional[List[List[str]]] = None
    fee: Optional[int] = None
    latency_ms: Optional[int] = None
    route_maximum: Optional[int] = None
    paid: Optional[int] = None
    preimage: Optional[str] = None
    probed: Optional[int] = None
    success: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        values = {
            "attempted_paths": self.attempted_paths,
            "fee": self.fee,
            "latency_ms": self.latency_ms,
            "route_maximum": self.route_maximum,
            "paid": self.paid,
            "preimage": self.preimage,
            "probed": self.probed,
            "success": self.success,
        }
        return {k: v for k, v in values.items() if v is not None}


@dataclass
class PeerLiquidity:
    """Liquidity with a peer after a rebalance."""
    public_key: str
    alias: str
    liquidity_inbound: int
    liquidity_outbound: int


@dataclass
class RebalanceResult:
    spent_out: PeerLiquidity
    received_in: PeerLiquidity
    rebalanced: int
    rebalance_fee_paid: int
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "rebalanced_liquidity": [
                {
                    "spent_out": self.spent_out.alias,
                    "liquidity_inbound": self.spent_out.liquidity_inbound,
                    "liquidity_outbound": self.spent_out.liquidity_outbound,
                },
                {
                    "received_in": self.received_in.alias,
                    "liquidity_inbound": self.received_in.liquidity_inbound,
                    "liquidity_outbound": self.received_in.liquidity_outbound,
                },
            ],
            "rebalanced": self.rebalanced,
            "rebalance_fee_paid": self.rebalance_fee_paid,
        }
        if self.dry_run:
            result["dry_run"] = True
        return result
