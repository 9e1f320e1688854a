"""
Route assembly for cl-probe-rebalance

Deterministic construction of a payable Route from an explicit list of
hop channels, and the fee helpers shared by the probe and rebalance code.
No RPC happens here.

Fee charged by a forwarding node (BOLT #7):
    fee = base_fee_mtokens + amount_to_forward * fee_rate // 1_000_000
"""

from typing import List, Optional

from .models import GraphChannel, Route, RouteHop


MTOKENS_PER_TOKEN = 1000
RATE_DIVISOR = 1_000_000


def tokens_to_mtokens(tokens: int) -> int:
    return int(tokens) * MTOKENS_PER_TOKEN


def mtokens_to_tokens(mtokens: int) -> int:
    return int(mtokens) // MTOKENS_PER_TOKEN


def forward_fee_mtokens(base_fee_mtokens: int, fee_rate: int, forward_mtokens: int) -> int:
    return int(base_fee_mtokens) + int(forward_mtokens) * int(fee_rate) // RATE_DIVISOR


def fee_rate_ppm(fee: int, tokens: int) -> int:
    """Fee as parts per million of tokens, rounded up."""
    if tokens <= 0:
        raise ValueError("ExpectedPositiveTokensForFeeRate")
    return -(-int(fee) * RATE_DIVISOR // int(tokens))


def hop_direction(source: str, destination: str) -> int:
    """Channel direction bit: 0 when the source is the lesser node id."""
    return 0 if source.lower() < destination.lower() else 1


def route_from_channels(channels: List[GraphChannel], cltv_delta: int, height: int,
                        mtokens: int, payment_secret: Optional[str] = None,
                        source: Optional[str] = None) -> Route:
    """
    Assemble a route delivering mtokens over the given channels.

    Args:
        channels: Hop channels in payment order; each needs a destination
        cltv_delta: Final CLTV delta expected by the last node
        height: Current block height
        mtokens: Millisatoshis to deliver to the last node
        payment_secret: Carried on the route for the final hop
        source: Our node id, when the first channel lacks our policy

    Returns:
        Route with one hop per channel

    Raises:
        ValueError: when a channel has no destination or no usable policy
    """
    if not channels:
        raise ValueError("ExpectedChannelsToBuildRoute")

    for channel in channels:
        if not channel.destination:
            raise ValueError(f"ExpectedDestinationForChannel {channel.id}")

    if source is None:
        first_policy = channels[0].policy_not_of(channels[0].destination)
        if first_policy is None:
            raise ValueError(f"ExpectedSourcePolicyForChannel {channels[0].id}")
        source = first_policy.public_key

    # Node that sends over each channel
    senders = [source] + [c.destination for c in channels[:-1]]

    hops: List[RouteHop] = []
    forward = int(mtokens)
    timeout = int(height) + int(cltv_delta)

    for index in reversed(range(len(channels))):
        channel = channels[index]
        sender = senders[index]
        fee = 0
        delta = 0

        # Our own first hop charges nothing
        if index > 0:
            policy = channel.policy_of(sender) or channel.policy_not_of(channel.destination)
            if policy is None:
                raise ValueError(f"ExpectedForwardingPolicyForChannel {channel.id}")
            fee = forward_fee_mtokens(policy.base_fee_mtokens, policy.fee_rate, forward)
            delta = int(policy.cltv_delta)

        hops.insert(0, RouteHop(
            channel=channel.id,
            public_key=channel.destination,
            direction=hop_direction(sender, channel.destination),
            forward_mtokens=forward,
            fee_mtokens=fee,
            timeout=timeout,
            channel_capacity=channel.capacity,
        ))

        forward += fee
        timeout += delta

    return Route(
        hops=hops,
        mtokens=forward,
        fee_mtokens=forward - int(mtokens),
        timeout=hops[0].timeout,
        height=int(height),
        payment_secret=payment_secret,
        path=list(channels),
    )
