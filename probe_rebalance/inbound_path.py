"""
Inbound path construction.

Builds the two-hop hint that forces a payment to reach destination through
a chosen peer: [through] -> destination over a channel that can carry the
amount.
"""

from typing import List

from .errors import ProbeRebalanceError, BAD_REQUEST, NOT_FOUND
from .models import PathHop
from .routing import tokens_to_mtokens


def build_inbound_path(node, destination: str, through: str, tokens: int) -> List[PathHop]:
    """
    Get the inbound path to destination through a peer.

    Args:
        node: NodeClient used to fetch the destination's channels
        destination: Final destination public key
        through: Public key of the peer the payment must come in through
        tokens: Amount to send

    Returns:
        [PathHop(through), PathHop(destination, channel, policy...)]

    Raises:
        ProbeRebalanceError: NoConnectingChannel, NoSufficientCapacityChannel
    """
    if not destination:
        raise ProbeRebalanceError(BAD_REQUEST, "ExpectedDestinationToGetInboundPath")

    if not through:
        raise ProbeRebalanceError(BAD_REQUEST, "ExpectedInThroughPublicKeyHexString")

    if tokens is None:
        raise ProbeRebalanceError(BAD_REQUEST, "ExpectedTokensToGetInboundPath")

    graph = node.get_node(destination)

    connecting = [c for c in graph["channels"] if c.policy_of(through) is not None]

    if not connecting:
        raise ProbeRebalanceError(NOT_FOUND, "NoConnectingChannel")

    mtokens = tokens_to_mtokens(tokens)

    def can_carry(channel) -> bool:
        if channel.capacity and channel.capacity < tokens:
            return False
        policy = channel.policy_of(through)
        if not policy.max_htlc_mtokens:
            return True
        return int(policy.max_htlc_mtokens) > mtokens

    channel = next((c for c in connecting if can_carry(c)), None)

    if channel is None:
        raise ProbeRebalanceError(NOT_FOUND, "NoSufficientCapacityChannel")

    policy = channel.policy_of(through)

    return [
        PathHop(public_key=through),
        PathHop(
            public_key=destination,
            channel=channel.id,
            base_fee_mtokens=policy.base_fee_mtokens,
            fee_rate=policy.fee_rate,
            cltv_delta=policy.cltv_delta,
            channel_capacity=channel.capacity,
        ),
    ]
