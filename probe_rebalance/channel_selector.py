"""
Channel selection for outgoing probes and payments.

Picks which of our channels with a peer should carry a payment of a given
size, keeping the payment from dipping into the channel reserve or the
commitment fee.
"""

from typing import List

from .errors import ProbeRebalanceError, NOT_FOUND
from .models import Channel, DEFAULT_RESERVE_RATIO


def select_outbound_channel(channels: List[Channel], peer: str, tokens: int,
                            reserve_ratio: float = DEFAULT_RESERVE_RATIO) -> str:
    """
    Select the outgoing channel to peer able to send tokens.

    Among active channels with peer whose balance after the payment stays
    above reserve + commit fee, the one with the highest local balance wins.
    On equal balances the first channel in input order wins.

    Returns:
        The selected channel id

    Raises:
        ProbeRebalanceError: NoActiveChannelWithPeer, InsufficientBalance
    """
    with_peer = [c for c in channels if c.is_active and c.partner_public_key == peer]

    if not with_peer:
        raise ProbeRebalanceError(NOT_FOUND, "NoActiveChannelWithPeer")

    with_balance = [c for c in with_peer if c.usable_outbound(reserve_ratio) > tokens]

    if not with_balance:
        raise ProbeRebalanceError(NOT_FOUND, "InsufficientBalance")

    best = with_balance[0]
    for channel in with_balance[1:]:
        if channel.local_balance > best.local_balance:
            best = channel

    return best.id
