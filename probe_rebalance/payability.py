"""
Route payability checks.

A route is tested by sending an HTLC along it with a payment hash nobody
knows. If the HTLC reaches the final node, that node rejects it with
"unknown payment hash" and nothing settles; that rejection is the proof
that the route can carry the amount. Any other outcome is reported as an
internal error, because a successful payment here would mean real funds
moved.
"""

from typing import Any, Dict, List

from pyln.client import RpcError

from .errors import ProbeRebalanceError, BAD_REQUEST, INTERNAL_ERROR, PAYMENT_FAILED
from .models import GraphChannel
from .node import UNKNOWN_PAYMENT_HASH
from .routing import route_from_channels, tokens_to_mtokens


PATHFINDING_TIMEOUT_SECONDS = 60


def is_route_payable(node, channels: List[GraphChannel], cltv: int, tokens: int,
                     pathfinding_timeout: int = PATHFINDING_TIMEOUT_SECONDS,
                     height: int = None) -> Dict[str, Any]:
    """
    Find out if a route over channels can carry tokens.

    Returns:
        {"is_payable": bool}

    Raises:
        ProbeRebalanceError: 400 on bad arguments, 500 ExpectedErrorForRouteAttempt
            when the attempt did not fail the expected way
    """
    if not isinstance(channels, list):
        raise ProbeRebalanceError(BAD_REQUEST, "ExpectedArrayOfChannelsToTestRoutePayable")

    if not cltv:
        raise ProbeRebalanceError(BAD_REQUEST, "ExpectedFinalCltvDeltaToTestRoutePayable")

    if not tokens:
        raise ProbeRebalanceError(BAD_REQUEST, "ExpectedTokensToTestRoutePayable")

    if height is None:
        height = node.get_wallet_info()["current_block_height"]

    route = route_from_channels(channels, cltv, height, tokens_to_mtokens(tokens))

    try:
        node.pay_via_routes([route], pathfinding_timeout=pathfinding_timeout)
    except ProbeRebalanceError as e:
        if e.status != PAYMENT_FAILED:
            raise ProbeRebalanceError(INTERNAL_ERROR, "ExpectedErrorForRouteAttempt",
                                      {"err": e.code}) from e
        return {"is_payable": e.code == UNKNOWN_PAYMENT_HASH}
    except RpcError as e:
        raise ProbeRebalanceError(INTERNAL_ERROR, "ExpectedErrorForRouteAttempt",
                                  {"err": str(e)}) from e

    raise ProbeRebalanceError(INTERNAL_ERROR, "ExpectedErrorForRouteAttempt")


def find_max_routable(node, channels: List[GraphChannel], cltv: int, max_tokens: int,
                      min_tokens: int = 0, accuracy: int = 1000,
                      pathfinding_timeout: int = PATHFINDING_TIMEOUT_SECONDS,
                      logger=None) -> Dict[str, int]:
    """
    Estimate the largest amount the hop sequence can carry, up to max_tokens.

    The ceiling is first cut to the smallest known channel capacity, then
    narrowed by binary search with payability probes until the window is
    below accuracy. min_tokens is an amount already known to be routable.
    """
    height = node.get_wallet_info()["current_block_height"]

    capacities = [c.capacity for c in channels if c.capacity]
    high = min([int(max_tokens)] + capacities)
    low = min(int(min_tokens), high)

    def payable(tokens: int) -> bool:
        result = is_route_payable(node, channels, cltv, tokens,
                                  pathfinding_timeout=pathfinding_timeout, height=height)
        if logger:
            logger.log(f"Max routable search: {tokens} sats payable={result['is_payable']}",
                       level='debug')
        return result["is_payable"]

    if high > 0 and payable(high):
        return {"maximum": high}

    while high - low > accuracy:
        middle = (low + high) // 2
        if payable(middle):
            low = middle
        else:
            high = middle

    return {"maximum": low}
