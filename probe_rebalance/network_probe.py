"""
Network probe executor.

Walks candidate routes towards a destination and sends each an HTLC with
an unknown payment hash. The first route whose HTLC is rejected by the
final node as "unknown payment hash" is the probe's result. Routes that
fail earlier get their erring channel (or node) excluded before the next
candidate is requested.

Nothing settles: the destination cannot know the preimage of a random hash.
"""

import time
from typing import Any, List, Optional

from .errors import ProbeRebalanceError, INTERNAL_ERROR, PAYMENT_FAILED
from .models import PathHop, ProbeAttempt
from .node import UNKNOWN_PAYMENT_HASH


def _exclusion_for(failure: ProbeRebalanceError) -> Optional[dict]:
    """Ignore-list entry for the hop that rejected an attempt."""
    details = failure.details
    if details.get("erring_channel"):
        return {
            "channel": details["erring_channel"],
            "direction": details.get("erring_direction"),
        }
    if details.get("erring_node"):
        return {"from_public_key": details["erring_node"]}
    return None


def execute_probe(node, destination: str, tokens: int, cltv_delta: int,
                  max_timeout_height: int,
                  ignore: Optional[List[Any]] = None,
                  outgoing_channel: Optional[str] = None,
                  outgoing_peer: Optional[str] = None,
                  routes: Optional[List[List[PathHop]]] = None,
                  is_strict_hints: bool = False,
                  is_strict_max_fee: bool = False,
                  max_fee: Optional[int] = None,
                  max_attempts: int = 25,
                  pathfinding_timeout: int = 60,
                  logger=None) -> ProbeAttempt:
    """
    Probe for a route to destination without paying.

    Returns:
        ProbeAttempt with the viable route (if any), every attempted path as
        a list of channel ids, and the elapsed time in milliseconds
    """
    started = time.time()
    ignore = list(ignore or [])
    attempted_paths: List[List[str]] = []

    def log(message: str, level: str = 'debug') -> None:
        if logger:
            logger.log(message, level=level)

    def finish(route=None) -> ProbeAttempt:
        return ProbeAttempt(
            route=route,
            attempted_paths=attempted_paths,
            latency_ms=int((time.time() - started) * 1000),
        )

    while len(attempted_paths) < max_attempts:
        candidates = node.get_routes(
            destination=destination,
            tokens=tokens,
            cltv_delta=cltv_delta,
            ignore=ignore,
            outgoing_channel=outgoing_channel,
            outgoing_peer=outgoing_peer,
            routes=routes,
            is_strict_hints=is_strict_hints,
        )

        candidates = [r for r in candidates if r.timeout <= max_timeout_height]
        if is_strict_max_fee and max_fee is not None:
            candidates = [r for r in candidates if r.fee <= max_fee]

        if not candidates:
            break

        route = candidates[0]
        attempted_paths.append(route.channels)
        log(f"Probing {destination[:12]}... via {','.join(route.channels)} "
            f"(fee={route.fee} sats)")

        try:
            node.pay_via_routes([route], pathfinding_timeout=pathfinding_timeout)
        except ProbeRebalanceError as failure:
            if failure.status != PAYMENT_FAILED:
                raise

            if failure.code == UNKNOWN_PAYMENT_HASH:
                return finish(route)

            exclusion = _exclusion_for(failure)
            log(f"Probe attempt failed ({failure.code} "
                f"{failure.details.get('failcodename')}), excluding {exclusion}")
            if exclusion is None or exclusion in ignore:
                break
            ignore.append(exclusion)
            continue

        raise ProbeRebalanceError(INTERNAL_ERROR, "UnexpectedProbeSettlement",
                                  {"channels": route.channels})

    return finish()
