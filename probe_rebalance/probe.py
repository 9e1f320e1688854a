"""
Probe Engine module for cl-probe-rebalance

Determines whether a destination can be paid, optionally finds how much
the discovered path can carry, and optionally pays along exactly that path.

Execution runs as a fixed sequence of stages, each using only the results
of earlier stages:

    1. validate args; fetch block height || resolve destination (parallel)
    2. outgoing channel restriction      (needs: destination tokens)
    3. inbound path hint                 (needs: destination tokens)
    4. pre-flight route existence check  (needs: 2, 3)
    5. non-committing probe              (needs: 1, 2, 3)
    6. maximum routable amount           (needs: 5)
    7. real payment                      (needs: 5)
    8. outcome

Nothing is retried here. A caller that wants another attempt calls again
with the returned attempted paths added to its ignore list.
"""

import concurrent.futures
from typing import Any, Dict, List, Optional

from .channel_selector import select_outbound_channel
from .config import Config, ConfigSnapshot
from .errors import ProbeRebalanceError, BAD_REQUEST, NOT_FOUND
from .inbound_path import build_inbound_path
from .metrics import MetricNames
from .models import ProbeOutcome, Route
from .network_probe import execute_probe
from .payability import find_max_routable


class ProbeEngine:
    """Probe a destination, optionally paying it along the probed route."""

    def __init__(self, plugin, config: Config, node, metrics=None):
        self.plugin = plugin
        self.config = config
        self.node = node
        self.metrics = metrics

    def _resolve_destination(self, destination: Optional[str],
                             request: Optional[str]) -> Dict[str, Any]:
        if destination:
            return {
                "destination": destination,
                "routes": [],
                "tokens": None,
                "cltv_delta": None,
                "id": None,
                "payment_secret": None,
            }
        return self.node.decode_payment_request(request)

    def probe(self,
              destination: Optional[str] = None,
              request: Optional[str] = None,
              tokens: Optional[int] = None,
              ignore: Optional[List[Any]] = None,
              out_through: Optional[str] = None,
              in_through: Optional[str] = None,
              max_fee: Optional[int] = None,
              is_strict_max_fee: bool = False,
              find_max: Optional[int] = None,
              is_real_payment: bool = False) -> ProbeOutcome:
        """
        Determine if a destination can be paid by probing it.

        Args:
            destination: Destination public key
            request: BOLT11 payment request (used when destination is absent)
            tokens: Amount to probe with (default: request amount, then config)
            ignore: Nodes, channels or earlier attempted paths to avoid
                (see NodeClient._excludes for accepted shapes)
            out_through: Peer the payment must leave through
            in_through: Peer the payment must arrive through
            max_fee: Fee ceiling in sats
            is_strict_max_fee: Skip probing routes above max_fee
            find_max: Also find the maximum routable amount up to this
            is_real_payment: Pay the request along the probed route

        Returns:
            ProbeOutcome
        """
        # Stage 1: validation happens before any RPC
        if not destination and not request:
            raise ProbeRebalanceError(BAD_REQUEST, "DestinationOrRequestRequired")

        if is_real_payment and not request:
            raise ProbeRebalanceError(BAD_REQUEST, "ExpectedPaymentRequestForRealPayment")

        cfg = self.config.snapshot()

        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as pool:
            wallet_future = pool.submit(self.node.get_wallet_info)
            to_future = pool.submit(self._resolve_destination, destination, request)
            wallet = wallet_future.result()
            to = to_future.result()

        tokens = tokens or to.get("tokens") or cfg.probe_default_tokens
        cltv_delta = to.get("cltv_delta") or cfg.default_cltv_delta

        # Stage 2: outgoing channel restriction
        outgoing_channel = None
        if out_through:
            outgoing_channel = select_outbound_channel(
                self.node.get_channels(), out_through, tokens, cfg.reserve_ratio
            )

        # Stage 3: inbound restriction
        inbound_path = None
        if in_through:
            inbound_path = build_inbound_path(self.node, to["destination"], in_through, tokens)

        hints = [inbound_path] if inbound_path else to.get("routes") or []
        is_strict_hints = inbound_path is not None

        # Stage 4: cheap existence check before probing
        candidates = self.node.get_routes(
            destination=to["destination"],
            tokens=tokens,
            cltv_delta=cltv_delta,
            ignore=ignore,
            outgoing_channel=outgoing_channel,
            outgoing_peer=out_through,
            routes=hints,
            is_strict_hints=is_strict_hints,
        )

        if not candidates:
            self._count("no_path")
            raise ProbeRebalanceError(NOT_FOUND, "NoPathToDestination")

        # Stage 5: non-committing probe
        attempt = execute_probe(
            self.node,
            destination=to["destination"],
            tokens=tokens,
            cltv_delta=cltv_delta + cfg.cltv_buffer,
            max_timeout_height=wallet["current_block_height"] + cfg.max_cltv_delta,
            ignore=ignore,
            outgoing_channel=outgoing_channel,
            outgoing_peer=out_through,
            routes=hints,
            is_strict_hints=is_strict_hints,
            is_strict_max_fee=is_strict_max_fee,
            max_fee=max_fee,
            max_attempts=cfg.max_probe_attempts,
            pathfinding_timeout=cfg.pathfinding_timeout_seconds,
            logger=self.plugin,
        )

        route = attempt.route

        if route is None:
            self._count("failed")
            self.plugin.log(
                f"Probe to {to['destination'][:12]}... found no viable route after "
                f"{len(attempt.attempted_paths)} attempts"
            )
            return ProbeOutcome(attempted_paths=attempt.attempted_paths)

        self._count("success")
        if self.metrics:
            self.metrics.set_gauge(MetricNames.PROBE_LATENCY_MS, attempt.latency_ms)

        # Stage 6: maximum routable amount
        route_maximum = None
        if find_max:
            route_maximum = find_max_routable(
                self.node,
                route.path,
                cltv_delta,
                find_max,
                min_tokens=tokens,
                accuracy=cfg.find_max_accuracy_tokens,
                pathfinding_timeout=cfg.pathfinding_timeout_seconds,
                logger=self.plugin,
            )["maximum"]

        # Stage 7: real payment
        payment = None
        if is_real_payment:
            payment = self._pay_route(route, to, max_fee, cfg)

        return ProbeOutcome(
            fee=route.fee,
            latency_ms=attempt.latency_ms,
            route_maximum=route_maximum,
            paid=payment["tokens"] if payment else None,
            preimage=payment["secret"] if payment else None,
            probed=None if payment else route.tokens - route.fee,
            success=route.channels,
        )

    def _pay_route(self, route: Route, to: Dict[str, Any], max_fee: Optional[int],
                   cfg: ConfigSnapshot) -> Optional[Dict[str, Any]]:
        """Pay along the probed route. The fee is re-checked here, not trusted from earlier."""
        if max_fee is not None and route.fee > max_fee:
            raise ProbeRebalanceError(BAD_REQUEST, "MaxFeeTooLow", {"required_fee": route.fee})

        self.plugin.log(f"Paying via {','.join(route.channels)} (fee={route.fee} sats)")

        if cfg.dry_run:
            self.plugin.log(f"[DRY RUN] Would pay {to['destination'][:12]}... "
                            f"via {len(route.hops)} hops")
            return None

        route.payment_secret = to.get("payment_secret")

        return self.node.pay_via_routes(
            [route], id=to["id"], pathfinding_timeout=cfg.pathfinding_timeout_seconds
        )

    def _count(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.inc_counter(MetricNames.PROBES_TOTAL, 1, {"outcome": outcome})
