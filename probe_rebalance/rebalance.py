"""
Rebalancer module for cl-probe-rebalance

Moves liquidity in a circle: out through a peer we hold too much local
balance with, around the network, and back in through a peer that holds
plenty of remote balance with us. The circle is found by probing our own
node with both peers forced, and paid with a self-invoice along exactly the
probed channels.

Peer choice:
- Out peer: aggregate remote balance below the liquidity floor, drawn from
  the lower half (least remote balance first)
- In peer: channels with remote balance above the inbound floor, drawn from
  the upper half (most remote balance first)
"""

import random
from typing import Dict, List, Optional

from .config import Config, ConfigSnapshot
from .errors import ProbeRebalanceError, BAD_REQUEST, NOT_FOUND, INTERNAL_ERROR
from .metrics import MetricNames
from .models import Channel, GraphChannel, PeerLiquidity, RebalanceResult, Route
from .routing import fee_rate_ppm, route_from_channels, tokens_to_mtokens


REBALANCE_DESCRIPTION = "Rebalance"


def _remote_by_partner(channels: List[Channel]) -> Dict[str, int]:
    """Summed remote balance per partner, in first-seen order."""
    totals: Dict[str, int] = {}
    for channel in channels:
        key = channel.partner_public_key
        totals[key] = totals.get(key, 0) + channel.remote_balance
    return totals


def _half(keys: List[str]) -> List[str]:
    return keys[:max(1, (len(keys) + 1) // 2)]


class Rebalancer:
    """Plan and execute a circular rebalance between two of our peers."""

    def __init__(self, plugin, config: Config, node, probe_engine,
                 rng: Optional[random.Random] = None, metrics=None):
        self.plugin = plugin
        self.config = config
        self.node = node
        self.probe_engine = probe_engine
        self.rng = rng or random.Random()
        self.metrics = metrics

    def rebalance(self,
                  avoid: Optional[List[str]] = None,
                  in_through: Optional[str] = None,
                  out_through: Optional[str] = None,
                  max_fee: Optional[int] = None,
                  max_fee_rate: Optional[int] = None) -> RebalanceResult:
        """
        Execute one circular rebalance.

        Args:
            avoid: Node public keys the rebalance must not touch
            in_through: Peer to receive the liquidity back through
            out_through: Peer to push liquidity out through
            max_fee: Absolute fee ceiling in sats (default from config)
            max_fee_rate: Fee ceiling in ppm of the amount (default from config)

        Returns:
            RebalanceResult with projected liquidity for both peers
        """
        if (in_through or out_through) and in_through == out_through:
            raise ProbeRebalanceError(BAD_REQUEST, "ExpectedInPeerNotEqualToOutPeer")

        if max_fee is not None and max_fee == 0:
            raise ProbeRebalanceError(BAD_REQUEST, "ExpectedNonZeroMaxFeeForRebalance")

        if max_fee_rate is not None and max_fee_rate == 0:
            raise ProbeRebalanceError(BAD_REQUEST, "ExpectedNonZeroMaxFeeRateForRebalance")

        cfg = self.config.snapshot()
        avoid = list(avoid or [])

        max_fee = max_fee or cfg.rebalance_max_fee
        max_fee_rate = max_fee_rate or cfg.rebalance_max_fee_rate

        initial_channels = self.node.get_channels()
        own_key = self.node.get_wallet_info()["public_key"]

        active = [
            c for c in initial_channels
            if c.is_active and c.partner_public_key not in avoid
        ]

        out_key = self._select_out_peer(active, out_through, in_through, cfg)
        in_key = self._select_in_peer(active, out_key, in_through, cfg)

        out_alias = self.node.get_node_alias(out_key)
        in_alias = self.node.get_node_alias(in_key)

        self.plugin.log(f"Rebalance: out through {out_key[:12]}... in through {in_key[:12]}...")

        try:
            probe = self.probe_engine.probe(
                destination=own_key,
                find_max=cfg.rebalance_find_max_tokens,
                ignore=[{"from_public_key": own_key}] + [{"from_public_key": k} for k in avoid],
                in_through=in_key,
                out_through=out_key,
                max_fee=cfg.rebalance_probe_max_fee,
                tokens=cfg.rebalance_probe_tokens,
            )
        except ProbeRebalanceError:
            self._count("failed")
            raise

        if not probe.success:
            self._count("no_path")
            raise ProbeRebalanceError(NOT_FOUND, "FailedToFindPathBetweenPeers")

        try:
            channels = self.node.get_hop_chain(own_key, probe.success)
        except ValueError as e:
            raise ProbeRebalanceError(INTERNAL_ERROR, "FailedToConstructRebalanceRoute",
                                      {"err": str(e)}) from e

        tokens = min(cfg.max_rebalance_tokens, probe.route_maximum or 0)
        if tokens <= 0:
            raise ProbeRebalanceError(INTERNAL_ERROR, "FailedToConstructRebalanceRoute",
                                      {"err": "ExpectedPositiveRebalanceAmount"})

        height = self.node.get_wallet_info()["current_block_height"]

        invoice = None
        if not cfg.dry_run:
            invoice = self.node.create_invoice(
                tokens=tokens,
                cltv_delta=cfg.rebalance_cltv_delta,
                description=REBALANCE_DESCRIPTION,
            )

        route = self._build_route(channels, own_key, tokens, height, invoice, cfg)

        if route.fee > max_fee:
            self._count("fee_too_high")
            self.plugin.log(f"Rebalance fee {route.fee} sats exceeds max fee {max_fee}",
                            level='info')
            raise ProbeRebalanceError(BAD_REQUEST, "RebalanceFeeTooHigh",
                                      {"needed_max_fee": route.fee})

        fee_rate = fee_rate_ppm(route.fee, route.tokens)
        if fee_rate > max_fee_rate:
            self._count("fee_too_high")
            self.plugin.log(f"Rebalance fee rate {fee_rate} ppm exceeds max fee rate "
                            f"{max_fee_rate} ppm", level='info')
            raise ProbeRebalanceError(BAD_REQUEST, "RebalanceFeeTooHigh",
                                      {"needed_max_fee_rate": fee_rate})

        if cfg.dry_run:
            self.plugin.log(f"[DRY RUN] Would rebalance {tokens} sats via "
                            f"{','.join(route.channels)} (fee={route.fee} sats)")
            rebalanced, fee_paid = tokens, route.fee
        else:
            self.plugin.log(f"Rebalancing {tokens} sats via {','.join(route.channels)} "
                            f"(fee={route.fee} sats)")
            payment = self.node.pay_via_routes(
                [route], id=invoice["id"],
                pathfinding_timeout=cfg.pathfinding_timeout_seconds,
            )
            rebalanced, fee_paid = payment["tokens"], payment["fee"]
            self._count("success")
            if self.metrics:
                self.metrics.inc_counter(MetricNames.REBALANCED_SATS_TOTAL, rebalanced)
                self.metrics.inc_counter(MetricNames.REBALANCE_FEES_SATS_TOTAL, fee_paid)

        out_channels = [c for c in initial_channels
                        if c.partner_public_key == out_key and c.is_active]
        in_channels = [c for c in initial_channels
                       if c.partner_public_key == in_key and c.is_active]

        return RebalanceResult(
            spent_out=PeerLiquidity(
                public_key=out_key,
                alias=out_alias,
                liquidity_inbound=sum(c.remote_balance for c in out_channels) + rebalanced,
                liquidity_outbound=sum(c.local_balance for c in out_channels) - rebalanced,
            ),
            received_in=PeerLiquidity(
                public_key=in_key,
                alias=in_alias,
                liquidity_inbound=sum(c.remote_balance for c in in_channels) - rebalanced,
                liquidity_outbound=sum(c.local_balance for c in in_channels) + rebalanced,
            ),
            rebalanced=rebalanced,
            rebalance_fee_paid=fee_paid,
            dry_run=cfg.dry_run,
        )

    def _select_out_peer(self, active: List[Channel], out_through: Optional[str],
                         in_through: Optional[str], cfg: ConfigSnapshot) -> str:
        remote = _remote_by_partner(active)
        starved = [
            k for k, total in remote.items()
            if total < cfg.liquidity_floor_tokens and k != in_through
        ]

        if out_through:
            return out_through

        if not starved:
            self._count("no_outbound")
            raise ProbeRebalanceError(NOT_FOUND, "NoOutboundChannelNeedsRebalance")

        ranked = sorted(starved, key=lambda k: remote[k])
        return self.rng.choice(_half(ranked))

    def _select_in_peer(self, active: List[Channel], out_key: str, in_through: Optional[str],
                        cfg: ConfigSnapshot) -> str:
        others = [c for c in active if c.partner_public_key != out_key]
        remote = _remote_by_partner(others)

        candidates = list(dict.fromkeys(
            c.partner_public_key for c in others
            if in_through or c.remote_balance > cfg.inbound_liquidity_floor_tokens
        ))

        if not candidates:
            self._count("no_inbound")
            raise ProbeRebalanceError(NOT_FOUND, "NoInboundChannelAvailable")

        if in_through:
            return in_through

        ranked = sorted(candidates, key=lambda k: remote[k], reverse=True)
        return self.rng.choice(_half(ranked))

    @staticmethod
    def _build_route(channels: List[GraphChannel], own_key: str, tokens: int, height: int,
                     invoice: Optional[Dict], cfg: ConfigSnapshot) -> Route:
        try:
            route = route_from_channels(
                channels,
                cltv_delta=cfg.rebalance_cltv_delta,
                height=height,
                mtokens=tokens_to_mtokens(tokens),
                payment_secret=invoice.get("payment_secret") if invoice else None,
                source=own_key,
            )
            if route.tokens <= 0:
                raise ValueError("ExpectedPositiveRebalanceAmount")
        except ValueError as e:
            raise ProbeRebalanceError(INTERNAL_ERROR, "FailedToConstructRebalanceRoute",
                                      {"err": str(e)}) from e
        return route

    def _count(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.inc_counter(MetricNames.REBALANCES_TOTAL, 1, {"outcome": outcome})
