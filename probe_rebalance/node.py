"""
Core Lightning adapter for cl-probe-rebalance

NodeClient is the only place that talks to lightningd. It turns CLN RPC
results into the engine's data model (models.py) and back:

- getinfo           -> wallet info (our key, block height)
- listpeerchannels  -> our Channel snapshots
- listchannels      -> graph channels with per-direction policies
- listnodes         -> aliases
- decode            -> decoded payment requests with route hints
- getroute          -> candidate routes (with outgoing channel / hint
                       constraints layered on top, since getroute has none)
- invoice           -> self invoices for circular rebalances
- sendpay/waitsendpay -> payments along an exact route

RpcError from lightningd propagates unchanged, except where a specific
failure is part of the contract (getroute "no route", payment failures).
"""

import re
import secrets
import uuid
from typing import Any, Dict, List, Optional

from pyln.client import Millisatoshi, RpcError

from .errors import ProbeRebalanceError, NOT_FOUND, BAD_REQUEST, PAYMENT_FAILED
from .models import Channel, GraphChannel, PathHop, Policy, Route
from .routing import route_from_channels, tokens_to_mtokens


# getroute: "Could not find a route"
ROUTE_NOT_FOUND_CODE = 205
# waitsendpay: timed out before the payment resolved
WAITSENDPAY_TIMEOUT_CODE = 200
# BOLT #4 incorrect_or_unknown_payment_details (PERM|15)
UNKNOWN_PAYMENT_DETAILS_FAILCODE = 0x4000 | 15
UNKNOWN_PAYMENT_DETAILS_NAME = "WIRE_INCORRECT_OR_UNKNOWN_PAYMENT_DETAILS"

UNKNOWN_PAYMENT_HASH = "UnknownPaymentHash"

NORMAL_STATE = "CHANNELD_NORMAL"

# Short channel id, e.g. 800000x1x0
SCID_PATTERN = re.compile(r"^\d+x\d+x\d+$")


def parse_msat(msat_val: Any) -> int:
    """
    Safely convert msat values to integers.
    Handles '1000msat' strings, raw integers, Millisatoshi objects, and plain numeric strings.
    """
    if msat_val is None:
        return 0
    if hasattr(msat_val, 'millisatoshis'):
        return int(msat_val.millisatoshis)
    if isinstance(msat_val, int):
        return msat_val
    if isinstance(msat_val, str):
        clean_val = msat_val[:-4] if msat_val.endswith('msat') else msat_val
        try:
            return int(clean_val)
        except ValueError:
            return 0
    return 0


def _optional_msat(msat_val: Any) -> Optional[int]:
    if msat_val is None:
        return None
    return parse_msat(msat_val)


class NodeClient:
    """Narrow interface to the node daemon used by the probe and rebalance engine."""

    def __init__(self, plugin, riskfactor: int = 10):
        self.plugin = plugin
        self.riskfactor = riskfactor

    @property
    def rpc(self):
        return self.plugin.rpc

    # =========================================================================
    # Wallet and channels
    # =========================================================================

    def get_wallet_info(self) -> Dict[str, Any]:
        info = self.rpc.getinfo()
        return {
            "public_key": info.get("id", ""),
            "alias": info.get("alias"),
            "current_block_height": int(info.get("blockheight", 0)),
        }

    def get_channels(self) -> List[Channel]:
        """Our channels with balances, from listpeerchannels."""
        result = self.rpc.listpeerchannels()
        channels = []
        for ch in result.get("channels", []):
            scid = ch.get("short_channel_id")
            if not scid:
                continue

            total_msat = parse_msat(ch.get("total_msat"))
            to_us_msat = parse_msat(ch.get("to_us_msat"))
            reserve_msat = _optional_msat(ch.get("our_reserve_msat"))

            channels.append(Channel(
                id=scid,
                capacity=total_msat // 1000,
                local_balance=to_us_msat // 1000,
                remote_balance=(total_msat - to_us_msat) // 1000,
                partner_public_key=ch.get("peer_id", ""),
                is_active=ch.get("state") == NORMAL_STATE and bool(ch.get("peer_connected")),
                local_reserve=None if reserve_msat is None else reserve_msat // 1000,
                commit_transaction_fee=parse_msat(ch.get("last_tx_fee_msat")) // 1000,
            ))
        return channels

    @staticmethod
    def _policy_from_gossip(entry: Dict[str, Any]) -> Policy:
        return Policy(
            public_key=entry.get("source", ""),
            base_fee_mtokens=int(entry.get("base_fee_millisatoshi", 0)),
            fee_rate=int(entry.get("fee_per_millionth", 0)),
            cltv_delta=int(entry.get("delay", 0)),
            min_htlc_mtokens=parse_msat(entry.get("htlc_minimum_msat")),
            max_htlc_mtokens=_optional_msat(entry.get("htlc_maximum_msat")),
            is_disabled=not entry.get("active", True),
        )

    def _graph_channels(self, entries: List[Dict[str, Any]]) -> List[GraphChannel]:
        """Group listchannels half-channels by short channel id."""
        by_scid: Dict[str, GraphChannel] = {}
        for entry in entries:
            scid = entry.get("short_channel_id")
            if not scid:
                continue
            if scid not in by_scid:
                capacity = _optional_msat(entry.get("amount_msat"))
                by_scid[scid] = GraphChannel(
                    id=scid,
                    capacity=None if capacity is None else capacity // 1000,
                )
            graph_channel = by_scid[scid]
            policy = self._policy_from_gossip(entry)
            if graph_channel.policy_of(policy.public_key) is None:
                graph_channel.policies.append(policy)
        return list(by_scid.values())

    def get_channel(self, channel_id: str) -> GraphChannel:
        result = self.rpc.listchannels(short_channel_id=channel_id)
        channels = self._graph_channels(result.get("channels", []))
        if not channels:
            raise ProbeRebalanceError(NOT_FOUND, "FullChannelDetailsNotFound", {"channel": channel_id})
        return channels[0]

    def get_hop_chain(self, source: str, channel_ids: List[str]) -> List[GraphChannel]:
        """
        Resolve channel ids into directed hops, each pointing away from the
        previous hop's destination (the first one away from source).

        Raises:
            ValueError: when a channel lacks the far side's policy
        """
        chain = []
        sender = source
        for channel_id in channel_ids:
            channel = self.get_channel(channel_id)
            far_side = channel.policy_not_of(sender)
            if far_side is None:
                raise ValueError(f"ExpectedPeerPolicyForChannel {channel_id}")
            channel.destination = far_side.public_key
            sender = far_side.public_key
            chain.append(channel)
        return chain

    def get_node(self, public_key: str, omit_channels: bool = False) -> Dict[str, Any]:
        """Node alias plus (unless omitted) its channels with both policies."""
        nodes = self.rpc.listnodes(public_key).get("nodes", [])
        alias = nodes[0].get("alias") if nodes else None

        if omit_channels:
            return {"public_key": public_key, "alias": alias, "channels": []}

        entries = list(self.rpc.listchannels(source=public_key).get("channels", []))
        entries += self.rpc.listchannels(destination=public_key).get("channels", [])

        return {
            "public_key": public_key,
            "alias": alias,
            "channels": self._graph_channels(entries),
        }

    def get_node_alias(self, public_key: str) -> str:
        """'<alias> <key>' when the node has an alias, the bare key otherwise."""
        try:
            alias = self.get_node(public_key, omit_channels=True).get("alias")
        except RpcError as e:
            self.plugin.log(f"Alias lookup failed for {public_key[:12]}...: {e}", level='debug')
            return public_key
        return f"{alias} {public_key}" if alias else public_key

    # =========================================================================
    # Payment requests and invoices
    # =========================================================================

    def decode_payment_request(self, request: str) -> Dict[str, Any]:
        decoded = self.rpc.call("decode", {"string": request})

        if not decoded.get("valid", True) or not decoded.get("payee"):
            raise ProbeRebalanceError(BAD_REQUEST, "ExpectedValidPaymentRequest")

        destination = decoded["payee"]
        mtokens = parse_msat(decoded.get("amount_msat"))

        return {
            "destination": destination,
            "id": decoded.get("payment_hash"),
            "payment_secret": decoded.get("payment_secret"),
            "mtokens": mtokens,
            "tokens": mtokens // 1000,
            "cltv_delta": decoded.get("min_final_cltv_expiry"),
            "routes": [
                self._hint_path(hint, destination) for hint in decoded.get("routes", []) if hint
            ],
        }

    @staticmethod
    def _hint_path(hint: List[Dict[str, Any]], destination: str) -> List[PathHop]:
        """CLN route hint (entries name the forwarding node) -> PathHop list."""
        path = [PathHop(public_key=hint[0]["pubkey"])]
        for index, entry in enumerate(hint):
            next_key = hint[index + 1]["pubkey"] if index + 1 < len(hint) else destination
            path.append(PathHop(
                public_key=next_key,
                channel=entry["short_channel_id"],
                base_fee_mtokens=parse_msat(entry.get("fee_base_msat")),
                fee_rate=int(entry.get("fee_proportional_millionths", 0)),
                cltv_delta=int(entry.get("cltv_expiry_delta", 0)),
            ))
        return path

    def create_invoice(self, tokens: int, cltv_delta: int, description: str) -> Dict[str, Any]:
        label = f"{description.lower()}-{uuid.uuid4()}"
        invoice = self.rpc.call("invoice", {
            "amount_msat": tokens_to_mtokens(tokens),
            "label": label,
            "description": description,
            "cltv": cltv_delta,
        })
        return {
            "id": invoice["payment_hash"],
            "tokens": tokens,
            "payment_secret": invoice.get("payment_secret"),
            "request": invoice.get("bolt11"),
            "label": label,
        }

    # =========================================================================
    # Route search
    # =========================================================================

    @staticmethod
    def _channel_excludes(channel: str, direction: Optional[int] = None) -> List[str]:
        if direction is not None:
            return [f"{channel}/{direction}"]
        return [f"{channel}/0", f"{channel}/1"]

    @classmethod
    def _excludes(cls, ignore: Optional[List[Any]]) -> List[str]:
        """
        Ignore list -> getroute exclude entries.

        Accepted entries: a node id, a channel id, a "scid/direction" pair,
        a path (list of channel ids, as in attempted_paths), or a dict with
        "channel" (and optional "direction") or "from_public_key".

        Raises:
            ProbeRebalanceError: 400 ExpectedValidIgnoreEntry for any other shape
        """
        excludes = []
        for item in ignore or []:
            if isinstance(item, str) and SCID_PATTERN.match(item):
                excludes.extend(cls._channel_excludes(item))
            elif isinstance(item, str) and item:
                excludes.append(item)
            elif isinstance(item, (list, tuple)):
                for channel in item:
                    if not isinstance(channel, str) or not SCID_PATTERN.match(channel):
                        raise ProbeRebalanceError(BAD_REQUEST, "ExpectedValidIgnoreEntry",
                                                  {"entry": item})
                    excludes.extend(cls._channel_excludes(channel))
            elif isinstance(item, dict) and item.get("channel"):
                excludes.extend(cls._channel_excludes(item["channel"], item.get("direction")))
            elif isinstance(item, dict) and item.get("from_public_key"):
                excludes.append(item["from_public_key"])
            else:
                raise ProbeRebalanceError(BAD_REQUEST, "ExpectedValidIgnoreEntry", {"entry": item})
        return list(dict.fromkeys(excludes))

    @staticmethod
    def _hint_channels(hint: List[PathHop]) -> List[GraphChannel]:
        channels = []
        for previous, hop in zip(hint, hint[1:]):
            channels.append(GraphChannel(
                id=hop.channel,
                capacity=hop.channel_capacity,
                destination=hop.public_key,
                policies=[Policy(
                    public_key=previous.public_key,
                    base_fee_mtokens=hop.base_fee_mtokens or 0,
                    fee_rate=hop.fee_rate or 0,
                    cltv_delta=hop.cltv_delta or 0,
                )],
            ))
        return channels

    def _find_path(self, own_key: str, start: str, target: str, mtokens: int,
                   cltv_delta: int, excludes: List[str]) -> Optional[List[GraphChannel]]:
        """Graph channels from start to target, or None when getroute finds nothing."""
        if start == target:
            return []

        params = {
            "id": target,
            "amount_msat": Millisatoshi(mtokens),
            "riskfactor": self.riskfactor,
            "cltv": cltv_delta,
        }
        if start != own_key:
            params["fromid"] = start

        exclude = [e for e in excludes if e not in (start, target)]
        if exclude:
            params["exclude"] = exclude

        try:
            result = self.rpc.call("getroute", params)
        except RpcError as e:
            if e.error.get("code") == ROUTE_NOT_FOUND_CODE:
                return None
            raise

        path = []
        for hop in result.get("route", []):
            channel = self.get_channel(hop["channel"])
            channel.destination = hop["id"]
            path.append(channel)
        return path

    def get_routes(self, destination: str, tokens: int, cltv_delta: int,
                   ignore: Optional[List[Any]] = None,
                   outgoing_channel: Optional[str] = None,
                   outgoing_peer: Optional[str] = None,
                   routes: Optional[List[List[PathHop]]] = None,
                   is_strict_hints: bool = False) -> List[Route]:
        """
        Candidate routes to destination under the given constraints.

        With an outgoing channel the search starts at that channel's peer
        and the channel is prepended. With hints the search ends at each
        hint's entry peer and the hint hops are appended; strict hints
        rule out the direct search. An empty list means no route exists.
        """
        info = self.get_wallet_info()
        own_key = info["public_key"]
        height = info["current_block_height"]
        excludes = self._excludes(ignore)
        mtokens = tokens_to_mtokens(tokens)

        prefix: List[GraphChannel] = []
        start = own_key
        if outgoing_channel:
            out = self.get_channel(outgoing_channel)
            if not outgoing_peer:
                peer_policy = out.policy_not_of(own_key)
                if peer_policy is None:
                    raise ProbeRebalanceError(NOT_FOUND, "OutgoingChannelPeerNotFound",
                                              {"channel": outgoing_channel})
                outgoing_peer = peer_policy.public_key
            out.destination = outgoing_peer
            prefix = [out]
            start = out.destination

        hint_paths = [hint for hint in routes or [] if len(hint) > 1]
        searches: List[Optional[List[PathHop]]] = []
        if not (is_strict_hints and hint_paths):
            searches.append(None)
        searches.extend(hint_paths)

        found = []
        for hint in searches:
            target = destination if hint is None else hint[0].public_key
            suffix = [] if hint is None else self._hint_channels(hint)

            middle = self._find_path(own_key, start, target, mtokens, cltv_delta, excludes)
            if middle is None:
                continue

            try:
                route = route_from_channels(prefix + middle + suffix, cltv_delta, height,
                                            mtokens, source=own_key)
            except ValueError as e:
                self.plugin.log(f"Discarding candidate route to {target[:12]}...: {e}", level='debug')
                continue

            found.append(route)

        return found

    # =========================================================================
    # Payments
    # =========================================================================

    @staticmethod
    def to_cln_route(route: Route) -> List[Dict[str, Any]]:
        """Route -> sendpay hops (CLN delays are relative to the current height)."""
        return [
            {
                "id": hop.public_key,
                "channel": hop.channel,
                "direction": hop.direction,
                "amount_msat": Millisatoshi(hop.forward_mtokens),
                "delay": hop.timeout - route.height,
                "style": "tlv",
            }
            for hop in route.hops
        ]

    @staticmethod
    def _payment_failure(e: RpcError) -> Optional[ProbeRebalanceError]:
        """Structured failure for a payment attempt, None when the error is not one."""
        error = e.error if isinstance(e.error, dict) else {}
        code = error.get("code")
        data = error.get("data") or {}

        if code == WAITSENDPAY_TIMEOUT_CODE:
            return ProbeRebalanceError(PAYMENT_FAILED, "PaymentAttemptTimedOut")

        if "failcode" not in data and "failcodename" not in data:
            return None

        details = {
            "failcode": data.get("failcode"),
            "failcodename": data.get("failcodename"),
            "erring_index": data.get("erring_index"),
            "erring_node": data.get("erring_node"),
            "erring_channel": data.get("erring_channel"),
            "erring_direction": data.get("erring_direction"),
        }

        if data.get("failcode") == UNKNOWN_PAYMENT_DETAILS_FAILCODE or \
                data.get("failcodename") == UNKNOWN_PAYMENT_DETAILS_NAME:
            return ProbeRebalanceError(PAYMENT_FAILED, UNKNOWN_PAYMENT_HASH, details)

        return ProbeRebalanceError(PAYMENT_FAILED, "RoutingFailure", details)

    def pay_via_routes(self, routes: List[Route], id: Optional[str] = None,
                       pathfinding_timeout: int = 60) -> Dict[str, Any]:
        """
        Pay along exact routes, trying them in order.

        Without id a random payment hash is used, so the final node can only
        reject the HTLC and nothing settles.

        Raises:
            ProbeRebalanceError: 503 with the failure code of the last attempt
            RpcError: failures that carry no payment failure data
        """
        if not routes:
            raise ProbeRebalanceError(BAD_REQUEST, "ExpectedRoutesToPayViaRoutes")

        payment_hash = id or secrets.token_hex(32)
        failure = None

        for route in routes:
            params = {
                "route": self.to_cln_route(route),
                "payment_hash": payment_hash,
                "amount_msat": Millisatoshi(route.hops[-1].forward_mtokens),
            }
            if route.payment_secret:
                params["payment_secret"] = route.payment_secret

            try:
                self.rpc.call("sendpay", params)
                result = self.rpc.call("waitsendpay", {
                    "payment_hash": payment_hash,
                    "timeout": pathfinding_timeout,
                })
            except RpcError as e:
                failure = self._payment_failure(e)
                if failure is None:
                    raise
                self.plugin.log(
                    f"Payment attempt over {','.join(route.channels)} failed: {failure.code}",
                    level='debug'
                )
                continue

            return {
                "id": payment_hash,
                "mtokens": route.mtokens - route.fee_mtokens,
                "tokens": (route.mtokens - route.fee_mtokens) // 1000,
                "fee": route.fee,
                "fee_mtokens": route.fee_mtokens,
                "secret": result.get("payment_preimage"),
            }

        raise failure
