"""
Tests for the Core Lightning adapter (NodeClient).

Tests:
- msat parsing
- listpeerchannels / listchannels / listnodes mapping
- Payment request decoding and invoices
- getroute based route search with outgoing channel and hint constraints
- sendpay / waitsendpay and failure interpretation
"""

import pytest
from pyln.client import Millisatoshi, RpcError

from probe_rebalance.errors import ProbeRebalanceError, BAD_REQUEST, NOT_FOUND, PAYMENT_FAILED
from probe_rebalance.models import PathHop
from probe_rebalance.node import NodeClient, parse_msat, UNKNOWN_PAYMENT_HASH
from probe_rebalance.routing import route_from_channels


SELF = "02" + "0" * 64
ALICE = "02" + "a" * 64
BOB = "02" + "b" * 64
DEST = "03" + "d" * 64


def half(scid, source, destination, base=0, ppm=0, delay=6, active=True):
    return {
        "short_channel_id": scid,
        "source": source,
        "destination": destination,
        "amount_msat": 10_000_000_000,
        "base_fee_millisatoshi": base,
        "fee_per_millionth": ppm,
        "delay": delay,
        "htlc_minimum_msat": 1000,
        "htlc_maximum_msat": 9_900_000_000,
        "active": active,
    }


GOSSIP = [
    half("1x1x0", SELF, ALICE), half("1x1x0", ALICE, SELF),
    half("1x2x0", ALICE, DEST, base=1000, ppm=10, delay=6), half("1x2x0", DEST, ALICE),
    half("1x3x0", ALICE, BOB, base=0, ppm=0, delay=12), half("1x3x0", BOB, ALICE),
]


def fake_listchannels(short_channel_id=None, source=None, destination=None):
    return {"channels": [
        c for c in GOSSIP
        if (short_channel_id is None or c["short_channel_id"] == short_channel_id)
        and (source is None or c["source"] == source)
        and (destination is None or c["destination"] == destination)
    ]}


@pytest.fixture
def client(mock_plugin, mock_rpc):
    mock_rpc.listchannels.side_effect = fake_listchannels
    mock_plugin.rpc = mock_rpc
    return NodeClient(mock_plugin, riskfactor=10)


def dispatch(mock_rpc, **handlers):
    """Route rpc.call(method, params) to per-method handlers (callables or values)."""
    def call(method, params=None):
        handler = handlers[method]
        return handler(params) if callable(handler) else handler
    mock_rpc.call.side_effect = call


class TestParseMsat:

    @pytest.mark.parametrize("value,expected", [
        (None, 0),
        (1500, 1500),
        ("1500msat", 1500),
        ("1500", 1500),
        (Millisatoshi(2500), 2500),
        ("garbage", 0),
    ])
    def test_parse_msat(self, value, expected):
        assert parse_msat(value) == expected


class TestWalletAndChannels:

    def test_wallet_info(self, client):
        assert client.get_wallet_info() == {
            "public_key": SELF,
            "alias": "test-node",
            "current_block_height": 800000,
        }

    def test_channels_from_listpeerchannels(self, client, mock_rpc):
        mock_rpc.listpeerchannels.return_value = {"channels": [
            {
                "short_channel_id": "800000x1x0",
                "peer_id": ALICE,
                "peer_connected": True,
                "state": "CHANNELD_NORMAL",
                "total_msat": 1_000_000_000,
                "to_us_msat": 600_000_000,
                "our_reserve_msat": 10_000_000,
                "last_tx_fee_msat": 500_000,
            },
            {
                "peer_id": BOB,
                "state": "CHANNELD_AWAITING_LOCKIN",
                "total_msat": 1_000_000_000,
                "to_us_msat": 1_000_000_000,
            },
            {
                "short_channel_id": "800000x2x0",
                "peer_id": BOB,
                "peer_connected": False,
                "state": "CHANNELD_NORMAL",
                "total_msat": "2000000000msat",
                "to_us_msat": "0msat",
            },
        ]}

        channels = client.get_channels()

        assert len(channels) == 2
        first, second = channels
        assert first.id == "800000x1x0"
        assert first.capacity == 1_000_000
        assert first.local_balance == 600_000
        assert first.remote_balance == 400_000
        assert first.local_reserve == 10_000
        assert first.commit_transaction_fee == 500
        assert first.is_active is True
        assert second.is_active is False
        assert second.remote_balance == 2_000_000
        assert second.local_reserve is None

    def test_channel_policies_from_gossip(self, client):
        channel = client.get_channel("1x2x0")

        assert channel.id == "1x2x0"
        assert channel.capacity == 10_000_000
        policy = channel.policy_of(ALICE)
        assert policy.base_fee_mtokens == 1000
        assert policy.fee_rate == 10
        assert policy.cltv_delta == 6
        assert policy.max_htlc_mtokens == 9_900_000_000
        assert channel.policy_not_of(ALICE).public_key == DEST

    def test_unknown_channel(self, client):
        with pytest.raises(ProbeRebalanceError) as exc:
            client.get_channel("9x9x9")

        assert exc.value.code == "FullChannelDetailsNotFound"
        assert exc.value.status == NOT_FOUND

    def test_hop_chain_is_directed_from_source(self, client):
        chain = client.get_hop_chain(SELF, ["1x1x0", "1x3x0"])

        assert [c.destination for c in chain] == [ALICE, BOB]

    def test_node_channels_from_both_directions(self, client, mock_rpc):
        mock_rpc.listnodes.return_value = {"nodes": [{"nodeid": DEST, "alias": "dest"}]}

        node = client.get_node(DEST)

        assert node["alias"] == "dest"
        assert [c.id for c in node["channels"]] == ["1x2x0"]
        assert len(node["channels"][0].policies) == 2

    def test_alias_with_key(self, client, mock_rpc):
        mock_rpc.listnodes.return_value = {"nodes": [{"nodeid": ALICE, "alias": "alice"}]}

        assert client.get_node_alias(ALICE) == f"alice {ALICE}"

    def test_alias_missing_falls_back_to_key(self, client, mock_rpc):
        mock_rpc.listnodes.return_value = {"nodes": []}

        assert client.get_node_alias(ALICE) == ALICE

    def test_alias_lookup_error_falls_back_to_key(self, client, mock_rpc, make_rpc_error):
        mock_rpc.listnodes.side_effect = make_rpc_error("listnodes", -32602, "bad")

        assert client.get_node_alias(ALICE) == ALICE


class TestRequestsAndInvoices:

    def test_decode_payment_request(self, client, mock_rpc):
        dispatch(mock_rpc, decode={
            "valid": True,
            "payee": DEST,
            "payment_hash": "ff" * 32,
            "payment_secret": "ee" * 32,
            "amount_msat": 5_000_000,
            "min_final_cltv_expiry": 18,
            "routes": [[
                {"pubkey": BOB, "short_channel_id": "7x7x7", "fee_base_msat": 1000,
                 "fee_proportional_millionths": 5, "cltv_expiry_delta": 34},
            ]],
        })

        decoded = client.decode_payment_request("lnbcrt50u1...")

        assert decoded["destination"] == DEST
        assert decoded["tokens"] == 5000
        assert decoded["cltv_delta"] == 18
        hint = decoded["routes"][0]
        assert [hop.public_key for hop in hint] == [BOB, DEST]
        assert hint[1].channel == "7x7x7"
        assert hint[1].base_fee_mtokens == 1000
        assert hint[1].cltv_delta == 34

    def test_invalid_payment_request(self, client, mock_rpc):
        dispatch(mock_rpc, decode={"valid": False})

        with pytest.raises(ProbeRebalanceError) as exc:
            client.decode_payment_request("nonsense")

        assert exc.value.code == "ExpectedValidPaymentRequest"

    def test_create_invoice(self, client, mock_rpc):
        seen = {}

        def invoice(params):
            seen.update(params)
            return {"payment_hash": "ab" * 32, "payment_secret": "cd" * 32, "bolt11": "lnbcrt1..."}

        dispatch(mock_rpc, invoice=invoice)

        result = client.create_invoice(tokens=1000, cltv_delta=40, description="Rebalance")

        assert result["id"] == "ab" * 32
        assert result["payment_secret"] == "cd" * 32
        assert seen["amount_msat"] == 1_000_000
        assert seen["cltv"] == 40
        assert seen["label"].startswith("rebalance-")


class TestRouteSearch:

    def test_excludes(self):
        excludes = NodeClient._excludes([
            {"channel": "5x5x5", "direction": 1},
            {"channel": "6x6x6"},
            {"from_public_key": BOB},
            BOB,
        ])

        assert excludes == ["5x5x5/1", "6x6x6/0", "6x6x6/1", BOB]

    def test_bare_channel_ids_exclude_both_directions(self):
        excludes = NodeClient._excludes(["800000x1x0", "800000x2x0/1"])

        assert excludes == ["800000x1x0/0", "800000x1x0/1", "800000x2x0/1"]

    def test_attempted_paths_can_be_ignored(self):
        excludes = NodeClient._excludes([["800000x1x0", "800000x2x0"], ["800000x1x0"]])

        assert excludes == ["800000x1x0/0", "800000x1x0/1", "800000x2x0/0", "800000x2x0/1"]

    @pytest.mark.parametrize("entry", [
        42,
        None,
        {},
        {"direction": 1},
        [BOB],
        ["800000x1x0", 7],
    ])
    def test_invalid_ignore_entry(self, entry):
        with pytest.raises(ProbeRebalanceError) as exc:
            NodeClient._excludes([entry])

        assert exc.value.code == "ExpectedValidIgnoreEntry"
        assert exc.value.status == BAD_REQUEST

    def test_invalid_ignore_entry_fails_before_getroute(self, client, mock_rpc):
        with pytest.raises(ProbeRebalanceError):
            client.get_routes(DEST, 100, 40, ignore=[{"alias": "nope"}])

        mock_rpc.call.assert_not_called()

    def test_retry_with_attempted_path(self, client, mock_rpc):
        seen = []

        def getroute(params):
            seen.append(params)
            return {"route": []}

        dispatch(mock_rpc, getroute=getroute)

        client.get_routes(DEST, 100, 40, ignore=[["1x1x0", "1x2x0"]])

        assert seen[0]["exclude"] == ["1x1x0/0", "1x1x0/1", "1x2x0/0", "1x2x0/1"]

    def test_direct_route(self, client, mock_rpc):
        seen = []

        def getroute(params):
            seen.append(params)
            return {"route": [{"id": ALICE, "channel": "1x1x0"}, {"id": DEST, "channel": "1x2x0"}]}

        dispatch(mock_rpc, getroute=getroute)

        routes = client.get_routes(DEST, 100, 40)

        assert len(routes) == 1
        route = routes[0]
        assert route.channels == ["1x1x0", "1x2x0"]
        assert route.fee_mtokens == 1001
        assert route.timeout == 800046
        assert seen[0]["id"] == DEST
        assert seen[0]["amount_msat"] == Millisatoshi(100_000)
        assert "fromid" not in seen[0]

    def test_no_route_is_empty(self, client, mock_rpc, make_rpc_error):
        def getroute(params):
            raise make_rpc_error("getroute", 205, "Could not find a route")

        dispatch(mock_rpc, getroute=getroute)

        assert client.get_routes(DEST, 100, 40) == []

    def test_other_getroute_errors_propagate(self, client, mock_rpc, make_rpc_error):
        def getroute(params):
            raise make_rpc_error("getroute", -32602, "bad params")

        dispatch(mock_rpc, getroute=getroute)

        with pytest.raises(RpcError):
            client.get_routes(DEST, 100, 40)

    def test_outgoing_channel_is_prefixed(self, client, mock_rpc):
        seen = []

        def getroute(params):
            seen.append(params)
            return {"route": [{"id": DEST, "channel": "1x2x0"}]}

        dispatch(mock_rpc, getroute=getroute)

        routes = client.get_routes(DEST, 100, 40, outgoing_channel="1x1x0")

        assert routes[0].channels == ["1x1x0", "1x2x0"]
        assert seen[0]["fromid"] == ALICE

    def test_strict_hint_is_appended(self, client, mock_rpc):
        seen = []

        def getroute(params):
            seen.append(params)
            return {"route": [{"id": ALICE, "channel": "1x1x0"}, {"id": BOB, "channel": "1x3x0"}]}

        dispatch(mock_rpc, getroute=getroute)
        hint = [PathHop(public_key=BOB),
                PathHop(public_key=DEST, channel="9x9x9", base_fee_mtokens=0, fee_rate=0,
                        cltv_delta=9)]

        routes = client.get_routes(DEST, 100, 40, routes=[hint], is_strict_hints=True)

        assert len(seen) == 1
        assert seen[0]["id"] == BOB
        assert routes[0].channels == ["1x1x0", "1x3x0", "9x9x9"]
        assert routes[0].destination == DEST

    def test_ignore_list_becomes_exclude(self, client, mock_rpc):
        seen = []

        def getroute(params):
            seen.append(params)
            return {"route": []}

        dispatch(mock_rpc, getroute=getroute)

        client.get_routes(DEST, 100, 40, ignore=[{"channel": "5x5x5", "direction": 1}, BOB])

        assert seen[0]["exclude"] == ["5x5x5/1", BOB]


class TestPayments:

    @pytest.fixture
    def route(self, client):
        chain = client.get_hop_chain(SELF, ["1x1x0", "1x2x0"])
        return route_from_channels(chain, 40, 800000, 100_000, payment_secret="ee" * 32)

    def test_cln_route_uses_relative_delays(self, route):
        hops = NodeClient.to_cln_route(route)

        assert [h["channel"] for h in hops] == ["1x1x0", "1x2x0"]
        assert [h["delay"] for h in hops] == [46, 40]
        assert hops[0]["amount_msat"] == Millisatoshi(101_001)

    def test_successful_payment(self, client, mock_rpc, route):
        sent = []
        dispatch(mock_rpc,
                 sendpay=lambda params: sent.append(params) or {},
                 waitsendpay={"payment_preimage": "aa" * 32})

        result = client.pay_via_routes([route], id="ff" * 32)

        assert result["secret"] == "aa" * 32
        assert result["tokens"] == 100
        assert result["fee_mtokens"] == 1001
        assert sent[0]["payment_hash"] == "ff" * 32
        assert sent[0]["payment_secret"] == "ee" * 32
        assert sent[0]["amount_msat"] == Millisatoshi(100_000)

    def test_random_hash_without_id(self, client, mock_rpc, route):
        sent = []
        dispatch(mock_rpc,
                 sendpay=lambda params: sent.append(params) or {},
                 waitsendpay={"payment_preimage": "aa" * 32})

        client.pay_via_routes([route])
        client.pay_via_routes([route])

        assert len(sent[0]["payment_hash"]) == 64
        assert sent[0]["payment_hash"] != sent[1]["payment_hash"]

    def test_unknown_payment_details(self, client, mock_rpc, route, make_rpc_error):
        def waitsendpay(params):
            raise make_rpc_error("waitsendpay", 204, "failed", {
                "failcode": 16399,
                "failcodename": "WIRE_INCORRECT_OR_UNKNOWN_PAYMENT_DETAILS",
                "erring_index": 2,
                "erring_node": DEST,
            })

        dispatch(mock_rpc, sendpay={}, waitsendpay=waitsendpay)

        with pytest.raises(ProbeRebalanceError) as exc:
            client.pay_via_routes([route])

        assert exc.value.code == UNKNOWN_PAYMENT_HASH
        assert exc.value.status == PAYMENT_FAILED
        assert exc.value.details["erring_node"] == DEST

    def test_routing_failure_details(self, client, mock_rpc, route, make_rpc_error):
        def waitsendpay(params):
            raise make_rpc_error("waitsendpay", 204, "failed", {
                "failcode": 4103,
                "failcodename": "WIRE_TEMPORARY_CHANNEL_FAILURE",
                "erring_index": 1,
                "erring_channel": "1x2x0",
                "erring_direction": 0,
            })

        dispatch(mock_rpc, sendpay={}, waitsendpay=waitsendpay)

        with pytest.raises(ProbeRebalanceError) as exc:
            client.pay_via_routes([route])

        assert exc.value.code == "RoutingFailure"
        assert exc.value.details["erring_channel"] == "1x2x0"

    def test_timeout(self, client, mock_rpc, route, make_rpc_error):
        def waitsendpay(params):
            raise make_rpc_error("waitsendpay", 200, "Timed out")

        dispatch(mock_rpc, sendpay={}, waitsendpay=waitsendpay)

        with pytest.raises(ProbeRebalanceError) as exc:
            client.pay_via_routes([route])

        assert exc.value.code == "PaymentAttemptTimedOut"

    def test_next_route_is_tried_after_failure(self, client, mock_rpc, route, make_rpc_error):
        attempts = iter([
            make_rpc_error("waitsendpay", 204, "failed", {"failcode": 4103}),
            None,
        ])

        def waitsendpay(params):
            error = next(attempts)
            if error:
                raise error
            return {"payment_preimage": "aa" * 32}

        dispatch(mock_rpc, sendpay={}, waitsendpay=waitsendpay)

        result = client.pay_via_routes([route, route])

        assert result["secret"] == "aa" * 32

    def test_unstructured_errors_propagate(self, client, mock_rpc, route, make_rpc_error):
        def sendpay(params):
            raise make_rpc_error("sendpay", -32602, "bad route")

        dispatch(mock_rpc, sendpay=sendpay)

        with pytest.raises(RpcError):
            client.pay_via_routes([route])
