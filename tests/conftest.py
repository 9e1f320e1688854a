"""
Pytest fixtures for cl-probe-rebalance tests.

Provides mock plugin, RPC and node fixtures plus builders for channels,
graph channels and routes.
"""

import os
import sys
from unittest.mock import MagicMock

import pytest
from pyln.client import RpcError

# Add the repository root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from probe_rebalance.errors import ProbeRebalanceError, PAYMENT_FAILED
from probe_rebalance.models import Channel, GraphChannel, Policy, Route, RouteHop
from probe_rebalance.node import UNKNOWN_PAYMENT_HASH


OWN_KEY = "02" + "0" * 64


@pytest.fixture
def own_key():
    return OWN_KEY


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def mock_rpc():
    """Create a mock RPC interface."""
    rpc = MagicMock()

    rpc.getinfo.return_value = {
        "id": OWN_KEY,
        "alias": "test-node",
        "blockheight": 800000,
        "network": "regtest"
    }

    rpc.listchannels.return_value = {"channels": []}
    rpc.listpeerchannels.return_value = {"channels": []}
    rpc.listnodes.return_value = {"nodes": []}

    return rpc


@pytest.fixture
def mock_node():
    """A NodeClient stand-in with wallet info preset."""
    node = MagicMock()
    node.get_wallet_info.return_value = {
        "public_key": OWN_KEY,
        "alias": "test-node",
        "current_block_height": 800000,
    }
    node.get_node_alias.side_effect = lambda key: f"alias-{key[:4]} {key}"
    return node


@pytest.fixture
def sample_peer_ids():
    """Sample peer IDs for testing."""
    return [
        "02" + "a" * 64,
        "02" + "b" * 64,
        "02" + "c" * 64,
        "03" + "d" * 64,
        "03" + "e" * 64,
    ]


@pytest.fixture
def make_channel():
    """Build one of our own channels."""
    counter = iter(range(1, 10000))

    def _make(partner, local_balance, remote_balance, is_active=True, local_reserve=None,
              commit_transaction_fee=0, channel_id=None):
        return Channel(
            id=channel_id or f"800000x{next(counter)}x0",
            capacity=local_balance + remote_balance,
            local_balance=local_balance,
            remote_balance=remote_balance,
            partner_public_key=partner,
            is_active=is_active,
            local_reserve=local_reserve,
            commit_transaction_fee=commit_transaction_fee,
        )

    return _make


@pytest.fixture
def make_graph_channel():
    """Build a public graph channel between two nodes with one policy per side."""

    def _make(channel_id, a, b, capacity=10_000_000, a_policy=None, b_policy=None,
              destination=None):
        a_policy = a_policy or {}
        b_policy = b_policy or {}
        return GraphChannel(
            id=channel_id,
            capacity=capacity,
            destination=destination,
            policies=[
                Policy(public_key=a, **a_policy),
                Policy(public_key=b, **b_policy),
            ],
        )

    return _make


@pytest.fixture
def make_route():
    """Build a Route over channel ids with the given totals (sats)."""

    def _make(channel_ids, tokens=10, fee=0, timeout=800147, height=800000):
        mtokens = (tokens + fee) * 1000
        hops = [
            RouteHop(
                channel=channel_id,
                public_key="03" + str(index) * 64,
                direction=0,
                forward_mtokens=mtokens,
                fee_mtokens=0,
                timeout=timeout,
            )
            for index, channel_id in enumerate(channel_ids)
        ]
        hops[-1].forward_mtokens = tokens * 1000
        return Route(hops=hops, mtokens=mtokens, fee_mtokens=fee * 1000,
                     timeout=timeout, height=height)

    return _make


@pytest.fixture
def unknown_payment_hash():
    """The failure a probe expects from the final node."""
    return ProbeRebalanceError(PAYMENT_FAILED, UNKNOWN_PAYMENT_HASH, {
        "failcode": 16399,
        "failcodename": "WIRE_INCORRECT_OR_UNKNOWN_PAYMENT_DETAILS",
        "erring_index": 3,
    })


@pytest.fixture
def routing_failure():
    """Build a mid-route failure naming the erring channel."""

    def _make(channel="800000x9x0", direction=1, node=None):
        return ProbeRebalanceError(PAYMENT_FAILED, "RoutingFailure", {
            "failcode": 4103,
            "failcodename": "WIRE_TEMPORARY_CHANNEL_FAILURE",
            "erring_index": 1,
            "erring_node": node,
            "erring_channel": channel,
            "erring_direction": direction,
        })

    return _make


@pytest.fixture
def make_rpc_error():
    """Build a pyln RpcError as raised by LightningRpc."""

    def _make(method, code, message="error", data=None):
        error = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        return RpcError(method, {}, error)

    return _make
