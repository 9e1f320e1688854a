"""
Tests for route assembly and fee helpers.
"""

import pytest

from probe_rebalance.routing import (
    fee_rate_ppm,
    forward_fee_mtokens,
    hop_direction,
    mtokens_to_tokens,
    route_from_channels,
    tokens_to_mtokens,
)


SELF = "02" + "0" * 64
ALICE = "02" + "a" * 64
BOB = "02" + "b" * 64
DEST = "02" + "1" * 64


class TestFeeHelpers:

    def test_token_conversions(self):
        assert tokens_to_mtokens(21) == 21000
        assert mtokens_to_tokens(21999) == 21

    def test_large_amounts_keep_precision(self):
        assert tokens_to_mtokens(2_100_000_000_000_000) == 2_100_000_000_000_000_000

    def test_forward_fee(self):
        assert forward_fee_mtokens(1000, 100, 1_000_000_000) == 101_000

    def test_forward_fee_rounds_down(self):
        assert forward_fee_mtokens(0, 1, 999_999) == 0

    def test_fee_rate_ppm(self):
        assert fee_rate_ppm(2000, 1_000_000) == 2000

    def test_fee_rate_ppm_rounds_up(self):
        assert fee_rate_ppm(1, 3) == 333_334

    def test_fee_rate_ppm_requires_tokens(self):
        with pytest.raises(ValueError):
            fee_rate_ppm(1, 0)

    def test_hop_direction(self):
        assert hop_direction(ALICE, BOB) == 0
        assert hop_direction(BOB, ALICE) == 1


class TestRouteFromChannels:

    @pytest.fixture
    def three_hops(self, make_graph_channel):
        return [
            make_graph_channel("1x1x0", SELF, ALICE, destination=ALICE),
            make_graph_channel(
                "1x2x0", ALICE, BOB, destination=BOB,
                a_policy={"base_fee_mtokens": 1000, "fee_rate": 100, "cltv_delta": 40},
            ),
            make_graph_channel(
                "1x3x0", BOB, DEST, destination=DEST,
                a_policy={"base_fee_mtokens": 2000, "fee_rate": 200, "cltv_delta": 30},
            ),
        ]

    def test_one_hop_per_channel(self, three_hops):
        route = route_from_channels(three_hops, 144, 100, 1_000_000)

        assert len(route.hops) == 3
        assert route.channels == ["1x1x0", "1x2x0", "1x3x0"]
        assert route.destination == DEST

    def test_fees_accumulate_backwards(self, three_hops):
        route = route_from_channels(three_hops, 144, 100, 1_000_000)

        # Bob: 2000 + 1_000_000 * 200 / 1e6 = 2200
        # Alice: 1000 + 1_002_200 * 100 / 1e6 = 1100
        assert [h.forward_mtokens for h in route.hops] == [1_003_300, 1_002_200, 1_000_000]
        assert [h.fee_mtokens for h in route.hops] == [0, 1100, 2200]
        assert route.mtokens == 1_003_300
        assert route.fee_mtokens == 3300
        assert route.tokens == 1003
        assert route.fee == 3

    def test_timelocks_cover_final_cltv_and_hop_deltas(self, three_hops):
        height, cltv = 100, 144

        route = route_from_channels(three_hops, cltv, height, 1_000_000)

        assert [h.timeout for h in route.hops] == [314, 274, 244]
        assert route.timeout >= height + cltv + 40 + 30
        assert route.height == height

    def test_first_hop_is_free(self, make_graph_channel):
        channel = make_graph_channel(
            "1x1x0", SELF, DEST, destination=DEST,
            a_policy={"base_fee_mtokens": 5000, "fee_rate": 5000, "cltv_delta": 99},
        )

        route = route_from_channels([channel], 40, 100, 10_000)

        assert route.fee_mtokens == 0
        assert route.timeout == 140

    def test_directions_follow_node_order(self, three_hops):
        route = route_from_channels(three_hops, 144, 100, 1_000_000)

        assert [h.direction for h in route.hops] == [0, 0, 1]

    def test_source_defaults_to_other_side_of_first_channel(self, three_hops):
        implicit = route_from_channels(three_hops, 144, 100, 1_000_000)
        explicit = route_from_channels(three_hops, 144, 100, 1_000_000, source=SELF)

        assert implicit.hops == explicit.hops

    def test_payment_secret_and_path_are_kept(self, three_hops):
        route = route_from_channels(three_hops, 144, 100, 1_000_000, payment_secret="ab" * 32)

        assert route.payment_secret == "ab" * 32
        assert route.path == three_hops

    def test_channel_without_destination_is_rejected(self, make_graph_channel):
        channel = make_graph_channel("1x1x0", SELF, DEST)

        with pytest.raises(ValueError):
            route_from_channels([channel], 40, 100, 10_000)

    def test_empty_channel_list_is_rejected(self):
        with pytest.raises(ValueError):
            route_from_channels([], 40, 100, 10_000)

    def test_missing_forwarding_policy_is_rejected(self, make_graph_channel):
        first = make_graph_channel("1x1x0", SELF, ALICE, destination=ALICE)
        second = make_graph_channel("1x2x0", ALICE, DEST, destination=DEST)
        second.policies = []

        with pytest.raises(ValueError):
            route_from_channels([first, second], 40, 100, 10_000)
