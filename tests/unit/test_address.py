"""Tests for AddressSelector — filtering, weighting and determinism."""

from __future__ import annotations

import ipaddress

import pytest

from nixforge.core.address import (
    AddressSelector,
    filter_addresses,
    parse_addresses,
    parse_cidr,
    sort_addresses,
)
from nixforge.errors import AddressParseError, InvalidCIDRError, NoAddressMatchedError
from nixforge.models.settings import AddressPriority


class TestParsing:
    def test_parse_cidr_masks_host_bits(self):
        assert parse_cidr("10.1.2.3/8") == ipaddress.ip_network("10.0.0.0/8")

    def test_invalid_cidr_raises(self):
        with pytest.raises(InvalidCIDRError) as exc_info:
            parse_cidr("10.0.0.0/33")
        assert exc_info.value.cidr == "10.0.0.0/33"

    def test_unparsable_candidates_dropped(self):
        parsed = parse_addresses(["not-an-ip", "192.168.1.1", "999.1.1.1"])
        assert parsed == [ipaddress.ip_address("192.168.1.1")]

    def test_all_unparsable_raises(self):
        with pytest.raises(AddressParseError):
            parse_addresses(["foo", "bar"])

    def test_whitespace_tolerated(self):
        assert parse_addresses([" 10.0.0.1 "]) == [ipaddress.ip_address("10.0.0.1")]


class TestFilterAndSort:
    def test_empty_filter_keeps_all(self):
        addrs = parse_addresses(["10.0.0.1", "::1"])
        assert filter_addresses([], addrs) == addrs

    def test_ipv4_never_matches_ipv6_network(self):
        addrs = parse_addresses(["10.0.0.1"])
        assert filter_addresses([parse_cidr("::/0")], addrs) == []

    def test_sort_is_stable_for_equal_weights(self):
        addrs = parse_addresses(["10.0.0.3", "10.0.0.1", "10.0.0.2"])
        ranked = sort_addresses([(parse_cidr("10.0.0.0/8"), 5)], addrs)
        assert [str(a) for a in ranked] == ["10.0.0.3", "10.0.0.1", "10.0.0.2"]

    def test_max_weight_of_containing_blocks_wins(self):
        addrs = parse_addresses(["10.0.0.1", "192.168.0.1"])
        priority = [
            (parse_cidr("0.0.0.0/0"), 1),
            (parse_cidr("192.168.0.0/16"), 10),
            (parse_cidr("10.0.0.0/8"), 3),
        ]
        assert [str(a) for a in sort_addresses(priority, addrs)] == [
            "192.168.0.1",
            "10.0.0.1",
        ]

    def test_uncovered_address_weighs_zero(self):
        addrs = parse_addresses(["172.16.0.1", "10.0.0.1"])
        priority = [(parse_cidr("10.0.0.0/8"), 1)]
        assert str(sort_addresses(priority, addrs)[0]) == "10.0.0.1"


class TestAddressSelector:
    def test_default_prefers_ipv4(self):
        selector = AddressSelector()
        assert selector.select(["fe80::1", "10.0.0.5"]) == "10.0.0.5"

    def test_selection_is_deterministic(self):
        candidates = ["2001:db8::5", "10.0.0.5", "192.168.1.7", "garbage"]
        selector = AddressSelector(
            ["10.0.0.0/8", "192.168.0.0/16", "2001:db8::/32"],
            [AddressPriority(cidr="192.168.0.0/16", weight=7)],
        )
        first = selector.select(candidates)
        for _ in range(20):
            assert selector.select(candidates) == first
        assert first == "192.168.1.7"

    def test_filter_excludes_outside_addresses(self):
        selector = AddressSelector(["10.0.0.0/8"])
        ranked = selector.rank(["192.168.1.1", "10.2.3.4", "fe80::1"])
        assert [str(a) for a in ranked] == ["10.2.3.4"]

    def test_filter_excluding_everything_raises(self):
        selector = AddressSelector(["10.0.0.0/8"])
        with pytest.raises(NoAddressMatchedError) as exc_info:
            selector.select(["192.168.1.1"])
        assert exc_info.value.candidates == ["192.168.1.1"]

    def test_ipv6_priority_override(self):
        selector = AddressSelector(
            address_priority=[
                AddressPriority(cidr="0.0.0.0/0", weight=0),
                AddressPriority(cidr="::/0", weight=1),
            ]
        )
        assert selector.select(["10.0.0.5", "2001:db8::1"]) == "2001:db8::1"

    def test_invalid_filter_rejected_at_construction(self):
        with pytest.raises(InvalidCIDRError):
            AddressSelector(["nope"])

    def test_invalid_priority_rejected_at_construction(self):
        with pytest.raises(InvalidCIDRError):
            AddressSelector(address_priority=[AddressPriority(cidr="1.2.3/x", weight=1)])
