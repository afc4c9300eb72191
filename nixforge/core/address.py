"""Address selection over redundant network endpoints.

Selection is a pure function of (candidates, filter, priority): no probing,
no DNS.  Given the same inputs it always returns the same address.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Iterable, Sequence

from nixforge.errors import AddressParseError, InvalidCIDRError, NoAddressMatchedError
from nixforge.models.settings import DEFAULT_ADDRESS_PRIORITY, AddressPriority

logger = logging.getLogger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_cidr(cidr: str) -> IPNetwork:
    """Parse a CIDR block; host bits are allowed and masked off."""
    try:
        return ipaddress.ip_network(cidr, strict=False)
    except ValueError as exc:
        raise InvalidCIDRError(cidr, str(exc)) from exc


def parse_addresses(candidates: Sequence[str]) -> list[IPAddress]:
    """Parse candidate literals, dropping unparsable ones.

    Raises ``AddressParseError`` only when *none* of them parse.
    """
    parsed: list[IPAddress] = []
    for raw in candidates:
        try:
            parsed.append(ipaddress.ip_address(raw.strip()))
        except ValueError:
            logger.debug("Dropping unparsable address candidate %r", raw)
    if not parsed:
        raise AddressParseError(candidates)
    return parsed


def filter_addresses(
    networks: Sequence[IPNetwork], addresses: Iterable[IPAddress]
) -> list[IPAddress]:
    """Keep addresses contained in at least one network (empty keeps all)."""
    if not networks:
        return list(addresses)
    return [addr for addr in addresses if any(addr in net for net in networks)]


def sort_addresses(
    priority: Sequence[tuple[IPNetwork, int]], addresses: Iterable[IPAddress]
) -> list[IPAddress]:
    """Stable sort, highest weight first; ties keep their original order."""

    def weight(addr: IPAddress) -> int:
        return max((w for net, w in priority if addr in net), default=0)

    return sorted(addresses, key=weight, reverse=True)


class AddressSelector:
    """Filters and ranks candidate addresses for a target.

    Parameters
    ----------
    address_filter:
        CIDR blocks an address must fall into.  Empty means allow-all.
    address_priority:
        Ordered ``(cidr, weight)`` pairs.  An address is weighted by the
        largest weight among the blocks that contain it (0 if none).
        Defaults to preferring IPv4 over IPv6.
    """

    def __init__(
        self,
        address_filter: Sequence[str] = (),
        address_priority: Sequence[AddressPriority] = DEFAULT_ADDRESS_PRIORITY,
    ) -> None:
        self._filter: list[IPNetwork] = [parse_cidr(c) for c in address_filter]
        self._priority: list[tuple[IPNetwork, int]] = [
            (parse_cidr(p.cidr), p.weight) for p in address_priority
        ]

    def rank(self, candidates: Sequence[str]) -> list[IPAddress]:
        """Return the filtered candidates in preference order."""
        addresses = parse_addresses(candidates)
        return sort_addresses(self._priority, filter_addresses(self._filter, addresses))

    def select(self, candidates: Sequence[str]) -> str:
        """Return the preferred address as a string.

        Raises ``NoAddressMatchedError`` when filtering leaves nothing.
        """
        ranked = self.rank(candidates)
        if not ranked:
            raise NoAddressMatchedError(candidates)
        chosen = str(ranked[0])
        logger.debug("Selected address %s from %r", chosen, list(candidates))
        return chosen
