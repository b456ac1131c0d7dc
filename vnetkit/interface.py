"""Network interfaces and address helpers."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import List, Optional, Union

IPInterface = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]
_AddressLike = Union[str, int, ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass
class Interface:
    """A named network interface with its assigned addresses."""

    name: str
    addrs: List[IPInterface] = field(default_factory=list)

    def add_addr(self, addr: IPInterface) -> None:
        self.addrs.append(addr)


def convert(ip: _AddressLike, mask: Optional[_AddressLike] = None) -> IPInterface:
    """Combine an address and a netmask into an interface address.

    The prefix length is the number of set bits in the mask; without a mask
    it is 32. Raises ValueError if the families of address and mask differ.
    """
    address = ipaddress.ip_address(ip)
    if mask is None:
        prefix = 32
    else:
        netmask = ipaddress.ip_address(mask)
        if netmask.version != address.version:
            raise ValueError("invalid mask: address family does not match")
        prefix = bin(int(netmask)).count("1")
    return ipaddress.ip_interface(f"{address}/{prefix}")