"""A host name resolver with an optional parent resolver."""

from __future__ import annotations

import ipaddress
from typing import Dict, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class Resolver:
    """Maps host names to IP addresses, falling back to a parent."""

    def __init__(self) -> None:
        self._parent: Optional[Resolver] = None
        self._hosts: Dict[str, IPAddress] = {}
        self.add_host("localhost", "127.0.0.1")

    def set_parent(self, parent: "Resolver") -> None:
        self._parent = parent

    def add_host(self, name: str, ip_addr: str) -> None:
        """Register a host; raises ValueError for an empty name or bad address."""
        if not name:
            raise ValueError("host name must not be empty")
        self._hosts[name] = ipaddress.ip_address(ip_addr)

    def lookup(self, host_name: str) -> Optional[IPAddress]:
        """Return the address for ``host_name``, or None if unknown."""
        ip = self._hosts.get(host_name)
        if ip is not None:
            return ip
        if self._parent is not None:
            return self._parent.lookup(host_name)
        return None