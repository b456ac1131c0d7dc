"""A virtual network stack: interfaces, address management and UDP sockets."""

from __future__ import annotations

import contextlib
import ipaddress
import itertools
import logging
import random
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Union

from .chunk import Chunk, SocketAddr
from .conn import ConnObserver, UdpConn
from .conn_map import UdpConnMap
from .errors import (
    AddressAlreadyInUseError,
    BindError,
    NoRouterLinkedError,
    NotFoundError,
    PortSpaceExhaustedError,
    VNetError,
)
from .interface import Interface, IPInterface, convert
from .router import Nic, Router

_log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

LO0_STR = "lo0"
ETH0_STR = "eth0"
UDP_STR = "udp"

_MAC_ADDR_COUNTER = itertools.count(0xBEEFED910200)


def new_mac_address() -> bytes:
    """Return a fresh 6-byte hardware address."""
    return next(_MAC_ADDR_COUNTER).to_bytes(8, "big")[2:]


def _to_socket_addr(address: Union[SocketAddr, str]) -> SocketAddr:
    if isinstance(address, SocketAddr):
        return address
    return SocketAddr.parse(address)


def _parse_ips(texts: Iterable[str]) -> List[IPAddress]:
    ips: List[IPAddress] = []
    for text in texts:
        with contextlib.suppress(ValueError):
            ips.append(ipaddress.ip_address(text))
    return ips


@dataclass
class NetConfig:
    """Configuration of a virtual network.

    Without static IPs, the router assigns an address when the network is
    attached to it. ``static_ip`` is deprecated in favour of ``static_ips``.
    """

    static_ips: List[str] = field(default_factory=list)
    static_ip: str = ""


class VNet(Nic, ConnObserver):
    """A virtual network stack with the interfaces lo0 and eth0.

    lo0 carries 127.0.0.1/8; eth0 gets its addresses from the router the
    network is attached to.
    """

    def __init__(self, config: Optional[NetConfig] = None) -> None:
        config = config if config is not None else NetConfig()
        lo0 = Interface(LO0_STR)
        lo0.add_addr(convert("127.0.0.1", "255.0.0.0"))
        eth0 = Interface(ETH0_STR)
        self._interfaces: List[Interface] = [lo0, eth0]

        static_ips = _parse_ips(config.static_ips)
        if config.static_ip:
            static_ips.extend(_parse_ips([config.static_ip]))
        self._static_ips = static_ips

        self._router: Optional[Router] = None
        self.udp_conns = UdpConnMap()

    @property
    def router(self) -> Optional[Router]:
        return self._router

    def is_virtual(self) -> bool:
        return True

    # Nic interface

    def get_interfaces(self) -> List[Interface]:
        return [Interface(ifc.name, list(ifc.addrs)) for ifc in self._interfaces]

    def get_interface(self, ifc_name: str) -> Optional[Interface]:
        for ifc in self._interfaces:
            if ifc.name == ifc_name:
                return Interface(ifc.name, list(ifc.addrs))
        return None

    def add_addrs_to_interface(self, ifc_name: str, addrs: Iterable[IPInterface]) -> None:
        for ifc in self._interfaces:
            if ifc.name == ifc_name:
                for addr in addrs:
                    ifc.add_addr(addr)
                return
        raise NotFoundError(f"interface {ifc_name} not found")

    def set_router(self, router: Router) -> None:
        self._router = router

    def on_inbound_chunk(self, chunk: Chunk) -> None:
        """Hand a routed UDP chunk to the connection bound to its destination."""
        if chunk.network != UDP_STR:
            return
        conn = self.udp_conns.find(chunk.destination_addr())
        if conn is not None:
            conn.deliver(chunk)

    def get_static_ips(self) -> List[IPAddress]:
        return list(self._static_ips)

    # ConnObserver interface

    async def write(self, chunk: Chunk) -> None:
        """Deliver loopback UDP chunks locally; pass everything else to the router."""
        if chunk.network == UDP_STR and chunk.destination_ip.is_loopback:
            conn = self.udp_conns.find(chunk.destination_addr())
            if conn is not None:
                conn.deliver(chunk)
            return
        if self._router is None:
            raise NoRouterLinkedError("no router linked")
        self._router.push(chunk)

    async def on_closed(self, addr: SocketAddr) -> None:
        with contextlib.suppress(VNetError):
            self.udp_conns.delete(addr)

    def determine_source_ip(
        self, loc_ip: IPAddress, dst_ip: IPAddress
    ) -> Optional[IPAddress]:
        """Pick the source IP for ``dst_ip`` when ``loc_ip`` is unspecified.

        A specified ``loc_ip`` is returned as is.
        """
        if not loc_ip.is_unspecified:
            return loc_ip
        if dst_ip.is_loopback:
            return ipaddress.IPv4Address("127.0.0.1")
        eth0 = self.get_interface(ETH0_STR)
        if eth0 is not None:
            for ifc_addr in eth0.addrs:
                if ifc_addr.ip.version == loc_ip.version:
                    return ifc_addr.ip
        return None

    # Address management

    def _all_addrs(self) -> Iterable[IPAddress]:
        for ifc in self._interfaces:
            for ifc_addr in ifc.addrs:
                yield ifc_addr.ip

    def get_all_ipaddrs(self, ipv6: bool) -> List[IPAddress]:
        version = 6 if ipv6 else 4
        return [ip for ip in self._all_addrs() if ip.version == version]

    def has_ipaddr(self, ip: IPAddress) -> bool:
        """True if ``ip`` is assigned; an unspecified IP matches any of its family."""
        ip = ipaddress.ip_address(ip)
        for loc_ip in self._all_addrs():
            if ip.is_unspecified:
                if loc_ip.version == ip.version:
                    return True
            elif loc_ip == ip:
                return True
        return False

    def allocate_local_addr(self, ip: IPAddress, port: int) -> None:
        """Check that ``ip:port`` can be bound; raise if it cannot."""
        ip = ipaddress.ip_address(ip)
        if ip.is_unspecified:
            ips = self.get_all_ipaddrs(ip.version == 6)
        elif self.has_ipaddr(ip):
            ips = [ip]
        else:
            ips = []
        if not ips:
            raise BindError(f"failed to bind {ip}:{port}")
        for candidate in ips:
            if self.udp_conns.find(SocketAddr(candidate, port)) is not None:
                raise AddressAlreadyInUseError(f"address {candidate}:{port} already in use")

    def assign_port(self, ip: IPAddress, start: int, end: int) -> int:
        """Pick a free port in ``start..end`` (inclusive), starting at a random offset."""
        if end < start:
            raise ValueError("end port is less than the start")
        space = end + 1 - start
        offset = random.randrange(space)
        for i in range(space):
            port = (offset + i) % space + start
            try:
                self.allocate_local_addr(ip, port)
            except VNetError:
                continue
            return port
        raise PortSpaceExhaustedError("port space exhausted")

    def resolve_addr(self, use_ipv4: bool, address: str) -> SocketAddr:
        """Resolve ``host:port``; host may be an IP, localhost or a name known to the router."""
        host, sep, port_text = address.partition(":")
        if not sep:
            raise ValueError(f"not a UDP address: {address!r}")

        try:
            ip: IPAddress = ipaddress.ip_address(host)
        except ValueError:
            name = host.lower()
            if name == "localhost":
                ip = ipaddress.ip_address("127.0.0.1" if use_ipv4 else "::1")
            else:
                if self._router is None:
                    raise NoRouterLinkedError("no router linked") from None
                found = self._router.resolver.lookup(name)
                if found is None:
                    raise NotFoundError(f"host {name} not found") from None
                ip = found

        if not (port_text.isascii() and port_text.isdigit()):
            raise ValueError(f"invalid port in address: {address!r}")
        remote = SocketAddr(ip, int(port_text))

        if remote.is_ipv4 == use_ipv4:
            return remote
        family = "ipv4" if use_ipv4 else "ipv6"
        raise VNetError(f"No available {family} IP address found!")

    # Sockets

    def bind(self, local_addr: Union[SocketAddr, str]) -> UdpConn:
        """Create a UDP connection; port 0 picks a free port in 5000..5999."""
        addr = _to_socket_addr(local_addr)
        if not self.has_ipaddr(addr.ip):
            raise BindError(f"can't assign requested address {addr.ip}")
        if addr.port == 0:
            addr = SocketAddr(addr.ip, self.assign_port(addr.ip, 5000, 5999))
        elif self.udp_conns.find(addr) is not None:
            raise AddressAlreadyInUseError(f"address {addr} already in use")

        conn = UdpConn(addr, None, self)
        self.udp_conns.insert(conn)
        return conn

    def dial(self, use_ipv4: bool, remote_addr: str) -> UdpConn:
        """Bind a connection suitable for ``remote_addr`` and connect it."""
        rem_addr = self.resolve_addr(use_ipv4, remote_addr)
        any_ip = ipaddress.ip_address("0.0.0.0" if use_ipv4 else "::")
        src_ip = self.determine_source_ip(any_ip, rem_addr.ip) or any_ip
        conn = self.bind(SocketAddr(src_ip, 0))
        conn.connect(rem_addr)
        return conn

    def __repr__(self) -> str:
        return f"<VNet {[str(ip) for ip in self._all_addrs()]}>"