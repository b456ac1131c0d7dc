"""Packets (chunks) passed around the virtual network."""

from __future__ import annotations

import copy
import enum
import ipaddress
import itertools
import time
from dataclasses import dataclass
from typing import Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"
_TAG_COUNTER = itertools.count()


def base36(value: int) -> str:
    """Encode a non-negative integer as lowercase base 36, zero padded to 8."""
    if value < 0:
        raise ValueError("base36 requires a non-negative value")
    digits = []
    while value > 0:
        value, digit = divmod(value, 36)
        digits.append(_BASE36_DIGITS[digit])
    return "".join(reversed(digits)).rjust(8, "0")


def _assign_chunk_tag() -> str:
    return base36(next(_TAG_COUNTER))


@dataclass(frozen=True)
class SocketAddr:
    """An IP address together with a port number."""

    ip: IPAddress
    port: int

    def __post_init__(self) -> None:
        if not isinstance(self.ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            object.__setattr__(self, "ip", ipaddress.ip_address(self.ip))
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")

    @classmethod
    def parse(cls, text: str) -> "SocketAddr":
        """Parse ``a.b.c.d:port`` or ``[v6]:port``."""
        if text.startswith("["):
            host, sep, port = text[1:].partition("]:")
            if not sep:
                raise ValueError(f"invalid socket address: {text!r}")
            ip: IPAddress = ipaddress.IPv6Address(host)
        else:
            host, sep, port = text.rpartition(":")
            if not sep:
                raise ValueError(f"invalid socket address: {text!r}")
            ip = ipaddress.IPv4Address(host)
        if not (port.isascii() and port.isdigit()):
            raise ValueError(f"invalid port in socket address: {text!r}")
        return cls(ip, int(port))

    @property
    def is_ipv4(self) -> bool:
        return self.ip.version == 4

    def __str__(self) -> str:
        if self.ip.version == 6:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


def _as_socket_addr(address: Union[SocketAddr, str]) -> SocketAddr:
    if isinstance(address, SocketAddr):
        return address
    return SocketAddr.parse(address)


class TcpFlag(enum.IntFlag):
    """TCP control bits."""

    ZERO = 0x00
    FIN = 0x01
    SYN = 0x02
    RST = 0x04
    PSH = 0x08
    ACK = 0x10

    def __str__(self) -> str:
        return "-".join(flag.name for flag in _FLAG_ORDER if self & flag)

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)


_FLAG_ORDER = (TcpFlag.FIN, TcpFlag.SYN, TcpFlag.RST, TcpFlag.PSH, TcpFlag.ACK)


class Chunk:
    """A packet travelling through the virtual network."""

    network = ""

    def __init__(
        self,
        src_addr: Union[SocketAddr, str],
        dst_addr: Union[SocketAddr, str],
        user_data: bytes = b"",
    ) -> None:
        src = _as_socket_addr(src_addr)
        dst = _as_socket_addr(dst_addr)
        self.timestamp = time.time()
        self.source_ip: IPAddress = src.ip
        self.destination_ip: IPAddress = dst.ip
        self.source_port = src.port
        self.destination_port = dst.port
        self.tag = _assign_chunk_tag()
        self.user_data = bytes(user_data)

    def set_timestamp(self) -> float:
        """Stamp the chunk with the current time and return it."""
        self.timestamp = time.time()
        return self.timestamp

    def source_addr(self) -> SocketAddr:
        return SocketAddr(self.source_ip, self.source_port)

    def destination_addr(self) -> SocketAddr:
        return SocketAddr(self.destination_ip, self.destination_port)

    def set_source_addr(self, address: Union[SocketAddr, str]) -> None:
        """Replace the source address; raises ValueError if it cannot be parsed."""
        addr = _as_socket_addr(address)
        self.source_ip = addr.ip
        self.source_port = addr.port

    def set_destination_addr(self, address: Union[SocketAddr, str]) -> None:
        """Replace the destination address; raises ValueError if it cannot be parsed."""
        addr = _as_socket_addr(address)
        self.destination_ip = addr.ip
        self.destination_port = addr.port

    def clone(self) -> "Chunk":
        """Return an independent copy carrying the same tag."""
        return copy.copy(self)

    def _kind(self) -> str:
        return self.network

    def __str__(self) -> str:
        return (
            f"{self._kind()} chunk {self.tag} "
            f"{self.source_addr()} => {self.destination_addr()}"
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self}>"


class ChunkUdp(Chunk):
    """A UDP datagram."""

    network = "udp"

    def __init__(
        self,
        src_addr: Union[SocketAddr, str],
        dst_addr: Union[SocketAddr, str],
        user_data: bytes = b"",
    ) -> None:
        super().__init__(src_addr, dst_addr, user_data)


class ChunkTcp(Chunk):
    """A TCP segment; user data is carried only with the PSH flag."""

    network = "tcp"

    def __init__(
        self,
        src_addr: Union[SocketAddr, str],
        dst_addr: Union[SocketAddr, str],
        flags: TcpFlag = TcpFlag.ZERO,
    ) -> None:
        super().__init__(src_addr, dst_addr)
        self.flags = TcpFlag(flags)

    def _kind(self) -> str:
        return f"{self.network} {self.flags!s}"