"""A registry of UDP connections keyed by local transport address."""

from __future__ import annotations

from typing import Dict, List, Optional, Union

from .chunk import SocketAddr
from .conn import UdpConn
from .errors import AddressAlreadyInUseError, NoSuchConnError, VNetError


def _to_socket_addr(address: Union[SocketAddr, str]) -> SocketAddr:
    if isinstance(address, SocketAddr):
        return address
    return SocketAddr.parse(address)


class UdpConnMap:
    """Connections grouped by port; an unspecified IP matches any address."""

    def __init__(self) -> None:
        self._port_map: Dict[int, List[UdpConn]] = {}

    def insert(self, conn: UdpConn) -> None:
        """Register a connection; raises AddressAlreadyInUseError on conflict."""
        addr = conn.local_addr()
        conns = self._port_map.get(addr.port)
        if conns is not None:
            if addr.ip.is_unspecified:
                raise AddressAlreadyInUseError(f"address {addr} already in use")
            for existing in conns:
                laddr = existing.local_addr()
                if laddr.ip.is_unspecified or laddr.ip == addr.ip:
                    raise AddressAlreadyInUseError(f"address {addr} already in use")
        self._port_map.setdefault(addr.port, []).append(conn)

    def find(self, addr: Union[SocketAddr, str]) -> Optional[UdpConn]:
        """Return the connection serving ``addr``, or None."""
        target = _to_socket_addr(addr)
        conns = self._port_map.get(target.port)
        if not conns:
            return None
        if target.ip.is_unspecified:
            return conns[0]
        for conn in conns:
            laddr = conn.local_addr()
            if laddr.ip.is_unspecified or laddr.ip == target.ip:
                return conn
        return None

    def delete(self, addr: Union[SocketAddr, str]) -> None:
        """Remove the connections bound to ``addr``; raises NoSuchConnError if none."""
        target = _to_socket_addr(addr)
        conns = self._port_map.get(target.port)
        if conns is None:
            raise NoSuchConnError(f"no such UDP connection: {target}")
        remaining: List[UdpConn] = []
        if not target.ip.is_unspecified:
            for conn in conns:
                laddr = conn.local_addr()
                if laddr.ip.is_unspecified:
                    raise VNetError("cannot remove an unspecified IP by a specified IP")
                if laddr.ip != target.ip:
                    remaining.append(conn)
        if remaining:
            self._port_map[target.port] = remaining
        else:
            del self._port_map[target.port]

    def __len__(self) -> int:
        return sum(len(conns) for conns in self._port_map.values())

    def port_count(self) -> int:
        """Number of distinct ports in use."""
        return len(self._port_map)