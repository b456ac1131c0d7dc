"""Virtual UDP connections bound inside the virtual network."""

from __future__ import annotations

import asyncio
import ipaddress
from abc import ABC, abstractmethod
from typing import Optional, Tuple, Union

from .chunk import Chunk, ChunkUdp, SocketAddr
from .errors import AlreadyClosedError, BindError, VNetError

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

MAX_READ_QUEUE_SIZE = 1024


def _to_socket_addr(address: Union[SocketAddr, str]) -> SocketAddr:
    if isinstance(address, SocketAddr):
        return address
    return SocketAddr.parse(address)


class ConnObserver(ABC):
    """The side that carries chunks written by a connection."""

    @abstractmethod
    async def write(self, chunk: Chunk) -> None:
        """Send a chunk out into the network."""

    @abstractmethod
    async def on_closed(self, addr: SocketAddr) -> None:
        """Called once when the connection bound to ``addr`` closes."""

    @abstractmethod
    def determine_source_ip(
        self, loc_ip: IPAddress, dst_ip: IPAddress
    ) -> Optional[IPAddress]:
        """Return the source IP to use towards ``dst_ip``, or None."""


class UdpConn:
    """A packet connection on the virtual network."""

    def __init__(
        self,
        loc_addr: Union[SocketAddr, str],
        rem_addr: Optional[Union[SocketAddr, str]],
        obs: ConnObserver,
    ) -> None:
        self._loc_addr = _to_socket_addr(loc_addr)
        self._rem_addr = None if rem_addr is None else _to_socket_addr(rem_addr)
        self._obs = obs
        self._read_queue: "asyncio.Queue[Optional[Chunk]]" = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def local_addr(self) -> SocketAddr:
        return self._loc_addr

    def remote_addr(self) -> Optional[SocketAddr]:
        return self._rem_addr

    def deliver(self, chunk: Chunk) -> bool:
        """Queue an inbound chunk for reading; False if closed or the queue is full."""
        if self._closed or self._read_queue.qsize() >= MAX_READ_QUEUE_SIZE:
            return False
        self._read_queue.put_nowait(chunk)
        return True

    def connect(self, addr: Union[SocketAddr, str]) -> None:
        """Fix the remote address used by send and accepted by recv."""
        self._rem_addr = _to_socket_addr(addr)

    async def recv(self, size: int) -> bytes:
        """Read one packet's payload, truncated to ``size`` bytes."""
        data, _ = await self.recv_from(size)
        return data

    async def recv_from(self, size: int) -> Tuple[bytes, SocketAddr]:
        """Read one packet, returning its payload (at most ``size`` bytes) and sender.

        Raises ConnectionAbortedError once the connection is closed and drained.
        """
        while True:
            chunk = await self._read_queue.get()
            if chunk is None:
                # Leave the marker in place for any other waiting reader.
                self._read_queue.put_nowait(None)
                raise ConnectionAbortedError("connection aborted")
            addr = chunk.source_addr()
            if self._rem_addr is not None and addr != self._rem_addr:
                continue
            return chunk.user_data[:size], addr

    async def send(self, data: bytes) -> int:
        """Send to the connected remote address."""
        if self._rem_addr is None:
            raise VNetError("no remote address")
        return await self.send_to(data, self._rem_addr)

    async def send_to(self, data: bytes, target: Union[SocketAddr, str]) -> int:
        """Send ``data`` to ``target`` and return the number of bytes sent."""
        target_addr = _to_socket_addr(target)
        src_ip = self._obs.determine_source_ip(self._loc_addr.ip, target_addr.ip)
        if src_ip is None:
            raise BindError("no local address available for the destination")
        src_addr = SocketAddr(src_ip, self._loc_addr.port)
        chunk = ChunkUdp(src_addr, target_addr, bytes(data))
        await self._obs.write(chunk)
        return len(data)

    async def close(self) -> None:
        """Close the connection; raises AlreadyClosedError on a second call."""
        if self._closed:
            raise AlreadyClosedError("connection already closed")
        self._closed = True
        self._read_queue.put_nowait(None)
        await self._obs.on_closed(self._loc_addr)

    def __repr__(self) -> str:
        return f"<UdpConn {self._loc_addr} -> {self._rem_addr}>"