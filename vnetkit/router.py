"""A virtual router that forwards chunks between NICs and a parent router."""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import itertools
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Union

from .chunk import Chunk
from .chunk_queue import ChunkQueue
from .errors import BindError, NatError, NotFoundError, RouterStateError
from .interface import Interface, IPInterface, convert
from .nat import EndpointDependencyType, NatConfig, NatType, NetworkAddressTranslator
from .resolver import Resolver

_log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
ChunkFilter = Callable[[Chunk], bool]

DEFAULT_ROUTER_QUEUE_SIZE = 0  # unlimited
_LO0 = "lo0"
_ETH0 = "eth0"
_ROUTER_IDS = itertools.count()


def _assign_router_name() -> str:
    return f"router{next(_ROUTER_IDS)}"


@dataclass
class RouterConfig:
    """Parameters of a Router.

    ``static_ips`` entries may take the form ``"<mapped-ip>/<local-ip>"`` to
    declare a 1:1 NAT pairing. Delays are given in seconds.
    """

    name: str = ""
    cidr: str = ""
    static_ips: List[str] = field(default_factory=list)
    static_ip: str = ""
    queue_size: int = 0
    nat_type: Optional[NatType] = None
    min_delay: float = 0.0
    max_jitter: float = 0.0


class Nic(ABC):
    """A network interface controller attached to a router."""

    @abstractmethod
    def get_interface(self, ifc_name: str) -> Optional[Interface]:
        """Return the named interface, or None."""

    @abstractmethod
    def add_addrs_to_interface(self, ifc_name: str, addrs: Iterable[IPInterface]) -> None:
        """Add addresses to the named interface; raises NotFoundError if absent."""

    @abstractmethod
    def on_inbound_chunk(self, chunk: Chunk) -> None:
        """Receive a chunk routed to this NIC."""

    @abstractmethod
    def get_static_ips(self) -> List[IPAddress]:
        """Return the static IPs this NIC asks for."""

    @abstractmethod
    def set_router(self, router: "Router") -> None:
        """Attach this NIC to a router."""


class Router(Nic):
    """Routes chunks inside its subnet and, through NAT, to its parent."""

    def __init__(self, config: RouterConfig) -> None:
        self._ipv4net: IPInterface = ipaddress.ip_interface(config.cidr)
        queue_size = config.queue_size if config.queue_size > 0 else DEFAULT_ROUTER_QUEUE_SIZE

        lo0 = Interface(_LO0)
        lo0.add_addr(convert("127.0.0.1", "255.0.0.0"))
        eth0 = Interface(_ETH0)

        self.name = config.name or _assign_router_name()
        self.resolver = Resolver()

        static_ips: List[IPAddress] = []
        static_local_ips: Dict[str, IPAddress] = {}
        for ip_str in config.static_ips:
            pair = ip_str.split("/")
            try:
                ip = ipaddress.ip_address(pair[0])
            except ValueError:
                continue
            if len(pair) > 1:
                loc_ip = ipaddress.ip_address(pair[1])
                if not self._in_subnet(loc_ip):
                    raise ValueError("local IP is beyond the subnet of the static IPs")
                static_local_ips[str(ip)] = loc_ip
            static_ips.append(ip)
        if config.static_ip:
            _log.warning("static_ip is deprecated. Use static_ips instead")
            with contextlib.suppress(ValueError):
                static_ips.append(ipaddress.ip_address(config.static_ip))

        if static_local_ips and len(static_local_ips) != len(static_ips):
            raise ValueError("local IPs are not associated with every static IP")

        self._interfaces: List[Interface] = [lo0, eth0]
        self._static_ips = static_ips
        self._static_local_ips = static_local_ips
        self._min_delay = config.min_delay
        self._max_jitter = config.max_jitter
        self._queue = ChunkQueue(queue_size)
        self._children: List[Router] = []
        self._nat_type = config.nat_type
        self._nat = NetworkAddressTranslator(NatConfig(name=self.name))
        self._nics: Dict[str, Nic] = {}
        self._chunk_filters: List[ChunkFilter] = []
        self._last_id = 0
        self._parent: Optional[Router] = None
        self._task: Optional["asyncio.Task[None]"] = None
        self._wake: Optional[asyncio.Event] = None
        self._running = False

    @property
    def ipv4net(self) -> IPInterface:
        return self._ipv4net

    @property
    def running(self) -> bool:
        return self._running

    def _in_subnet(self, ip: IPAddress) -> bool:
        network = self._ipv4net.network
        return ip.version == network.version and ip in network

    # Nic interface

    def get_interface(self, ifc_name: str) -> Optional[Interface]:
        for ifc in self._interfaces:
            if ifc.name == ifc_name:
                return Interface(ifc.name, list(ifc.addrs))
        return None

    def get_interfaces(self) -> List[Interface]:
        return [Interface(ifc.name, list(ifc.addrs)) for ifc in self._interfaces]

    def add_addrs_to_interface(self, ifc_name: str, addrs: Iterable[IPInterface]) -> None:
        for ifc in self._interfaces:
            if ifc.name == ifc_name:
                for addr in addrs:
                    ifc.add_addr(addr)
                return
        raise NotFoundError(f"interface {ifc_name} not found")

    def on_inbound_chunk(self, chunk: Chunk) -> None:
        try:
            from_parent = self._nat.translate_inbound(chunk)
        except NatError as err:
            _log.warning("[%s] %s", self.name, err)
            return
        self.push(from_parent)

    def get_static_ips(self) -> List[IPAddress]:
        return list(self._static_ips)

    def set_router(self, router: "Router") -> None:
        """Attach to a parent router and set up NAT with the assigned eth0 addresses."""
        self._parent = router
        self.resolver.set_parent(router.resolver)

        eth0 = self.get_interface(_ETH0)
        if eth0 is None:
            raise NotFoundError("no IP address is assigned for eth0")
        mapped_ips: List[IPAddress] = []
        local_ips: List[IPAddress] = []
        for ifc_addr in eth0.addrs:
            ip = ifc_addr.ip
            mapped_ips.append(ip)
            loc_ip = self._static_local_ips.get(str(ip))
            if loc_ip is not None:
                local_ips.append(loc_ip)

        if self._nat_type is None:
            self._nat_type = NatType(
                mapping_behavior=EndpointDependencyType.ENDPOINT_INDEPENDENT,
                filtering_behavior=EndpointDependencyType.ENDPOINT_ADDR_PORT_DEPENDENT,
                hair_pinning=False,
                port_preservation=False,
                mapping_life_time=30.0,
            )
        self._nat = NetworkAddressTranslator(
            NatConfig(
                name=self.name,
                nat_type=self._nat_type,
                mapped_ips=mapped_ips,
                local_ips=local_ips,
            )
        )

    # Lifecycle

    async def start(self) -> None:
        """Start routing here and in every child router."""
        if self._running:
            raise RouterStateError("router already started")
        self._running = True
        self._wake = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run(self._wake))
        for child in self._children:
            await child.start()

    async def stop(self) -> None:
        """Stop routing here and in every child router."""
        if not self._running:
            raise RouterStateError("router already stopped")
        self._running = False
        task, self._task = self._task, None
        if self._wake is not None:
            self._wake.set()
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for child in self._children:
            await child.stop()

    async def _run(self, wake: asyncio.Event) -> None:
        while self._running:
            delay = await self.process_chunks()
            if not self._running:
                break
            if delay <= 0:
                await wake.wait()
            else:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(wake.wait(), delay)
            wake.clear()

    # Topology

    def add_router(self, child: "Router") -> None:
        """Add a child router; call ``child.set_router(self)`` afterwards."""
        self._children.append(child)
        self.add_net(child)

    def add_net(self, nic: Nic) -> None:
        """Attach a NIC and assign its addresses; call ``nic.set_router(self)`` afterwards."""
        ips = nic.get_static_ips()
        if not ips:
            ip = self.assign_ip_address()
            _log.debug("assign_ip_address: %s", ip)
            ips = [ip]

        ipnets: List[IPInterface] = []
        for ip in ips:
            if not self._in_subnet(ip):
                raise BindError(f"static IP {ip} is beyond the subnet")
            self._nics[str(ip)] = nic
            ipnets.append(ipaddress.ip_interface(f"{ip}/{self._ipv4net.network.prefixlen}"))

        with contextlib.suppress(NotFoundError):
            nic.add_addrs_to_interface(_ETH0, ipnets)

    def add_host(self, host_name: str, ip_addr: str) -> None:
        """Add a host name to the local resolver."""
        self.resolver.add_host(host_name, ip_addr)

    def add_chunk_filter(self, filter_fn: ChunkFilter) -> None:
        """Add a filter; chunks for which any filter returns False are dropped.

        Filters run in the order they were added.
        """
        self._chunk_filters.append(filter_fn)

    # Forwarding

    def push(self, chunk: Chunk) -> None:
        """Queue a chunk for routing."""
        _log.debug("[%s] route %s", self.name, chunk)
        if not self._running:
            _log.warning("router is done")
            return
        chunk.set_timestamp()
        if self._queue.push(chunk):
            if self._wake is not None:
                self._wake.set()
        else:
            _log.warning("[%s] queue was full. dropped a chunk", self.name)

    async def process_chunks(self) -> float:
        """Route every chunk that is due; return seconds until the next one, or 0."""
        if self._max_jitter > 0:
            await asyncio.sleep(random.uniform(0, self._max_jitter))

        entered_at = time.time()
        cut_off = entered_at - self._min_delay

        while True:
            head = self._queue.peek()
            if head is None:
                return 0.0
            if head.timestamp >= cut_off:
                remaining = head.timestamp + self._min_delay - entered_at
                if remaining > 0:
                    return remaining

            chunk = self._queue.pop()
            if chunk is None:
                return 0.0
            if not all(filter_fn(chunk) for filter_fn in self._chunk_filters):
                continue
            self._route(chunk)

    def _route(self, chunk: Chunk) -> None:
        dst_ip = chunk.destination_ip
        if self._in_subnet(dst_ip):
            nic = self._nics.get(str(dst_ip))
            if nic is None:
                _log.debug("[%s] %s unreachable", self.name, chunk)
            else:
                nic.on_inbound_chunk(chunk)
        elif self._parent is not None:
            try:
                to_parent = self._nat.translate_outbound(chunk)
            except NatError as err:
                _log.warning("[%s] %s", self.name, err)
                return
            if to_parent is not None:
                self._parent.push(to_parent)
        else:
            _log.debug("[%s] no route found for %s", self.name, chunk)

    def assign_ip_address(self) -> IPAddress:
        """Hand out the next host address of the subnet."""
        if self._last_id == 0xFE:
            raise BindError("address space exhausted")
        self._last_id += 1
        base = self._ipv4net.ip
        if base.version == 4:
            return ipaddress.IPv4Address((int(base) & ~0xFF) | self._last_id)
        last = (int(base) & 0xFF) + self._last_id
        if last > 0xFF:
            raise BindError("address space exhausted")
        return ipaddress.IPv6Address((int(base) & ~0xFF) | last)

    def __repr__(self) -> str:
        return f"<Router {self.name} {self._ipv4net}>"