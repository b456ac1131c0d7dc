"""Network address translation for chunks crossing a router boundary."""

from __future__ import annotations

import dataclasses
import enum
import ipaddress
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Union

from .chunk import Chunk, SocketAddr
from .errors import NatError

_log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

DEFAULT_NAT_MAPPING_LIFE_TIME = 30.0
_UDP = "udp"
_PORT_BASE = 0xC000


class EndpointDependencyType(enum.Enum):
    """How a NAT behaviour depends on the remote endpoint (RFC 4787)."""

    ENDPOINT_INDEPENDENT = "endpoint-independent"
    ENDPOINT_ADDR_DEPENDENT = "endpoint-addr-dependent"
    ENDPOINT_ADDR_PORT_DEPENDENT = "endpoint-addr-port-dependent"


class NatMode(enum.Enum):
    """Basic behaviour of the NAT."""

    NORMAL = "normal"
    NAT_1TO1 = "nat-1to1"


@dataclass
class NatType:
    """Parameters that define the behaviour of a NAT.

    A mapping_life_time of 0 selects the default of 30 seconds in normal mode.
    """

    mode: NatMode = NatMode.NORMAL
    mapping_behavior: EndpointDependencyType = EndpointDependencyType.ENDPOINT_INDEPENDENT
    filtering_behavior: EndpointDependencyType = EndpointDependencyType.ENDPOINT_INDEPENDENT
    hair_pinning: bool = False
    port_preservation: bool = False
    mapping_life_time: float = 0.0


@dataclass
class NatConfig:
    """Configuration for a NetworkAddressTranslator."""

    name: str = ""
    nat_type: NatType = field(default_factory=NatType)
    mapped_ips: List[IPAddress] = field(default_factory=list)
    local_ips: List[IPAddress] = field(default_factory=list)


@dataclass
class Mapping:
    """A NAT binding between a local and a mapped transport address."""

    proto: str = ""
    local: str = ""
    mapped: str = ""
    bound: str = ""
    filters: Set[str] = field(default_factory=set)
    expires: float = field(default_factory=time.time)

    @property
    def outbound_key(self) -> str:
        return f"{self.proto}:{self.local}:{self.bound}"

    @property
    def inbound_key(self) -> str:
        return f"{self.proto}:{self.mapped}"


def _endpoint_key(
    behavior: EndpointDependencyType, ip: IPAddress, addr: SocketAddr
) -> str:
    if behavior is EndpointDependencyType.ENDPOINT_ADDR_DEPENDENT:
        return str(ip)
    if behavior is EndpointDependencyType.ENDPOINT_ADDR_PORT_DEPENDENT:
        return str(addr)
    return ""


class NetworkAddressTranslator:
    """Translates UDP chunks between a private and a public address space."""

    def __init__(self, config: NatConfig) -> None:
        nat_type = dataclasses.replace(config.nat_type)
        mapped_ips = [ipaddress.ip_address(ip) for ip in config.mapped_ips]
        local_ips = [ipaddress.ip_address(ip) for ip in config.local_ips]

        if nat_type.mode is NatMode.NAT_1TO1:
            nat_type.mapping_behavior = EndpointDependencyType.ENDPOINT_INDEPENDENT
            nat_type.filtering_behavior = EndpointDependencyType.ENDPOINT_INDEPENDENT
            nat_type.port_preservation = True
            nat_type.mapping_life_time = 0.0
            if not mapped_ips:
                raise NatError("1:1 NAT requires more than one mapping")
            if len(mapped_ips) != len(local_ips):
                raise NatError("length mismatch between mapped_ips and local_ips")
        else:
            nat_type.mode = NatMode.NORMAL
            if nat_type.mapping_life_time == 0:
                nat_type.mapping_life_time = DEFAULT_NAT_MAPPING_LIFE_TIME

        self.name = config.name
        self.nat_type = nat_type
        self.mapped_ips = mapped_ips
        self.local_ips = local_ips
        self._outbound_map: Dict[str, Mapping] = {}
        self._inbound_map: Dict[str, Mapping] = {}
        self._udp_port_counter = 0

    def get_paired_mapped_ip(self, loc_ip: IPAddress) -> Optional[IPAddress]:
        """Return the mapped IP paired with a local IP, or None."""
        for local, mapped in zip(self.local_ips, self.mapped_ips):
            if local == loc_ip:
                return mapped
        return None

    def get_paired_local_ip(self, mapped_ip: IPAddress) -> Optional[IPAddress]:
        """Return the local IP paired with a mapped IP, or None."""
        for mapped, local in zip(self.mapped_ips, self.local_ips):
            if mapped == mapped_ip:
                return local
        return None

    def _next_mapped_port(self) -> int:
        counter = self._udp_port_counter
        if counter == 0xFFFF - _PORT_BASE:
            self._udp_port_counter = 0
        else:
            self._udp_port_counter += 1
        return _PORT_BASE + counter

    def translate_outbound(self, chunk: Chunk) -> Optional[Chunk]:
        """Translate a chunk leaving the private side.

        Returns None when a 1:1 NAT has no route for the chunk.
        Raises NatError for non-UDP chunks or when no mapped IP exists.
        """
        if chunk.network != _UDP:
            raise NatError("non-udp translation is not supported yet")
        translated = chunk.clone()

        if self.nat_type.mode is NatMode.NAT_1TO1:
            src_addr = chunk.source_addr()
            src_ip = self.get_paired_mapped_ip(src_addr.ip)
            if src_ip is None:
                _log.debug("[%s] drop outbound chunk %s with no route", self.name, chunk)
                return None
            translated.set_source_addr(SocketAddr(src_ip, src_addr.port))
        else:
            dst_ip = chunk.destination_ip
            dst_addr = chunk.destination_addr()
            bound = _endpoint_key(self.nat_type.mapping_behavior, dst_ip, dst_addr)
            filter_key = _endpoint_key(self.nat_type.filtering_behavior, dst_ip, dst_addr)
            o_key = f"udp:{chunk.source_addr()}:{bound}"

            mapping = self.find_outbound_mapping(o_key)
            if mapping is None:
                if not self.mapped_ips:
                    raise NatError("NAT requires a mapped IP address")
                mapped_port = self._next_mapped_port()
                mapping = Mapping(
                    proto=_UDP,
                    local=str(chunk.source_addr()),
                    bound=bound,
                    mapped=str(SocketAddr(self.mapped_ips[0], mapped_port)),
                    expires=time.time() + self.nat_type.mapping_life_time,
                )
                self._outbound_map[o_key] = mapping
                self._inbound_map[mapping.inbound_key] = mapping
                _log.debug(
                    "[%s] created a new NAT binding o_key=%s i_key=%s",
                    self.name,
                    o_key,
                    mapping.inbound_key,
                )
            if filter_key not in mapping.filters:
                _log.debug(
                    "[%s] permit access from %s to %s",
                    self.name,
                    filter_key,
                    mapping.mapped,
                )
                mapping.filters.add(filter_key)
            translated.set_source_addr(mapping.mapped)

        _log.debug(
            "[%s] translate outbound chunk from %s to %s", self.name, chunk, translated
        )
        return translated

    def translate_inbound(self, chunk: Chunk) -> Chunk:
        """Translate a chunk arriving from the public side.

        Raises NatError when the chunk has no binding, is not permitted by the
        filters, or is not UDP.
        """
        if chunk.network != _UDP:
            raise NatError("non-udp translation is not supported yet")
        translated = chunk.clone()

        if self.nat_type.mode is NatMode.NAT_1TO1:
            dst_addr = chunk.destination_addr()
            dst_ip = self.get_paired_local_ip(dst_addr.ip)
            if dst_ip is None:
                raise NatError(f"drop {chunk} as no associated local address")
            translated.set_destination_addr(SocketAddr(dst_ip, dst_addr.port))
        else:
            filter_key = _endpoint_key(
                self.nat_type.filtering_behavior,
                chunk.source_ip,
                chunk.source_addr(),
            )
            i_key = f"udp:{chunk.destination_addr()}"
            mapping = self.find_inbound_mapping(i_key)
            if mapping is None:
                raise NatError(f"drop {chunk} as no NAT binding found")
            if filter_key not in mapping.filters:
                raise NatError(
                    f"drop {chunk} as the remote {filter_key} has no permission"
                )
            translated.set_destination_addr(mapping.local)

        _log.debug(
            "[%s] translate inbound chunk from %s to %s", self.name, chunk, translated
        )
        return translated

    def _remove(self, mapping: Mapping) -> None:
        self._inbound_map.pop(mapping.inbound_key, None)
        self._outbound_map.pop(mapping.outbound_key, None)

    def find_outbound_mapping(self, o_key: str) -> Optional[Mapping]:
        """Return the live outbound mapping for a key, refreshing its lifetime."""
        mapping = self._outbound_map.get(o_key)
        if mapping is not None:
            now = time.time()
            if now >= mapping.expires:
                self._remove(mapping)
            else:
                mapping.expires = now + self.nat_type.mapping_life_time
        return self._outbound_map.get(o_key)

    def find_inbound_mapping(self, i_key: str) -> Optional[Mapping]:
        """Return the live inbound mapping for a key; inbound traffic never refreshes it."""
        mapping = self._inbound_map.get(i_key)
        if mapping is not None and time.time() >= mapping.expires:
            self._remove(mapping)
        return self._inbound_map.get(i_key)

    def inbound_map_len(self) -> int:
        return len(self._inbound_map)

    def outbound_map_len(self) -> int:
        return len(self._outbound_map)