import asyncio
import ipaddress

import pytest

from vnetkit.chunk import ChunkUdp, SocketAddr
from vnetkit.conn import UdpConn
from vnetkit.errors import (
    AddressAlreadyInUseError,
    BindError,
    NoRouterLinkedError,
    NotFoundError,
    PortSpaceExhaustedError,
    VNetError,
)
from vnetkit.net import NetConfig, VNet, new_mac_address
from vnetkit.router import Router, RouterConfig

DEMO_IP = "1.2.3.4"


def ip(text):
    return ipaddress.ip_address(text)


def attach(router, nw):
    router.add_net(nw)
    nw.set_router(router)


def eth0_ip(nw):
    return nw.get_interface("eth0").addrs[0].ip


def test_is_virtual():
    assert VNet(NetConfig()).is_virtual() is True


def test_virtual_interfaces():
    nw = VNet(NetConfig())
    interfaces = nw.get_interfaces()
    assert [ifc.name for ifc in interfaces] == ["lo0", "eth0"]
    by_name = {ifc.name: ifc for ifc in interfaces}
    assert len(by_name["lo0"].addrs) == 1
    assert by_name["eth0"].addrs == []


def test_virtual_interface_by_name():
    nw = VNet(NetConfig())
    lo0 = nw.get_interface("lo0")
    assert lo0.name == "lo0"
    assert len(lo0.addrs) == 1
    eth0 = nw.get_interface("eth0")
    assert eth0.name == "eth0"
    assert eth0.addrs == []
    assert nw.get_interface("foo0") is None


def test_add_addrs_to_unknown_interface():
    nw = VNet(NetConfig())
    with pytest.raises(NotFoundError):
        nw.add_addrs_to_interface("foo0", [ipaddress.ip_interface("10.1.2.3/24")])


def test_virtual_has_ipaddr():
    nw = VNet(NetConfig())
    nw.add_addrs_to_interface("eth0", [ipaddress.ip_interface("10.1.2.3/24")])
    assert nw.get_interface("eth0").addrs
    assert nw.has_ipaddr(ip("127.0.0.1"))
    assert nw.has_ipaddr(ip("10.1.2.3"))
    assert not nw.has_ipaddr(ip("192.168.1.1"))
    assert nw.has_ipaddr(ip("0.0.0.0"))
    assert not nw.has_ipaddr(ip("::"))


def test_virtual_get_all_ipaddrs():
    nw = VNet(NetConfig())
    nw.add_addrs_to_interface("eth0", [ipaddress.ip_interface("10.1.2.3/24")])
    assert nw.get_all_ipaddrs(False) == [ip("127.0.0.1"), ip("10.1.2.3")]
    assert nw.get_all_ipaddrs(True) == []


def test_virtual_assign_port():
    nw = VNet(NetConfig())
    nw.add_addrs_to_interface("eth0", [ipaddress.ip_interface(f"{DEMO_IP}/24")])
    addr = ip(DEMO_IP)
    start, end = 1000, 1002
    space = end + 1 - start

    with pytest.raises(ValueError):
        nw.assign_port(addr, 3000, 2999)

    ports = []
    for _ in range(space):
        port = nw.assign_port(addr, start, end)
        ports.append(port)
        nw.udp_conns.insert(UdpConn(SocketAddr(addr, port), None, nw))

    assert sorted(ports) == [1000, 1001, 1002]
    assert len(nw.udp_conns) == space
    with pytest.raises(PortSpaceExhaustedError):
        nw.assign_port(addr, start, end)


def test_allocate_local_addr_unknown_ip():
    nw = VNet(NetConfig())
    with pytest.raises(BindError):
        nw.allocate_local_addr(ip("192.168.1.1"), 1234)


def test_virtual_determine_source_ip():
    nw = VNet(NetConfig())
    nw.add_addrs_to_interface("eth0", [ipaddress.ip_interface(f"{DEMO_IP}/24")])
    assert nw.determine_source_ip(ip("0.0.0.0"), ip("27.1.7.135")) == ip(DEMO_IP)
    assert nw.determine_source_ip(ip("0.0.0.0"), ip("127.0.0.2")) == ip("127.0.0.1")
    assert nw.determine_source_ip(ip(DEMO_IP), ip("127.0.0.2")) == ip(DEMO_IP)


def test_determine_source_ip_without_eth0_address():
    nw = VNet(NetConfig())
    assert nw.determine_source_ip(ip("0.0.0.0"), ip("27.1.7.135")) is None


def test_virtual_resolve_addr_localhost():
    nw = VNet(NetConfig())
    addr = nw.resolve_addr(True, "localhost:1234")
    assert str(addr.ip) == "127.0.0.1"
    assert addr.port == 1234


def test_resolve_addr_errors():
    nw = VNet(NetConfig())
    with pytest.raises(ValueError):
        nw.resolve_addr(True, "localhost")
    with pytest.raises(ValueError):
        nw.resolve_addr(True, "127.0.0.1:abc")
    with pytest.raises(NoRouterLinkedError):
        nw.resolve_addr(True, "unknown.example.com:1234")


def test_virtual_bind_specific_port():
    nw = VNet(NetConfig())
    conn = nw.bind(SocketAddr.parse("127.0.0.1:50916"))
    laddr = conn.local_addr()
    assert str(laddr.ip) == "127.0.0.1"
    assert laddr.port == 50916


def test_bind_errors():
    nw = VNet(NetConfig())
    with pytest.raises(BindError):
        nw.bind("192.168.1.1:1234")
    nw.bind("127.0.0.1:50916")
    with pytest.raises(AddressAlreadyInUseError):
        nw.bind("127.0.0.1:50916")


def test_bind_random_port_range():
    nw = VNet(NetConfig())
    conn = nw.bind("127.0.0.1:0")
    assert 5000 <= conn.local_addr().port <= 5999


def test_virtual_dial_lo0():
    nw = VNet(NetConfig())
    conn = nw.dial(True, "127.0.0.1:1234")
    laddr = conn.local_addr()
    assert str(laddr.ip) == "127.0.0.1"
    assert 5000 <= laddr.port <= 5999
    assert conn.remote_addr() == SocketAddr.parse("127.0.0.1:1234")


def test_virtual_dial_eth0():
    wan = Router(RouterConfig(cidr="1.2.3.0/24"))
    nw = VNet(NetConfig())
    attach(wan, nw)
    conn = nw.dial(True, "27.3.4.5:1234")
    laddr = conn.local_addr()
    assert str(laddr.ip) == "1.2.3.1"
    assert laddr.port != 0


def test_virtual_resolver():
    wan = Router(RouterConfig(cidr="1.2.3.0/24"))
    nw = VNet(NetConfig())

    assert str(nw.resolve_addr(True, "127.0.0.1:1234")) == "127.0.0.1:1234"
    with pytest.raises(VNetError):
        nw.resolve_addr(False, "127.0.0.1:1234")

    attach(wan, nw)
    wan.add_host("test.example.com", "30.31.32.33")

    raddr = nw.resolve_addr(True, "test.example.com:1234")
    assert str(raddr) == "30.31.32.33:1234"
    conn = nw.dial(True, "test.example.com:1234")
    assert str(conn.local_addr().ip) == "1.2.3.1"

    with pytest.raises(NotFoundError):
        nw.resolve_addr(True, "missing.example.com:1234")


def test_static_ips_from_config():
    nw = VNet(NetConfig(static_ips=[DEMO_IP, "bogus"], static_ip="1.2.3.5"))
    assert nw.get_static_ips() == [ip(DEMO_IP), ip("1.2.3.5")]


def test_new_mac_address_sequence():
    first = new_mac_address()
    second = new_mac_address()
    assert len(first) == 6
    assert int.from_bytes(second, "big") == int.from_bytes(first, "big") + 1


@pytest.mark.asyncio
async def test_write_without_router_fails():
    nw = VNet(NetConfig())
    chunk = ChunkUdp("10.0.0.1:1000", "27.1.7.135:2000", b"x")
    with pytest.raises(NoRouterLinkedError):
        await nw.write(chunk)


@pytest.mark.asyncio
async def test_close_releases_address():
    nw = VNet(NetConfig())
    conn = nw.bind("127.0.0.1:50916")
    await conn.close()
    assert len(nw.udp_conns) == 0
    again = nw.bind("127.0.0.1:50916")
    assert again.local_addr().port == 50916


@pytest.mark.asyncio
async def test_virtual_loopback1():
    nw = VNet(NetConfig())
    conn = nw.bind(SocketAddr.parse("127.0.0.1:0"))
    laddr = conn.local_addr()
    msg = b"PING!"
    n = await conn.send_to(msg, laddr)
    assert n == len(msg)
    data, raddr = await asyncio.wait_for(conn.recv_from(1000), 2)
    assert data == msg
    assert raddr == laddr


@pytest.mark.asyncio
async def test_virtual_loopback2():
    nw = VNet(NetConfig())
    conn = nw.bind(SocketAddr.parse("127.0.0.1:50916"))
    assert str(conn.local_addr()) == "127.0.0.1:50916"

    chunk = ChunkUdp("127.0.0.1:4000", "127.0.0.1:50916", b"Hello!")
    nw.on_inbound_chunk(chunk)

    data, addr = await asyncio.wait_for(conn.recv_from(1500), 2)
    assert len(data) == 6
    assert str(addr) == "127.0.0.1:4000"
    assert data == b"Hello!"


@pytest.mark.asyncio
async def test_virtual_end2end():
    wan = Router(RouterConfig(cidr="1.2.3.0/24"))
    net1 = VNet(NetConfig())
    attach(wan, net1)
    ip1 = eth0_ip(net1)
    net2 = VNet(NetConfig())
    attach(wan, net2)
    ip2 = eth0_ip(net2)
    assert (str(ip1), str(ip2)) == ("1.2.3.1", "1.2.3.2")

    conn1 = net1.bind(SocketAddr(ip1, 1234))
    conn2 = net2.bind(SocketAddr(ip2, 5678))

    await wan.start()
    try:
        n = await conn1.send_to(b"Hello!", conn2.local_addr())
        assert n == 6
        data, addr = await asyncio.wait_for(conn2.recv_from(1500), 2)
        assert data == b"Hello!"
        assert addr == SocketAddr(ip1, 1234)

        n = await conn2.send_to(b"Good-bye!", addr)
        assert n == 9
        reply, raddr = await asyncio.wait_for(conn1.recv_from(1500), 2)
        assert reply == b"Good-bye!"
        assert raddr == SocketAddr(ip2, 5678)
    finally:
        await wan.stop()


@pytest.mark.asyncio
async def test_virtual_two_ips_on_a_nic():
    wan = Router(RouterConfig(cidr="1.2.3.0/24"))
    nw = VNet(NetConfig(static_ips=[DEMO_IP, "1.2.3.5"]))
    attach(wan, nw)
    assert [a.ip for a in nw.get_interface("eth0").addrs] == [ip(DEMO_IP), ip("1.2.3.5")]

    await wan.start()
    try:
        conn1 = nw.bind(SocketAddr(ip(DEMO_IP), 1234))
        conn2 = nw.bind(SocketAddr(ip("1.2.3.5"), 1234))

        n = await conn1.send_to(b"Hello!", conn2.local_addr())
        assert n == 6
        data, addr = await asyncio.wait_for(conn2.recv_from(1500), 2)
        assert data == b"Hello!"
        assert str(addr) == "1.2.3.4:1234"

        n = await conn2.send_to(b"Good-bye!", addr)
        assert n == 9
        reply, _ = await asyncio.wait_for(conn1.recv_from(1500), 2)
        assert reply == b"Good-bye!"
    finally:
        await wan.stop()