# vnetkit

vnetkit is an in-process virtual network for exercising UDP-based software
without touching real sockets. Packets ("chunks") travel between virtual
network stacks through virtual routers, which can delay them, add jitter,
drop them through filters and pass them through network address translation.
It runs on `asyncio` inside a single process.

It also provides sliding-window replay detectors of the kind used by DTLS and
SRTP/SRTCP.

## Installation

```
pip install vnetkit
```

vnetkit has no runtime dependencies beyond the standard library and supports
Python 3.10 and later.

## Building blocks

| Module | What it provides |
| --- | --- |
| `vnetkit.net` | `VNet`, a virtual network stack with `lo0` and `eth0` interfaces, `NetConfig`, `new_mac_address` |
| `vnetkit.router` | `Router`, `RouterConfig` and the `Nic` interface that routers and networks share |
| `vnetkit.nat` | `NetworkAddressTranslator`, `NatConfig`, `NatType`, `NatMode`, `EndpointDependencyType`, `Mapping` |
| `vnetkit.conn` | `UdpConn`, the virtual UDP connection returned by `bind` and `dial`, and `ConnObserver` |
| `vnetkit.conn_map` | `UdpConnMap`, the table of bound connections per port |
| `vnetkit.chunk` | `ChunkUdp`, `ChunkTcp`, `TcpFlag`, `SocketAddr`, `base36` |
| `vnetkit.chunk_queue` | `ChunkQueue`, a bounded FIFO of chunks |
| `vnetkit.interface` | `Interface` and `convert`, which turns an address and a netmask into an interface address |
| `vnetkit.resolver` | `Resolver`, a host-name resolver that falls back to a parent |
| `vnetkit.replay_detector` | `SlidingWindowDetector`, `WrappedSlidingWindowDetector`, `NoOpReplayDetector` |
| `vnetkit.errors` | `VNetError` and its subclasses |

## A virtual WAN with two hosts

```python
import asyncio

from vnetkit.chunk import SocketAddr
from vnetkit.net import NetConfig, VNet
from vnetkit.router import Router, RouterConfig


async def main():
    wan = Router(RouterConfig(cidr="1.2.3.0/24"))

    net1 = VNet(NetConfig())
    net2 = VNet(NetConfig())
    for net in (net1, net2):
        wan.add_net(net)
        net.set_router(wan)

    await wan.start()

    conn1 = net1.bind(SocketAddr.parse("1.2.3.1:1234"))
    conn2 = net2.bind(SocketAddr.parse("1.2.3.2:5678"))

    await conn1.send_to(b"Hello!", conn2.local_addr())
    data, sender = await conn2.recv_from(1500)
    print(data, sender)  # b'Hello!' 1.2.3.1:1234

    await wan.stop()


asyncio.run(main())
```

A network added to a router without static IPs gets the next address of the
router's subnet (`x.x.x.1`, `x.x.x.2`, …). Give `NetConfig` a list of
`static_ips` to pin them instead. `VNet.bind` with port 0 picks a free port
between 5000 and 5999; `VNet.dial` resolves `"host:port"`, binds a suitable
local address and connects the connection to it. UDP chunks sent to a
loopback address are delivered inside the same `VNet` without a router.

A router only forwards chunks while it is running: start it with
`await router.start()` and stop it with `await router.stop()`. Starting or
stopping a router also starts or stops its child routers.

## Nested routers and NAT

Add a child router with `parent.add_router(child)`, then call
`child.set_router(parent)`. Traffic leaving the child's subnet passes through
the child's NAT. By default the NAT is endpoint-independent for mapping,
address-and-port-dependent for filtering, with a 30 second mapping lifetime;
mapped ports are handed out from 49152 (`0xC000`) upwards. Set `nat_type` in
`RouterConfig` to a `NatType` to choose other behaviours, or
`NatType(mode=NatMode.NAT_1TO1)` for a 1:1 NAT. For a 1:1 NAT, write the
router's `static_ips` as `"<mapped-ip>/<local-ip>"` pairs.

Host names registered with `Router.add_host` are resolved by
`VNet.resolve_addr` and `VNet.dial`; a router's resolver falls back to its
parent's. `localhost` always resolves to `127.0.0.1` (or `::1` when IPv6 is
asked for).

## Shaping traffic

`RouterConfig` accepts `min_delay` and `max_jitter`, in seconds, to delay
chunks, and `queue_size` to bound the router's queue (0 means unlimited).
Chunks can be inspected or dropped with filters:

```python
router.add_chunk_filter(lambda chunk: chunk.network != "udp" or len(chunk.user_data) < 1200)
```

A filter that returns `False` drops the chunk; filters run in the order they
were added and later filters do not see a dropped chunk.

## Replay detection

```python
from vnetkit.replay_detector import SlidingWindowDetector, WrappedSlidingWindowDetector

detector = SlidingWindowDetector(window_size=64, max_seq=0x0000FFFFFFFFFFFF)
for seq in (1, 2, 2, 3):
    if detector.check(seq):
        # authenticate the packet, then record it
        detector.accept()
```

`check` tells whether a sequence number is new and inside the window;
`accept` records the number passed to the last `check`. Use
`WrappedSlidingWindowDetector` for short counters that wrap around, such as
the 16-bit sequence numbers of SRTP (`max_seq=0xFFFF`).

## Errors

Failures of the network itself are raised as subclasses of
`vnetkit.errors.VNetError`, for example `AddressAlreadyInUseError` when binding
to a taken address, `BindError` when the address is not assigned to the
network, `NoRouterLinkedError` when sending off-host without a router,
`NatError` when a chunk cannot be translated, and `RouterStateError` when
starting a router twice. Malformed addresses raise `ValueError`, and reading
from a closed `UdpConn` raises `ConnectionAbortedError`.

## What vnetkit does not do

- Only UDP is carried. `ChunkTcp` and `TcpFlag` describe TCP segments, but
  networks ignore TCP chunks and the NAT refuses to translate them.
- There is no fallback to the host's real interfaces or sockets; every
  `VNet` is virtual.
- The `hair_pinning` and `port_preservation` settings of `NatType` are kept
  but have no effect on translation.

## Running the tests

```
pip install -e ".[test]"
pytest
```