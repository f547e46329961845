# detsim

A deterministic simulator for distributed systems, built on `asyncio`.

Random numbers, packet latency, packet loss and injected faults are all drawn
from one seeded generator. Given the same seed and the same program, the
draws come out the same every time, so a failing scenario can be replayed.

## Modules

- `detsim.rand`: `GlobalRng`, a seeded xoshiro256++ generator
  (`Xoshiro256PlusPlus`). It offers `next_u32`, `next_u64`, `fill_bytes`,
  `gen_bool`, `gen_range` (integers, floats and `timedelta`s) and
  `random_float`. It also has a log/check mode that raises
  `NonDeterminismError` when a replayed run diverges from a recorded
  `RandomLog`.
- `detsim.buggify`: cooperative fault injection on a `GlobalRng`:
  `enable`, `disable`, `is_enabled`, `buggify` (25% when enabled) and
  `buggify_with_prob`. When buggify is disabled, both of the last two
  always return `False`.
- `detsim.config`: `Config`, `NetConfig` (`packet_loss_rate`,
  `send_latency`) and `TcpConfig`. A `Config` is read with
  `Config.from_toml` and written with `to_toml`. `hash` gives a stable
  64-bit hash.
- `detsim.dns`: `DnsServer`, which knows `localhost` from the start.
- `detsim.ipvs`: `IpVirtualServer`, which maps a virtual `ServiceAddr` to
  real servers with the `Scheduler.ROUND_ROBIN` scheduler.
- `detsim.addr`: `SocketAddr` and `lookup_host`. `lookup_host` accepts a
  `SocketAddr`, a `"host:port"` string, a `(host, port)` tuple or an
  iterable of `SocketAddr`. If the target cannot be resolved it raises
  `OSError`.
- `detsim.network`: `Network`, which holds nodes, IP addresses, bound
  sockets, and clogged nodes and links (`Direction.IN`, `OUT`, `BOTH`). It
  also keeps a `Stat` message count.
- `detsim.netsim`: `NetSim`, the network simulator. It provides:
  - random delays, messages delivered after a latency drawn from the config,
    and packet loss;
  - the cluster DNS and the IPVS table;
  - hooks that can drop RPC-shaped requests and responses;
  - reliable ordered channels (`PayloadSender`, `PayloadReceiver`) that hold
    data back while a link is clogged.
- `detsim.tcp`: `TcpListener` and `TcpStream` on top of `NetSim`. Written
  data is buffered until `flush` sends it. When the peer has closed, `read`
  returns `b""`.
- `detsim.fs`: `FsSim`, an in-memory file system for each node, with `File`
  (`read_at`, `write_all_at`, `set_len`, `sync_all`, `metadata`) and
  `Metadata`.

## Installation

```
pip install detsim
```

For the test suite:

```
pip install "detsim[test]"
pytest
```

## Example: a TCP connection between two nodes

```python
import asyncio

from detsim.netsim import NetSim
from detsim.rand import GlobalRng
from detsim.tcp import TcpListener, TcpStream


async def main():
    net = NetSim(GlobalRng(1))
    net.create_node("a")
    net.create_node("b")
    net.set_ip("a", "10.0.0.1")
    net.set_ip("b", "10.0.0.2")

    listener = await TcpListener.bind(net, "a", "10.0.0.1:1")
    client = await TcpStream.connect(net, "b", "10.0.0.1:1")
    server, peer = await listener.accept()

    await client.write_all(b"hello world")
    await client.flush()
    print(await server.read(20), peer)


asyncio.run(main())
```

Clogging a node or link with `net.clog_node(...)` or `net.clog_link(...)`
holds back data already on a connection. That data is delivered once the link
is unclogged. While the path is clogged, new connections are refused with
`ConnectionRefusedError`.

## Configuration

```python
from detsim.config import Config

config = Config.from_toml("""
[net]
packet_loss_rate = 0.1
send_latency = { start = { secs = 0, nanos = 1000000 }, end = { secs = 0, nanos = 10000000 } }
""")
print(config.to_toml())
```

Sections and fields that are missing take their defaults: no packet loss,
and a latency between 1 ms and 10 ms.

## Determinism checks

1. On a first run, call `GlobalRng.enable_log()` and keep the result of
   `take_log()`.
2. On a second run with the same seed, pass that log to `enable_check(log)`.

Any draw that differs from the first run raises `NonDeterminismError`. If a
`clock` callable is given to `GlobalRng`, the elapsed simulated time is
mixed into each recorded draw.

## What it does not do

- There is no runtime or scheduler. Simulated time is the `asyncio` event
  loop's own clock, and node identifiers are whatever values you pass.
- There are no datagram or tagged-message sockets. Only TCP streams are
  provided on top of `NetSim`.
- There is no RPC framework. `NetSim` recognises the shape of RPC messages
  for its hooks, but nothing in the package sends them.
- The file system keeps data in memory only. `power_fail` loses nothing,
  because writes are never buffered.
- There is no command-line tool.