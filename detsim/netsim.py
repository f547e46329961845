"""The network simulator: message delivery, connections, hooks and DNS."""

from __future__ import annotations

import asyncio
import dataclasses
import errno
import logging
from collections.abc import Callable
from typing import Any

from .addr import SocketAddr, lookup_host
from .config import Config, NetConfig
from .dns import DnsServer, IpAddr
from .ipvs import IpProtocol, IpVirtualServer, ServiceAddr
from .network import Direction, Network, Socket, Stat
from .rand import GlobalRng

_log = logging.getLogger(__name__)

_BYTES_TYPES = (bytes, bytearray, memoryview)
_MAX_BACKOFF = 10.0

# Arrival time on the event loop clock, or None when the link is down.
_LinkState = float | None
_LinkTest = Callable[[], _LinkState]


class _Eof:
    """Marks the end of a channel."""


_EOF = _Eof()


class _Channel:
    """State shared by both ends of a reliable, ordered channel."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        self.tx_closed = False
        self.rx_closed = False
        self.rx_closed_event = asyncio.Event()


class PayloadSender:
    """The sending half of a reliable channel between two sockets."""

    def __init__(self, test_link: _LinkTest, channel: _Channel) -> None:
        self._test_link = test_link
        self._channel = channel

    def send(self, value: Any) -> None:
        """Queue ``value`` for delivery; raises ConnectionResetError if the peer is gone."""
        if self._channel.rx_closed or self._channel.tx_closed:
            raise ConnectionResetError(errno.ECONNRESET, "connection reset")
        state = self._test_link()
        self._channel.queue.put_nowait((value, state))

    def close(self) -> None:
        """Close the sending half; the receiver sees the end of the stream."""
        if not self._channel.tx_closed:
            self._channel.tx_closed = True
            self._channel.queue.put_nowait(_EOF)

    def is_closed(self) -> bool:
        """Whether the receiving half has been closed."""
        return self._channel.rx_closed

    async def closed(self) -> None:
        """Wait until the receiving half is closed."""
        await self._channel.rx_closed_event.wait()


class PayloadReceiver:
    """The receiving half of a reliable channel.

    A value sent while the link was down is held back, retrying the link
    with exponential backoff, and then released after the link latency.
    """

    def __init__(
        self,
        test_link: _LinkTest,
        channel: _Channel,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._test_link = test_link
        self._channel = channel
        self._loop = loop
        self._pending: list[Any] | None = None
        self._eof = False

    async def recv(self) -> Any:
        """Return the next value; raises EOFError once the stream has ended."""
        if self._channel.rx_closed or self._eof:
            raise EOFError("channel closed")
        if self._pending is None:
            item = await self._channel.queue.get()
            if item is _EOF:
                self._eof = True
                raise EOFError("channel closed")
            self._pending = [item[0], item[1], 0.001]
        pending = self._pending
        while pending[1] is None:
            await asyncio.sleep(pending[2])
            pending[2] = min(pending[2] * 2, _MAX_BACKOFF)
            pending[1] = self._test_link()
        delay = pending[1] - self._loop.time()
        if delay > 0:
            await asyncio.sleep(delay)
        self._pending = None
        return pending[0]

    def close(self) -> None:
        """Close the receiving half; the sender sees the channel closed."""
        if not self._channel.rx_closed:
            self._channel.rx_closed = True
            self._channel.rx_closed_event.set()

    def __aiter__(self) -> PayloadReceiver:
        return self

    async def __anext__(self) -> Any:
        try:
            return await self.recv()
        except EOFError:
            raise StopAsyncIteration from None


class BindGuard:
    """Holds a bound address; ``close`` releases it."""

    def __init__(self, net: NetSim, node_id, addr: SocketAddr, protocol: IpProtocol) -> None:
        self.net = net
        self.node_id = node_id
        self.addr = addr
        self.protocol = protocol
        self._closed = False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.net._network.close(self.node_id, self.addr, self.protocol)

    def __enter__(self) -> BindGuard:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"BindGuard(node={self.node_id!r}, addr={self.addr}, protocol={self.protocol})"


def _rpc_request(msg: Any) -> tuple[bool, Any]:
    match msg:
        case (int(), (int(), request, bytes() | bytearray() | memoryview())):
            return True, request
    return False, None


def _rpc_response(msg: Any) -> tuple[bool, Any]:
    match msg:
        case (int(), (response, bytes() | bytearray() | memoryview())):
            return True, response
    return False, None


class NetSim:
    """Network simulator.

    Messages given to :meth:`send` are ``(tag, payload)`` pairs. RPC
    requests carry the payload ``(response_tag, request, data)`` and RPC
    responses ``(response, data)``, with ``data`` as bytes; the RPC hooks
    look for these shapes.
    """

    def __init__(self, rand: GlobalRng, config: Config | NetConfig | None = None) -> None:
        if config is None:
            config = Config()
        net_config = config.net if isinstance(config, Config) else config
        self._rand = rand
        self._network = Network(rand, dataclasses.replace(net_config))
        self._dns = DnsServer()
        self._ipvs = IpVirtualServer()
        self._hooks_req: dict[Any, Callable[[Any], bool]] = {}
        self._hooks_rsp: dict[Any, Callable[[Any], bool]] = {}

    def stat(self) -> Stat:
        """A snapshot of the network statistics."""
        return dataclasses.replace(self._network.stat)

    def update_config(self, f: Callable[[NetConfig], None]) -> None:
        self._network.update_config(f)

    def create_node(self, node_id) -> None:
        self._network.insert_node(node_id)

    def reset_node(self, node_id) -> None:
        """Close every socket of the node."""
        self._network.reset_node(node_id)

    def set_ip(self, node_id, ip) -> None:
        self._network.set_ip(node_id, ip)

    def clog_node(self, node_id) -> None:
        self._network.clog_node(node_id, Direction.BOTH)

    def clog_node_in(self, node_id) -> None:
        self._network.clog_node(node_id, Direction.IN)

    def clog_node_out(self, node_id) -> None:
        self._network.clog_node(node_id, Direction.OUT)

    def unclog_node(self, node_id) -> None:
        self._network.unclog_node(node_id, Direction.BOTH)

    def unclog_node_in(self, node_id) -> None:
        self._network.unclog_node(node_id, Direction.IN)

    def unclog_node_out(self, node_id) -> None:
        self._network.unclog_node(node_id, Direction.OUT)

    def clog_link(self, src, dst) -> None:
        """Clog the link from ``src`` to ``dst``."""
        self._network.clog_link(src, dst)

    def unclog_link(self, src, dst) -> None:
        """Unclog the link from ``src`` to ``dst``."""
        self._network.unclog_link(src, dst)

    def add_dns_record(self, hostname: str, ip) -> None:
        self._dns.add(hostname, ip)

    def lookup_host(self, hostname: str) -> IpAddr | None:
        return self._dns.lookup(hostname)

    def resolve(self, target) -> list[SocketAddr]:
        """Resolve ``target`` to socket addresses using the cluster DNS."""
        return lookup_host(target, self.lookup_host)

    def global_ipvs(self) -> IpVirtualServer:
        return self._ipvs

    def hook_rpc_req(self, node_id, f: Callable[[Any], bool]) -> None:
        """Call ``f`` with every RPC request sent by the node; False drops it."""

        def hook(msg: Any) -> bool:
            matched, request = _rpc_request(msg)
            return f(request) if matched else True

        self._hooks_req[node_id] = hook

    def hook_rpc_rsp(self, node_id, f: Callable[[Any], bool]) -> None:
        """Call ``f`` with every RPC response arriving at the node; False drops it."""

        def hook(msg: Any) -> bool:
            matched, response = _rpc_response(msg)
            return f(response) if matched else True

        self._hooks_rsp[node_id] = hook

    async def rand_delay(self) -> None:
        """Sleep for a small random time, occasionally a long one under buggify."""
        delay = self._rand.gen_range(0, 5) / 1_000_000
        if self._rand.buggify_with_prob(0.1):
            delay = float(self._rand.gen_range(1, 5))
        await asyncio.sleep(delay)

    def _redirect(self, dst: SocketAddr, protocol: IpProtocol) -> SocketAddr:
        server = self._ipvs.get_server(ServiceAddr.from_addr_proto(dst, protocol))
        if server is None:
            return dst
        try:
            return SocketAddr.parse(server)
        except ValueError:
            raise ValueError(f"invalid socket address: {server!r}") from None

    async def bind(self, node_id, addr, protocol: IpProtocol, socket: Socket) -> BindGuard:
        """Bind ``socket`` to the first address ``addr`` resolves to that is free."""
        last_err: OSError | None = None
        for candidate in self.resolve(addr):
            await self.rand_delay()
            try:
                bound = self._network.bind(node_id, candidate, protocol, socket)
            except OSError as e:
                last_err = e
                continue
            return BindGuard(self, node_id, bound, protocol)
        if last_err is not None:
            raise last_err
        raise OSError(errno.EINVAL, "could not resolve to any addresses")

    async def send(self, node_id, port: int, dst: SocketAddr, protocol: IpProtocol, msg) -> None:
        """Send ``msg`` to ``dst``; a lost or undeliverable message vanishes silently."""
        await self.rand_delay()
        hook = self._hooks_req.get(node_id)
        if hook is not None and not hook(msg):
            return
        dst = self._redirect(dst, protocol)
        route = self._network.try_send(node_id, dst, protocol)
        if route is None:
            return
        src_ip, dst_node, socket, latency = route
        _log.debug("delay %s", latency)
        rsp_hook = self._hooks_rsp.get(dst_node)
        src = SocketAddr(src_ip, port)

        def deliver() -> None:
            if rsp_hook is not None and not rsp_hook(msg):
                return
            socket.deliver(src, dst, msg)

        asyncio.get_running_loop().call_later(latency.total_seconds(), deliver)

    async def connect(self, node_id, port: int, dst: SocketAddr, protocol: IpProtocol):
        """Open a connection to ``dst``.

        Returns ``(sender, receiver, local address)``; raises
        ConnectionRefusedError if nothing can be reached there.
        """
        await self.rand_delay()
        dst = self._redirect(dst, protocol)
        route = self._network.try_send(node_id, dst, protocol)
        if route is None:
            raise ConnectionRefusedError(errno.ECONNREFUSED, "connection refused")
        src_ip, dst_node, socket, latency = route
        src = SocketAddr(src_ip, port)
        tx1, rx1 = self._channel(node_id, dst, protocol)
        tx2, rx2 = self._channel(dst_node, src, protocol)
        _log.debug("delay %s", latency)
        socket.new_connection(src, dst, tx2, rx1)
        return tx1, rx2, src

    def _channel(self, node_id, dst: SocketAddr, protocol: IpProtocol):
        loop = asyncio.get_running_loop()
        network = self._network

        def test_link() -> _LinkState:
            route = network.try_send(node_id, dst, protocol)
            if route is None:
                return None
            return loop.time() + route[3].total_seconds()

        channel = _Channel()
        return PayloadSender(test_link, channel), PayloadReceiver(test_link, channel, loop)