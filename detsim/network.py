"""A simulated network: nodes, addresses, sockets and link state."""

from __future__ import annotations

import enum
import errno
import ipaddress
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta

from .addr import SocketAddr
from .config import NetConfig
from .dns import IpAddr
from .ipvs import IpProtocol
from .rand import GlobalRng

_log = logging.getLogger(__name__)

_UNSPECIFIED_V4 = ipaddress.IPv4Address("0.0.0.0")
_LOCALHOST_V4 = ipaddress.IPv4Address("127.0.0.1")


class Direction(enum.Enum):
    """Direction of traffic through a node."""

    IN = "in"
    OUT = "out"
    BOTH = "both"


@dataclass
class Stat:
    """Network statistics."""

    msg_count: int = 0


class Socket:
    """Base for protocol sockets registered in the network."""

    def deliver(self, src: SocketAddr, dst: SocketAddr, msg) -> None:
        """Deliver a message from another socket."""

    def new_connection(self, src: SocketAddr, dst: SocketAddr, tx, rx) -> None:
        """Handle a new connection request."""


@dataclass
class _Node:
    ip: IpAddr | None = None
    sockets: dict[tuple[SocketAddr, IpProtocol], Socket] = field(default_factory=dict)


class Network:
    """Manages links and address resolution, independent of any protocol."""

    def __init__(self, rand: GlobalRng, config: NetConfig) -> None:
        self.rand = rand
        self.config = config
        self.stat = Stat()
        self._nodes: dict[object, _Node] = {}
        self._addr_to_node: dict[IpAddr, object] = {}
        self._clogged_in: set = set()
        self._clogged_out: set = set()
        self._clogged_link: set = set()

    def _node(self, node_id) -> _Node:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise KeyError("node not found") from None

    def update_config(self, f: Callable[[NetConfig], None]) -> None:
        f(self.config)

    def insert_node(self, node_id) -> None:
        _log.debug("insert_node id=%s", node_id)
        self._nodes[node_id] = _Node()

    def reset_node(self, node_id) -> None:
        """Close every socket on the node."""
        _log.debug("reset_node id=%s", node_id)
        self._node(node_id).sockets.clear()

    def set_ip(self, node_id, ip) -> None:
        ip = ipaddress.ip_address(ip)
        _log.debug("set_node_ip id=%s ip=%s", node_id, ip)
        node = self._node(node_id)
        owner = self._addr_to_node.get(ip)
        if owner is not None and owner != node_id:
            raise ValueError(f"IP conflict: {ip} {owner}")
        if node.ip is not None:
            self._addr_to_node.pop(node.ip, None)
        node.ip = ip
        self._addr_to_node[ip] = node_id

    def clog_node(self, node_id, direction: Direction) -> None:
        self._node(node_id)
        _log.debug("clog_node id=%s direction=%s", node_id, direction)
        if direction in (Direction.IN, Direction.BOTH):
            self._clogged_in.add(node_id)
        if direction in (Direction.OUT, Direction.BOTH):
            self._clogged_out.add(node_id)

    def unclog_node(self, node_id, direction: Direction) -> None:
        self._node(node_id)
        _log.debug("unclog_node id=%s direction=%s", node_id, direction)
        if direction in (Direction.IN, Direction.BOTH):
            self._clogged_in.discard(node_id)
        if direction in (Direction.OUT, Direction.BOTH):
            self._clogged_out.discard(node_id)

    def clog_link(self, src, dst) -> None:
        self._node(src)
        self._node(dst)
        _log.debug("clog_link src=%s dst=%s", src, dst)
        self._clogged_link.add((src, dst))

    def unclog_link(self, src, dst) -> None:
        self._node(src)
        self._node(dst)
        _log.debug("unclog_link src=%s dst=%s", src, dst)
        self._clogged_link.discard((src, dst))

    def link_clogged(self, src, dst) -> bool:
        """Whether the link from ``src`` to ``dst`` is clogged."""
        return (
            src in self._clogged_out
            or dst in self._clogged_in
            or (src, dst) in self._clogged_link
        )

    def bind(self, node_id, addr: SocketAddr, protocol: IpProtocol, socket: Socket) -> SocketAddr:
        """Register ``socket`` at ``addr``, choosing the first free number when it is 0."""
        node = self._node(node_id)
        ip = addr.ip
        if (
            not ip.is_unspecified
            and not ip.is_loopback
            and node.ip is not None
            and ip != node.ip
        ):
            raise OSError(errno.EADDRNOTAVAIL, f"invalid address: {addr}")
        if addr.port == 0:
            port = next(
                (
                    p
                    for p in range(1, 0x10000)
                    if (SocketAddr(ip, p), protocol) not in node.sockets
                ),
                None,
            )
            if port is None:
                raise OSError(errno.EADDRINUSE, "no available ephemeral port")
            addr = addr.with_port(port)
        key = (addr, protocol)
        if key in node.sockets:
            raise OSError(errno.EADDRINUSE, f"address already in use: {addr}")
        node.sockets[key] = socket
        _log.debug("bind node=%s addr=%s", node_id, addr)
        return addr

    def close(self, node_id, addr: SocketAddr, protocol: IpProtocol) -> None:
        _log.debug("close node=%s addr=%s protocol=%s", node_id, addr, protocol)
        self._node(node_id).sockets.pop((addr, protocol), None)

    def _test_link(self, src, dst) -> timedelta | None:
        if self.link_clogged(src, dst) or self.rand.gen_bool(self.config.packet_loss_rate):
            return None
        self.stat.msg_count += 1
        start, end = self.config.send_latency
        return self.rand.gen_range(start, end)

    def resolve_dest_node(self, node_id, dst: SocketAddr, protocol: IpProtocol):
        """Find the node that owns ``dst``, or None."""
        node = self._node(node_id)
        if dst.ip.is_loopback or (dst, protocol) in node.sockets:
            return node_id
        if node.ip is None:
            _log.warning("ip not set: %s", node_id)
            return None
        owner = self._addr_to_node.get(dst.ip)
        if owner is None:
            _log.warning("destination not found: %s", dst)
        return owner

    def try_send(self, node_id, dst: SocketAddr, protocol: IpProtocol):
        """Route a packet to ``dst``.

        Returns ``(source ip, destination node, socket, latency)``, or None
        if the destination is unknown or the packet is lost.
        """
        dst_node = self.resolve_dest_node(node_id, dst, protocol)
        if dst_node is None:
            return None
        latency = self._test_link(node_id, dst_node)
        if latency is None:
            return None
        target = self._nodes.get(dst_node)
        if target is None:
            return None
        socket = target.sockets.get((dst, protocol)) or target.sockets.get(
            (SocketAddr(_UNSPECIFIED_V4, dst.port), protocol)
        )
        if socket is None:
            return None
        if dst.ip.is_loopback:
            src_ip: IpAddr = _LOCALHOST_V4
        else:
            src_ip = self._node(node_id).ip
            if src_ip is None:
                raise RuntimeError(f"node {node_id} has no IP address")
        return src_ip, dst_node, socket, latency