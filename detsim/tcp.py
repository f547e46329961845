"""Simulated TCP listeners and streams."""

from __future__ import annotations

import asyncio
import errno
import logging

from .addr import SocketAddr
from .ipvs import IpProtocol
from .netsim import BindGuard, NetSim, PayloadReceiver, PayloadSender
from .network import Socket

_log = logging.getLogger(__name__)


def _connection_reset() -> ConnectionResetError:
    return ConnectionResetError(errno.ECONNRESET, "connection reset")


class _Closed:
    """Marks that a listener stopped accepting connections."""


_CLOSED = _Closed()


class _TcpStreamSocket(Socket):
    """Reserves the local port of an outgoing stream; it receives nothing itself."""


class _TcpListenerSocket(Socket):
    """Turns incoming connection requests into streams waiting to be accepted."""

    def __init__(self) -> None:
        self.streams: asyncio.Queue[TcpStream | _Closed] = asyncio.Queue()

    def new_connection(self, src: SocketAddr, dst: SocketAddr, tx, rx) -> None:
        self.streams.put_nowait(TcpStream(None, dst, src, tx, rx))


class TcpStream:
    """A TCP stream between a local and a remote socket.

    Written data is buffered until :meth:`flush` sends it as one segment.
    """

    def __init__(
        self,
        guard: BindGuard | None,
        addr: SocketAddr,
        peer: SocketAddr,
        tx: PayloadSender,
        rx: PayloadReceiver,
        *,
        owns_guard: bool = False,
    ) -> None:
        self._guard = guard
        self._owns_guard = owns_guard
        self._addr = addr
        self._peer = peer
        self._tx = tx
        self._rx = rx
        self._write_buf = bytearray()
        self._read_buf = b""
        self._closed = False
        self.nodelay = False

    @classmethod
    async def connect(cls, net: NetSim, node_id, addr) -> TcpStream:
        """Open a connection from ``node_id`` to ``addr``.

        Every address ``addr`` resolves to is tried in turn; if none
        succeeds, the error of the last attempt is raised.
        """
        last_err: OSError | None = None
        for target in net.resolve(addr):
            try:
                return await cls._connect_one(net, node_id, target)
            except OSError as e:
                last_err = e
        if last_err is not None:
            raise last_err
        raise OSError(errno.EINVAL, "could not resolve to any addresses")

    @classmethod
    async def _connect_one(cls, net: NetSim, node_id, addr: SocketAddr) -> TcpStream:
        await net.rand_delay()
        guard = await net.bind(node_id, "0.0.0.0:0", IpProtocol.TCP, _TcpStreamSocket())
        try:
            tx, rx, local_addr = await net.connect(node_id, guard.addr.port, addr, IpProtocol.TCP)
        except BaseException:
            guard.close()
            raise
        _log.debug("connected %s -> %s", local_addr, addr)
        return cls(guard, local_addr, addr, tx, rx, owns_guard=True)

    def set_nodelay(self, nodelay: bool) -> None:
        """Record the ``TCP_NODELAY`` option; segments are never delayed anyway."""
        self.nodelay = bool(nodelay)

    def local_addr(self) -> SocketAddr:
        return self._addr

    def peer_addr(self) -> SocketAddr:
        return self._peer

    def _take(self, size: int) -> bytes:
        chunk, self._read_buf = self._read_buf[:size], self._read_buf[size:]
        return chunk

    def try_read(self, size: int) -> bytes:
        """Return up to ``size`` already received bytes without waiting.

        Raises BlockingIOError when nothing is buffered.
        """
        if size < 0:
            raise ValueError("size must not be negative")
        if self._read_buf:
            return self._take(size)
        raise BlockingIOError(errno.EWOULDBLOCK, "read buffer is empty")

    async def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes; an empty result means the peer has closed."""
        if size < 0:
            raise ValueError("size must not be negative")
        while not self._read_buf:
            try:
                data = await self._rx.recv()
            except EOFError:
                return b""
            self._read_buf = bytes(data)
        return self._take(size)

    async def write(self, data: bytes) -> int:
        """Buffer ``data`` and return how many bytes were taken."""
        if self._closed:
            raise _connection_reset()
        self._write_buf += data
        return len(data)

    async def write_all(self, data: bytes) -> None:
        await self.write(data)

    async def flush(self) -> None:
        """Send the buffered data; raises ConnectionResetError if the peer is gone."""
        data = bytes(self._write_buf)
        self._write_buf.clear()
        self._tx.send(data)

    async def shutdown(self) -> None:
        """Flush buffered data; the connection itself stays open."""
        if self._write_buf:
            await self.flush()

    def close(self) -> None:
        """Close both halves; the peer reads end of stream and its writes fail."""
        if self._closed:
            return
        self._closed = True
        self._tx.close()
        self._rx.close()
        if self._owns_guard and self._guard is not None:
            self._guard.close()

    def __enter__(self) -> TcpStream:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"TcpStream(addr={self._addr}, peer={self._peer})"


class TcpListener:
    """A TCP socket server, listening for connections."""

    def __init__(self, net: NetSim, guard: BindGuard, socket: _TcpListenerSocket) -> None:
        self._net = net
        self._guard = guard
        self._socket = socket

    @classmethod
    async def bind(cls, net: NetSim, node_id, addr) -> TcpListener:
        """Create a listener on ``node_id`` bound to ``addr``."""
        socket = _TcpListenerSocket()
        guard = await net.bind(node_id, addr, IpProtocol.TCP, socket)
        return cls(net, guard, socket)

    async def accept(self) -> tuple[TcpStream, SocketAddr]:
        """Wait for a new connection; returns the stream and the peer address."""
        await self._net.rand_delay()
        stream = await self._socket.streams.get()
        if isinstance(stream, _Closed):
            self._socket.streams.put_nowait(_CLOSED)
            raise _connection_reset()
        _log.debug("accept tcp connection from %s", stream.peer_addr())
        stream._guard = self._guard
        return stream, stream.peer_addr()

    def local_addr(self) -> SocketAddr:
        return self._guard.addr

    def close(self) -> None:
        """Release the bound address; pending and later accepts fail."""
        self._guard.close()
        self._socket.streams.put_nowait(_CLOSED)

    def __enter__(self) -> TcpListener:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"TcpListener(addr={self._guard.addr})"