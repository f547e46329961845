"""Socket addresses and host lookup."""

from __future__ import annotations

import errno
import ipaddress
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from .dns import DnsServer, IpAddr

Resolver = Callable[[str], "IpAddr | None"]

_PORT_RE = re.compile(r"\+?[0-9]+")


def _parse_port(text: str) -> int | None:
    if not _PORT_RE.fullmatch(text):
        return None
    port = int(text)
    return port if port <= 0xFFFF else None


def _invalid(msg: str) -> OSError:
    return OSError(errno.EINVAL, msg)


@dataclass(frozen=True)
class SocketAddr:
    """An IP address together with a port."""

    ip: IpAddr
    port: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "ip", ipaddress.ip_address(self.ip))
        port = self.port
        if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 0xFFFF:
            raise ValueError(f"invalid port: {port!r}")

    @classmethod
    def parse(cls, text: str) -> SocketAddr:
        """Parse ``a.b.c.d:port`` or ``[v6]:port``."""
        try:
            if text.startswith("["):
                host, sep, port_text = text[1:].partition("]:")
                if not sep:
                    raise ValueError
                ip: IpAddr = ipaddress.IPv6Address(host)
            else:
                host, sep, port_text = text.rpartition(":")
                if not sep:
                    raise ValueError
                ip = ipaddress.IPv4Address(host)
        except ValueError:
            raise ValueError(f"invalid socket address syntax: {text!r}") from None
        port = _parse_port(port_text)
        if port is None:
            raise ValueError(f"invalid socket address syntax: {text!r}")
        return cls(ip, port)

    def with_port(self, port: int) -> SocketAddr:
        return SocketAddr(self.ip, port)

    def __str__(self) -> str:
        if self.ip.version == 6:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


def _resolve_host(host: str, port: int, resolver: Resolver) -> SocketAddr:
    for parse in (ipaddress.IPv4Address, ipaddress.IPv6Address):
        try:
            return SocketAddr(parse(host), port)
        except ValueError:
            pass
    ip = resolver(host)
    if ip is None:
        raise _invalid("couldn't resolve host")
    return SocketAddr(ip, port)


def _resolve_str(text: str, resolver: Resolver) -> list[SocketAddr]:
    try:
        return [SocketAddr.parse(text)]
    except ValueError:
        pass
    host, sep, port_text = text.rpartition(":")
    if not sep:
        raise _invalid("invalid socket address")
    port = _parse_port(port_text)
    if port is None:
        raise _invalid("invalid port value")
    return [_resolve_host(host, port, resolver)]


def lookup_host(target, resolver: Resolver | None = None) -> list[SocketAddr]:
    """Resolve ``target`` to socket addresses.

    ``target`` may be a SocketAddr, a ``"host:port"`` string, a
    ``(host, port)`` tuple or an iterable of SocketAddr. Host names are
    looked up through ``resolver``; by default only ``localhost`` is known.
    Failures raise OSError with errno EINVAL.
    """
    if resolver is None:
        resolver = DnsServer().lookup
    if isinstance(target, SocketAddr):
        return [target]
    if isinstance(target, str):
        return _resolve_str(target, resolver)
    if (
        isinstance(target, tuple)
        and len(target) == 2
        and isinstance(target[1], int)
        and not isinstance(target[1], bool)
    ):
        host, port = target
        if not 0 <= port <= 0xFFFF:
            raise _invalid("invalid port value")
        if isinstance(host, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            return [SocketAddr(host, port)]
        if isinstance(host, str):
            return [_resolve_host(host, port, resolver)]
        raise TypeError(f"unsupported host: {host!r}")
    if isinstance(target, Iterable):
        addrs = list(target)
        if not all(isinstance(a, SocketAddr) for a in addrs):
            raise TypeError("expected an iterable of SocketAddr")
        return addrs
    raise TypeError(f"cannot convert {target!r} to socket addresses")