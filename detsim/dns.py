"""The cluster-wide DNS server."""

from __future__ import annotations

import ipaddress

IpAddr = ipaddress.IPv4Address | ipaddress.IPv6Address


class DnsServer:
    """Maps host names to IP addresses; knows ``localhost`` from the start."""

    def __init__(self) -> None:
        self._records: dict[str, IpAddr] = {
            "localhost": ipaddress.IPv4Address("127.0.0.1"),
        }

    def add(self, name: str, ip: str | IpAddr) -> None:
        self._records[name] = ipaddress.ip_address(ip)

    def lookup(self, name: str) -> IpAddr | None:
        return self._records.get(name)

    def __repr__(self) -> str:
        return f"DnsServer(records={self._records!r})"