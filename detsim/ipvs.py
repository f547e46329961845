"""IP Virtual Server: virtual services balanced over real servers."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field


class IpProtocol(enum.Enum):
    TCP = "tcp"
    UDP = "udp"


@dataclass(frozen=True, order=True)
class ServiceAddr:
    """A virtual service address for one protocol."""

    protocol: IpProtocol = field(compare=False)
    addr: str
    _key: str = field(init=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_key", self.protocol.value)

    @classmethod
    def tcp(cls, addr: str) -> ServiceAddr:
        return cls(IpProtocol.TCP, str(addr))

    @classmethod
    def udp(cls, addr: str) -> ServiceAddr:
        return cls(IpProtocol.UDP, str(addr))

    @classmethod
    def from_addr_proto(cls, addr, protocol: IpProtocol) -> ServiceAddr:
        return cls(protocol, str(addr))


class Scheduler(enum.Enum):
    """How connections and datagrams are spread over real servers."""

    ROUND_ROBIN = "round_robin"


@dataclass
class _Service:
    scheduler: Scheduler
    servers: list[str] = field(default_factory=list)
    rr_index: int = 0


class IpVirtualServer:
    """A table of virtual services and their real servers."""

    def __init__(self) -> None:
        self._services: dict[ServiceAddr, _Service] = {}
        self._lock = threading.Lock()

    def _service(self, service_addr: ServiceAddr) -> _Service:
        try:
            return self._services[service_addr]
        except KeyError:
            raise KeyError("service not found") from None

    def add_service(self, service_addr: ServiceAddr, scheduler: Scheduler) -> None:
        with self._lock:
            self._services[service_addr] = _Service(scheduler)

    def del_service(self, service_addr: ServiceAddr) -> None:
        with self._lock:
            self._services.pop(service_addr, None)

    def add_server(self, service_addr: ServiceAddr, server_addr: str) -> None:
        with self._lock:
            self._service(service_addr).servers.append(str(server_addr))

    def del_server(self, service_addr: ServiceAddr, server_addr: str) -> None:
        with self._lock:
            service = self._service(service_addr)
            service.servers = [s for s in service.servers if s != server_addr]

    def get_server(self, service_addr: ServiceAddr) -> str | None:
        """Pick a real server for the service, or None if there is none."""
        with self._lock:
            service = self._services.get(service_addr)
            if service is None:
                return None
            match service.scheduler:
                case Scheduler.ROUND_ROBIN:
                    if not service.servers:
                        return None
                    if service.rr_index >= len(service.servers):
                        service.rr_index = 0
                    server = service.servers[service.rr_index]
                    service.rr_index += 1
                    return server