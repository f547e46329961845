"""Simulation configuration, read from and written to TOML."""

from __future__ import annotations

import hashlib
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import tomli_w


def _default_send_latency() -> tuple[timedelta, timedelta]:
    return (timedelta(milliseconds=1), timedelta(milliseconds=10))


def _duration_to_toml(d: timedelta) -> dict[str, int]:
    micros = d // timedelta(microseconds=1)
    secs, rest = divmod(micros, 1_000_000)
    return {"secs": secs, "nanos": rest * 1000}


def _duration_from_toml(value: Any) -> timedelta:
    if not isinstance(value, dict):
        raise ValueError("duration must be a table with `secs` and `nanos`")
    try:
        secs, nanos = value["secs"], value["nanos"]
    except KeyError as e:
        raise ValueError(f"duration is missing field {e.args[0]!r}") from None
    if not all(isinstance(v, int) and not isinstance(v, bool) and v >= 0 for v in (secs, nanos)):
        raise ValueError("duration fields must be non-negative integers")
    return timedelta(seconds=secs, microseconds=nanos // 1000)


@dataclass
class NetConfig:
    """Network configuration."""

    packet_loss_rate: float = 0.0
    send_latency: tuple[timedelta, timedelta] = field(default_factory=_default_send_latency)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> NetConfig:
        config = cls()
        if "packet_loss_rate" in data:
            rate = data["packet_loss_rate"]
            if isinstance(rate, bool) or not isinstance(rate, (int, float)):
                raise ValueError("packet_loss_rate must be a number")
            config.packet_loss_rate = float(rate)
        if "send_latency" in data:
            latency = data["send_latency"]
            if not isinstance(latency, dict) or not {"start", "end"} <= latency.keys():
                raise ValueError("send_latency must be a table with `start` and `end`")
            config.send_latency = (
                _duration_from_toml(latency["start"]),
                _duration_from_toml(latency["end"]),
            )
        return config

    def _to_dict(self) -> dict[str, Any]:
        start, end = self.send_latency
        return {
            "packet_loss_rate": float(self.packet_loss_rate),
            "send_latency": {
                "start": _duration_to_toml(start),
                "end": _duration_to_toml(end),
            },
        }


@dataclass
class TcpConfig:
    """TCP configuration; it holds no options yet."""


def _table(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a table")
    return value


@dataclass
class Config:
    """Simulation configuration."""

    net: NetConfig = field(default_factory=NetConfig)
    tcp: TcpConfig = field(default_factory=TcpConfig)

    @classmethod
    def from_toml(cls, text: str) -> Config:
        """Parse a configuration; missing sections and fields take their defaults."""
        data = tomllib.loads(text)
        net = NetConfig._from_dict(_table(data, "net"))
        _table(data, "tcp")
        return cls(net=net, tcp=TcpConfig())

    def to_toml(self) -> str:
        return tomli_w.dumps({"net": self.net._to_dict(), "tcp": {}})

    def hash(self) -> int:
        """A stable 64-bit hash of this configuration."""
        digest = hashlib.blake2b(self.to_toml().encode(), digest_size=8).digest()
        return int.from_bytes(digest, "big")

    def __str__(self) -> str:
        return self.to_toml()