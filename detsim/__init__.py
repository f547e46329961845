"""Deterministic simulation of distributed systems: randomness, fault injection, network, TCP and storage."""

__version__ = "0.1.0"

__all__ = [
    "addr",
    "buggify",
    "config",
    "dns",
    "fs",
    "ipvs",
    "netsim",
    "network",
    "rand",
    "tcp",
]