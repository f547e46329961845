"""Deterministic random number generation for the simulator."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import TypeVar

_MASK64 = (1 << 64) - 1
_TWO_POW_64 = 18446744073709551616.0

T = TypeVar("T")


def _rotl(x: int, k: int) -> int:
    return ((x << k) | (x >> (64 - k))) & _MASK64


def _splitmix64(state: int) -> tuple[int, int]:
    state = (state + 0x9E3779B97F4A7C15) & _MASK64
    z = state
    z = ((z ^ (z >> 30)) * 0xBF58476D1CE4E5B9) & _MASK64
    z = ((z ^ (z >> 27)) * 0x94D049BB133111EB) & _MASK64
    return state, z ^ (z >> 31)


class Xoshiro256PlusPlus:
    """The xoshiro256++ generator, seeded from a 64-bit value through SplitMix64."""

    __slots__ = ("_s",)

    def __init__(self, seed: int) -> None:
        state = seed & _MASK64
        words = []
        for _ in range(4):
            state, value = _splitmix64(state)
            words.append(value)
        self._s = words

    @classmethod
    def from_state(cls, state: list[int] | tuple[int, ...]) -> Xoshiro256PlusPlus:
        """Build a generator from four raw 64-bit state words."""
        if len(state) != 4:
            raise ValueError("state must hold exactly 4 words")
        words = [w & _MASK64 for w in state]
        if not any(words):
            return cls(0)
        rng = cls.__new__(cls)
        rng._s = words
        return rng

    def next_u64(self) -> int:
        s0, s1, s2, s3 = self._s
        result = (_rotl((s0 + s3) & _MASK64, 23) + s0) & _MASK64
        t = (s1 << 17) & _MASK64
        s2 ^= s0
        s3 ^= s1
        s1 ^= s2
        s0 ^= s3
        s2 ^= t
        s3 = _rotl(s3, 45)
        self._s = [s0, s1, s2, s3]
        return result

    def next_u32(self) -> int:
        return self.next_u64() >> 32

    def copy(self) -> Xoshiro256PlusPlus:
        return Xoshiro256PlusPlus.from_state(self._s)

    def _fill_bytes(self, size: int) -> bytes:
        out = bytearray()
        while size - len(out) >= 8:
            out += self.next_u64().to_bytes(8, "little")
        left = size - len(out)
        if left > 4:
            out += self.next_u64().to_bytes(8, "little")[:left]
        elif left > 0:
            out += self.next_u32().to_bytes(4, "little")[:left]
        return bytes(out)


class NonDeterminismError(RuntimeError):
    """Raised when a replayed run draws random numbers differently."""


@dataclass(frozen=True)
class RandomLog:
    """Fingerprints of every random draw, used for determinism checks."""

    data: bytes

    def __len__(self) -> int:
        return len(self.data)


def _hash_nanos(nanos: int) -> int:
    value = 0
    for byte in (nanos & ((1 << 128) - 1)).to_bytes(16, "little"):
        value ^= byte
    return value


def _bernoulli(rng: Xoshiro256PlusPlus, probability: float) -> bool:
    if probability == 1.0:
        return True
    threshold = int(probability * _TWO_POW_64)
    return rng.next_u64() < threshold


def _check_probability(probability: float) -> None:
    if not 0.0 <= probability <= 1.0:
        raise ValueError(f"probability {probability} is not in [0, 1]")


def _uniform_int(rng: Xoshiro256PlusPlus, low: int, high: int) -> int:
    span = high - low
    if span > 1 << 64:
        raise ValueError("range is too large")
    if span == 1 << 64:
        return low + rng.next_u64()
    threshold = ((1 << 64) - span) % span
    while True:
        product = rng.next_u64() * span
        if product & _MASK64 >= threshold:
            return low + (product >> 64)


def _unit_float(rng: Xoshiro256PlusPlus) -> float:
    return (rng.next_u64() >> 11) * (1.0 / (1 << 53))


class GlobalRng:
    """Shared deterministic RNG with optional draw logging and replay checking.

    ``clock`` returns the elapsed simulated time in nanoseconds, or None
    when no time is available; it is mixed into the logged fingerprints.
    """

    def __init__(self, seed: int, clock: Callable[[], int | None] | None = None) -> None:
        self._seed = seed & _MASK64
        self._rng = Xoshiro256PlusPlus(self._seed)
        self._clock = clock
        self._log: bytearray | None = None
        self._check: bytes | None = None
        self._check_pos = 0
        self._buggify = False
        self._lock = threading.RLock()

    @property
    def seed(self) -> int:
        return self._seed

    def _with(self, draw: Callable[[Xoshiro256PlusPlus], T]) -> T:
        with self._lock:
            result = draw(self._rng)
            self._record()
            return result

    def _record(self) -> None:
        if self._log is None and self._check is None:
            return
        elapsed = self._clock() if self._clock is not None else None
        value = (self._rng.copy().next_u32() & 0xFF) ^ _hash_nanos(elapsed or 0)
        if self._log is not None:
            self._log.append(value)
        if self._check is not None:
            pos = self._check_pos
            if pos >= len(self._check) or self._check[pos] != value:
                if elapsed is not None:
                    raise NonDeterminismError(f"non-determinism detected at {elapsed}ns")
                raise NonDeterminismError("non-determinism detected")
            self._check_pos = pos + 1

    def next_u32(self) -> int:
        return self._with(lambda rng: rng.next_u32())

    def next_u64(self) -> int:
        return self._with(lambda rng: rng.next_u64())

    def fill_bytes(self, size: int) -> bytes:
        """Return ``size`` random bytes."""
        if size < 0:
            raise ValueError("size must not be negative")
        return self._with(lambda rng: rng._fill_bytes(size))

    def gen_bool(self, probability: float) -> bool:
        _check_probability(probability)
        return self._with(lambda rng: _bernoulli(rng, probability))

    def gen_range(self, low, high):
        """Sample uniformly from the half-open range [low, high).

        Integers, floats and timedeltas are supported.
        """
        if not low < high:
            raise ValueError("cannot sample empty range")
        if isinstance(low, timedelta) and isinstance(high, timedelta):
            lo = low // timedelta(microseconds=1)
            hi = high // timedelta(microseconds=1)
            if lo >= hi:
                raise ValueError("cannot sample empty range")
            micros = self._with(lambda rng: _uniform_int(rng, lo, hi))
            return timedelta(microseconds=micros)
        if isinstance(low, int) and isinstance(high, int):
            return self._with(lambda rng: _uniform_int(rng, low, high))
        return self._with(lambda rng: low + (high - low) * _unit_float(rng))

    def random_float(self) -> float:
        """Return a float in [0, 1)."""
        return self._with(_unit_float)

    def enable_log(self) -> None:
        with self._lock:
            self._log = bytearray()

    def enable_check(self, log: RandomLog) -> None:
        with self._lock:
            self._check = bytes(log.data)
            self._check_pos = 0

    def take_log(self) -> RandomLog | None:
        with self._lock:
            if self._log is not None:
                log, self._log = RandomLog(bytes(self._log)), None
                return log
            if self._check is not None:
                log, self._check = RandomLog(self._check), None
                return log
            return None

    def enable_buggify(self) -> None:
        with self._lock:
            self._buggify = True

    def disable_buggify(self) -> None:
        with self._lock:
            self._buggify = False

    def is_buggify_enabled(self) -> bool:
        with self._lock:
            return self._buggify

    def buggify(self) -> bool:
        return self.is_buggify_enabled() and self._with(lambda rng: _bernoulli(rng, 0.25))

    def buggify_with_prob(self, probability: float) -> bool:
        _check_probability(probability)
        return self.is_buggify_enabled() and self._with(
            lambda rng: _bernoulli(rng, probability)
        )