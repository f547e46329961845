"""Cooperate with the simulator to inject failures on purpose."""

from __future__ import annotations

import logging

from .rand import GlobalRng

_log = logging.getLogger(__name__)


def buggify(rng: GlobalRng) -> bool:
    """Return True with a probability of 25% if buggify is enabled."""
    return rng.buggify()


def buggify_with_prob(rng: GlobalRng, probability: float) -> bool:
    """Return True with the given probability if buggify is enabled."""
    return rng.buggify_with_prob(probability)


def enable(rng: GlobalRng) -> None:
    _log.info("buggify enabled")
    rng.enable_buggify()


def disable(rng: GlobalRng) -> None:
    _log.info("buggify disabled")
    rng.disable_buggify()


def is_enabled(rng: GlobalRng) -> bool:
    return rng.is_buggify_enabled()