"""Exponential backoff for polling slow-changing external status."""

from __future__ import annotations

import math
from typing import Final

DEFAULT_MULTIPLIER: Final[float] = 2.0


class Backoff:
    """Capped exponential backoff interval expressed in seconds."""

    __slots__ = ("_initial", "_maximum", "_multiplier", "_current")

    def __init__(
        self,
        initial: float,
        maximum: float,
        *,
        multiplier: float = DEFAULT_MULTIPLIER,
    ) -> None:
        if not math.isfinite(initial) or initial <= 0:
            raise ValueError("initial must be a finite number > 0")
        if not math.isfinite(maximum) or maximum < initial:
            raise ValueError("maximum must be a finite number >= initial")
        if not math.isfinite(multiplier) or multiplier < 1.0:
            raise ValueError("multiplier must be a finite number >= 1.0")

        self._initial = float(initial)
        self._maximum = float(maximum)
        self._multiplier = float(multiplier)
        self._current = self._initial

    @property
    def initial(self) -> float:
        return self._initial

    @property
    def maximum(self) -> float:
        return self._maximum

    @property
    def multiplier(self) -> float:
        return self._multiplier

    @property
    def current(self) -> float:
        """Interval to wait before the next poll."""
        return self._current

    def next(self) -> float:
        """Grow the interval by the multiplier, capped at ``maximum``."""
        self._current = min(self._current * self._multiplier, self._maximum)
        return self._current

    def reset(self) -> None:
        self._current = self._initial

    def restore(self, current: float) -> None:
        """Resume from a persisted interval, clamped to ``[initial, maximum]``."""
        if not math.isfinite(current):
            raise ValueError("current must be finite")
        self._current = min(max(float(current), self._initial), self._maximum)

    def __repr__(self) -> str:
        return (
            f"Backoff(initial={self._initial}, maximum={self._maximum}, "
            f"multiplier={self._multiplier}, current={self._current})"
        )


__all__ = ["DEFAULT_MULTIPLIER", "Backoff"]
