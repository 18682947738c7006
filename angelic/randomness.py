"""
Randomness used for fallback frequencies and simulated input.

Every random draw in the pipeline goes through a RandomSource so tests can
seed it or replace it with scripted values.
"""
import math
from typing import Optional

import numpy as np


class RandomSource:
    """Thin wrapper around numpy's Generator."""

    def __init__(self, seed: Optional[int] = None, generator: Optional[np.random.Generator] = None):
        self._rng = generator if generator is not None else np.random.default_rng(seed)

    def random(self) -> float:
        """Uniform float in [0, 1)."""
        return float(self._rng.random())

    def integers(self, low: int, high: int) -> int:
        """Uniform integer in [low, high)."""
        return int(self._rng.integers(low, high))

    def uniform_frequency(self, min_hz: float, max_hz: float) -> int:
        """Whole-Hz frequency drawn uniformly from [min_hz, max_hz]."""
        value = self.random() * (max_hz - min_hz) + min_hz
        return int(min(math.floor(max_hz), max(math.ceil(min_hz), round(value))))

    def noise(self, size: int, high: int) -> np.ndarray:
        """Integer noise floor in [0, high) for synthetic spectra."""
        return self._rng.integers(0, high, size=size)
