"""
Pytest configuration and shared fixtures.

This module provides:
- Common fixtures for test configuration
- A scripted SpectrumSource and source factory
- Helper functions for building spectrum snapshots
"""
import sys
from pathlib import Path
from typing import Dict, List, Optional

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import config_loader
import pytest
import numpy as np

from angelic.audio import AnalysisError, SpectrumSource
from angelic.models import DetectorConfiguration
from angelic.randomness import RandomSource

# Test constants
# With sample rate = 2 * bin count, bin index == frequency in Hz
TEST_BIN_COUNT = 2048
TEST_SAMPLE_RATE = TEST_BIN_COUNT * 2


@pytest.fixture
def project_root_path():
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config():
    """Default configuration with timings shortened for tests."""
    cfg = config_loader.get_default_config()
    cfg["audio"]["startup_grace_sec"] = 0.0
    cfg["detection"]["frame_interval_sec"] = 0.001
    cfg["detection"]["resetup_delay_sec"] = 0.0
    cfg["recording_loop"].update({
        "iteration_window_sec": 0.02,
        "iteration_timeout_sec": 1.0,
        "simulation_window_sec": 0.01,
        "watchdog_timeout_sec": 5.0,
    })
    return cfg


@pytest.fixture
def settings(config):
    """Detector settings for the default 432-963 Hz range."""
    return DetectorConfiguration.from_config(config)


@pytest.fixture
def clock():
    return FakeClock()


# Helper classes and functions

class FakeClock:
    """Manually advanced wall clock (seconds)."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class ScriptedRandom(RandomSource):
    """RandomSource whose random() cycles through fixed values."""

    def __init__(self, values: List[float]):
        super().__init__(seed=0)
        self.values = list(values)
        self._index = 0

    def random(self) -> float:
        value = self.values[self._index % len(self.values)]
        self._index += 1
        return value


def make_bins(peaks: Optional[Dict[int, int]] = None, bin_count: int = TEST_BIN_COUNT) -> np.ndarray:
    """
    Build a snapshot of zeros with the given {bin_index: amplitude} peaks.

    Use with TEST_SAMPLE_RATE so that bin index equals frequency.
    """
    bins = np.zeros(bin_count, dtype=np.uint8)
    for index, amplitude in (peaks or {}).items():
        bins[index] = amplitude
    return bins


class FakeSpectrumSource(SpectrumSource):
    """
    SpectrumSource that replays scripted frames.

    Each frame is an array or an exception to raise. The last frame repeats
    once the script runs out; ``frame`` can be reassigned to change it.
    """

    def __init__(self, settings: DetectorConfiguration, frames=None, simulated: bool = False,
                 sample_rate: int = TEST_SAMPLE_RATE, open_error: Optional[Exception] = None):
        super().__init__(settings)
        self.frames = list(frames) if frames is not None else [make_bins()]
        self.simulated = simulated
        self.open_error = open_error
        self._sample_rate = sample_rate
        self._open = False
        self._index = 0
        self.open_calls = 0
        self.close_calls = 0
        self.snapshot_calls = 0

    @property
    def frame(self):
        return self.frames[-1]

    @frame.setter
    def frame(self, value):
        self.frames = [value]
        self._index = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        self.open_calls += 1
        if self.open_error is not None:
            raise self.open_error
        self._open = True

    def snapshot(self) -> np.ndarray:
        self.snapshot_calls += 1
        if not self._open:
            raise AnalysisError("fake source is not open")
        frame = self.frames[min(self._index, len(self.frames) - 1)]
        self._index += 1
        if isinstance(frame, Exception):
            raise frame
        return frame

    async def close(self) -> None:
        self.close_calls += 1
        self._open = False


class FakeSourceFactory:
    """Stands in for create_spectrum_source; records every call."""

    def __init__(self, frames=None, open_error: Optional[Exception] = None):
        self.frames = frames
        self.open_error = open_error
        self.calls: List[dict] = []
        self.sources: List[FakeSpectrumSource] = []

    def __call__(self, config, settings, simulate=False, rng=None, clock=None):
        self.calls.append({"simulate": simulate, "settings": settings})
        source = FakeSpectrumSource(settings, frames=self.frames, simulated=simulate,
                                    open_error=self.open_error)
        self.sources.append(source)
        return source
