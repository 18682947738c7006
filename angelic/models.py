"""
Domain records shared by the detection pipeline.

Single Responsibility: Plain immutable data passed between components.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from config_loader import get_config_value


class Sensitivity(str, Enum):
    """Detector sensitivity; selects FFT size and amplitude threshold."""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


# Larger FFT = finer frequency resolution, slower response
FFT_SIZES = {
    Sensitivity.LOW: 8192,
    Sensitivity.MEDIUM: 4096,
    Sensitivity.HIGH: 2048,
}

# Baseline noise floor in byte amplitude units (0-255)
AMPLITUDE_THRESHOLDS = {
    Sensitivity.LOW: 25,
    Sensitivity.MEDIUM: 15,
    Sensitivity.HIGH: 5,
}


@dataclass(frozen=True)
class DetectorConfiguration:
    """Frequency range and sensitivity supplied by the caller."""
    min_frequency_hz: float
    max_frequency_hz: float
    sensitivity: Sensitivity = Sensitivity.MEDIUM

    def __post_init__(self):
        if self.min_frequency_hz >= self.max_frequency_hz:
            raise ValueError(
                f"min_frequency_hz ({self.min_frequency_hz}) must be below "
                f"max_frequency_hz ({self.max_frequency_hz})"
            )
        # Accept plain strings like "Medium"
        object.__setattr__(self, "sensitivity", Sensitivity(self.sensitivity))

    @property
    def fft_size(self) -> int:
        return FFT_SIZES[self.sensitivity]

    @property
    def amplitude_threshold(self) -> int:
        return AMPLITUDE_THRESHOLDS[self.sensitivity]

    @property
    def frequency_range(self) -> Tuple[float, float]:
        return self.min_frequency_hz, self.max_frequency_hz

    def contains(self, frequency_hz: float) -> bool:
        return self.min_frequency_hz <= frequency_hz <= self.max_frequency_hz

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "DetectorConfiguration":
        """
        Build from the ``detection`` section of a config.

        Missing keys fall back to the 432-963 Hz range at Medium sensitivity,
        so partial dictionaries (e.g. from an outer application) are accepted.
        """
        return cls(
            min_frequency_hz=get_config_value(config, "detection.min_frequency_hz", 432),
            max_frequency_hz=get_config_value(config, "detection.max_frequency_hz", 963),
            sensitivity=Sensitivity(get_config_value(config, "detection.sensitivity", Sensitivity.MEDIUM.value)),
        )


@dataclass(frozen=True)
class FrequencySample:
    """Dominant frequency read from one spectrum snapshot."""
    frequency_hz: int
    amplitude: int  # 0..255
    timestamp_ms: float


@dataclass(frozen=True)
class DominantFrequency:
    """One of the strongest local peaks in a snapshot."""
    frequency_hz: int
    amplitude: int
    percentage: int  # share of the top-N peak amplitude, 0-100


@dataclass(frozen=True)
class DetectedFrequencyEvent:
    """A frequency that stayed current for at least the minimum duration."""
    frequency_hz: int
    duration_seconds: float
    timestamp_ms: float  # when the run started


@dataclass(frozen=True)
class IterationResult:
    """Frequency resolved by one recording iteration."""
    iteration_index: int
    frequency_hz: int


@dataclass(frozen=True)
class AngelicReference:
    """Reference tone from the static table."""
    frequency_hz: int
    description: str


@dataclass(frozen=True)
class IterationAnnotation:
    """Diagnostic notes for one iteration; never changes the frequency."""
    iteration_index: int
    frequency_hz: int
    is_angelic: bool
    nearest_reference: AngelicReference
    difference_hz: float
    match_percentage: float
    fallback_reason: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return self.fallback_reason is not None


@dataclass(frozen=True)
class BatchResult:
    """Outcome of a finished (completed or timed out) recording loop."""
    results: List[IterationResult]
    average_frequency_hz: Optional[int]
    is_angelic: bool
    closest_reference: Optional[AngelicReference]
    timed_out: bool = False
