"""
Spectral feature extraction.

This module turns audio into byte-scaled frequency bins and picks
dominant-frequency candidates out of a single bin snapshot. Everything
here is a pure function.

Single Responsibility: Spectrum computation and peak picking.
"""
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .models import DominantFrequency

# Constant for int16 to float32 conversion (2^15)
INT16_FULL_SCALE = 32768.0

# Decibel window mapped onto byte amplitudes 0..255
MIN_DECIBELS = -100.0
MAX_DECIBELS = -30.0

# In-range bins are weighted by this factor when the signal is weak
TARGET_RANGE_BOOST = 1.5

PEAK_MIN_AMPLITUDE = 10
PEAK_NEIGHBOURS = 2
PEAK_EDGE_MARGIN = 5


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def bin_to_frequency(index: int, sample_rate: float, bin_count: int) -> int:
    """Convert a bin index to its frequency in whole Hz."""
    if bin_count <= 0:
        return 0
    return round_half_up(index * (sample_rate / 2) / bin_count)


def frequency_to_bin_range(
    frequency_range: Tuple[float, float],
    sample_rate: float,
    bin_count: int
) -> Tuple[int, int]:
    """Inclusive bin index bounds covering a frequency range."""
    nyquist = sample_rate / 2
    low, high = frequency_range
    lo = int(math.floor(low * bin_count / nyquist))
    hi = int(math.ceil(high * bin_count / nyquist))
    return max(0, lo), min(bin_count - 1, hi)


def compute_magnitude_spectrum(samples: np.ndarray, fft_size: int) -> np.ndarray:
    """
    Compute a normalized magnitude spectrum for the last fft_size samples.

    Args:
        samples: Float samples in [-1.0, 1.0]; zero-padded at the front if short
        fft_size: FFT size (power of two)

    Returns:
        Array of fft_size // 2 linear magnitudes
    """
    if samples.shape[0] < fft_size:
        samples = np.pad(samples, (fft_size - samples.shape[0], 0))
    frame = samples[-fft_size:].astype(np.float64) * np.blackman(fft_size)
    spectrum = np.abs(np.fft.rfft(frame)) / fft_size
    return spectrum[:fft_size // 2]


def smooth_spectrum(
    current: np.ndarray,
    previous: Optional[np.ndarray],
    smoothing: float
) -> np.ndarray:
    """Blend with the previous frame (exponential smoothing over time)."""
    if previous is None or previous.shape != current.shape:
        return current
    return smoothing * previous + (1.0 - smoothing) * current


def magnitudes_to_bytes(
    magnitudes: np.ndarray,
    min_db: float = MIN_DECIBELS,
    max_db: float = MAX_DECIBELS
) -> np.ndarray:
    """Map linear magnitudes onto 0..255 through a decibel window."""
    db = 20 * np.log10(magnitudes + 1e-12)
    scaled = (db - min_db) * (255.0 / (max_db - min_db))
    return np.clip(np.floor(scaled), 0, 255).astype(np.uint8)


def dominant_frequency(bins: Sequence[int], sample_rate: float) -> Tuple[int, int]:
    """
    Find the loudest bin.

    Ties resolve to the lowest index.

    Returns:
        Tuple of (frequency_hz, amplitude); (0, 0) for an empty snapshot
    """
    data = np.asarray(bins)
    if data.size == 0:
        return 0, 0
    index = int(np.argmax(data))
    return bin_to_frequency(index, sample_rate, data.size), int(data[index])


def boosted_dominant_frequency(
    bins: Sequence[int],
    sample_rate: float,
    target_range: Tuple[float, float]
) -> Tuple[int, int]:
    """
    Find the loudest bin, favouring bins inside the target range.

    In-range bins are multiplied by TARGET_RANGE_BOOST and compared against
    the unweighted global maximum. A boosted winner reports its original
    amplitude. Quiet in-band signals are otherwise lost under out-of-band
    noise.
    """
    data = np.asarray(bins)
    if data.size == 0:
        return 0, 0

    index = int(np.argmax(data))
    amplitude = int(data[index])

    if amplitude > 0:
        lo, hi = frequency_to_bin_range(target_range, sample_rate, data.size)
        if lo <= hi:
            boosted = data[lo:hi + 1].astype(np.float64) * TARGET_RANGE_BOOST
            offset = int(np.argmax(boosted))
            if boosted[offset] > amplitude:
                index = lo + offset
                amplitude = int(data[index])

    return bin_to_frequency(index, sample_rate, data.size), amplitude


def top_peaks(bins: Sequence[int], sample_rate: float, n: int = 5) -> List[DominantFrequency]:
    """
    Pick the strongest separated local maxima.

    A bin qualifies when it is louder than PEAK_MIN_AMPLITUDE and strictly
    louder than PEAK_NEIGHBOURS bins on each side. Peaks closer than
    len(bins) // 100 to an already accepted peak are dropped, so within that
    window the first peak found wins even if a later one is louder.

    Returns:
        Up to n DominantFrequency entries, loudest first
    """
    data = np.asarray(bins).astype(np.int32)
    bin_count = data.size
    min_distance = bin_count // 100

    peaks: List[Tuple[int, int]] = []
    for i in range(PEAK_EDGE_MARGIN, bin_count - PEAK_EDGE_MARGIN):
        amp = data[i]
        if amp <= PEAK_MIN_AMPLITUDE:
            continue
        neighbours = np.concatenate((data[i - PEAK_NEIGHBOURS:i], data[i + 1:i + 1 + PEAK_NEIGHBOURS]))
        if not np.all(amp > neighbours):
            continue
        if all(abs(index - i) > min_distance for index, _ in peaks):
            peaks.append((i, int(amp)))

    peaks.sort(key=lambda peak: peak[1], reverse=True)
    top = peaks[:n]
    total = sum(amp for _, amp in top) or 1

    return [
        DominantFrequency(
            frequency_hz=bin_to_frequency(index, sample_rate, bin_count),
            amplitude=amp,
            percentage=round_half_up(amp / total * 100),
        )
        for index, amp in top
    ]


def remap_into_range(frequency_hz: float, min_hz: float, max_hz: float) -> int:
    """
    Fold a raw detection into [min_hz, max_hz] via harmonics.

    Below range: multiply by the smallest integer that reaches min_hz.
    Above range: divide by the smallest integer that reaches max_hz.
    The result is then clamped.
    """
    adjusted = float(frequency_hz)
    if adjusted < min_hz:
        multiplier = math.ceil(min_hz / max(1.0, adjusted))
        adjusted = adjusted * multiplier
    elif adjusted > max_hz:
        divisor = math.ceil(adjusted / max_hz)
        adjusted = adjusted / divisor

    adjusted = max(min_hz, min(max_hz, adjusted))
    return round_half_up(adjusted)
