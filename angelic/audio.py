"""
Audio acquisition abstraction.

A SpectrumSource owns the audio input (an ALSA ``arecord`` capture process
or a synthetic generator) and hands out byte-scaled frequency snapshots on
demand.

Single Responsibility: Audio input and spectrum snapshots.
"""
import asyncio
import contextlib
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

import numpy as np
from scipy.signal import butter, lfilter, lfilter_zi

from logger import get_logger

from .classifier import ANGELIC_FREQUENCIES
from .features import (
    INT16_FULL_SCALE,
    compute_magnitude_spectrum,
    magnitudes_to_bytes,
    round_half_up,
    smooth_spectrum,
)
from .models import DetectorConfiguration
from .randomness import RandomSource

log = get_logger(__name__)


class AcquisitionFailure(str, Enum):
    """Why an input device could not be opened."""
    PERMISSION_DENIED = "PermissionDenied"
    NO_DEVICE = "NoDevice"
    HARDWARE_BUSY = "HardwareBusy"
    UNKNOWN = "Unknown"


class AcquisitionError(RuntimeError):
    """Raised by SpectrumSource.open() when no capture attempt succeeded."""

    def __init__(self, message: str, reason: AcquisitionFailure = AcquisitionFailure.UNKNOWN):
        super().__init__(message)
        self.reason = reason


class AnalysisError(RuntimeError):
    """Raised when a snapshot cannot be read, even after re-acquisition."""


# arecord stderr fragments, checked in order
ERROR_HINTS: Tuple[Tuple[str, AcquisitionFailure], ...] = (
    ("Permission denied", AcquisitionFailure.PERMISSION_DENIED),
    ("Operation not permitted", AcquisitionFailure.PERMISSION_DENIED),
    ("Device or resource busy", AcquisitionFailure.HARDWARE_BUSY),
    ("No such file or directory", AcquisitionFailure.NO_DEVICE),
    ("No such device", AcquisitionFailure.NO_DEVICE),
    ("cannot find card", AcquisitionFailure.NO_DEVICE),
    ("Unknown PCM", AcquisitionFailure.NO_DEVICE),
)


def classify_acquisition_error(error_text: str) -> AcquisitionFailure:
    """Map platform error text onto an AcquisitionFailure."""
    for fragment, reason in ERROR_HINTS:
        if fragment in error_text:
            return reason
    return AcquisitionFailure.UNKNOWN


@dataclass(frozen=True)
class CaptureConstraints:
    """One way of asking for the microphone."""
    label: str
    device: Optional[str]  # None = ALSA default device
    sample_rate: int
    processing: bool  # DC removal, high-pass, auto gain


def build_constraint_attempts(audio_config: dict) -> List[CaptureConstraints]:
    """
    Capture requests to try, most demanding first.

    1. configured device and rate with input processing
    2. plain request on the default device
    3. configured device at the fixed fallback rate
    """
    return [
        CaptureConstraints("full", audio_config["device"], audio_config["sample_rate"], True),
        CaptureConstraints("plain", None, audio_config["sample_rate"], False),
        CaptureConstraints("fixed-rate", audio_config["device"], audio_config["fallback_sample_rate"], False),
    ]


class InputProcessor:
    """
    Input conditioning applied to captured chunks.

    Removes DC offset (exponential moving average), high-pass filters and
    applies a slow automatic gain.
    """

    DC_ALPHA = 0.001
    TARGET_RMS = 0.1
    MAX_GAIN = 10.0
    GAIN_SMOOTHING = 0.95

    def __init__(self, sample_rate: int, high_pass_hz: float = 20, dc_offset_removal: bool = True,
                 auto_gain: bool = True):
        self.dc_offset_removal = dc_offset_removal
        self.auto_gain = auto_gain
        self._dc_offset_ema = 0.0
        self._gain = 1.0

        self._b: Optional[np.ndarray] = None
        self._a: Optional[np.ndarray] = None
        self._zi: Optional[np.ndarray] = None
        if high_pass_hz and 0 < high_pass_hz < sample_rate / 2:
            self._b, self._a = butter(1, high_pass_hz, btype="highpass", fs=sample_rate)
            self._zi = lfilter_zi(self._b, self._a) * 0.0

    def process(self, samples: np.ndarray) -> np.ndarray:
        out = samples
        if self.dc_offset_removal:
            self._dc_offset_ema = (
                self.DC_ALPHA * float(np.mean(out)) +
                (1 - self.DC_ALPHA) * self._dc_offset_ema
            )
            out = out - self._dc_offset_ema

        if self._b is not None:
            out, self._zi = lfilter(self._b, self._a, out, zi=self._zi)

        if self.auto_gain:
            rms = float(np.sqrt(np.mean(out ** 2))) if out.size else 0.0
            if rms > 1e-6:
                wanted = min(self.MAX_GAIN, max(1.0, self.TARGET_RMS / rms))
                self._gain = self.GAIN_SMOOTHING * self._gain + (1 - self.GAIN_SMOOTHING) * wanted
            out = np.clip(out * self._gain, -1.0, 1.0)

        return out.astype(np.float32)


class SpectrumAnalyser:
    """
    Rolling FFT analyser over the most recent fft_size samples.

    Snapshots use a Blackman window, exponential time smoothing and a
    -100..-30 dB window mapped onto 0..255.
    """

    def __init__(self, fft_size: int, smoothing: float = 0.8):
        self.fft_size = fft_size
        self.smoothing = smoothing
        self._buffer = np.zeros(fft_size, dtype=np.float32)
        self._previous: Optional[np.ndarray] = None
        self._failure: Optional[str] = None

    @property
    def bin_count(self) -> int:
        return self.fft_size // 2

    def push(self, samples: np.ndarray) -> None:
        """Append samples, keeping the last fft_size."""
        if samples.size >= self.fft_size:
            self._buffer = samples[-self.fft_size:].astype(np.float32)
        else:
            self._buffer = np.concatenate((self._buffer[samples.size:], samples.astype(np.float32)))

    def mark_failed(self, reason: str) -> None:
        self._failure = reason

    def get_byte_frequency_data(self) -> np.ndarray:
        if self._failure is not None:
            raise AnalysisError(self._failure)
        magnitudes = compute_magnitude_spectrum(self._buffer, self.fft_size)
        magnitudes = smooth_spectrum(magnitudes, self._previous, self.smoothing)
        self._previous = magnitudes
        return magnitudes_to_bytes(magnitudes)


class SpectrumSource(ABC):
    """
    Interface for anything that produces frequency snapshots.

    Only one session should hold a source open at a time.
    """

    simulated = False

    def __init__(self, settings: DetectorConfiguration):
        self.settings = settings

    @property
    def fft_size(self) -> int:
        return self.settings.fft_size

    @property
    @abstractmethod
    def sample_rate(self) -> int:
        """Sample rate the snapshots were computed at."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True between a successful open() and close()."""

    @abstractmethod
    async def open(self) -> None:
        """Acquire the input. Raises AcquisitionError."""

    @abstractmethod
    def snapshot(self) -> np.ndarray:
        """Return fft_size // 2 amplitudes in 0..255. Raises AnalysisError."""

    @abstractmethod
    async def close(self) -> None:
        """Release the input. Safe to call repeatedly."""


async def _stop_process(process: asyncio.subprocess.Process, timeout: float = 0.5) -> None:
    """Terminate a capture process, killing it if it does not exit in time."""
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()


class MicrophoneSpectrumSource(SpectrumSource):
    """
    Microphone input via ALSA ``arecord``.

    The capture process is started with asyncio and its stdout is pumped
    by a background task into a SpectrumAnalyser.
    """

    BYTES_PER_SAMPLE = 2

    def __init__(self, config: dict, settings: DetectorConfiguration):
        super().__init__(settings)
        self.config = config
        self.audio_config = config["audio"]
        self.channels = self.audio_config["channels"]
        self.chunk_duration = self.audio_config["chunk_duration"]

        self._process: Optional[asyncio.subprocess.Process] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._analyser: Optional[SpectrumAnalyser] = None
        self._processor: Optional[InputProcessor] = None
        self._constraints: Optional[CaptureConstraints] = None

    @property
    def sample_rate(self) -> int:
        if self._constraints is not None:
            return self._constraints.sample_rate
        return self.audio_config["sample_rate"]

    @property
    def is_open(self) -> bool:
        return self._process is not None

    @property
    def constraints(self) -> Optional[CaptureConstraints]:
        """Capture request that succeeded, if open."""
        return self._constraints

    def _build_command(self, constraints: CaptureConstraints) -> List[str]:
        cmd = ["arecord"]
        if constraints.device:
            cmd += ["-D", constraints.device]
        cmd += [
            "-f", self.audio_config["sample_format"],
            "-r", str(constraints.sample_rate),
            "-c", str(self.channels),
            "-q",
            "-t", "raw"
        ]
        return cmd

    async def open(self) -> None:
        if self.is_open:
            return

        errors = []
        for constraints in build_constraint_attempts(self.audio_config):
            cmd = self._build_command(constraints)
            log.debug(f"Trying microphone access with constraints '{constraints.label}': {' '.join(cmd)}")
            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE
                )
            except FileNotFoundError:
                raise AcquisitionError(
                    "arecord command not found. Install alsa-utils: sudo apt-get install alsa-utils",
                    AcquisitionFailure.NO_DEVICE
                )
            except PermissionError as e:
                raise AcquisitionError(f"Cannot execute arecord: {e}", AcquisitionFailure.PERMISSION_DENIED)

            try:
                # Give process a moment to initialize
                await asyncio.sleep(self.audio_config["startup_grace_sec"])
                stderr_msg = ""
                if process.returncode is not None and process.stderr is not None:
                    stderr_msg = (await process.stderr.read()).decode(errors="ignore").strip()
            except BaseException:
                # Cancelled mid-open: nothing else knows about this child
                await _stop_process(process)
                raise

            if process.returncode is not None:
                log.warning(f"Failed with constraints '{constraints.label}': {stderr_msg or 'process exited'}")
                errors.append(stderr_msg)
                continue

            self._process = process
            self._constraints = constraints
            self._processor = InputProcessor(
                constraints.sample_rate,
                high_pass_hz=self.audio_config["high_pass_filter_hz"] if constraints.processing else 0,
                dc_offset_removal=constraints.processing and self.audio_config["dc_offset_removal"],
                auto_gain=constraints.processing and self.audio_config["auto_gain"],
            )
            self._analyser = self._new_analyser()
            self._pump_task = asyncio.create_task(self._pump())
            log.info(
                f"Microphone access granted with '{constraints.label}' constraints "
                f"({constraints.device or 'default'} @ {constraints.sample_rate} Hz, FFT size {self.fft_size})"
            )
            return

        error_text = " | ".join(e for e in errors if e)
        reason = AcquisitionFailure.UNKNOWN
        for message in errors:
            reason = classify_acquisition_error(message)
            if reason is not AcquisitionFailure.UNKNOWN:
                break
        raise AcquisitionError(
            f"All microphone access attempts failed. Device: {self.audio_config['device']}. Error: {error_text}",
            reason
        )

    def _new_analyser(self) -> SpectrumAnalyser:
        return SpectrumAnalyser(self.fft_size, self.audio_config["smoothing_time_constant"])

    async def _pump(self) -> None:
        """Feed captured PCM into whichever analyser is current."""
        chunk_samples = int(self.sample_rate * self.chunk_duration)
        chunk_bytes = chunk_samples * self.BYTES_PER_SAMPLE * self.channels
        process = self._process
        try:
            while True:
                data = await process.stdout.readexactly(chunk_bytes)
                samples = np.frombuffer(data, dtype="<i2").astype(np.float32) / INT16_FULL_SCALE
                if self.channels > 1:
                    samples = samples.reshape(-1, self.channels).mean(axis=1)
                samples = self._processor.process(samples)
                if self._analyser is not None:
                    self._analyser.push(samples)
        except asyncio.IncompleteReadError:
            log.warning("Audio capture stream ended")
            if self._analyser is not None:
                self._analyser.mark_failed("capture stream ended")

    def _reacquire(self) -> None:
        """Bind a fresh analyser to the running capture process."""
        if self._process is None or self._process.returncode is not None:
            raise AnalysisError("Cannot recover - capture process is not running")
        if self._pump_task is None or self._pump_task.done():
            raise AnalysisError("Cannot recover - capture stream is no longer being read")
        log.info("Recreating audio analyser on the existing capture")
        self._analyser = self._new_analyser()

    def snapshot(self) -> np.ndarray:
        if self._analyser is None:
            raise AnalysisError("Microphone source is not open")
        try:
            return self._analyser.get_byte_frequency_data()
        except AnalysisError as e:
            log.warning(f"Error getting frequency data from analyser: {e}")
            self._reacquire()
            return self._analyser.get_byte_frequency_data()

    async def close(self) -> None:
        if self._pump_task is not None:
            self._pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump_task
            self._pump_task = None

        process = self._process
        self._process = None
        self._analyser = None
        self._processor = None
        self._constraints = None
        if process is None:
            return

        await _stop_process(process)
        log.info("Microphone released")


class SimulatedSpectrumSource(SpectrumSource):
    """
    Synthetic spectra for running the pipeline without a microphone.

    Slow sinusoidal envelopes over wall-clock time decide what kind of
    signal to produce: a tone near an angelic frequency, an in-range drift,
    near silence, or an out-of-range tone.
    """

    simulated = True
    NOISE_FLOOR = 4

    def __init__(self, settings: DetectorConfiguration, sample_rate: int = 44100,
                 rng: Optional[RandomSource] = None, clock: Callable[[], float] = time.time):
        super().__init__(settings)
        self._sample_rate = sample_rate
        self.rng = rng or RandomSource()
        self.clock = clock
        self._open = False

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        self._open = True
        log.info("Using simulation mode - no microphone needed")

    def synthesize_peak(self) -> Tuple[int, float]:
        """Pick the (frequency_hz, amplitude) of the current synthetic tone."""
        now = self.clock() * 1000.0
        min_hz, max_hz = self.settings.frequency_range
        pattern = ((math.sin(now / 5000) * 0.5 + 0.5) + (math.sin(now / 3700) * 0.5 + 0.5)) / 2

        if pattern > 0.6:
            index = int((now / 5000) % len(ANGELIC_FREQUENCIES))
            target = ANGELIC_FREQUENCIES[index].frequency_hz
            frequency = round_half_up(target + math.sin(now / 500) * 6)
            amplitude = 90 + math.sin(now / 800) * 20 + 10
        elif pattern > 0.4:
            span = max_hz - min_hz
            drift = (math.sin(now / 6000) * 0.5 + 0.5) * span
            wobble = math.sin(now / 300) * 15 + math.cos(now / 700) * 8
            frequency = round_half_up(min_hz + drift + wobble)
            amplitude = 60 + math.sin(now / 1500) * 20 + math.floor(self.rng.random() * 20 * pattern)
        elif pattern < 0.2:
            frequency = 0
            amplitude = 5 + math.floor(self.rng.random() * 15)
        else:
            jump = math.floor(now / 1500)
            spread = math.sin(jump * 2.3) * 350 + math.cos(now / 800) * 50
            base = min_hz - 180 if math.sin(jump * 1.3) > 0 else max_hz + 120
            frequency = round_half_up(base + spread)
            amplitude = 35 + math.sin(now / 1200) * 15 + math.floor(self.rng.random() * 25 * (1 - pattern))

        return frequency, amplitude

    def render_bins(self, frequency_hz: float, amplitude: float) -> np.ndarray:
        """Noise floor plus a narrow peak at the given frequency."""
        bin_count = self.fft_size // 2
        bins = self.rng.noise(bin_count, self.NOISE_FLOOR).astype(np.float64)
        nyquist = self._sample_rate / 2
        index = round_half_up(max(0.0, frequency_hz) * bin_count / nyquist)
        index = min(bin_count - 1, index)
        for offset, weight in ((-2, 0.3), (-1, 0.6), (1, 0.6), (2, 0.3)):
            neighbour = index + offset
            if 0 <= neighbour < bin_count:
                bins[neighbour] = max(bins[neighbour], amplitude * weight)
        bins[index] = amplitude
        return np.clip(np.round(bins), 0, 255).astype(np.uint8)

    def snapshot(self) -> np.ndarray:
        if not self._open:
            raise AnalysisError("Simulated source is not open")
        frequency, amplitude = self.synthesize_peak()
        return self.render_bins(frequency, amplitude)

    async def close(self) -> None:
        self._open = False


def create_spectrum_source(
    config: dict,
    settings: DetectorConfiguration,
    simulate: bool = False,
    rng: Optional[RandomSource] = None,
    clock: Callable[[], float] = time.time
) -> SpectrumSource:
    """Factory for the configured input type."""
    if simulate:
        return SimulatedSpectrumSource(
            settings,
            sample_rate=config["audio"]["simulation_sample_rate"],
            rng=rng,
            clock=clock,
        )
    return MicrophoneSpectrumSource(config, settings)
