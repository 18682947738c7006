"""
Continuous frequency detection.

Single Responsibility: Per-frame polling state machine that tracks the
current dominant frequency and emits an event whenever a stable run ends.
"""
import asyncio
import contextlib
import math
import time
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from logger import get_logger

from .audio import AcquisitionError, AnalysisError, SpectrumSource
from .classifier import is_angelic
from .features import boosted_dominant_frequency, dominant_frequency, round_half_up, top_peaks
from .models import DetectedFrequencyEvent, DetectorConfiguration, DominantFrequency, FrequencySample
from .randomness import RandomSource

log = get_logger(__name__)

STATUS_INACTIVE = "Detector inactive"
STATUS_MICROPHONE = "Microphone Active - Make some noise!"
STATUS_SIMULATION = "Simulation Mode - Detecting..."
STATUS_ANGELIC = "Angelic frequency detected!"
STATUS_SIMULATION_ANGELIC = "Simulation: Angelic frequency detected!"

# Frames at or below this peak amplitude count as silent
SILENCE_LEVEL = 2
SILENCE_LOG_EVERY = 100
MIN_ADAPTIVE_THRESHOLD = 3
ADAPTIVE_THRESHOLD_RATIO = 0.9


class SessionState(str, Enum):
    INACTIVE = "Inactive"
    ACTIVE = "Active"


def adaptive_threshold(base_threshold: float, observed_max: int) -> float:
    """
    Lower the noise floor for quiet input so something still surfaces.

    Only applies when the strongest bin is nonzero but below the baseline.
    """
    if 0 < observed_max < base_threshold:
        return max(MIN_ADAPTIVE_THRESHOLD, observed_max * ADAPTIVE_THRESHOLD_RATIO)
    return base_threshold


class DetectionSession:
    """
    Polls a SpectrumSource once per frame while active.

    Frequencies above the amplitude threshold and inside the configured
    range become "current". When the current frequency moves by more than
    the change tolerance, the previous run is closed out and reported as a
    DetectedFrequencyEvent if it lasted long enough.
    """

    def __init__(
        self,
        config: dict,
        settings: DetectorConfiguration,
        source: SpectrumSource,
        rng: Optional[RandomSource] = None,
        clock: Callable[[], float] = time.time,
        on_event: Optional[Callable[[DetectedFrequencyEvent], None]] = None
    ):
        """
        Initialize detection session.

        Args:
            config: Configuration dictionary
            settings: Frequency range and sensitivity
            source: Spectrum source to poll (owned while active)
            rng: Random source for simulated placeholder values
            clock: Wall clock in seconds
            on_event: Called with each emitted DetectedFrequencyEvent
        """
        self.config = config
        self.settings = settings
        self.source = source
        self.rng = rng or RandomSource()
        self.clock = clock
        self.on_event = on_event

        detection = config["detection"]
        self.frame_interval = detection["frame_interval_sec"]
        self.min_event_duration = detection["min_event_duration_sec"]
        self.change_tolerance = detection["change_tolerance_hz"]
        self.resetup_delay = detection["resetup_delay_sec"]

        # Published state
        self.state = SessionState.INACTIVE
        self.current_frequency = 0
        self.has_angelic_frequency = False
        self.detection_status = STATUS_INACTIVE
        self.detected_frequencies: List[DetectedFrequencyEvent] = []
        self.spectrum: Optional[np.ndarray] = None
        self.dominant_frequencies: List[DominantFrequency] = []
        self.last_sample: Optional[FrequencySample] = None

        # Run tracking
        self._run_frequency = 0
        self._run_start_ms: Optional[float] = None

        # Recovery
        self._silent_frames = 0
        self._needs_resetup = False
        self._resetup_attempted = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    @property
    def simulated(self) -> bool:
        return self.source.simulated

    def _now_ms(self) -> float:
        return self.clock() * 1000.0

    async def activate(self) -> bool:
        """
        Open the source and start polling.

        Returns:
            False if the input could not be opened
        """
        if self.is_active:
            return True

        try:
            await self.source.open()
        except AcquisitionError as e:
            log.error(f"Microphone access failed ({e.reason.value}): {e}")
            self.detection_status = f"Microphone unavailable ({e.reason.value})"
            return False

        self.state = SessionState.ACTIVE
        self.detection_status = STATUS_SIMULATION if self.simulated else STATUS_MICROPHONE
        self._resetup_attempted = False
        self._needs_resetup = False
        self._silent_frames = 0
        self._task = asyncio.create_task(self._run())
        log.info(f"Detection session started ({'simulation' if self.simulated else 'microphone'})")
        return True

    async def _run(self) -> None:
        while self.is_active:
            self.tick()
            if self._needs_resetup:
                await self._resetup()
            await asyncio.sleep(self.frame_interval)

    async def _resetup(self) -> None:
        """One automatic re-setup per failure streak."""
        self._needs_resetup = False
        self._resetup_attempted = True
        log.warning("Attempting to recover from audio analysis error...")
        await asyncio.sleep(self.resetup_delay)
        await self.source.close()
        try:
            await self.source.open()
            log.info("Audio system recovered successfully")
        except AcquisitionError as e:
            log.error(f"Failed to recover audio system: {e}")

    def tick(self) -> Optional[DetectedFrequencyEvent]:
        """
        Process one frame.

        Returns:
            DetectedFrequencyEvent if a run just ended, None otherwise
        """
        if not self.is_active:
            return None

        try:
            bins = self.source.snapshot()
        except AnalysisError as e:
            log.error(f"Error during audio analysis: {e}")
            if not self.simulated and not self._resetup_attempted:
                self._needs_resetup = True
            return None
        self._resetup_attempted = False

        sample_rate = self.source.sample_rate
        self.spectrum = bins
        observed_max = int(bins.max()) if bins.size else 0
        if not self.simulated:
            self._track_silence(observed_max)

        if self.simulated:
            frequency, amplitude = dominant_frequency(bins, sample_rate)
        else:
            frequency, amplitude = boosted_dominant_frequency(bins, sample_rate, self.settings.frequency_range)
        self.last_sample = FrequencySample(frequency, amplitude, self._now_ms())

        self.dominant_frequencies = [
            peak for peak in top_peaks(bins, sample_rate)
            if self.settings.contains(peak.frequency_hz)
        ]

        threshold = self.settings.amplitude_threshold
        if not self.simulated:
            threshold = adaptive_threshold(threshold, observed_max)
            if threshold != self.settings.amplitude_threshold:
                log.debug(f"Adapting sensitivity threshold to {threshold:.2f} based on input level {observed_max}")

        if amplitude > threshold and self.settings.contains(frequency):
            return self._update_current(frequency)

        self._show_no_detection()
        return None

    def _update_current(self, frequency: int) -> Optional[DetectedFrequencyEvent]:
        self.current_frequency = frequency
        self.has_angelic_frequency = is_angelic(frequency)
        if self.has_angelic_frequency:
            self.detection_status = STATUS_SIMULATION_ANGELIC if self.simulated else STATUS_ANGELIC
        else:
            self.detection_status = STATUS_SIMULATION if self.simulated else STATUS_MICROPHONE

        if abs(frequency - self._run_frequency) <= self.change_tolerance:
            return None

        now = self._now_ms()
        event = self._close_run(now)
        self._run_frequency = frequency
        self._run_start_ms = now
        return event

    def _show_no_detection(self) -> None:
        self.has_angelic_frequency = False
        if self.simulated:
            # Never show a flat 0 Hz while simulating
            min_hz, max_hz = self.settings.frequency_range
            wobble = round_half_up(math.sin(self._now_ms() / 500) * 15)
            value = self.rng.uniform_frequency(min_hz, max_hz) + wobble
            self.current_frequency = int(min(math.floor(max_hz), max(math.ceil(min_hz), value)))
            self.detection_status = STATUS_SIMULATION
        else:
            self.current_frequency = 0
            self.detection_status = STATUS_MICROPHONE

    def _close_run(self, now_ms: float) -> Optional[DetectedFrequencyEvent]:
        if self._run_frequency <= 0 or self._run_start_ms is None:
            return None
        duration = (now_ms - self._run_start_ms) / 1000.0
        if duration < self.min_event_duration:
            return None

        event = DetectedFrequencyEvent(
            frequency_hz=self._run_frequency,
            duration_seconds=duration,
            timestamp_ms=self._run_start_ms,
        )
        self.detected_frequencies.append(event)
        log.info(f"Detected {event.frequency_hz} Hz for {duration:.1f} s")
        if self.on_event is not None:
            self.on_event(event)
        return event

    def _track_silence(self, observed_max: int) -> None:
        if observed_max <= SILENCE_LEVEL:
            self._silent_frames += 1
            if self._silent_frames % SILENCE_LOG_EVERY == 0:
                log.warning(
                    f"{self._silent_frames} consecutive silent audio frames detected; "
                    f"check that the microphone is connected and not muted"
                )
        elif self._silent_frames > 0:
            log.debug(f"Audio detected after {self._silent_frames} silent frames")
            self._silent_frames = 0

    async def deactivate(self) -> Optional[DetectedFrequencyEvent]:
        """
        Stop polling, flush the in-flight run and release the source.

        Returns:
            The flushed DetectedFrequencyEvent, if the run was long enough
        """
        was_active = self.is_active
        self.state = SessionState.INACTIVE

        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        event = self._close_run(self._now_ms()) if was_active else None
        await self.source.close()
        self._reset_state()
        if was_active:
            log.info("Detection session stopped")
        return event

    def _reset_state(self) -> None:
        self.current_frequency = 0
        self.has_angelic_frequency = False
        self.detection_status = STATUS_INACTIVE
        self._run_frequency = 0
        self._run_start_ms = None
        self._silent_frames = 0
        self._needs_resetup = False
        self._resetup_attempted = False

    def reset_detected_frequencies(self) -> None:
        self.detected_frequencies.clear()
