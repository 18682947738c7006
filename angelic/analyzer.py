"""
Detector facade used by the outer application.

Wires a SpectrumSource into either a continuous DetectionSession or an
IterativeRecordingController, keeps the two modes mutually exclusive and
collects the shared detection history. Also hosts the simulation toggle
and demo-frequency injection.
"""
import time
from typing import Callable, List, Optional

import numpy as np

from logger import get_logger

from .audio import SpectrumSource, create_spectrum_source
from .classifier import is_angelic
from .detector import STATUS_INACTIVE, DetectionSession
from .models import (
    BatchResult,
    DetectedFrequencyEvent,
    DetectorConfiguration,
    DominantFrequency,
    FrequencySample,
    IterationResult,
    Sensitivity,
)
from .randomness import RandomSource
from .recording import IterativeRecordingController

log = get_logger(__name__)

# Duration recorded in history for an injected demo frequency
DEMO_EVENT_DURATION = 2

SourceFactory = Callable[..., SpectrumSource]


class AudioAnalyzer:
    """
    Public surface of the detector.

    Only one mode holds the input at a time: starting the recording loop
    stops continuous detection first and vice versa.
    """

    def __init__(
        self,
        config: dict,
        simulate: bool = False,
        rng: Optional[RandomSource] = None,
        clock: Callable[[], float] = time.time,
        source_factory: SourceFactory = create_spectrum_source
    ):
        self.config = config
        self.settings = DetectorConfiguration.from_config(config)
        self.is_simulation_mode = simulate
        self.rng = rng or RandomSource()
        self.clock = clock
        self.source_factory = source_factory

        self.is_demo_mode = False
        self.demo_frequency = config["detection"]["demo_frequency_hz"]
        self.detected_frequencies: List[DetectedFrequencyEvent] = []

        self.session: Optional[DetectionSession] = None
        self.controller: Optional[IterativeRecordingController] = None
        self._view = None  # whichever of session/controller ran last
        self._override_frequency: Optional[int] = None
        self._override_status: Optional[str] = None

        self.max_iterations = config["recording_loop"]["max_iterations"]

    # ------------------------------------------------------------------
    # Published state
    # ------------------------------------------------------------------

    @property
    def is_recording_loop(self) -> bool:
        return self.controller is not None and self.controller.is_running

    @property
    def is_continuous(self) -> bool:
        return self.session is not None and self.session.is_active

    @property
    def is_active(self) -> bool:
        return self.is_recording_loop or self.is_continuous or self.is_demo_mode

    @property
    def current_frequency(self) -> int:
        if self._override_frequency is not None:
            return self._override_frequency
        return self._view.current_frequency if self._view is not None else 0

    @property
    def has_angelic_frequency(self) -> bool:
        if self._override_frequency is not None:
            return is_angelic(self._override_frequency)
        return self._view.has_angelic_frequency if self._view is not None else False

    @property
    def detection_status(self) -> str:
        if self._override_status is not None:
            return self._override_status
        return self._view.detection_status if self._view is not None else STATUS_INACTIVE

    @property
    def frequency_spectrum(self) -> Optional[np.ndarray]:
        return self.session.spectrum if self.session is not None else None

    @property
    def dominant_frequencies(self) -> List[DominantFrequency]:
        return self.session.dominant_frequencies if self.session is not None else []

    @property
    def last_sample(self) -> Optional[FrequencySample]:
        """Most recent reading of the continuous session, accepted or not."""
        return self.session.last_sample if self.session is not None else None

    @property
    def iteration_results(self) -> List[IterationResult]:
        return self.controller.iteration_results if self.controller is not None else []

    @property
    def current_iteration(self) -> int:
        return self.controller.current_iteration if self.controller is not None else 0

    @property
    def batch_result(self) -> Optional[BatchResult]:
        return self.controller.batch_result if self.controller is not None else None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_settings(self, min_frequency_hz: float, max_frequency_hz: float, sensitivity: str) -> None:
        """Change range/sensitivity; only allowed while inactive."""
        if self.is_recording_loop or self.is_continuous:
            raise RuntimeError("Cannot change detector settings while a detection mode is running")
        self.settings = DetectorConfiguration(min_frequency_hz, max_frequency_hz, Sensitivity(sensitivity))

    def _new_source(self) -> SpectrumSource:
        return self.source_factory(
            self.config, self.settings,
            simulate=self.is_simulation_mode,
            rng=self.rng,
            clock=self.clock,
        )

    def _record_event(self, event: DetectedFrequencyEvent) -> None:
        self.detected_frequencies.append(event)

    def _clear_demo(self) -> None:
        if self.is_demo_mode:
            log.info("Turning off demo mode")
        self.is_demo_mode = False
        self._override_frequency = None
        self._override_status = None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start_recording_loop(self) -> bool:
        """Stop other modes and start a new batch run."""
        if self.is_recording_loop:
            return False
        self._clear_demo()
        if self.session is not None:
            await self.session.deactivate()

        self.controller = IterativeRecordingController(
            self.config, self.settings, self._new_source(),
            rng=self.rng, clock=self.clock, on_event=self._record_event,
        )
        self._view = self.controller
        return await self.controller.start()

    async def wait_for_recording_loop(self) -> Optional[BatchResult]:
        if self.controller is None:
            return None
        return await self.controller.wait()

    async def start_continuous(self) -> bool:
        """Stop other modes and start continuous detection."""
        if self.is_continuous:
            return True
        self._clear_demo()
        if self.controller is not None:
            await self.controller.stop()

        self.session = DetectionSession(
            self.config, self.settings, self._new_source(),
            rng=self.rng, clock=self.clock, on_event=self._record_event,
        )
        self._view = self.session
        return await self.session.activate()

    async def stop(self) -> None:
        """Deactivate whatever is running and release the input."""
        log.info("Deactivating detector")
        if self.session is not None:
            await self.session.deactivate()
        if self.controller is not None:
            await self.controller.stop()
        self._clear_demo()

    async def toggle_detector(self) -> bool:
        """
        Stop if active, otherwise start a recording loop.

        Returns:
            True if the detector is active afterwards
        """
        if self.is_active:
            await self.stop()
            return False
        return await self.start_recording_loop()

    async def toggle_simulation_mode(self) -> bool:
        """
        Switch between microphone and simulated input.

        A running continuous session is restarted on the new input; a
        running recording loop keeps its input until it finishes.
        """
        self.is_simulation_mode = not self.is_simulation_mode
        log.info(f"Simulation mode {'enabled' if self.is_simulation_mode else 'disabled'}")
        if self.is_continuous:
            await self.session.deactivate()
            self.session = None
            if await self.start_continuous():
                # Simulation never shows 0 Hz, even before the first tick
                if self.is_simulation_mode:
                    self.session.current_frequency = self.rng.uniform_frequency(*self.settings.frequency_range)
                else:
                    self.session.current_frequency = 0
        return self.is_simulation_mode

    def simulate_audio_analysis(self, frequency_hz: int) -> bool:
        """
        Inject a fixed frequency, bypassing acquisition.

        Refused while a recording loop runs, although the loop's current
        frequency is still updated.

        Returns:
            True if demo mode was activated
        """
        if self.is_recording_loop:
            log.warning("Simulation blocked: recording loop is active")
            self.controller.current_frequency = frequency_hz
            return False

        angelic = is_angelic(frequency_hz)
        self.is_demo_mode = True
        self._override_frequency = frequency_hz
        self._override_status = (
            f"Demo Mode: Simulated {frequency_hz}Hz input" + (" (Angelic Frequency)" if angelic else "")
        )
        self._record_event(DetectedFrequencyEvent(frequency_hz, DEMO_EVENT_DURATION, self.clock() * 1000.0))
        log.info(f"Input frequency {frequency_hz} Hz is {'an angelic' if angelic else 'a normal'} frequency")
        return True

    def toggle_demo_mode(self) -> bool:
        if self.is_demo_mode:
            self._clear_demo()
            return False
        return self.simulate_audio_analysis(self.demo_frequency)

    def set_demo_frequency(self, frequency_hz: int) -> None:
        self.demo_frequency = frequency_hz

    def reset_detected_frequencies(self) -> None:
        self.detected_frequencies.clear()
        if self.session is not None:
            self.session.reset_detected_frequencies()
