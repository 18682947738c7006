"""
Iterative recording loop.

Runs a fixed number of bounded recording iterations, each resolving to one
frequency (measured or a random fallback), and averages them at the end.

Single Responsibility: Batch recording state machine.
"""
import asyncio
import time
from enum import Enum
from typing import Callable, Dict, List, Optional

from logger import get_logger

from .audio import AcquisitionError, SpectrumSource
from .classifier import closest_reference, is_angelic, match_percentage, nearest_reference
from .features import dominant_frequency, remap_into_range, round_half_up
from .models import (
    BatchResult,
    DetectedFrequencyEvent,
    DetectorConfiguration,
    IterationAnnotation,
    IterationResult,
)
from .randomness import RandomSource

log = get_logger(__name__)

STATUS_INACTIVE = "Detector inactive"
STATUS_TIMED_OUT = "Recording Loop Timed Out"
STATUS_NO_VALID = "Recording Loop Complete - No valid frequencies detected"

# History durations reported for loop results (seconds)
AVERAGE_EVENT_DURATION = 5


class LoopState(str, Enum):
    IDLE = "Idle"
    RUNNING = "Running"
    COMPLETED = "Completed"
    ABORTED = "Aborted"


def average_frequency(results: List[IterationResult]) -> Optional[int]:
    """
    Mean of all positive iteration frequencies, rounded to whole Hz.

    Divides by the number of valid entries, not the number of iterations.

    Returns:
        Average frequency or None when there is nothing valid to average
    """
    valid = [r.frequency_hz for r in results if r.frequency_hz > 0]
    if not valid:
        return None
    return round_half_up(sum(valid) / len(valid))


def annotate_iteration(iteration_index: int, frequency_hz: int,
                       fallback_reason: Optional[str] = None) -> IterationAnnotation:
    """Explain how an iteration's frequency relates to the reference table."""
    reference = nearest_reference(frequency_hz)
    return IterationAnnotation(
        iteration_index=iteration_index,
        frequency_hz=frequency_hz,
        is_angelic=is_angelic(frequency_hz),
        nearest_reference=reference,
        difference_hz=float(abs(frequency_hz - reference.frequency_hz)),
        match_percentage=match_percentage(frequency_hz, reference),
        fallback_reason=fallback_reason,
    )


async def _cancel_task(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    await asyncio.wait([task])


class IterativeRecordingController:
    """
    Runs N sequential recording iterations under a global watchdog.

    Iterations never abort the loop: a timeout, a read error or silence
    only substitutes a random in-range frequency for that iteration. The
    loop ends by completing all iterations, by the watchdog firing, or by
    an explicit stop().
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
        Initialize recording loop.

        Args:
            config: Configuration dictionary
            settings: Frequency range and sensitivity
            source: Spectrum source used by every iteration
            rng: Random source for fallback frequencies
            clock: Wall clock in seconds (event timestamps)
            on_event: Called with history events for iterations and the average
        """
        self.config = config
        self.settings = settings
        self.source = source
        self.rng = rng or RandomSource()
        self.clock = clock
        self.on_event = on_event

        loop_config = config["recording_loop"]
        self.max_iterations = loop_config["max_iterations"]
        self.iteration_window = loop_config["iteration_window_sec"]
        self.iteration_timeout = loop_config["iteration_timeout_sec"]
        self.simulation_window = loop_config["simulation_window_sec"]
        self.watchdog_timeout = loop_config["watchdog_timeout_sec"]
        self.frame_interval = config["detection"]["frame_interval_sec"]

        self.state = LoopState.IDLE
        self.current_iteration = 0
        self.iteration_results: List[IterationResult] = []
        self.annotations: Dict[int, IterationAnnotation] = {}
        self.current_frequency = 0
        self.has_angelic_frequency = False
        self.detection_status = STATUS_INACTIVE
        self.batch_result: Optional[BatchResult] = None
        self.setup_error: Optional[AcquisitionError] = None

        self._run_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._finished: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self.state is LoopState.RUNNING

    def _random_frequency(self) -> int:
        return self.rng.uniform_frequency(*self.settings.frequency_range)

    def _emit(self, frequency_hz: int, duration_seconds: float) -> None:
        if self.on_event is not None:
            self.on_event(DetectedFrequencyEvent(frequency_hz, duration_seconds, self.clock() * 1000.0))

    async def start(self) -> bool:
        """
        Begin a new loop.

        Returns:
            False if a loop is already running or the input could not be
            opened; nothing is left active in that case
        """
        if self.is_running:
            log.warning("Recording loop already running")
            return False

        log.info(f"Starting recording loop with {self.max_iterations} iterations")
        self.iteration_results = []
        self.annotations = {}
        self.current_iteration = 0
        self.batch_result = None
        self.setup_error = None
        self._finished = asyncio.Event()
        self.state = LoopState.RUNNING
        self._watchdog_task = asyncio.create_task(self._watchdog())

        try:
            await self.source.open()
        except AcquisitionError as e:
            log.error(f"Failed to set up audio for recording loop ({e.reason.value}): {e}")
            await _cancel_task(self._watchdog_task)
            self._watchdog_task = None
            self.setup_error = e
            self.state = LoopState.IDLE
            self.detection_status = f"Recording Loop Setup Failed ({e.reason.value})"
            self._finished.set()
            return False

        self.detection_status = f"Recording Loop Started - Round 1/{self.max_iterations}"
        self._run_task = asyncio.create_task(self._run_iterations())
        return True

    async def wait(self) -> Optional[BatchResult]:
        """Block until the loop completes, times out or is stopped."""
        if self._finished is not None:
            await self._finished.wait()
        return self.batch_result

    async def run(self) -> Optional[BatchResult]:
        """start() and wait(); None if the loop could not start."""
        if not await self.start():
            return None
        return await self.wait()

    async def _run_iterations(self) -> None:
        for iteration in range(1, self.max_iterations + 1):
            await self._run_iteration(iteration)
        await self._complete()

    async def _run_iteration(self, iteration: int) -> None:
        self.current_iteration = iteration
        self.detection_status = f"Recording Loop - Round {iteration}/{self.max_iterations}"
        log.info(f"Recording iteration {iteration}/{self.max_iterations}")

        fallback_reason = None
        frequency = 0
        try:
            frequency = await asyncio.wait_for(self._record(iteration), timeout=self.iteration_timeout)
            if frequency <= 0:
                fallback_reason = "no signal"
        except asyncio.TimeoutError:
            fallback_reason = "timeout"
        except Exception as e:
            log.error(f"Error during iteration {iteration}: {e}", exc_info=True)
            fallback_reason = "error"
            await self.source.close()

        if fallback_reason is not None:
            frequency = self._random_frequency()
            log.warning(f"Iteration {iteration}: using random frequency {frequency} Hz ({fallback_reason})")

        self._record_result(iteration, frequency, fallback_reason)

    async def _record(self, iteration: int) -> int:
        """
        Sample for one window and keep the loudest bin seen.

        Returns:
            In-range frequency of the loudest sample, or 0 if nothing was heard
        """
        if not self.source.is_open:
            log.info(f"Iteration {iteration}: setting up audio analysis")
            await self.source.open()

        window = self.simulation_window if self.source.simulated else self.iteration_window
        loop = asyncio.get_running_loop()
        started = loop.time()
        highest_amplitude = 0
        loudest = 0

        while True:
            bins = self.source.snapshot()
            frequency, amplitude = dominant_frequency(bins, self.source.sample_rate)
            if amplitude > highest_amplitude:
                highest_amplitude = amplitude
                loudest = frequency
            # Stop on the last frame that fits inside the window
            if loop.time() - started + self.frame_interval >= window:
                break
            await asyncio.sleep(self.frame_interval)

        if loudest <= 0:
            return 0

        min_hz, max_hz = self.settings.frequency_range
        adjusted = remap_into_range(loudest, min_hz, max_hz)
        if adjusted != loudest:
            log.debug(f"Iteration {iteration}: adjusted {loudest} Hz to {adjusted} Hz")
        log.debug(f"Iteration {iteration}: loudest {loudest} Hz at amplitude {highest_amplitude}")
        return adjusted

    def _record_result(self, iteration: int, frequency: int, fallback_reason: Optional[str]) -> None:
        result = IterationResult(iteration_index=iteration, frequency_hz=frequency)
        # Replace any earlier result for the same iteration
        self.iteration_results = [
            r for r in self.iteration_results if r.iteration_index != iteration
        ] + [result]

        self.current_frequency = frequency
        self.has_angelic_frequency = is_angelic(frequency)

        annotation = annotate_iteration(iteration, frequency, fallback_reason)
        self.annotations[iteration] = annotation
        log.info(
            f"Iteration {iteration} complete: {frequency} Hz "
            f"({'angelic' if annotation.is_angelic else 'normal'}; nearest "
            f"{annotation.nearest_reference.frequency_hz} Hz, "
            f"difference {annotation.difference_hz:.2f} Hz, "
            f"match {annotation.match_percentage:.2f}%)"
        )
        self._emit(frequency, self.iteration_window)

    async def _complete(self) -> None:
        await _cancel_task(self._watchdog_task)
        self._watchdog_task = None
        self.state = LoopState.COMPLETED

        average = average_frequency(self.iteration_results)
        angelic = average is not None and is_angelic(average)
        if average is not None:
            self.current_frequency = average
            self.has_angelic_frequency = angelic
            if angelic:
                self.detection_status = f"Recording Complete - Angelic Frequency Detected ({average}Hz)"
            else:
                self.detection_status = f"Recording Complete - Average Frequency: {average}Hz"
            log.info(
                f"Final result: average {average} Hz over {len(self.iteration_results)} iterations "
                f"({', '.join(str(r.frequency_hz) for r in self.iteration_results)} Hz)"
            )
            self._emit(average, AVERAGE_EVENT_DURATION)
        else:
            log.warning("Could not calculate a valid average frequency")
            self.detection_status = STATUS_NO_VALID

        self.batch_result = BatchResult(
            results=list(self.iteration_results),
            average_frequency_hz=average,
            is_angelic=angelic,
            closest_reference=closest_reference(average) if average is not None else None,
        )
        await self.source.close()
        self._finished.set()

    async def _watchdog(self) -> None:
        await asyncio.sleep(self.watchdog_timeout)
        if not self.is_running:
            return

        log.error(f"Recording loop took longer than {self.watchdog_timeout:.0f} s; force stopping")
        await _cancel_task(self._run_task)
        self._run_task = None

        recorded = {r.iteration_index for r in self.iteration_results}
        missing = [i for i in range(1, self.max_iterations + 1) if i not in recorded]
        if missing:
            log.warning(f"Generating {len(missing)} random results for missing iterations")
        for index in missing:
            self.iteration_results.append(IterationResult(index, self._random_frequency()))

        self.state = LoopState.ABORTED
        self.detection_status = STATUS_TIMED_OUT
        self.batch_result = BatchResult(
            results=list(self.iteration_results),
            average_frequency_hz=None,
            is_angelic=False,
            closest_reference=None,
            timed_out=True,
        )
        await self.source.close()
        self._finished.set()

    async def stop(self) -> None:
        """
        Cancel the loop and release the input.

        Collected results are kept; no average is computed.
        """
        was_running = self.is_running
        self.state = LoopState.IDLE
        await _cancel_task(self._watchdog_task)
        await _cancel_task(self._run_task)
        self._watchdog_task = None
        self._run_task = None
        await self.source.close()

        self.current_iteration = 0
        self.current_frequency = 0
        self.has_angelic_frequency = False
        self.detection_status = STATUS_INACTIVE
        if was_running:
            log.info(f"Recording loop stopped with {len(self.iteration_results)} results collected")
        if self._finished is not None:
            self._finished.set()
