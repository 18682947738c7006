"""
Tests for angelic.recording module.

Tests the iterative recording loop including:
- Iteration ordering and averaging
- Range remapping of measured frequencies
- Fallbacks on silence, timeouts and errors
- Watchdog abort
- Setup failure and explicit stop
"""
import asyncio

import pytest

from angelic.audio import AcquisitionError, AcquisitionFailure
from angelic.models import IterationResult
from angelic.recording import (
    STATUS_INACTIVE,
    STATUS_TIMED_OUT,
    IterativeRecordingController,
    LoopState,
    annotate_iteration,
    average_frequency,
)

from tests.conftest import FakeSpectrumSource, ScriptedRandom, make_bins


def results(*frequencies):
    return [IterationResult(i, f) for i, f in enumerate(frequencies, start=1)]


class TestAverageFrequency:
    """Test the batch average."""

    def test_mean_of_five_iterations(self):
        # 2352 / 5 = 470.4
        assert average_frequency(results(432, 432, 528, 432, 528)) == 470

    def test_ignores_non_positive_entries(self):
        # (432 + 528 + 450) / 3 = 470
        assert average_frequency(results(432, 528, 0, 450)) == 470

    def test_rounds_half_up(self):
        assert average_frequency(results(1, 2)) == 2

    def test_nothing_valid(self):
        assert average_frequency([]) is None
        assert average_frequency(results(0, 0)) is None


class TestAnnotation:
    """Test per-iteration diagnostics."""

    def test_annotation(self):
        note = annotate_iteration(2, 530)

        assert note.iteration_index == 2
        assert note.is_angelic
        assert note.nearest_reference.frequency_hz == 528
        assert note.difference_hz == pytest.approx(2.0)
        assert note.match_percentage == pytest.approx(100 - 2 / 528 * 100)
        assert not note.is_fallback

    def test_fallback_annotation(self):
        note = annotate_iteration(1, 700, "timeout")
        assert note.is_fallback
        assert not note.is_angelic


def make_controller(config, settings, source, rng=None, events=None):
    return IterativeRecordingController(
        config, settings, source,
        rng=rng or ScriptedRandom([0.0]),
        on_event=events.append if events is not None else None,
    )


class TestCompletedLoop:
    """Test a loop that runs all iterations."""

    def test_all_iterations_in_order(self, config, settings):
        source = FakeSpectrumSource(settings, frames=[make_bins({528: 100})])
        events = []
        controller = make_controller(config, settings, source, events=events)

        batch = asyncio.run(controller.run())

        assert [r.iteration_index for r in batch.results] == [1, 2, 3, 4, 5]
        assert [r.frequency_hz for r in batch.results] == [528] * 5
        assert controller.state is LoopState.COMPLETED
        assert not controller.is_running
        assert not source.is_open

    def test_angelic_average(self, config, settings):
        source = FakeSpectrumSource(settings, frames=[make_bins({528: 100})])
        controller = make_controller(config, settings, source)

        batch = asyncio.run(controller.run())

        assert batch.average_frequency_hz == 528
        assert batch.is_angelic
        assert batch.closest_reference.frequency_hz == 528
        assert not batch.timed_out
        assert controller.detection_status == "Recording Complete - Angelic Frequency Detected (528Hz)"
        assert controller.current_frequency == 528

    def test_normal_average(self, config, settings):
        source = FakeSpectrumSource(settings, frames=[make_bins({700: 100})])
        controller = make_controller(config, settings, source)

        batch = asyncio.run(controller.run())

        assert batch.average_frequency_hz == 700
        assert not batch.is_angelic
        assert batch.closest_reference is None
        assert controller.detection_status == "Recording Complete - Average Frequency: 700Hz"

    def test_history_events(self, config, settings):
        source = FakeSpectrumSource(settings, frames=[make_bins({639: 100})])
        events = []
        controller = make_controller(config, settings, source, events=events)

        asyncio.run(controller.run())

        window = config["recording_loop"]["iteration_window_sec"]
        assert len(events) == 6
        assert all(e.duration_seconds == window for e in events[:5])
        assert events[-1].frequency_hz == 639
        assert events[-1].duration_seconds == 5

    def test_loudest_frame_wins(self, config, settings):
        source = FakeSpectrumSource(settings, frames=[
            make_bins({500: 40}),
            make_bins({741: 90}),
            make_bins({600: 60}),
        ])
        controller = make_controller(config, settings, source)

        batch = asyncio.run(controller.run())

        assert batch.results[0].frequency_hz == 741

    @pytest.mark.parametrize("raw,expected", [(200, 600), (1000, 500), (1500, 750)])
    def test_results_remapped_into_range(self, config, settings, raw, expected):
        source = FakeSpectrumSource(settings, frames=[make_bins({raw: 100})])
        controller = make_controller(config, settings, source)

        batch = asyncio.run(controller.run())

        assert all(r.frequency_hz == expected for r in batch.results)
        assert all(432 <= r.frequency_hz <= 963 for r in batch.results)


class TestFallbacks:
    """Test iterations that substitute a random frequency."""

    def test_silence_uses_random_frequency(self, config, settings):
        source = FakeSpectrumSource(settings, frames=[make_bins()])
        controller = make_controller(config, settings, source, rng=ScriptedRandom([0.0]))

        batch = asyncio.run(controller.run())

        assert [r.frequency_hz for r in batch.results] == [432] * 5
        assert all(a.fallback_reason == "no signal" for a in controller.annotations.values())

    def test_timeout_uses_random_frequency(self, config, settings):
        config["recording_loop"]["iteration_window_sec"] = 1.0
        config["recording_loop"]["iteration_timeout_sec"] = 0.02
        source = FakeSpectrumSource(settings, frames=[make_bins({528: 100})])
        controller = make_controller(config, settings, source, rng=ScriptedRandom([1.0]))

        batch = asyncio.run(controller.run())

        assert [r.frequency_hz for r in batch.results] == [963] * 5
        assert all(a.fallback_reason == "timeout" for a in controller.annotations.values())
        assert controller.state is LoopState.COMPLETED

    def test_error_uses_random_frequency_and_reopens(self, config, settings):
        source = FakeSpectrumSource(settings, frames=[RuntimeError("read failed")])
        controller = make_controller(config, settings, source, rng=ScriptedRandom([0.0]))

        batch = asyncio.run(controller.run())

        assert len(batch.results) == 5
        assert all(a.fallback_reason == "error" for a in controller.annotations.values())
        # Opened by start(), then reopened by iterations 2-5
        assert source.open_calls == 5

    def test_fallbacks_stay_in_range(self, config, settings):
        source = FakeSpectrumSource(settings, frames=[make_bins()])
        controller = make_controller(config, settings, source, rng=ScriptedRandom([0.0, 0.3, 0.6, 0.99, 0.5]))

        batch = asyncio.run(controller.run())

        assert all(432 <= r.frequency_hz <= 963 for r in batch.results)


class TestWatchdog:
    """Test the global loop timeout."""

    def test_watchdog_fills_missing_iterations(self, config, settings):
        config["recording_loop"].update({
            "iteration_window_sec": 1.0,
            "iteration_timeout_sec": 1.0,
            "watchdog_timeout_sec": 0.05,
        })
        source = FakeSpectrumSource(settings, frames=[make_bins({528: 100})])
        controller = make_controller(config, settings, source, rng=ScriptedRandom([0.5]))

        batch = asyncio.run(controller.run())

        assert batch.timed_out
        assert batch.average_frequency_hz is None
        assert sorted(r.iteration_index for r in batch.results) == [1, 2, 3, 4, 5]
        assert all(432 <= r.frequency_hz <= 963 for r in batch.results)
        assert controller.state is LoopState.ABORTED
        assert controller.detection_status == STATUS_TIMED_OUT
        assert not source.is_open

    def test_watchdog_keeps_finished_iterations(self, config, settings):
        """Three rounds finish, the fourth stalls; rounds 4 and 5 are synthesized."""
        config["recording_loop"]["watchdog_timeout_sec"] = 0.5
        source = FakeSpectrumSource(settings, frames=[make_bins({528: 100})])
        controller = make_controller(config, settings, source, rng=ScriptedRandom([0.5]))

        def stall_after_third(event):
            if len(controller.iteration_results) == 3:
                controller.iteration_window = 10.0
                controller.iteration_timeout = 10.0

        controller.on_event = stall_after_third

        batch = asyncio.run(controller.run())

        # 0.5 * (963 - 432) + 432 = 697.5 -> 698
        assert [(r.iteration_index, r.frequency_hz) for r in batch.results] == [
            (1, 528), (2, 528), (3, 528), (4, 698), (5, 698),
        ]
        assert batch.timed_out
        assert controller.state is LoopState.ABORTED


class TestStartStop:
    """Test loop setup and cancellation."""

    def test_setup_failure(self, config, settings):
        source = FakeSpectrumSource(
            settings, open_error=AcquisitionError("denied", AcquisitionFailure.PERMISSION_DENIED))
        controller = make_controller(config, settings, source)

        async def scenario():
            started = await controller.start()
            batch = await controller.wait()
            return started, batch

        started, batch = asyncio.run(scenario())

        assert started is False
        assert batch is None
        assert controller.state is LoopState.IDLE
        assert controller.detection_status == "Recording Loop Setup Failed (PermissionDenied)"
        assert controller.setup_error.reason is AcquisitionFailure.PERMISSION_DENIED

    def test_second_start_refused(self, config, settings):
        config["recording_loop"]["iteration_window_sec"] = 0.5
        source = FakeSpectrumSource(settings, frames=[make_bins({528: 100})])
        controller = make_controller(config, settings, source)

        async def scenario():
            first = await controller.start()
            second = await controller.start()
            await controller.stop()
            return first, second

        assert asyncio.run(scenario()) == (True, False)

    def test_stop_keeps_results(self, config, settings):
        config["recording_loop"]["iteration_window_sec"] = 0.05
        source = FakeSpectrumSource(settings, frames=[make_bins({528: 100})])
        controller = make_controller(config, settings, source)

        async def scenario():
            await controller.start()
            # Wait for at least one finished iteration
            while not controller.iteration_results:
                await asyncio.sleep(0.01)
            await controller.stop()
            return await controller.wait()

        batch = asyncio.run(scenario())

        assert batch is None
        assert controller.iteration_results
        assert len(controller.iteration_results) < 5
        assert controller.state is LoopState.IDLE
        assert controller.current_iteration == 0
        assert controller.current_frequency == 0
        assert controller.detection_status == STATUS_INACTIVE
        assert not source.is_open

    def test_started_status(self, config, settings):
        config["recording_loop"]["iteration_window_sec"] = 0.5
        source = FakeSpectrumSource(settings, frames=[make_bins({528: 100})])
        controller = make_controller(config, settings, source)

        async def scenario():
            await controller.start()
            status = controller.detection_status
            await controller.stop()
            return status

        assert asyncio.run(scenario()) == "Recording Loop Started - Round 1/5"
