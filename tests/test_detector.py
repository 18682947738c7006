"""
Tests for angelic.detector module.

Tests continuous detection including:
- Run tracking and event emission
- Amplitude threshold and adaptive threshold
- Range boost and peak publishing
- Flush on deactivate
- Recovery after analysis errors
"""
import asyncio

import pytest

from angelic.audio import AcquisitionError, AcquisitionFailure, AnalysisError
from angelic.detector import (
    STATUS_ANGELIC,
    STATUS_INACTIVE,
    STATUS_MICROPHONE,
    STATUS_SIMULATION,
    DetectionSession,
    SessionState,
    adaptive_threshold,
)

from tests.conftest import FakeSpectrumSource, ScriptedRandom, make_bins


def run_ticks(session, clock, script):
    """
    Activate, replay (time, bins) frames with tick(), then deactivate.

    Returns:
        Tuple of (events returned by tick, event returned by deactivate)
    """
    async def scenario():
        await session.activate()
        events = []
        for now, bins in script:
            clock.now = now
            session.source.frame = bins
            event = session.tick()
            if event is not None:
                events.append(event)
        flushed = await session.deactivate()
        return events, flushed

    return asyncio.run(scenario())


@pytest.fixture
def source(settings):
    return FakeSpectrumSource(settings)


@pytest.fixture
def session(config, settings, source, clock):
    return DetectionSession(config, settings, source, clock=clock)


class TestAdaptiveThreshold:
    """Test the quiet-input threshold."""

    def test_quiet_input_lowers_threshold(self):
        assert adaptive_threshold(15, 8) == pytest.approx(7.2)

    def test_threshold_floor(self):
        assert adaptive_threshold(15, 2) == 3

    def test_silence_keeps_base(self):
        assert adaptive_threshold(15, 0) == 15

    def test_loud_input_keeps_base(self):
        assert adaptive_threshold(15, 15) == 15
        assert adaptive_threshold(15, 200) == 15


class TestRunTracking:
    """Test event emission when the current frequency changes."""

    def test_event_emitted_on_change(self, session, clock):
        received = []
        session.on_event = received.append

        events, _ = run_ticks(session, clock, [
            (0.0, make_bins({528: 100})),
            (1.5, make_bins({528: 100})),
            (2.0, make_bins({700: 100})),
        ])

        assert len(events) == 1
        event = events[0]
        assert event.frequency_hz == 528
        assert event.duration_seconds == pytest.approx(2.0)
        assert event.timestamp_ms == pytest.approx(0.0)
        assert received[0] == event
        assert session.detected_frequencies[0] == event

    def test_short_run_not_emitted(self, session, clock):
        events, flushed = run_ticks(session, clock, [
            (0.0, make_bins({528: 100})),
            (0.5, make_bins({700: 100})),
            (0.9, make_bins({640: 100})),
        ])

        assert events == []
        assert flushed is None
        assert session.detected_frequencies == []

    def test_small_change_continues_run(self, session, clock):
        async def scenario():
            await session.activate()
            clock.now = 0.0
            session.source.frame = make_bins({528: 100})
            session.tick()
            clock.now = 1.0
            session.source.frame = make_bins({531: 100})
            event = session.tick()
            current = session.current_frequency
            clock.now = 3.0
            flushed = await session.deactivate()
            return event, current, flushed

        event, current, flushed = asyncio.run(scenario())

        assert event is None
        assert current == 531
        assert flushed.frequency_hz == 528
        assert flushed.duration_seconds == pytest.approx(3.0)

    def test_flush_on_deactivate(self, session, clock):
        events, flushed = run_ticks(session, clock, [
            (0.0, make_bins({639: 100})),
            (2.5, make_bins({639: 100})),
        ])

        assert events == []
        assert flushed is not None
        assert flushed.frequency_hz == 639
        assert flushed.duration_seconds == pytest.approx(2.5)

    def test_deactivate_resets_state(self, session, clock, source):
        run_ticks(session, clock, [(0.0, make_bins({528: 100}))])

        assert session.state is SessionState.INACTIVE
        assert session.current_frequency == 0
        assert not session.has_angelic_frequency
        assert session.detection_status == STATUS_INACTIVE
        assert source.close_calls == 1


class TestDetectionStatus:
    """Test published frequency and status."""

    def test_angelic_frequency(self, session, clock):
        async def scenario():
            await session.activate()
            session.source.frame = make_bins({528: 100})
            session.tick()
            result = (session.current_frequency, session.has_angelic_frequency, session.detection_status)
            await session.deactivate()
            return result

        assert asyncio.run(scenario()) == (528, True, STATUS_ANGELIC)

    def test_normal_frequency(self, session):
        async def scenario():
            await session.activate()
            session.source.frame = make_bins({700: 100})
            session.tick()
            result = (session.current_frequency, session.has_angelic_frequency, session.detection_status)
            await session.deactivate()
            return result

        assert asyncio.run(scenario()) == (700, False, STATUS_MICROPHONE)

    def test_out_of_range_is_not_detected(self, session):
        async def scenario():
            await session.activate()
            session.source.frame = make_bins({300: 100})
            session.tick()
            result = (session.current_frequency, session.last_sample.frequency_hz)
            await session.deactivate()
            return result

        assert asyncio.run(scenario()) == (0, 300)

    def test_boost_favours_target_range(self, session):
        async def scenario():
            await session.activate()
            session.source.frame = make_bins({300: 100, 528: 70})
            session.tick()
            result = (session.current_frequency, session.last_sample.amplitude)
            await session.deactivate()
            return result

        assert asyncio.run(scenario()) == (528, 70)

    def test_dominant_frequencies_filtered_to_range(self, session):
        async def scenario():
            await session.activate()
            session.source.frame = make_bins({300: 80, 528: 100, 1500: 90})
            session.tick()
            peaks = list(session.dominant_frequencies)
            await session.deactivate()
            return peaks

        peaks = asyncio.run(scenario())
        assert [p.frequency_hz for p in peaks] == [528]


class TestThreshold:
    """Test the amplitude threshold (Medium = 15)."""

    def _detect(self, session, bins):
        async def scenario():
            await session.activate()
            session.source.frame = bins
            session.tick()
            current = session.current_frequency
            await session.deactivate()
            return current

        return asyncio.run(scenario())

    def test_amplitude_must_exceed_threshold(self, session):
        """A lone 15 equals the base threshold, so no adaptation applies."""
        assert self._detect(session, make_bins({528: 15})) == 0

    def test_above_threshold(self, session):
        assert self._detect(session, make_bins({528: 16})) == 528

    def test_quiet_input_still_detected(self, session):
        """Max 8 lowers the threshold to 7.2."""
        assert self._detect(session, make_bins({528: 8})) == 528


class TestSimulatedSession:
    """Test behaviour specific to simulated input."""

    def test_no_detection_shows_in_range_value(self, config, settings, clock):
        source = FakeSpectrumSource(settings, simulated=True)
        session = DetectionSession(config, settings, source, rng=ScriptedRandom([0.5]), clock=clock)

        async def scenario():
            await session.activate()
            session.tick()
            result = (session.current_frequency, session.detection_status)
            await session.deactivate()
            return result

        current, status = asyncio.run(scenario())
        assert 432 <= current <= 963
        assert status == STATUS_SIMULATION

    def test_simulated_errors_do_not_resetup(self, config, settings):
        source = FakeSpectrumSource(settings, frames=[AnalysisError("broken")], simulated=True)
        session = DetectionSession(config, settings, source)

        async def scenario():
            await session.activate()
            await asyncio.sleep(0.05)
            await session.deactivate()

        asyncio.run(scenario())
        assert source.open_calls == 1


class TestRecovery:
    """Test activation failure and automatic re-setup."""

    def test_activation_failure(self, config, settings):
        source = FakeSpectrumSource(
            settings, open_error=AcquisitionError("busy", AcquisitionFailure.HARDWARE_BUSY))
        session = DetectionSession(config, settings, source)

        assert asyncio.run(session.activate()) is False
        assert not session.is_active
        assert session.detection_status == "Microphone unavailable (HardwareBusy)"

    def test_single_resetup_per_failure_streak(self, config, settings):
        source = FakeSpectrumSource(settings, frames=[AnalysisError("analyser gone")])
        session = DetectionSession(config, settings, source)

        async def scenario():
            await session.activate()
            await asyncio.sleep(0.05)
            calls = source.open_calls
            await session.deactivate()
            return calls

        assert asyncio.run(scenario()) == 2
        assert source.snapshot_calls > 2

    def test_error_frame_returns_none(self, session, source):
        async def scenario():
            await session.activate()
            source.frame = AnalysisError("analyser gone")
            event = session.tick()
            await session.deactivate()
            return event

        assert asyncio.run(scenario()) is None

    def test_reset_detected_frequencies(self, session, clock):
        run_ticks(session, clock, [
            (0.0, make_bins({528: 100})),
            (2.0, make_bins({700: 100})),
        ])
        assert session.detected_frequencies

        session.reset_detected_frequencies()
        assert session.detected_frequencies == []
