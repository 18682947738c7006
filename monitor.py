#!/usr/bin/env python3
"""
Run the angelic frequency detector from a terminal.

By default runs one recording loop and prints the averaged result.
With --continuous, polls for the given number of seconds and prints the
detection history instead.
"""
import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

import config_loader
from angelic import (
    AudioAnalyzer,
    calculate_indicator_position,
    closest_reference,
    summarize_detected_frequencies,
)
from logger import get_logger, log_session_info, setup_logging

log = get_logger("monitor")


async def run_recording_loop(analyzer: AudioAnalyzer) -> int:
    """Run one batch and print the result. Returns a process exit code."""
    if not await analyzer.start_recording_loop():
        print(f"[ERROR] {analyzer.detection_status}")
        print("\nTroubleshooting:")
        print("  1. Check audio device: arecord -l")
        print("  2. Verify device in config.json matches hardware")
        print("  3. Check permissions: groups (should include 'audio')")
        print("  4. Or run without a microphone: --simulate")
        return 1

    result = await analyzer.wait_for_recording_loop()

    print("=" * 60)
    for r in analyzer.iteration_results:
        print(f"Round {r.iteration_index}/{analyzer.max_iterations}: {r.frequency_hz} Hz")
    print("-" * 60)
    print(analyzer.detection_status)
    if result is not None and result.average_frequency_hz is not None:
        ref = closest_reference(result.average_frequency_hz)
        if ref is not None:
            print(f"Closest angelic frequency: {ref.frequency_hz} Hz - {ref.description}")
        position = calculate_indicator_position(
            result.average_frequency_hz,
            analyzer.settings.min_frequency_hz,
            analyzer.settings.max_frequency_hz,
        )
        print(f"Position in range: {position:.0f}%")
    print("=" * 60)
    return 2 if result is not None and result.timed_out else 0


async def run_continuous(analyzer: AudioAnalyzer, seconds: float) -> int:
    """Poll for a fixed time, printing the current frequency once a second."""
    if not await analyzer.start_continuous():
        print(f"[ERROR] {analyzer.detection_status}")
        return 1

    try:
        elapsed = 0.0
        while elapsed < seconds:
            await asyncio.sleep(1.0)
            elapsed += 1.0
            peaks = ", ".join(
                f"{p.frequency_hz}Hz ({p.percentage}%)" for p in analyzer.dominant_frequencies
            )
            sample = analyzer.last_sample
            level = f" | level {sample.amplitude:3d}" if sample is not None else ""
            print(
                f"{analyzer.current_frequency:5d} Hz | {analyzer.detection_status}" + level
                + (f" | peaks: {peaks}" if peaks else ""),
                flush=True
            )
    finally:
        await analyzer.stop()

    print("=" * 60)
    print(summarize_detected_frequencies(analyzer.detected_frequencies))
    print("=" * 60)
    return 0


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Detect angelic frequencies from the microphone")
    parser.add_argument("--config", type=Path, default=None,
                        help="Path to config.json (default: ./config.json)")
    parser.add_argument("--simulate", action="store_true",
                        help="Use synthetic audio instead of the microphone")
    parser.add_argument("--continuous", type=float, metavar="SECONDS",
                        help="Run continuous detection for N seconds instead of a recording loop")
    parser.add_argument("--log-file", type=Path, default=None,
                        help="Also write logs to this file")
    parser.add_argument("--debug", action="store_true",
                        help="Enable debug logging")

    args = parser.parse_args(argv)

    try:
        config = config_loader.load_config(args.config)
    except ValueError as e:
        print(f"[ERROR] Failed to load configuration: {e}")
        return 1

    log_file = args.log_file or config_loader.get_config_value(config, "logging.log_file")
    setup_logging(
        log_file=Path(log_file) if log_file else None,
        level=config["logging"]["level"],
        debug=args.debug
    )
    log_session_info(log, config, args.simulate)

    analyzer = AudioAnalyzer(config, simulate=args.simulate)
    try:
        if args.continuous:
            return asyncio.run(run_continuous(analyzer, args.continuous))
        return asyncio.run(run_recording_loop(analyzer))
    except KeyboardInterrupt:
        print("\n[INFO] Stopping detector (Ctrl+C received)...")
        return 130


if __name__ == "__main__":
    sys.exit(main())
