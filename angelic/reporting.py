"""
Detection history summaries.

Single Responsibility: Turn detection events into tables and display text.
"""
from typing import Iterable

import pandas as pd

from .models import DetectedFrequencyEvent

SUMMARY_TOP_N = 5
NO_FREQUENCIES_MESSAGE = "No significant frequencies detected yet."


def events_to_frame(events: Iterable[DetectedFrequencyEvent]) -> pd.DataFrame:
    """
    Build a DataFrame of detection events.

    Returns:
        DataFrame with frequency_hz, duration_seconds, timestamp_ms and a
        parsed ``detected_at`` column; empty if there are no events
    """
    rows = [
        {
            "frequency_hz": e.frequency_hz,
            "duration_seconds": e.duration_seconds,
            "timestamp_ms": e.timestamp_ms,
        }
        for e in events
    ]
    df = pd.DataFrame(rows, columns=["frequency_hz", "duration_seconds", "timestamp_ms"])
    if not df.empty:
        df["detected_at"] = pd.to_datetime(df["timestamp_ms"], unit="ms")
    return df


def summarize_detected_frequencies(events: Iterable[DetectedFrequencyEvent]) -> str:
    """
    Total detection time per frequency, longest first.

    Returns:
        One line per frequency (top 5), or a placeholder message
    """
    df = events_to_frame(events)
    if df.empty:
        return NO_FREQUENCIES_MESSAGE

    totals = (
        df.groupby("frequency_hz", sort=False)["duration_seconds"]
        .sum()
        .sort_values(ascending=False, kind="stable")
        .head(SUMMARY_TOP_N)
    )
    return "\n".join(
        f"{int(freq)} Hz - Detected for {int(round(duration))} seconds"
        for freq, duration in totals.items()
    )


def calculate_indicator_position(current_frequency: float, min_frequency: float, max_frequency: float) -> float:
    """Position of a frequency on the range meter, 0-100%."""
    if current_frequency <= 0:
        return 0.0
    position = (current_frequency - min_frequency) / (max_frequency - min_frequency) * 100
    return min(100.0, max(0.0, position))
