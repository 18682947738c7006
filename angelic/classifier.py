"""
Angelic frequency classification.

Single Responsibility: Map a numeric frequency onto the reference table.
"""
from typing import Optional, Tuple

from .models import AngelicReference

# Maximum distance (Hz, inclusive) for a frequency to count as a match
FREQUENCY_TOLERANCE_HZ = 5

ANGELIC_FREQUENCIES: Tuple[AngelicReference, ...] = (
    AngelicReference(432, "Earth's Sacred Frequency - Grounding & Community Healing"),
    AngelicReference(528, "Miracle Tone - Transformation & Consciousness Awakening"),
    AngelicReference(639, "Harmonious Connection - Spatial Wisdom & Relationships"),
    AngelicReference(741, "Intuitive Awakening - Sacred Knowledge & Problem-Solving"),
    AngelicReference(963, "Divine Consciousness - Infinite Collaboration & Spiritual Connection"),
)


def nearest_reference(frequency_hz: float) -> AngelicReference:
    """
    Find the reference with the smallest distance, ignoring tolerance.

    Ties go to the lower reference (table order).
    """
    best = ANGELIC_FREQUENCIES[0]
    best_diff = abs(best.frequency_hz - frequency_hz)
    for ref in ANGELIC_FREQUENCIES[1:]:
        diff = abs(ref.frequency_hz - frequency_hz)
        if diff < best_diff:
            best, best_diff = ref, diff
    return best


def is_angelic(frequency_hz: float) -> bool:
    """True if the frequency lies within tolerance of any reference."""
    return any(
        abs(ref.frequency_hz - frequency_hz) <= FREQUENCY_TOLERANCE_HZ
        for ref in ANGELIC_FREQUENCIES
    )


def closest_reference(frequency_hz: float) -> Optional[AngelicReference]:
    """
    Get the closest reference, but only when it is within tolerance.

    Returns:
        AngelicReference or None if the nearest one is more than
        FREQUENCY_TOLERANCE_HZ away
    """
    ref = nearest_reference(frequency_hz)
    if abs(ref.frequency_hz - frequency_hz) <= FREQUENCY_TOLERANCE_HZ:
        return ref
    return None


def match_percentage(frequency_hz: float, reference: AngelicReference) -> float:
    """Relative closeness to a reference: 100 at an exact hit."""
    diff = abs(frequency_hz - reference.frequency_hz)
    return 100.0 - (diff / reference.frequency_hz * 100.0)
