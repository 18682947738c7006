"""
Angelic frequency detection pipeline.

Audio acquisition, spectral peak picking, reference classification and
the continuous and batch detection modes built on them.
"""

from .models import (
    Sensitivity,
    DetectorConfiguration,
    FrequencySample,
    DominantFrequency,
    DetectedFrequencyEvent,
    IterationResult,
    IterationAnnotation,
    AngelicReference,
    BatchResult,
)
from .classifier import (
    ANGELIC_FREQUENCIES,
    FREQUENCY_TOLERANCE_HZ,
    is_angelic,
    closest_reference,
    nearest_reference,
    match_percentage,
)
from .features import (
    dominant_frequency,
    boosted_dominant_frequency,
    top_peaks,
    remap_into_range,
)
from .audio import (
    AcquisitionError,
    AcquisitionFailure,
    AnalysisError,
    SpectrumSource,
    MicrophoneSpectrumSource,
    SimulatedSpectrumSource,
    create_spectrum_source,
)
from .randomness import RandomSource
from .detector import DetectionSession, SessionState
from .recording import IterativeRecordingController, LoopState, average_frequency
from .analyzer import AudioAnalyzer
from .reporting import (
    events_to_frame,
    summarize_detected_frequencies,
    calculate_indicator_position,
)

__all__ = [
    # Models
    'Sensitivity',
    'DetectorConfiguration',
    'FrequencySample',
    'DominantFrequency',
    'DetectedFrequencyEvent',
    'IterationResult',
    'IterationAnnotation',
    'AngelicReference',
    'BatchResult',
    # Classifier
    'ANGELIC_FREQUENCIES',
    'FREQUENCY_TOLERANCE_HZ',
    'is_angelic',
    'closest_reference',
    'nearest_reference',
    'match_percentage',
    # Features
    'dominant_frequency',
    'boosted_dominant_frequency',
    'top_peaks',
    'remap_into_range',
    # Audio
    'AcquisitionError',
    'AcquisitionFailure',
    'AnalysisError',
    'SpectrumSource',
    'MicrophoneSpectrumSource',
    'SimulatedSpectrumSource',
    'create_spectrum_source',
    'RandomSource',
    # Detection modes
    'DetectionSession',
    'SessionState',
    'IterativeRecordingController',
    'LoopState',
    'average_frequency',
    'AudioAnalyzer',
    # Reporting
    'events_to_frame',
    'summarize_detected_frequencies',
    'calculate_indicator_position',
]
