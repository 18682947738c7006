#!/usr/bin/env python3
"""Configuration loader for the angelic frequency detector."""
import json
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

from logger import get_logger

log = get_logger(__name__)

SENSITIVITY_LEVELS = ("Low", "Medium", "High")


def get_default_config() -> Dict[str, Any]:
    """Return default configuration values."""
    return {
        "audio": {
            "device": "plughw:CARD=Device,DEV=0",
            "sample_rate": 48000,
            "fallback_sample_rate": 44100,
            "channels": 1,
            "sample_format": "S16_LE",
            "chunk_duration": 0.02,
            "startup_grace_sec": 0.1,
            "smoothing_time_constant": 0.8,
            "dc_offset_removal": True,
            "high_pass_filter_hz": 20,
            "auto_gain": True,
            "simulation_sample_rate": 44100
        },
        "detection": {
            "min_frequency_hz": 432,
            "max_frequency_hz": 963,
            "sensitivity": "Medium",
            "frame_interval_sec": 1 / 60,
            "min_event_duration_sec": 1.0,
            "change_tolerance_hz": 5,
            "resetup_delay_sec": 1.0,
            "demo_frequency_hz": 432
        },
        "recording_loop": {
            "max_iterations": 5,
            "iteration_window_sec": 3.0,
            "iteration_timeout_sec": 3.0,
            "simulation_window_sec": 0.3,
            "watchdog_timeout_sec": 60.0
        },
        "logging": {
            "level": "INFO",
            "log_file": None
        }
    }


def validate_config(config: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """Validate configuration structure and values."""
    defaults = get_default_config()

    # Check required top-level keys
    for key in defaults.keys():
        if key not in config:
            return False, f"Missing required config section: {key}"

    # Validate audio settings
    audio = config.get("audio", {})
    if not isinstance(audio.get("sample_rate"), int) or audio.get("sample_rate") <= 0:
        return False, "audio.sample_rate must be a positive integer"
    if not isinstance(audio.get("fallback_sample_rate"), int) or audio.get("fallback_sample_rate") <= 0:
        return False, "audio.fallback_sample_rate must be a positive integer"
    if audio.get("chunk_duration") <= 0:
        return False, "audio.chunk_duration must be positive"
    if not 0 <= audio.get("smoothing_time_constant", 0) < 1:
        return False, "audio.smoothing_time_constant must be in [0, 1)"

    # Validate detection settings
    detection = config.get("detection", {})
    min_hz = detection.get("min_frequency_hz")
    max_hz = detection.get("max_frequency_hz")
    if not isinstance(min_hz, (int, float)) or not isinstance(max_hz, (int, float)):
        return False, "detection.min_frequency_hz and max_frequency_hz must be numbers"
    if min_hz <= 0:
        return False, "detection.min_frequency_hz must be positive"
    if min_hz >= max_hz:
        return False, "detection.min_frequency_hz must be below detection.max_frequency_hz"
    if detection.get("sensitivity") not in SENSITIVITY_LEVELS:
        return False, f"detection.sensitivity must be one of {', '.join(SENSITIVITY_LEVELS)}"
    if detection.get("frame_interval_sec") <= 0:
        return False, "detection.frame_interval_sec must be positive"
    if detection.get("min_event_duration_sec") < 0:
        return False, "detection.min_event_duration_sec must be non-negative"

    # Validate recording loop
    loop = config.get("recording_loop", {})
    if not isinstance(loop.get("max_iterations"), int) or loop.get("max_iterations") <= 0:
        return False, "recording_loop.max_iterations must be a positive integer"
    for key in ("iteration_window_sec", "iteration_timeout_sec", "simulation_window_sec", "watchdog_timeout_sec"):
        if loop.get(key) <= 0:
            return False, f"recording_loop.{key} must be positive"

    return True, None


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from JSON file, merging with defaults.

    Args:
        config_path: Path to config file. If None, looks for config.json in current directory.

    Returns:
        Merged configuration dictionary.

    Raises:
        ValueError: If config is invalid.
    """
    defaults = get_default_config()

    if config_path is None:
        config_path = Path("config.json")

    if not config_path.exists():
        log.info(f"Config file {config_path} not found, using defaults")
        return defaults

    try:
        with config_path.open() as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file {config_path}: {e}")

    # Deep merge with defaults
    merged = _deep_merge(defaults, config)

    # Validate
    is_valid, error_msg = validate_config(merged)
    if not is_valid:
        raise ValueError(f"Invalid configuration: {error_msg}")

    log.info(f"Loaded configuration from {config_path}")
    return merged


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries, with override taking precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def get_config_value(config: Dict[str, Any], path: str, default: Any = None) -> Any:
    """
    Get nested config value using dot notation.

    Example: get_config_value(config, "detection.sensitivity")
    """
    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value
