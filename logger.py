#!/usr/bin/env python3
"""
Centralized logging for the angelic frequency detector.

Usage:
    from logger import get_logger
    log = get_logger(__name__)
    log.info("Detector started")
    log.error("Failed to open microphone", exc_info=True)
"""
import logging
import sys
from pathlib import Path
from typing import Optional


class ColoredFormatter(logging.Formatter):
    """Color-coded log formatter for terminal output."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
        'RESET': '\033[0m'
    }

    def format(self, record):
        if sys.stdout.isatty():
            color = self.COLORS.get(record.levelname, '')
            reset = self.COLORS['RESET']
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{color}{record.levelname}{reset}"
        return super().format(record)


def setup_logging(
    log_file: Optional[Path] = None,
    level: str = "INFO",
    debug: bool = False
) -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        log_file: Path to log file (if None, only console logging)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        debug: If True, enable DEBUG level and verbose output

    Returns:
        Root logger
    """
    if debug:
        level = "DEBUG"

    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(ColoredFormatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        root_logger.addHandler(file_handler)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def log_session_info(logger: logging.Logger, config: dict, simulate: bool) -> None:
    """Log detector settings and platform details for debugging."""
    import platform

    detection = config["detection"]
    audio = config["audio"]
    logger.info("=" * 60)
    logger.info("AUDIO DETECTOR SESSION")
    logger.info("=" * 60)
    logger.info(f"Mode: {'SIMULATION' if simulate else 'MICROPHONE'}")
    logger.info(f"Sensitivity: {detection['sensitivity']}")
    logger.info(f"Target range: {detection['min_frequency_hz']} Hz - {detection['max_frequency_hz']} Hz")
    if not simulate:
        logger.info(f"Device: {audio['device']} @ {audio['sample_rate']} Hz")
    logger.info(f"Platform: {platform.platform()}")
    logger.info(f"Python: {sys.version.split()[0]}")
    logger.info("=" * 60)
