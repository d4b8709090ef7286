"""
Utility Functions for Ecotyper

This module provides common utility functions used across the Ecotyper package,
including logging configuration, file handling and small formatting helpers.

Key Functions:
- setup_logging: Configure package-wide logging
- create_output_directory: Create and validate output directories
- format_elapsed_time: Human readable durations for progress messages

Example Usage:
    >>> from ecotyper.utils import setup_logging
    >>> logger = setup_logging(log_level="DEBUG", log_file="demarcation.log")
    >>> logger.info("Starting analysis")
"""

from pathlib import Path
from typing import Optional, Union
import logging
import sys

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# Logging Configuration
# ============================================================================

def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Union[str, Path]] = None,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Configure logging for Ecotyper.

    Sets up the package logger with console and optional file output.

    Parameters
    ----------
    log_level : str, optional
        Logging level: DEBUG, INFO, WARNING, ERROR, or CRITICAL (default: INFO)
    log_file : str or Path, optional
        Path to log file. If None, logs only to console (default: None)
    format_string : str, optional
        Custom format string for log messages. If None, uses default format

    Returns
    -------
    logging.Logger
        Configured logger instance

    Raises
    ------
    ValueError
        If log_level is not a recognised level name

    Notes
    -----
    The default format includes timestamp, level, and message:
    [2025-11-03 10:30:45] INFO: Starting analysis
    """
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    package_logger = logging.getLogger("ecotyper")
    package_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    package_logger.handlers.clear()

    if format_string is None:
        format_string = "[%(asctime)s] %(levelname)s: %(message)s"

    formatter = logging.Formatter(format_string, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, mode='a', encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

        package_logger.info(f"Logging to file: {log_path}")

    return package_logger


def log_function_call(func_name: str, **kwargs) -> None:
    """
    Log a function call with its parameters at DEBUG level.

    Examples
    --------
    >>> log_function_call("compute_bin_levels", n_leaves=12, linkage="single")
    """
    params = ", ".join(f"{k}={v}" for k, v in kwargs.items())
    logger.debug(f"Calling {func_name}({params})")


# ============================================================================
# File and Path Helpers
# ============================================================================

def create_output_directory(output_dir: Union[str, Path]) -> Path:
    """
    Create output directory if it doesn't exist.

    Parameters
    ----------
    output_dir : Union[str, Path]
        Path to output directory

    Returns
    -------
    Path
        Path object for the created directory

    Raises
    ------
    OSError
        If the path exists and is not a directory
    """
    path = Path(output_dir)

    if path.exists() and not path.is_dir():
        raise OSError(f"Output path exists and is not a directory: {path}")

    path.mkdir(parents=True, exist_ok=True)
    logger.debug(f"Output directory ready: {path}")
    return path


def format_elapsed_time(seconds: float) -> str:
    """
    Format elapsed time in human-readable form.

    Examples
    --------
    >>> format_elapsed_time(3725)
    '1h 2m 5s'
    >>> format_elapsed_time(4.2)
    '4.2s'
    """
    if seconds < 60:
        return f"{seconds:.1f}s"

    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)

    if hours:
        return f"{hours}h {minutes}m {secs}s"
    return f"{minutes}m {secs}s"
