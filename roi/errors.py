"""
roi/errors.py
─────────────
Error taxonomy of the ROI detection subsystem.

  • InvalidInputError    : null / undecoded image; fatal, no fallback.
  • ConfigurationError   : bad coordinator / detector configuration.
  • DetectorFailure      : exception raised inside a single detector.
  • DetectionTimeoutError: global time budget exceeded.
  • EmptyResultSet       : no detector produced a candidate.
  • DetectionCancelled   : cooperative cancellation reached a checkpoint.
"""

from __future__ import annotations

from typing import Optional


class ROIDetectionError(Exception):
    """Base class for every error raised by the ROI subsystem."""


class InvalidInputError(ROIDetectionError, ValueError):
    """The image is missing or not fully decoded."""


class ConfigurationError(ROIDetectionError, ValueError):
    """A required detector or parameter is missing or invalid."""


class DetectorFailure(ROIDetectionError):
    """
    Wraps an exception raised inside one detector.

    Args:
        algorithm: Method name of the failing detector.
        cause    : Original exception.
    """

    def __init__(self, algorithm: str, cause: Optional[BaseException] = None) -> None:
        self.algorithm = algorithm
        self.cause = cause
        detail = f"{type(cause).__name__}: {cause}" if cause is not None else "unknown error"
        super().__init__(f"{algorithm} detector failed ({detail})")


class DetectionTimeoutError(ROIDetectionError, TimeoutError):
    """The combined detection did not finish within the global timeout."""


class EmptyResultSet(ROIDetectionError):
    """Every detector failed or returned no candidate."""


class DetectionCancelled(ROIDetectionError):
    """Raised at a cancellation checkpoint once the coordinator gave up."""
