"""
roi/detector_base.py
────────────────────
ABC (Abstract Base Class) interface every ROI detector must follow.
Shared validation and scoring helpers live here.
"""

from __future__ import annotations

import abc
import math
import threading
from typing import Optional

from roi.errors import DetectionCancelled, InvalidInputError
from roi.image import Image, is_decoded
from roi.result_model import DetectionResult, Rectangle


class DetectorBase(abc.ABC):
    """
    Abstract base class for build-area detectors.

    Subclasses MUST implement:
      • detect(image, cancel_event) → DetectionResult | None
      • get_name()                  → str  (the detection method name)

    detect() returns None when no candidate passes the detector's own
    score threshold and lets every internal exception propagate; it never
    returns a partial result.
    """

    # ── Abstract methods ─────────────────────────

    @abc.abstractmethod
    def detect(
        self,
        image: Image,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[DetectionResult]:
        """
        Locates the build area in a decoded image.

        Args:
            image       : Fully decoded RGBA screenshot.
            cancel_event: Set by the coordinator once the result is no longer
                          wanted; checked at cooperative checkpoints.

        Returns:
            Best DetectionResult, or None when nothing qualified.
        """

    @abc.abstractmethod
    def get_name(self) -> str:
        """Method name used in results ("corner", "edge" …)."""

    # ── Shared helpers ───────────────────────────

    @staticmethod
    def validate_image(image: object) -> bool:
        """True when the image is decoded and holds a non-empty RGBA buffer."""
        return is_decoded(image)

    def _require_image(self, image: object) -> Image:
        if not self.validate_image(image):
            raise InvalidInputError(f"{self.get_name()}: invalid image (None or not decoded)")
        return image  # type: ignore[return-value]

    @staticmethod
    def check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        """Cooperative cancellation checkpoint."""
        if cancel_event is not None and cancel_event.is_set():
            raise DetectionCancelled("detection cancelled")

    @staticmethod
    def size_score(relative_area: float, optimal: float = 0.35) -> float:
        """Triangular score peaking when the area covers `optimal` of the image."""
        return max(0.0, 1.0 - abs(relative_area - optimal) * 3.0)

    @staticmethod
    def aspect_score(aspect_ratio: float, optimal: float = 1.6) -> float:
        """Triangular score peaking at the typical build-area aspect ratio."""
        return max(0.0, 1.0 - abs(aspect_ratio - optimal))

    @staticmethod
    def position_score(bounds: Rectangle, image_width: int, image_height: int) -> float:
        """1 − normalized distance between the rectangle and image centers."""
        cx, cy = bounds.center
        dx = abs(cx - image_width / 2) / (image_width / 2)
        dy = abs(cy - image_height / 2) / (image_height / 2)
        return max(0.0, 1.0 - math.sqrt(dx * dx + dy * dy))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.get_name()!r})"
