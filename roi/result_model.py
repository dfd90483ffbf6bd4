"""
roi/result_model.py
───────────────────
Central data model carrying detection results.
Every detector produces this model; the coordinator, benchmark harness
and exporters consume it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

METHOD_CORNER   = "corner"
METHOD_EDGE     = "edge"
METHOD_TEMPLATE = "template"
METHOD_COLOR    = "color"
METHOD_FALLBACK = "fallback"

DETECTOR_METHODS: Tuple[str, ...] = (METHOD_CORNER, METHOD_EDGE, METHOD_TEMPLATE, METHOD_COLOR)
METHODS: Tuple[str, ...] = DETECTOR_METHODS + (METHOD_FALLBACK,)


@dataclass(frozen=True)
class Rectangle:
    """
    Axis-aligned rectangle in image pixel coordinates.

    Attributes:
        x, y         : Top-left corner.
        width, height: Side lengths (both > 0).
    """

    x: int
    y: int
    width: int
    height: int

    def __post_init__(self) -> None:
        for name in ("x", "y", "width", "height"):
            object.__setattr__(self, name, int(getattr(self, name)))
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Rectangle sides must be positive: {self.width}x{self.height}")

    @classmethod
    def from_ltrb(cls, left: int, top: int, right: int, bottom: int) -> "Rectangle":
        return cls(left, top, right - left, bottom - top)

    # ── Geometry ─────────────────────────────────

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    def fits_within(self, image_width: int, image_height: int) -> bool:
        """True when the rectangle lies fully inside a W×H image."""
        return (self.x >= 0 and self.y >= 0
                and self.right <= image_width and self.bottom <= image_height)

    def iou(self, other: "Rectangle") -> float:
        """Intersection over union with another rectangle."""
        ix1, iy1 = max(self.x, other.x), max(self.y, other.y)
        ix2, iy2 = min(self.right, other.right), min(self.bottom, other.bottom)
        if ix2 <= ix1 or iy2 <= iy1:
            return 0.0
        inter = (ix2 - ix1) * (iy2 - iy1)
        return inter / (self.area + other.area - inter)

    # ── Conversions ──────────────────────────────

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return self.x, self.y, self.width, self.height

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class DetectionResult:
    """
    Output of one detector invocation (or of the coordinator).

    Attributes:
        bounds           : Detected build area.
        confidence       : Score in [0, 1]; clamped on creation.
        method           : One of METHODS; fixed at creation.
        metadata         : Detector specific details (counts, alternatives …).
        inference_time_ms: Wall time spent producing the result.
        timestamp        : Creation time (Unix).
    """

    bounds: Rectangle
    confidence: float
    method: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    inference_time_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.method not in METHODS:
            raise ValueError(f"Unknown detection method: {self.method!r}")
        if not isinstance(self.bounds, Rectangle):
            raise TypeError("bounds must be a Rectangle")
        confidence = float(self.confidence)
        if confidence != confidence:  # NaN
            confidence = 0.0
        object.__setattr__(self, "confidence", min(1.0, max(0.0, confidence)))

    @property
    def is_fallback(self) -> bool:
        return self.method == METHOD_FALLBACK

    def to_dict(self) -> dict:
        """JSON-friendly dictionary (metadata values must be serializable)."""
        return {
            "bounds": self.bounds.to_dict(),
            "confidence": round(self.confidence, 4),
            "method": self.method,
            "metadata": self.metadata,
            "inference_time_ms": round(self.inference_time_ms, 4),
            "timestamp": round(self.timestamp, 6),
        }

    def summary(self) -> dict:
        """Compact form used for alternatives / per-algorithm listings."""
        return {
            "method": self.method,
            "bounds": self.bounds.to_dict(),
            "confidence": round(self.confidence, 4),
            "inference_time_ms": round(self.inference_time_ms, 4),
        }

    def __repr__(self) -> str:
        return (
            f"DetectionResult(method={self.method!r}, "
            f"bounds={self.bounds.as_tuple()}, "
            f"confidence={self.confidence:.3f}, "
            f"time={self.inference_time_ms:.2f}ms)"
        )
