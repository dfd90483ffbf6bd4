"""
roi/color_detector.py
─────────────────────
Color segmentation build-area detector.

Pixels are classified against three UI color signatures (space background,
UI panel, hex border). Large space-background regions and the area framed
by UI regions on the left and right become candidates.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional, Tuple

import cv2
import numpy as np

from roi.detector_base import DetectorBase
from roi.image import Image
from roi.result_model import METHOD_COLOR, DetectionResult, Rectangle

logger = logging.getLogger(__name__)

TYPE_SPACE_REGION = "space-region"
TYPE_UI_FRAMED    = "ui-framed"


@dataclass(frozen=True)
class ColorSignature:
    """Reference color and the weighted distance under which a pixel matches it."""
    name: str
    rgb: Tuple[int, int, int]
    tolerance: float


SPACE_BACKGROUND = ColorSignature("space", (20, 25, 35), 40.0)
UI_PANEL         = ColorSignature("ui", (60, 80, 120), 50.0)
HEX_BORDER       = ColorSignature("hex", (150, 180, 220), 60.0)


class ColorRegion(NamedTuple):
    """4-connected region of one signature class."""
    segment: str
    bounds: Rectangle
    size: int


class ColorCandidate(NamedTuple):
    bounds: Rectangle
    kind: str
    confidence: float = 0.0


def color_distance(rgb: np.ndarray, reference: Tuple[int, int, int]) -> np.ndarray:
    """Weighted distance sqrt(0.3·dr² + 0.59·dg² + 0.11·db²) over the last axis."""
    diff = rgb.astype(np.float32) - np.asarray(reference, dtype=np.float32)
    return np.sqrt(0.3 * diff[..., 0] ** 2 + 0.59 * diff[..., 1] ** 2 + 0.11 * diff[..., 2] ** 2)


class ColorDetector(DetectorBase):
    """
    Args:
        signatures      : Segment signatures in label order.
        min_region_size : Minimum candidate area (px²); regions need
                          min_region_size / sample_step² pixels.
        max_region_size : Maximum candidate area (px²).
        aspect_ratio_min: Candidate aspect bounds (width / height).
        aspect_ratio_max:
        sample_step     : Grid step of the dominant-color histogram.
    """

    _NAME = METHOD_COLOR

    def __init__(
        self,
        signatures: Tuple[ColorSignature, ...] = (SPACE_BACKGROUND, UI_PANEL, HEX_BORDER),
        min_region_size: int = 30_000,
        max_region_size: int = 1_500_000,
        aspect_ratio_min: float = 1.0,
        aspect_ratio_max: float = 3.0,
        sample_step: int = 3,
    ) -> None:
        self.signatures       = tuple(signatures)
        self.min_region_size  = min_region_size
        self.max_region_size  = max_region_size
        self.aspect_ratio_min = aspect_ratio_min
        self.aspect_ratio_max = aspect_ratio_max
        self.sample_step      = sample_step

    def get_name(self) -> str:
        return self._NAME

    @property
    def min_region_pixels(self) -> float:
        return self.min_region_size / float(self.sample_step * self.sample_step)

    # ── Detection ────────────────────────────────

    def detect(
        self,
        image: Image,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[DetectionResult]:
        image = self._require_image(image)
        t0 = time.perf_counter()

        analysis = self.analyze_color_distribution(image.rgb)
        self.check_cancelled(cancel_event)
        labels = self.classify_pixels(image.rgb)
        self.check_cancelled(cancel_event)
        regions = self.find_regions(labels, cancel_event)
        candidates = self.find_candidates(regions, image.width, image.height)
        scored = self.score_candidates(candidates, image, cancel_event)
        elapsed_ms = (time.perf_counter() - t0) * 1000.0

        logger.debug("color: %d regions, %d candidates", len(regions), len(candidates))
        if not scored:
            return None

        best = scored[0]
        return DetectionResult(
            bounds=best.bounds,
            confidence=best.confidence,
            method=self._NAME,
            metadata={
                "color_regions": len(regions),
                "ui_candidates": len(candidates),
                "candidate_type": best.kind,
                "dominant_colors": analysis["dominant_colors"],
                "dark_pixel_ratio": analysis["dark_pixel_ratio"],
                "blue_ui_ratio": analysis["blue_ui_ratio"],
            },
            inference_time_ms=elapsed_ms,
        )

    # ── Analysis ─────────────────────────────────

    def analyze_color_distribution(self, rgb: np.ndarray, top: int = 10) -> dict:
        """
        Histogram of 16-level quantised colors on a sample grid.

        Returns:
            dict with dominant_colors (top entries, most frequent first),
            dark_pixel_ratio and blue_ui_ratio of those entries.
        """
        step = self.sample_step
        sample = (rgb[::step, ::step].astype(np.int32) // 16) * 16
        keys = (sample[..., 0] << 16) | (sample[..., 1] << 8) | sample[..., 2]
        values, counts = np.unique(keys.ravel(), return_counts=True)
        order = np.argsort(-counts, kind="stable")[:top]

        dominant = []
        for i in order:
            key = int(values[i])
            dominant.append({"r": key >> 16, "g": (key >> 8) & 0xFF, "b": key & 0xFF,
                             "count": int(counts[i])})

        total = rgb.shape[0] * rgb.shape[1] / float(step * step)
        dark = sum(c["count"] for c in dominant if (c["r"] + c["g"] + c["b"]) / 3 < 60)
        blue = sum(c["count"] for c in dominant
                   if c["b"] > c["r"] and c["b"] > c["g"] and c["b"] > 80)
        return {
            "dominant_colors": dominant,
            "dark_pixel_ratio": dark / total if total else 0.0,
            "blue_ui_ratio": blue / total if total else 0.0,
        }

    def classify_pixels(self, rgb: np.ndarray) -> np.ndarray:
        """
        Per-pixel label: 0 = unclassified, i + 1 = closest matching signature i.
        """
        best_distance = np.full(rgb.shape[:2], np.inf, dtype=np.float32)
        labels = np.zeros(rgb.shape[:2], dtype=np.uint8)
        for i, signature in enumerate(self.signatures):
            distance = color_distance(rgb, signature.rgb)
            better = (distance < signature.tolerance) & (distance < best_distance)
            labels[better] = i + 1
            best_distance[better] = distance[better]
        return labels

    def find_regions(
        self,
        labels: np.ndarray,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[ColorRegion]:
        """4-connected regions per signature, large enough to matter."""
        regions: List[ColorRegion] = []
        for i, signature in enumerate(self.signatures):
            self.check_cancelled(cancel_event)
            mask = (labels == i + 1).astype(np.uint8)
            count, _, stats, _ = cv2.connectedComponentsWithStats(mask, connectivity=4)
            for label in range(1, count):
                if label % 1024 == 0:
                    self.check_cancelled(cancel_event)
                x, y, w, h, size = (int(v) for v in stats[label])
                if size >= self.min_region_pixels:
                    regions.append(ColorRegion(signature.name, Rectangle(x, y, w, h), size))
        return regions

    def _acceptable(self, width: int, height: int) -> bool:
        if width <= 0 or height <= 0:
            return False
        area = width * height
        aspect = width / height
        return (self.min_region_size <= area <= self.max_region_size
                and self.aspect_ratio_min <= aspect <= self.aspect_ratio_max)

    def find_candidates(
        self,
        regions: List[ColorRegion],
        image_width: int,
        image_height: int,
    ) -> List[ColorCandidate]:
        """Large space regions plus the area framed by UI regions."""
        candidates: List[ColorCandidate] = []
        space_name = self.signatures[0].name
        for region in regions:
            if region.segment != space_name or region.size <= self.min_region_pixels:
                continue
            if self._acceptable(region.bounds.width, region.bounds.height):
                candidates.append(ColorCandidate(region.bounds, TYPE_SPACE_REGION))

        framing = [r for r in regions if r.segment != space_name]
        framed = self.find_framed_area(framing, image_width, image_height)
        if framed is not None:
            candidates.append(ColorCandidate(framed, TYPE_UI_FRAMED))
        return candidates

    def find_framed_area(
        self,
        regions: List[ColorRegion],
        image_width: int,
        image_height: int,
    ) -> Optional[Rectangle]:
        """
        Area between UI regions starting in the left 30 % and the right 30 %
        of the image, optionally narrowed by regions in the top / bottom 30 %.
        """
        left = [r.bounds for r in regions if r.bounds.x < image_width * 0.3]
        right = [r.bounds for r in regions if r.bounds.x > image_width * 0.7]
        if not left or not right:
            return None

        left_bound = max(b.right for b in left)
        right_bound = min(b.x for b in right)
        if right_bound <= left_bound:
            return None

        top = [r.bounds for r in regions if r.bounds.y < image_height * 0.3]
        bottom = [r.bounds for r in regions if r.bounds.y > image_height * 0.7]
        top_bound = max(b.bottom for b in top) if top else 0
        bottom_bound = min(b.y for b in bottom) if bottom else image_height

        width, height = right_bound - left_bound, bottom_bound - top_bound
        if not self._acceptable(width, height):
            return None
        return Rectangle(left_bound, top_bound, width, height)

    # ── Scoring ──────────────────────────────────

    def score_candidates(
        self,
        candidates: List[ColorCandidate],
        image: Image,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[ColorCandidate]:
        """type + 0.2·size + 0.15·aspect + 0.15·position + 0.1·content, best first."""
        scored: List[ColorCandidate] = []
        for candidate in candidates:
            self.check_cancelled(cancel_event)
            b = candidate.bounds
            score = 0.4 if candidate.kind == TYPE_UI_FRAMED else 0.2
            score += self.size_score(b.area / float(image.area)) * 0.2
            score += self.aspect_score(b.aspect_ratio) * 0.15
            score += self.position_score(b, image.width, image.height) * 0.15
            score += self.content_score(image, b) * 0.1
            scored.append(candidate._replace(confidence=max(0.0, min(1.0, score))))
        scored.sort(key=lambda c: c.confidence, reverse=True)
        return scored

    def content_score(self, image: Image, bounds: Rectangle) -> float:
        """Mix of space background, UI pixels and a few bright highlights."""
        step = max(2, min(bounds.width, bounds.height) // 30)
        sample = image.rgb[bounds.y:bounds.bottom:step, bounds.x:bounds.right:step]
        total = sample.shape[0] * sample.shape[1]
        if total == 0:
            return 0.0

        space_sig, ui_sigs = self.signatures[0], self.signatures[1:]
        space = color_distance(sample, space_sig.rgb) < space_sig.tolerance
        ui = np.zeros(space.shape, dtype=bool)
        for signature in ui_sigs:
            ui |= color_distance(sample, signature.rgb) < signature.tolerance
        ui &= ~space
        bright = sample.astype(np.float32).mean(axis=2) > 150

        space_ratio = np.count_nonzero(space) / total
        ui_ratio = np.count_nonzero(ui) / total
        bright_ratio = np.count_nonzero(bright) / total

        score = 0.0
        if 0.3 < space_ratio < 0.8:
            score += 0.4
        if 0.05 < ui_ratio < 0.5:
            score += 0.3
        if 0.02 < bright_ratio < 0.3:
            score += 0.3
        return min(1.0, score)

    # ── Runtime parameters ───────────────────────

    def set_params(
        self,
        min_region_size: Optional[int] = None,
        max_region_size: Optional[int] = None,
    ) -> None:
        """
        Raises:
            ValueError: non-positive sizes or min > max.
        """
        lo = self.min_region_size if min_region_size is None else min_region_size
        hi = self.max_region_size if max_region_size is None else max_region_size
        if lo <= 0 or hi <= 0:
            raise ValueError("Region sizes must be > 0.")
        if lo > hi:
            raise ValueError("min_region_size must not exceed max_region_size.")
        self.min_region_size, self.max_region_size = lo, hi

    def __repr__(self) -> str:
        names: Dict[str, float] = {s.name: s.tolerance for s in self.signatures}
        return f"ColorDetector(signatures={names}, regions=[{self.min_region_size}, {self.max_region_size}])"
