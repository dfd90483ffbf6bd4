"""
roi/edge_detector.py
────────────────────
Edge / contour based build-area detector.

Pipeline:
  grayscale → Gaussian blur → Sobel magnitude + direction
  → 4-direction non-maximum suppression → double threshold + hysteresis
  → 8-connected edge components → bounding-rect filtering → scoring
"""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import List, NamedTuple, Optional, Tuple

import cv2
import numpy as np

from roi.detector_base import DetectorBase
from roi.image import Image
from roi.result_model import METHOD_EDGE, DetectionResult, Rectangle

logger = logging.getLogger(__name__)


class Contour(NamedTuple):
    """8-connected edge component: pixel count and (x, y, w, h) bounds (w = maxX − minX)."""
    length: int
    bounds: Tuple[int, int, int, int]


class EdgeCandidate(NamedTuple):
    bounds: Rectangle
    confidence: float
    contour_length: int
    relative_area: float


def gaussian_kernel(sigma: float) -> np.ndarray:
    """
    Normalised 1-D Gaussian kernel of size 2·ceil(3σ) + 1.

    Returns:
        float32 array summing to 1.
    """
    radius = int(math.ceil(3 * sigma))
    x = np.arange(-radius, radius + 1, dtype=np.float64)
    kernel = np.exp(-(x * x) / (2 * sigma * sigma))
    return (kernel / kernel.sum()).astype(np.float32)


class EdgeContourDetector(DetectorBase):
    """
    Finds the build area as the best-scoring edge contour.

    Args:
        blur_sigma      : Gaussian σ before gradient computation.
        canny_low       : Weak edge threshold (gradient magnitude).
        canny_high      : Strong edge threshold.
        min_contour_len : Components with fewer pixels are dropped.
        min_contour_area: Bounding-rect area bounds (px²).
        max_contour_area:
        aspect_ratio_min: Bounding-rect aspect bounds (width / height).
        aspect_ratio_max:
        area_ratio_min  : Bounding-rect area / image area bounds.
        area_ratio_max  :
    """

    _NAME = METHOD_EDGE

    def __init__(
        self,
        blur_sigma: float = 1.0,
        canny_low: float = 50.0,
        canny_high: float = 150.0,
        min_contour_len: int = 10,
        min_contour_area: int = 50_000,
        max_contour_area: int = 2_000_000,
        aspect_ratio_min: float = 1.2,
        aspect_ratio_max: float = 2.5,
        area_ratio_min: float = 0.1,
        area_ratio_max: float = 0.8,
    ) -> None:
        self.blur_sigma       = blur_sigma
        self.canny_low        = canny_low
        self.canny_high       = canny_high
        self.min_contour_len  = min_contour_len
        self.min_contour_area = min_contour_area
        self.max_contour_area = max_contour_area
        self.aspect_ratio_min = aspect_ratio_min
        self.aspect_ratio_max = aspect_ratio_max
        self.area_ratio_min   = area_ratio_min
        self.area_ratio_max   = area_ratio_max

    def get_name(self) -> str:
        return self._NAME

    # ── Detection ────────────────────────────────

    def detect(
        self,
        image: Image,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[DetectionResult]:
        image = self._require_image(image)
        t0 = time.perf_counter()

        blurred = self.blur(image.gray)
        self.check_cancelled(cancel_event)
        edges = self.canny(blurred)
        self.check_cancelled(cancel_event)
        contours = self.trace_contours(edges, cancel_event)
        candidates = self.filter_contours(contours, image.width, image.height)
        scored = self.score_candidates(candidates, image, cancel_event)
        elapsed_ms = (time.perf_counter() - t0) * 1000.0

        logger.debug("edge: %d edge px, %d contours, %d candidates",
                     int(np.count_nonzero(edges)), len(contours), len(scored))
        if not scored:
            return None

        best = scored[0]
        return DetectionResult(
            bounds=best.bounds,
            confidence=best.confidence,
            method=self._NAME,
            metadata={
                "contours_found": len(contours),
                "candidates_filtered": len(candidates),
                "contour_length": best.contour_length,
            },
            inference_time_ms=elapsed_ms,
        )

    # ── Edge map ─────────────────────────────────

    def blur(self, gray: np.ndarray) -> np.ndarray:
        """Separable Gaussian blur with edge-clamped borders, rounded back to uint8."""
        kernel = gaussian_kernel(self.blur_sigma)
        blurred = cv2.sepFilter2D(gray.astype(np.float32), cv2.CV_32F, kernel, kernel,
                                  borderType=cv2.BORDER_REPLICATE)
        return np.clip(np.rint(blurred), 0, 255).astype(np.uint8)

    def canny(self, blurred: np.ndarray) -> np.ndarray:
        """
        Canny edge map of an already blurred image.

        Returns:
            bool array, True on edge pixels.
        """
        h, w = blurred.shape[:2]
        if h < 3 or w < 3:
            return np.zeros((h, w), dtype=bool)

        g = blurred.astype(np.float32)
        gx = cv2.Sobel(g, cv2.CV_32F, 1, 0, ksize=3)
        gy = cv2.Sobel(g, cv2.CV_32F, 0, 1, ksize=3)
        for grad in (gx, gy):
            grad[0, :] = grad[-1, :] = 0.0
            grad[:, 0] = grad[:, -1] = 0.0
        magnitude = cv2.magnitude(gx, gy)
        direction = np.arctan2(gy, gx)[1:-1, 1:-1]

        suppressed = self._suppress_non_maxima(magnitude, direction)
        strong = suppressed >= self.canny_high
        weak = (suppressed >= self.canny_low) & ~strong
        return self._hysteresis(strong, weak)

    @staticmethod
    def _suppress_non_maxima(magnitude: np.ndarray, direction: np.ndarray) -> np.ndarray:
        p8 = np.pi / 8
        horizontal = (((direction >= -p8) & (direction < p8))
                      | (direction >= 7 * p8) | (direction < -7 * p8))
        rising = (((direction >= p8) & (direction < 3 * p8))
                  | ((direction >= -7 * p8) & (direction < -5 * p8)))
        vertical = (((direction >= 3 * p8) & (direction < 5 * p8))
                    | ((direction >= -5 * p8) & (direction < -3 * p8)))

        m = magnitude
        center = m[1:-1, 1:-1]
        conditions = [horizontal, rising, vertical]
        first = np.select(conditions, [m[1:-1, :-2], m[:-2, 2:], m[:-2, 1:-1]], default=m[:-2, :-2])
        second = np.select(conditions, [m[1:-1, 2:], m[2:, :-2], m[2:, 1:-1]], default=m[2:, 2:])

        suppressed = np.zeros_like(m)
        suppressed[1:-1, 1:-1] = np.where((center >= first) & (center >= second), center, 0.0)
        return suppressed

    @staticmethod
    def _hysteresis(strong: np.ndarray, weak: np.ndarray) -> np.ndarray:
        """Weak pixels survive only when 8-connected (transitively) to a strong pixel."""
        candidates = strong | weak
        if not strong.any():
            return np.zeros_like(strong)
        _, labels = cv2.connectedComponents(candidates.astype(np.uint8), connectivity=8)
        keep = np.unique(labels[strong])
        return np.isin(labels, keep) & candidates

    # ── Contours ─────────────────────────────────

    def trace_contours(
        self,
        edges: np.ndarray,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Contour]:
        """8-connected components of edge pixels with at least min_contour_len pixels."""
        count, _, stats, _ = cv2.connectedComponentsWithStats(
            edges.astype(np.uint8), connectivity=8)
        contours: List[Contour] = []
        for label in range(1, count):
            if label % 1024 == 0:
                self.check_cancelled(cancel_event)
            x, y, w, h, length = (int(v) for v in stats[label])
            if length < self.min_contour_len:
                continue
            contours.append(Contour(length=length, bounds=(x, y, w - 1, h - 1)))
        return contours

    def filter_contours(
        self,
        contours: List[Contour],
        image_width: int,
        image_height: int,
    ) -> List[Tuple[Contour, Rectangle]]:
        """Area, aspect-ratio and relative-area filters on contour bounding rects."""
        image_area = float(image_width * image_height)
        kept: List[Tuple[Contour, Rectangle]] = []
        for contour in contours:
            x, y, w, h = contour.bounds
            area = w * h
            if area < self.min_contour_area or area > self.max_contour_area:
                continue
            aspect = w / h
            if aspect < self.aspect_ratio_min or aspect > self.aspect_ratio_max:
                continue
            relative = area / image_area
            if relative < self.area_ratio_min or relative > self.area_ratio_max:
                continue
            kept.append((contour, Rectangle(x, y, w, h)))
        return kept

    # ── Scoring ──────────────────────────────────

    def score_candidates(
        self,
        candidates: List[Tuple[Contour, Rectangle]],
        image: Image,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[EdgeCandidate]:
        """0.3·size + 0.2·aspect + 0.2·position + 0.3·content, best first."""
        scored: List[EdgeCandidate] = []
        for contour, bounds in candidates:
            self.check_cancelled(cancel_event)
            relative = bounds.area / float(image.area)
            score = (
                self.size_score(relative) * 0.3
                + self.aspect_score(bounds.aspect_ratio) * 0.2
                + self.position_score(bounds, image.width, image.height) * 0.2
                + self.content_score(image, bounds) * 0.3
            )
            scored.append(EdgeCandidate(
                bounds=bounds,
                confidence=max(0.0, min(1.0, score)),
                contour_length=contour.length,
                relative_area=relative,
            ))
        scored.sort(key=lambda c: c.confidence, reverse=True)
        return scored

    @staticmethod
    def content_score(image: Image, bounds: Rectangle) -> float:
        """Prefers regions where about 40 % of sampled pixels are dark (mean RGB < 80)."""
        step = max(1, min(bounds.width, bounds.height) // 20)
        sample = image.rgb[bounds.y:bounds.bottom:step, bounds.x:bounds.right:step]
        if sample.size == 0:
            return 0.0
        brightness = sample.astype(np.float32).mean(axis=2)
        dark_ratio = np.count_nonzero(brightness < 80) / float(brightness.size)
        return max(0.0, 1.0 - abs(dark_ratio - 0.4) * 2)

    # ── Runtime parameters ───────────────────────

    def set_params(
        self,
        canny_low: Optional[float] = None,
        canny_high: Optional[float] = None,
        blur_sigma: Optional[float] = None,
    ) -> None:
        """
        Updates edge thresholds at runtime.

        Raises:
            ValueError: Negative thresholds, low >= high, or σ <= 0.
        """
        low = self.canny_low if canny_low is None else canny_low
        high = self.canny_high if canny_high is None else canny_high
        if low < 0 or high < 0:
            raise ValueError("Canny thresholds must be >= 0.")
        if low >= high:
            raise ValueError("canny_low must be below canny_high.")
        if blur_sigma is not None:
            if blur_sigma <= 0:
                raise ValueError("blur_sigma must be > 0.")
            self.blur_sigma = blur_sigma
        self.canny_low, self.canny_high = low, high

    def __repr__(self) -> str:
        return (
            f"EdgeContourDetector(sigma={self.blur_sigma}, "
            f"canny=({self.canny_low}, {self.canny_high}))"
        )
