"""
roi/corner_detector.py
──────────────────────
Harris corner based build-area detector.

Pipeline:
  grayscale → Sobel gradients → structure tensor → Harris response
  → non-maximum suppression → rectangle hypotheses → heuristic scoring
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from itertools import combinations
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

import cv2
import numpy as np

from roi.detector_base import DetectorBase
from roi.image import Image
from roi.result_model import METHOD_CORNER, DetectionResult, Rectangle

logger = logging.getLogger(__name__)


class Corner(NamedTuple):
    """Harris corner: pixel position and response strength."""
    x: int
    y: int
    strength: float


class RectangleHypothesis(NamedTuple):
    """Axis-aligned rectangle spanned by 2 or 4 corners."""
    bounds: Rectangle
    corners: Tuple[Corner, ...]
    corner_strength: float


@dataclass(frozen=True)
class RectangleCandidate:
    """Scored hypothesis that passed the score threshold."""
    bounds: Rectangle
    confidence: float
    corner_strength: float
    corners: Tuple[Corner, ...]


class CornerDetector(DetectorBase):
    """
    Finds the build area from strong corners of its frame.

    Args:
        harris_k          : Harris sensitivity constant.
        harris_threshold  : Minimum response for a pixel to be a corner.
        window_size       : Structure tensor window (px).
        suppression_radius: Non-maximum suppression radius (px).
        max_corners       : Strongest corners kept after suppression.
        min_rectangle_size: Minimum side of a hypothesis (px).
        max_rectangles    : Search stops after this many valid hypotheses.
        aspect_ratio_min  : Lower aspect-ratio bound (width / height).
        aspect_ratio_max  : Upper aspect-ratio bound.
        area_ratio_min    : Minimum rectangle / image area.
        area_ratio_max    : Maximum rectangle / image area.
        min_score         : Candidates must score above this.
        axis_tolerance    : When set, 4-corner hypotheses whose corners lie
                            farther than this (px) from the rectangle edges
                            are skipped before validation. None disables it.

    The 4-corner search is O(n⁴) in max_corners (≈230k combinations for
    50 corners); max_corners and max_rectangles bound it.
    """

    _NAME = METHOD_CORNER

    def __init__(
        self,
        harris_k: float = 0.04,
        harris_threshold: float = 0.01,
        window_size: int = 3,
        suppression_radius: float = 10.0,
        max_corners: int = 50,
        min_rectangle_size: int = 300,
        max_rectangles: int = 10,
        aspect_ratio_min: float = 1.2,
        aspect_ratio_max: float = 2.5,
        area_ratio_min: float = 0.1,
        area_ratio_max: float = 0.8,
        min_score: float = 0.3,
        axis_tolerance: Optional[float] = None,
    ) -> None:
        self.harris_k           = harris_k
        self.harris_threshold   = harris_threshold
        self.window_size        = window_size
        self.suppression_radius = suppression_radius
        self.max_corners        = max_corners
        self.min_rectangle_size = min_rectangle_size
        self.max_rectangles     = max_rectangles
        self.aspect_ratio_min   = aspect_ratio_min
        self.aspect_ratio_max   = aspect_ratio_max
        self.area_ratio_min     = area_ratio_min
        self.area_ratio_max     = area_ratio_max
        self.min_score          = min_score
        self.axis_tolerance     = axis_tolerance

    def get_name(self) -> str:
        return self._NAME

    # ── Detection ────────────────────────────────

    def detect(
        self,
        image: Image,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[DetectionResult]:
        """
        Runs the full corner pipeline.

        Raises:
            InvalidInputError : Image is None or not decoded.
            DetectionCancelled: cancel_event was set during the search.
        """
        image = self._require_image(image)
        t0 = time.perf_counter()

        corners = self.detect_corners(image.gray, cancel_event)
        rectangles = self.find_rectangles(corners, image.width, image.height, cancel_event)
        candidates = self.score_rectangles(rectangles, image, cancel_event)
        elapsed_ms = (time.perf_counter() - t0) * 1000.0

        if not candidates:
            logger.debug("No corner candidate (%d corners, %d rectangles) in %.1f ms",
                         len(corners), len(rectangles), elapsed_ms)
            return None

        best = candidates[0]
        logger.debug("Corner ROI %s confidence=%.3f", best.bounds.as_tuple(), best.confidence)
        return DetectionResult(
            bounds=best.bounds,
            confidence=best.confidence,
            method=self._NAME,
            metadata={
                "corner_count": len(corners),
                "rectangle_count": len(rectangles),
                "candidate_count": len(candidates),
                "corner_strength": best.corner_strength,
            },
            inference_time_ms=elapsed_ms,
        )

    # ── Harris corners ───────────────────────────

    def harris_response(self, gray: np.ndarray) -> np.ndarray:
        """
        Per-pixel Harris response R = det(S) − k·trace(S)².

        Gradients are 3×3 Sobel (zero on the 1 px border); S is summed over
        the window. Pixels within window_size of the border are set to 0.
        """
        g = gray.astype(np.float64)
        gx = cv2.Sobel(g, cv2.CV_64F, 1, 0, ksize=3)
        gy = cv2.Sobel(g, cv2.CV_64F, 0, 1, ksize=3)
        for grad in (gx, gy):
            grad[0, :] = grad[-1, :] = 0.0
            grad[:, 0] = grad[:, -1] = 0.0

        half = self.window_size // 2
        ksize = (2 * half + 1, 2 * half + 1)
        sxx = cv2.boxFilter(gx * gx, -1, ksize, normalize=False, borderType=cv2.BORDER_CONSTANT)
        syy = cv2.boxFilter(gy * gy, -1, ksize, normalize=False, borderType=cv2.BORDER_CONSTANT)
        sxy = cv2.boxFilter(gx * gy, -1, ksize, normalize=False, borderType=cv2.BORDER_CONSTANT)

        trace = sxx + syy
        response = sxx * syy - sxy * sxy - self.harris_k * trace * trace

        m = self.window_size
        response[:m, :] = 0.0
        response[-m:, :] = 0.0
        response[:, :m] = 0.0
        response[:, -m:] = 0.0
        return response

    def detect_corners(
        self,
        gray: np.ndarray,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Corner]:
        """Thresholded, suppressed and capped Harris corners, strongest first."""
        response = self.harris_response(gray)
        ys, xs = np.nonzero(response > self.harris_threshold)
        logger.debug("%d raw corners", len(xs))
        return self._suppress(xs, ys, response[ys, xs], cancel_event)

    def filter_corners(self, corners: Sequence[Corner]) -> List[Corner]:
        """
        Greedy non-maximum suppression on an arbitrary corner list.

        Corners are visited by descending strength; one closer than
        suppression_radius to an already kept corner is dropped.
        At most max_corners survive.
        """
        if not corners:
            return []
        xs = np.array([c.x for c in corners], dtype=np.int64)
        ys = np.array([c.y for c in corners], dtype=np.int64)
        strengths = np.array([c.strength for c in corners], dtype=np.float64)
        return self._suppress(xs, ys, strengths)

    def _suppress(
        self,
        xs: np.ndarray,
        ys: np.ndarray,
        strengths: np.ndarray,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Corner]:
        order = np.argsort(-strengths, kind="stable")
        radius_sq = self.suppression_radius * self.suppression_radius
        cell = max(1, int(math.ceil(self.suppression_radius)))
        grid: Dict[Tuple[int, int], List[Tuple[int, int]]] = {}
        kept: List[Corner] = []

        for n, idx in enumerate(order):
            if n % 4096 == 0:
                self.check_cancelled(cancel_event)
            x, y = int(xs[idx]), int(ys[idx])
            cx, cy = x // cell, y // cell
            if self._near_kept(grid, x, y, cx, cy, radius_sq):
                continue
            kept.append(Corner(x, y, float(strengths[idx])))
            grid.setdefault((cx, cy), []).append((x, y))
            # later corners are weaker and cannot displace kept ones
            if len(kept) >= self.max_corners:
                break

        logger.debug("%d corners after suppression", len(kept))
        return kept

    @staticmethod
    def _near_kept(grid, x: int, y: int, cx: int, cy: int, radius_sq: float) -> bool:
        for gx in (cx - 1, cx, cx + 1):
            for gy in (cy - 1, cy, cy + 1):
                for kx, ky in grid.get((gx, gy), ()):
                    if (x - kx) ** 2 + (y - ky) ** 2 < radius_sq:
                        return True
        return False

    # ── Rectangle hypotheses ─────────────────────

    def find_rectangles(
        self,
        corners: Sequence[Corner],
        image_width: int,
        image_height: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[RectangleHypothesis]:
        """
        Builds valid rectangles from 4-corner combinations, then from
        diagonal corner pairs, stopping at max_rectangles.
        """
        rectangles: List[RectangleHypothesis] = []
        n = len(corners)
        if n < 2:
            return rectangles

        xs = np.array([c.x for c in corners], dtype=np.int64)
        ys = np.array([c.y for c in corners], dtype=np.int64)

        for i in range(n - 3):
            self.check_cancelled(cancel_event)
            rest = np.array(list(combinations(range(i + 1, n), 3)), dtype=np.int64)
            quads = np.column_stack([np.full(len(rest), i, dtype=np.int64), rest])
            if self._collect(quads, xs, ys, corners, image_width, image_height, rectangles):
                return rectangles

        for i in range(n - 1):
            self.check_cancelled(cancel_event)
            partners = np.arange(i + 1, n, dtype=np.int64)
            pairs = np.column_stack([np.full(len(partners), i, dtype=np.int64), partners])
            if self._collect(pairs, xs, ys, corners, image_width, image_height, rectangles):
                return rectangles

        logger.debug("%d potential rectangles", len(rectangles))
        return rectangles

    def _collect(
        self,
        groups: np.ndarray,
        xs: np.ndarray,
        ys: np.ndarray,
        corners: Sequence[Corner],
        image_width: int,
        image_height: int,
        out: List[RectangleHypothesis],
    ) -> bool:
        """Appends valid rectangles in combination order; True once the cap is hit."""
        gx, gy = xs[groups], ys[groups]
        left, right = gx.min(axis=1), gx.max(axis=1)
        top, bottom = gy.min(axis=1), gy.max(axis=1)
        valid = self._valid_mask(left, top, right - left, bottom - top, image_width, image_height)
        if self.axis_tolerance is not None and groups.shape[1] == 4:
            valid &= self._axis_aligned(gx, gy, left, right, top, bottom)

        for row in np.flatnonzero(valid):
            members = tuple(corners[int(k)] for k in groups[row])
            out.append(RectangleHypothesis(
                bounds=Rectangle.from_ltrb(int(left[row]), int(top[row]),
                                           int(right[row]), int(bottom[row])),
                corners=members,
                corner_strength=sum(c.strength for c in members) / len(members),
            ))
            if len(out) >= self.max_rectangles:
                return True
        return False

    def _valid_mask(self, x, y, w, h, image_width: int, image_height: int) -> np.ndarray:
        w = np.asarray(w, dtype=np.float64)
        h = np.asarray(h, dtype=np.float64)
        mask = (w >= self.min_rectangle_size) & (h >= self.min_rectangle_size)
        mask &= (x >= 0) & (y >= 0) & (x + w <= image_width) & (y + h <= image_height)
        aspect = np.divide(w, h, out=np.zeros_like(w), where=h > 0)
        mask &= (aspect >= self.aspect_ratio_min) & (aspect <= self.aspect_ratio_max)
        area_ratio = (w * h) / float(image_width * image_height)
        mask &= (area_ratio >= self.area_ratio_min) & (area_ratio <= self.area_ratio_max)
        return mask

    def _axis_aligned(self, gx, gy, left, right, top, bottom) -> np.ndarray:
        tol = self.axis_tolerance
        on_vertical = ((np.abs(gx - left[:, None]) <= tol)
                       | (np.abs(gx - right[:, None]) <= tol))
        on_horizontal = ((np.abs(gy - top[:, None]) <= tol)
                         | (np.abs(gy - bottom[:, None]) <= tol))
        return np.all(on_vertical & on_horizontal, axis=1)

    def is_valid_rectangle(self, rect: Rectangle, image_width: int, image_height: int) -> bool:
        """Size, bounds, aspect-ratio and relative-area checks for one rectangle."""
        return bool(self._valid_mask(
            np.array([rect.x]), np.array([rect.y]),
            np.array([rect.width]), np.array([rect.height]),
            image_width, image_height,
        )[0])

    # ── Scoring ──────────────────────────────────

    def score_rectangles(
        self,
        rectangles: Sequence[RectangleHypothesis],
        image: Image,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[RectangleCandidate]:
        """Scores hypotheses, keeps those above min_score, best first."""
        candidates: List[RectangleCandidate] = []
        for rect in rectangles:
            self.check_cancelled(cancel_event)
            score = self.score_rectangle(image, rect.bounds)
            if score > self.min_score:
                candidates.append(RectangleCandidate(
                    bounds=rect.bounds,
                    confidence=score,
                    corner_strength=rect.corner_strength,
                    corners=rect.corners,
                ))
        candidates.sort(key=lambda c: c.confidence, reverse=True)
        logger.debug("%d corner candidates passed scoring", len(candidates))
        return candidates

    def score_rectangle(self, image: Image, bounds: Rectangle) -> float:
        """0.4·color + 0.4·structure + 0.2·geometry, clamped to [0, 1]."""
        region = image.rgb[bounds.y:bounds.bottom, bounds.x:bounds.right]
        gray = image.gray[bounds.y:bounds.bottom, bounds.x:bounds.right]
        score = (
            self.color_score(region) * 0.4
            + self.structure_score(gray) * 0.4
            + self.geometry_score(bounds) * 0.2
        )
        return max(0.0, min(1.0, score))

    @staticmethod
    def color_score(region: np.ndarray) -> float:
        """Dark background (40–80 %) plus saturated accents (10–40 %)."""
        total = region.shape[0] * region.shape[1]
        if total == 0:
            return 0.0
        rgb = region.astype(np.int16)
        r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
        dark_ratio = np.count_nonzero((r < 50) & (g < 50) & (b < 80)) / total

        intensity = rgb.max(axis=2)
        spread = intensity - rgb.min(axis=2)
        saturation = np.divide(spread, intensity, out=np.zeros(intensity.shape, dtype=np.float64),
                               where=intensity > 0)
        color_ratio = np.count_nonzero((intensity > 100) & (saturation > 0.3)) / total

        score = 0.0
        if 0.4 < dark_ratio < 0.8:
            score += 0.5
        if 0.1 < color_ratio < 0.4:
            score += 0.5
        return score

    @staticmethod
    def structure_score(gray: np.ndarray, edge_threshold: int = 30) -> float:
        """Moderate 4-neighbor edge density suggests structured UI content."""
        h, w = gray.shape[:2]
        if h < 3 or w < 3:
            return 0.1
        g = gray.astype(np.int16)
        center = g[1:-1, 1:-1]
        max_diff = np.maximum.reduce([
            np.abs(g[:-2, 1:-1] - center),
            np.abs(g[2:, 1:-1] - center),
            np.abs(g[1:-1, :-2] - center),
            np.abs(g[1:-1, 2:] - center),
        ])
        edge_ratio = np.count_nonzero(max_diff > edge_threshold) / float(w * h)

        if 0.05 < edge_ratio < 0.3:
            return 0.7
        if 0.03 < edge_ratio < 0.5:
            return 0.4
        return 0.1

    @staticmethod
    def geometry_score(bounds: Rectangle) -> float:
        """Average of aspect-ratio proximity and absolute area scores."""
        aspect = bounds.aspect_ratio
        if 1.3 <= aspect <= 2.2:
            aspect_score = 1.0
        elif 1.1 <= aspect <= 2.5:
            aspect_score = 0.7
        else:
            aspect_score = 0.3

        area = bounds.area
        if area > 200_000:
            size_score = 1.0
        elif area > 100_000:
            size_score = 0.7
        elif area > 50_000:
            size_score = 0.4
        else:
            size_score = 0.1
        return (aspect_score + size_score) / 2

    # ── Runtime parameters ───────────────────────

    def set_params(
        self,
        harris_threshold: Optional[float] = None,
        max_rectangles: Optional[int] = None,
        min_rectangle_size: Optional[int] = None,
    ) -> None:
        """
        Updates search parameters at runtime.

        Raises:
            ValueError: Negative threshold or non-positive counts/sizes.
        """
        if harris_threshold is not None:
            if harris_threshold < 0:
                raise ValueError("harris_threshold must be >= 0.")
            self.harris_threshold = harris_threshold

        if max_rectangles is not None:
            if max_rectangles < 1:
                raise ValueError("max_rectangles must be >= 1.")
            self.max_rectangles = max_rectangles

        if min_rectangle_size is not None:
            if min_rectangle_size < 1:
                raise ValueError("min_rectangle_size must be >= 1.")
            self.min_rectangle_size = min_rectangle_size

    def __repr__(self) -> str:
        return (
            f"CornerDetector(k={self.harris_k}, thr={self.harris_threshold}, "
            f"max_corners={self.max_corners}, max_rects={self.max_rectangles})"
        )
