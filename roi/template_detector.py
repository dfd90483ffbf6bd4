"""
roi/template_detector.py
────────────────────────
Template matching build-area detector.

Synthetic UI motifs (frame corners, hexagons, frame lines) are drawn once
with OpenCV, slid over the screenshot with normalised cross-correlation,
and the matches are clustered. The cluster with the best mix of motifs,
expanded by a margin, is taken as the build area.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

import cv2
import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from roi.detector_base import DetectorBase
from roi.image import Image, to_grayscale
from roi.result_model import METHOD_TEMPLATE, DetectionResult, Rectangle

logger = logging.getLogger(__name__)

TEMPLATE_SIZES: Tuple[Tuple[int, int], ...] = ((64, 32), (96, 48), (128, 64))

BACKGROUND_RGB = (20, 25, 35)
LINE_RGB       = (150, 180, 220)
FILL_RGB       = (60, 80, 120)

CORNER_KINDS = ("tl", "tr", "bl", "br")


class TemplateMatch(NamedTuple):
    """Template placed at (x, y) with its NCC score."""
    x: int
    y: int
    width: int
    height: int
    score: float
    template_id: str


@dataclass
class MatchCluster:
    """Matches whose top-left lies within the cluster distance of a seed match."""
    matches: List[TemplateMatch] = field(default_factory=list)
    min_x: int = 0
    min_y: int = 0
    max_x: int = 0
    max_y: int = 0
    total_score: float = 0.0

    @classmethod
    def seeded(cls, seed: TemplateMatch) -> "MatchCluster":
        cluster = cls(min_x=seed.x, min_y=seed.y,
                      max_x=seed.x + seed.width, max_y=seed.y + seed.height)
        cluster.matches.append(seed)
        cluster.total_score = seed.score
        return cluster

    def absorb(self, match: TemplateMatch) -> None:
        self.matches.append(match)
        self.total_score += match.score
        self.min_x = min(self.min_x, match.x)
        self.min_y = min(self.min_y, match.y)
        self.max_x = max(self.max_x, match.x + match.width)
        self.max_y = max(self.max_y, match.y + match.height)

    @property
    def width(self) -> int:
        return self.max_x - self.min_x

    @property
    def height(self) -> int:
        return self.max_y - self.min_y

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0

    @property
    def average_score(self) -> float:
        return self.total_score / len(self.matches) if self.matches else 0.0

    def template_types(self) -> Dict[str, int]:
        """Counts of corner / hex / frame motifs in the cluster."""
        types = {"corners": 0, "hexes": 0, "frames": 0, "total": len(self.matches)}
        for match in self.matches:
            if match.template_id.startswith("corner"):
                types["corners"] += 1
            elif match.template_id.startswith("hex"):
                types["hexes"] += 1
            elif match.template_id.startswith("frame"):
                types["frames"] += 1
        return types


class TemplateCandidate(NamedTuple):
    bounds: Rectangle
    confidence: float
    cluster: MatchCluster


# ── Template drawing ─────────────────────────────

def _canvas(width: int, height: int) -> np.ndarray:
    canvas = np.empty((height, width, 3), dtype=np.uint8)
    canvas[:] = BACKGROUND_RGB
    return canvas


def draw_corner_template(width: int, height: int, kind: str) -> np.ndarray:
    """L-shaped frame corner ("tl", "tr", "bl", "br") on the dark UI background."""
    canvas = _canvas(width, height)
    margin = 4
    length = int(round(min(width, height) * 0.6))
    right, bottom = width - margin, height - margin
    points = {
        "tl": [(margin, length), (margin, margin), (length, margin)],
        "tr": [(width - length, margin), (right, margin), (right, length)],
        "bl": [(margin, height - length), (margin, bottom), (length, bottom)],
        "br": [(width - length, bottom), (right, bottom), (right, height - length)],
    }[kind]
    cv2.polylines(canvas, [np.array(points, dtype=np.int32)], False, LINE_RGB, 2, cv2.LINE_AA)
    return canvas


def draw_hex_template(width: int, height: int, filled: bool) -> np.ndarray:
    """Flat-sided hexagon (radius 0.35·min side) centred in the template."""
    canvas = _canvas(width, height)
    cx, cy = width / 2, height / 2
    radius = min(width, height) * 0.35
    points = np.array([
        (int(round(cx + radius * math.cos(i * math.pi / 3))),
         int(round(cy + radius * math.sin(i * math.pi / 3))))
        for i in range(6)
    ], dtype=np.int32)
    if filled:
        cv2.fillPoly(canvas, [points], FILL_RGB, cv2.LINE_AA)
    else:
        cv2.polylines(canvas, [points], True, LINE_RGB, 2, cv2.LINE_AA)
    return canvas


def draw_frame_template(width: int, height: int, horizontal: bool) -> np.ndarray:
    """Single 3 px frame line through the template centre."""
    canvas = _canvas(width, height)
    if horizontal:
        cv2.line(canvas, (0, height // 2), (width, height // 2), LINE_RGB, 3, cv2.LINE_AA)
    else:
        cv2.line(canvas, (width // 2, 0), (width // 2, height), LINE_RGB, 3, cv2.LINE_AA)
    return canvas


def build_template_library(
    sizes: Sequence[Tuple[int, int]] = TEMPLATE_SIZES,
    corners: bool = True,
    hexes: bool = True,
    frames: bool = True,
) -> Dict[str, np.ndarray]:
    """
    Draws every motif at every size.

    Hexagons are only drawn where both sides are at least 48 px.

    Returns:
        {template_id: read-only uint8 grayscale array}, insertion ordered.
    """
    rgb: Dict[str, np.ndarray] = {}
    if corners:
        for w, h in sizes:
            for kind in CORNER_KINDS:
                rgb[f"corner-{kind}-{w}x{h}"] = draw_corner_template(w, h, kind)
    if hexes:
        for w, h in sizes:
            if w >= 48 and h >= 48:
                rgb[f"hex-outline-{w}x{h}"] = draw_hex_template(w, h, filled=False)
                rgb[f"hex-filled-{w}x{h}"] = draw_hex_template(w, h, filled=True)
    if frames:
        for w, h in sizes:
            rgb[f"frame-h-{w}x{h}"] = draw_frame_template(w, h, horizontal=True)
            rgb[f"frame-v-{w}x{h}"] = draw_frame_template(w, h, horizontal=False)

    library: Dict[str, np.ndarray] = {}
    for name, canvas in rgb.items():
        gray = to_grayscale(canvas)
        gray.setflags(write=False)
        library[name] = gray
    return library


class TemplateMatchDetector(DetectorBase):
    """
    Finds the build area from clusters of UI motif matches.

    Args:
        template_sizes      : (width, height) of each template family.
        match_threshold     : Minimum NCC score (0–1) of a kept match.
        max_template_matches: Matches kept per template (global cap = this × count).
        cluster_distance    : Max top-left distance to a cluster seed (px).
        build_area_margin   : Expansion of a cluster box (px).
        corner_patterns     : Include frame-corner motifs.
        hex_patterns        : Include hexagon motifs.
        frame_patterns      : Include frame-line motifs.
    """

    _NAME = METHOD_TEMPLATE

    def __init__(
        self,
        template_sizes: Sequence[Tuple[int, int]] = TEMPLATE_SIZES,
        match_threshold: float = 0.6,
        max_template_matches: int = 10,
        cluster_distance: float = 50.0,
        build_area_margin: int = 50,
        corner_patterns: bool = True,
        hex_patterns: bool = True,
        frame_patterns: bool = True,
    ) -> None:
        self.template_sizes       = tuple(template_sizes)
        self.match_threshold      = match_threshold
        self.max_template_matches = max_template_matches
        self.cluster_distance     = cluster_distance
        self.build_area_margin    = build_area_margin
        self.corner_patterns      = corner_patterns
        self.hex_patterns         = hex_patterns
        self.frame_patterns       = frame_patterns

        self._library: Optional[Dict[str, np.ndarray]] = None
        self._library_lock = threading.Lock()

    def get_name(self) -> str:
        return self._NAME

    @property
    def templates(self) -> Dict[str, np.ndarray]:
        """Template library, built on first access (once, even under concurrent calls)."""
        library = self._library
        if library is None:
            with self._library_lock:
                if self._library is None:
                    self._library = build_template_library(
                        self.template_sizes,
                        corners=self.corner_patterns,
                        hexes=self.hex_patterns,
                        frames=self.frame_patterns,
                    )
                    logger.debug("Generated %d templates", len(self._library))
                library = self._library
        return library

    # ── Detection ────────────────────────────────

    def detect(
        self,
        image: Image,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[DetectionResult]:
        image = self._require_image(image)
        t0 = time.perf_counter()

        matches = self.find_all_matches(image.gray, cancel_event)
        clusters = self.cluster_matches(matches)
        candidates = self.analyze_clusters(clusters, image)
        elapsed_ms = (time.perf_counter() - t0) * 1000.0

        logger.debug("template: %d matches, %d clusters, %d candidates",
                     len(matches), len(clusters), len(candidates))
        if not candidates:
            return None

        best = candidates[0]
        return DetectionResult(
            bounds=best.bounds,
            confidence=best.confidence,
            method=self._NAME,
            metadata={
                "total_matches": len(matches),
                "clusters": len(clusters),
                "candidates": len(candidates),
                "cluster_size": len(best.cluster.matches),
                "template_types": best.cluster.template_types(),
            },
            inference_time_ms=elapsed_ms,
        )

    # ── Matching ─────────────────────────────────

    def find_all_matches(
        self,
        gray: np.ndarray,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[TemplateMatch]:
        """All matches of all templates, best first, capped."""
        library = self.templates
        matches: List[TemplateMatch] = []
        for template_id, template in library.items():
            matches.extend(self.match_template(gray, template, template_id, cancel_event))
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[: self.max_template_matches * len(library)]

    def match_template(
        self,
        gray: np.ndarray,
        template: np.ndarray,
        template_id: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[TemplateMatch]:
        """
        Slides one template over the image.

        Positions advance by max(1, min side // 4); inside each window every
        max(1, min side // 16)-th pixel takes part in the correlation.
        """
        img_h, img_w = gray.shape[:2]
        th, tw = template.shape[:2]
        if th > img_h or tw > img_w:
            return []

        stride = max(1, min(tw, th) // 4)
        step = max(1, min(tw, th) // 16)
        sampled = template[::step, ::step].astype(np.int64)
        ny, nx = sampled.shape
        n = ny * nx
        t_sum = int(sampled.sum())
        t_var = n * int((sampled * sampled).sum()) - t_sum * t_sum

        span = (nx - 1) * step + 1
        last_x = img_w - tw
        matches: List[TemplateMatch] = []

        for y in range(0, img_h - th + 1, stride):
            self.check_cancelled(cancel_event)
            rows = gray[y:y + th:step, :]
            windows = sliding_window_view(rows, span, axis=1)[:, 0:last_x + 1:stride, ::step]
            patches = windows.astype(np.int64)

            i_sum = patches.sum(axis=(0, 2))
            i_sq = np.einsum("ypx,ypx->p", patches, patches)
            cross = np.einsum("ypx,yx->p", patches, sampled)

            numerator = (n * cross - i_sum * t_sum).astype(np.float64)
            i_var = (n * i_sq - i_sum * i_sum).astype(np.float64)
            denominator = np.sqrt(i_var * float(t_var))
            correlation = np.divide(numerator, denominator,
                                    out=np.full(numerator.shape, -1.0),
                                    where=denominator > 0)
            scores = np.maximum(0.0, (correlation + 1.0) / 2.0)
            scores[denominator <= 0] = 0.0

            for p in np.flatnonzero(scores >= self.match_threshold):
                matches.append(TemplateMatch(
                    x=int(p) * stride, y=y, width=tw, height=th,
                    score=float(scores[p]), template_id=template_id,
                ))
        return matches

    # ── Clustering ───────────────────────────────

    def cluster_matches(self, matches: Sequence[TemplateMatch]) -> List[MatchCluster]:
        """
        Greedy seed-and-absorb clustering in match order.

        Each unprocessed match seeds a cluster and absorbs every later
        unprocessed match whose top-left lies within cluster_distance
        of the seed's top-left.
        """
        clusters: List[MatchCluster] = []
        processed = [False] * len(matches)
        limit_sq = self.cluster_distance * self.cluster_distance
        for i, seed in enumerate(matches):
            if processed[i]:
                continue
            processed[i] = True
            cluster = MatchCluster.seeded(seed)
            for j in range(i + 1, len(matches)):
                if processed[j]:
                    continue
                other = matches[j]
                if (other.x - seed.x) ** 2 + (other.y - seed.y) ** 2 <= limit_sq:
                    cluster.absorb(other)
                    processed[j] = True
            clusters.append(cluster)
        return clusters

    def analyze_clusters(self, clusters: Sequence[MatchCluster], image: Image) -> List[TemplateCandidate]:
        """Filters clusters, expands them to build areas and scores them, best first."""
        candidates: List[TemplateCandidate] = []
        for cluster in clusters:
            if len(cluster.matches) < 2:
                continue
            if cluster.area < 10_000 or cluster.area > 1_000_000:
                continue
            if cluster.aspect_ratio < 0.5 or cluster.aspect_ratio > 4.0:
                continue
            bounds = self.estimate_build_area(cluster, image.width, image.height)
            if bounds is None:
                continue
            candidates.append(TemplateCandidate(
                bounds=bounds,
                confidence=self.score_cluster(cluster, bounds, image.width, image.height),
                cluster=cluster,
            ))
        candidates.sort(key=lambda c: c.confidence, reverse=True)
        return candidates

    def estimate_build_area(
        self,
        cluster: MatchCluster,
        image_width: int,
        image_height: int,
    ) -> Optional[Rectangle]:
        """Cluster box grown by the margin and clamped; None when implausible."""
        m = self.build_area_margin
        left = max(0, cluster.min_x - m)
        top = max(0, cluster.min_y - m)
        right = min(image_width, cluster.max_x + m)
        bottom = min(image_height, cluster.max_y + m)
        width, height = right - left, bottom - top
        if width <= 0 or height <= 0:
            return None

        area = width * height
        aspect = width / height
        if area < 50_000 or area > 2_000_000 or aspect < 0.8 or aspect > 3.0:
            return None
        return Rectangle(left, top, width, height)

    # ── Scoring ──────────────────────────────────

    @staticmethod
    def diversity_score(types: Dict[str, int]) -> float:
        score = 0.0
        if types["corners"] > 0:
            score += 0.4
        if types["hexes"] > 0:
            score += 0.3
        if types["frames"] > 0:
            score += 0.3
        return min(1.0, score)

    def score_cluster(
        self,
        cluster: MatchCluster,
        bounds: Rectangle,
        image_width: int,
        image_height: int,
    ) -> float:
        """0.3·avg match + 0.2·diversity + 0.15·count + 0.15·position + 0.2·area."""
        relative = bounds.area / float(image_width * image_height)
        score = (
            cluster.average_score * 0.3
            + self.diversity_score(cluster.template_types()) * 0.2
            + min(1.0, len(cluster.matches) / 10) * 0.15
            + self.position_score(bounds, image_width, image_height) * 0.15
            + self.size_score(relative) * 0.2
        )
        return max(0.0, min(1.0, score))

    # ── Runtime parameters ───────────────────────

    def set_params(
        self,
        match_threshold: Optional[float] = None,
        cluster_distance: Optional[float] = None,
    ) -> None:
        """
        Raises:
            ValueError: threshold outside 0–1 or non-positive distance.
        """
        if match_threshold is not None:
            if not 0.0 <= match_threshold <= 1.0:
                raise ValueError("match_threshold must be between 0 and 1.")
            self.match_threshold = match_threshold
        if cluster_distance is not None:
            if cluster_distance <= 0:
                raise ValueError("cluster_distance must be > 0.")
            self.cluster_distance = cluster_distance

    def __repr__(self) -> str:
        return (
            f"TemplateMatchDetector(sizes={list(self.template_sizes)}, "
            f"thr={self.match_threshold}, cluster={self.cluster_distance})"
        )
