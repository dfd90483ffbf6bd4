"""
roi/roi_coordinator.py
──────────────────────
Runs the enabled detectors concurrently under a global timeout, picks the
best result and falls back to a centred rectangle when nothing usable
comes back.

Usage:
    coordinator = ROICoordinator.with_default_detectors()
    result = coordinator.detect_roi(image)
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, List, Mapping, Optional, Sequence

from roi.color_detector import ColorDetector
from roi.corner_detector import CornerDetector
from roi.detector_base import DetectorBase
from roi.edge_detector import EdgeContourDetector
from roi.errors import (
    ConfigurationError,
    DetectionCancelled,
    DetectionTimeoutError,
    DetectorFailure,
    EmptyResultSet,
    InvalidInputError,
)
from roi.image import Image, is_decoded
from roi.performance_profiler import PerformanceProfiler
from roi.result_model import (
    METHOD_COLOR,
    METHOD_CORNER,
    METHOD_EDGE,
    METHOD_FALLBACK,
    METHOD_TEMPLATE,
    DetectionResult,
    Rectangle,
)
from roi.template_detector import TemplateMatchDetector

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHMS = (METHOD_EDGE, METHOD_COLOR, METHOD_TEMPLATE)

# Preferred method when confidences are close
ALGORITHM_PRIORITY: Dict[str, int] = {
    METHOD_TEMPLATE: 4,
    METHOD_COLOR: 3,
    METHOD_EDGE: 2,
    METHOD_CORNER: 1,
}

FALLBACK_CONFIDENCE = 0.1
FALLBACK_SCALE      = 0.8
TIE_EPSILON         = 1e-9
CANCEL_POLL_S       = 0.05


class ROICoordinator:
    """
    Multi-algorithm build-area detection.

    Args:
        detectors           : {method name: detector} registry.
        algorithms          : Methods run by detect_roi() by default.
        timeout_ms          : Budget of one whole detect_roi() call.
        confidence_threshold: Results below it are flagged in metadata.
        enable_fallback     : Return a centred rectangle instead of raising
                              on timeout / empty results.
        tie_margin          : Confidence gap inside which priority decides.
        debug_mode          : Log every detector result.
        profiler            : Shared PerformanceProfiler (new one if None).

    Raises:
        ConfigurationError: An enabled algorithm has no detector, or the
                            timeout is not positive.
    """

    def __init__(
        self,
        detectors: Mapping[str, DetectorBase],
        algorithms: Sequence[str] = DEFAULT_ALGORITHMS,
        timeout_ms: float = 4000.0,
        confidence_threshold: float = 0.7,
        enable_fallback: bool = True,
        tie_margin: float = 0.1,
        debug_mode: bool = False,
        profiler: Optional[PerformanceProfiler] = None,
    ) -> None:
        self._detectors: Dict[str, DetectorBase] = dict(detectors)
        self.algorithms           = self._check_algorithms(algorithms)
        self.timeout_ms           = timeout_ms
        self.confidence_threshold = confidence_threshold
        self.enable_fallback      = enable_fallback
        self.tie_margin           = tie_margin
        self.debug_mode           = debug_mode
        self.profiler             = profiler or PerformanceProfiler()
        self.last_result: Optional[DetectionResult] = None

        if timeout_ms <= 0:
            raise ConfigurationError("timeout_ms must be > 0.")
        logger.info("ROICoordinator ready: detectors=%s enabled=%s",
                    sorted(self._detectors), self.algorithms)

    @classmethod
    def with_default_detectors(cls, **kwargs) -> "ROICoordinator":
        """Coordinator holding all four detectors with default settings."""
        detectors: Dict[str, DetectorBase] = {
            METHOD_EDGE: EdgeContourDetector(),
            METHOD_COLOR: ColorDetector(),
            METHOD_TEMPLATE: TemplateMatchDetector(),
            METHOD_CORNER: CornerDetector(),
        }
        return cls(detectors, **kwargs)

    def _check_algorithms(self, algorithms: Sequence[str]) -> List[str]:
        names = list(algorithms)
        if not names:
            raise ConfigurationError("At least one algorithm must be enabled.")
        missing = [n for n in names if n not in self._detectors]
        if missing:
            raise ConfigurationError(f"No detector registered for: {', '.join(missing)}")
        return names

    @property
    def available_algorithms(self) -> List[str]:
        return list(self._detectors)

    def get_detector(self, name: str) -> DetectorBase:
        try:
            return self._detectors[name]
        except KeyError:
            raise ConfigurationError(f"Algorithm {name!r} not available") from None

    # ── Detection ────────────────────────────────

    def detect_roi(
        self,
        image: Image,
        algorithms: Optional[Sequence[str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DetectionResult:
        """
        Runs the enabled detectors and returns the selected result.

        Args:
            image       : Decoded screenshot.
            algorithms  : Overrides the enabled set for this call.
            cancel_event: Caller-side cancellation; stops every running detector.

        Returns:
            Selected DetectionResult, or the fallback result.

        Raises:
            InvalidInputError    : image is None / not decoded (before any detector runs).
            ConfigurationError   : an override names an unregistered algorithm.
            DetectionTimeoutError: timeout with fallback disabled.
            EmptyResultSet       : no candidate with fallback disabled.
            DetectionCancelled   : cancel_event was set before the detectors finished.
        """
        if not is_decoded(image):
            raise InvalidInputError("Invalid or incomplete image")
        names = self.algorithms if algorithms is None else self._check_algorithms(algorithms)

        t0 = time.perf_counter()
        try:
            result = self._run_detection(image, names, cancel_event)
            if result is None:
                raise EmptyResultSet("No detector produced a candidate")
        except (DetectionTimeoutError, EmptyResultSet) as exc:
            self.profiler.record_total((time.perf_counter() - t0) * 1000.0, None)
            if not self.enable_fallback:
                logger.error("ROI detection failed: %s", exc)
                raise
            logger.warning("ROI detection failed (%s), using fallback", exc)
            result = self.create_fallback_result(image, exc)
            self.last_result = result
            return result

        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        self.profiler.record_total(elapsed_ms, result)
        logger.info("ROI detection completed in %.1f ms: %s confidence=%.3f",
                    elapsed_ms, result.method, result.confidence)
        self.last_result = result
        return result

    def _run_detection(
        self,
        image: Image,
        names: Sequence[str],
        outer_cancel: Optional[threading.Event] = None,
    ) -> Optional[DetectionResult]:
        cancel_event = threading.Event()
        executor = ThreadPoolExecutor(max_workers=len(names), thread_name_prefix="roi")
        t0 = time.perf_counter()
        deadline = t0 + self.timeout_ms / 1000.0
        try:
            futures = {executor.submit(self.run_algorithm, name, image, cancel_event): name
                       for name in names}
            pending = set(futures)
            while pending:
                remaining = deadline - time.perf_counter()
                if remaining <= 0:
                    break
                if outer_cancel is not None and outer_cancel.is_set():
                    cancel_event.set()
                    raise DetectionCancelled("ROI detection cancelled by caller")
                _, pending = wait(pending, timeout=min(remaining, CANCEL_POLL_S))
            if pending:
                cancel_event.set()
                late = sorted(futures[f] for f in pending)
                raise DetectionTimeoutError(
                    f"ROI detection timeout after {self.timeout_ms:.0f} ms (pending: {', '.join(late)})")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        results: List[DetectionResult] = []
        for future, name in futures.items():
            try:
                result = future.result()
            except DetectionCancelled:
                continue
            except Exception as exc:
                failure = DetectorFailure(name, exc)
                logger.warning("%s", failure, exc_info=exc)
                continue
            if result is not None:
                results.append(result)

        return self.select_best_result(results, (time.perf_counter() - t0) * 1000.0)

    def run_algorithm(
        self,
        name: str,
        image: Image,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[DetectionResult]:
        """
        Runs one detector and records its performance (also on failure).

        Raises:
            ConfigurationError: name is not registered.
            Exception         : whatever the detector raised.
        """
        detector = self.get_detector(name)
        t0 = time.perf_counter()
        try:
            result = detector.detect(image, cancel_event)
        except Exception:
            self.profiler.record(name, (time.perf_counter() - t0) * 1000.0, None)
            raise
        self.profiler.record(name, (time.perf_counter() - t0) * 1000.0, result)
        if self.debug_mode:
            logger.info("%s result: %r", name, result)
        return result

    # ── Selection ────────────────────────────────

    def select_best_result(
        self,
        results: Sequence[DetectionResult],
        processing_time_ms: float = 0.0,
    ) -> Optional[DetectionResult]:
        """
        Highest confidence wins; among results within tie_margin of the top
        confidence the preferred method wins. The next two are alternatives.
        """
        if not results:
            return None

        ordered = sorted(results, key=lambda r: r.confidence, reverse=True)
        top = ordered[0].confidence
        contenders = [r for r in ordered if top - r.confidence <= self.tie_margin + TIE_EPSILON]
        best = max(contenders, key=lambda r: ALGORITHM_PRIORITY.get(r.method, 0))
        rest = [r for r in ordered if r is not best]

        logger.info("Selected %s algorithm with confidence %.3f", best.method, best.confidence)
        return DetectionResult(
            bounds=best.bounds,
            confidence=best.confidence,
            method=best.method,
            metadata={
                "algorithm_results": [r.summary() for r in ordered],
                "selected_algorithm": best.method,
                "processing_time_ms": round(processing_time_ms, 4),
                "alternatives": [r.summary() for r in rest[:2]],
                "meets_confidence_threshold": best.confidence >= self.confidence_threshold,
                "detector_metadata": best.metadata,
            },
            inference_time_ms=processing_time_ms,
        )

    def create_fallback_result(self, image: Image, error: BaseException) -> DetectionResult:
        """Centred rectangle covering 80 % of each side, confidence 0.1."""
        width = max(1, int(image.width * FALLBACK_SCALE))
        height = max(1, int(image.height * FALLBACK_SCALE))
        x = (image.width - width) // 2
        y = (image.height - height) // 2
        return DetectionResult(
            bounds=Rectangle(x, y, width, height),
            confidence=FALLBACK_CONFIDENCE,
            method=METHOD_FALLBACK,
            metadata={
                "fallback_reason": str(error),
                "error_type": type(error).__name__,
                "note": "Automatic detection failed, using center fallback",
            },
        )

    # ── Performance ──────────────────────────────

    def get_performance_stats(self) -> dict:
        """Per-algorithm records plus overall figures."""
        stats = self.profiler.get_statistics()
        return {
            "algorithms": {name: rec.to_dict() for name, rec in stats.items()},
            "overall": {
                "total_detections": sum(rec.total_runs for rec in stats.values()),
                "average_processing_time_ms": round(self.profiler.average_time_ms(), 4),
                "ensemble": self.profiler.get_total().to_dict(),
                "last_result": self.last_result.to_dict() if self.last_result else None,
            },
        }

    def get_best_algorithm(self) -> Optional[str]:
        """See PerformanceProfiler.get_best_algorithm."""
        return self.profiler.get_best_algorithm()

    def configure_for_production(self, algorithm: str) -> None:
        """
        Restricts detection to one algorithm and turns debug logging off.
        With recorded runs the timeout becomes max(2000, 3 × average latency).

        Raises:
            ConfigurationError: algorithm is not registered.
        """
        self.get_detector(algorithm)
        self.algorithms = [algorithm]
        self.debug_mode = False
        rec = self.profiler.get_record(algorithm)
        if rec is not None and rec.total_runs:
            self.timeout_ms = max(2000.0, rec.avg_time_ms * 3)
        logger.info("Configured for production: %s, timeout %.0f ms", algorithm, self.timeout_ms)

    def set_params(
        self,
        timeout_ms: Optional[float] = None,
        confidence_threshold: Optional[float] = None,
        enable_fallback: Optional[bool] = None,
        debug_mode: Optional[bool] = None,
    ) -> None:
        """
        Updates settings at runtime.

        Raises:
            ValueError: timeout <= 0 or threshold outside 0–1.
        """
        if timeout_ms is not None:
            if timeout_ms <= 0:
                raise ValueError("timeout_ms must be > 0.")
            self.timeout_ms = timeout_ms
        if confidence_threshold is not None:
            if not 0.0 <= confidence_threshold <= 1.0:
                raise ValueError("confidence_threshold must be between 0 and 1.")
            self.confidence_threshold = confidence_threshold
        if enable_fallback is not None:
            self.enable_fallback = bool(enable_fallback)
        if debug_mode is not None:
            self.debug_mode = bool(debug_mode)

    def __repr__(self) -> str:
        return (
            f"ROICoordinator(algorithms={self.algorithms}, timeout={self.timeout_ms:.0f}ms, "
            f"fallback={self.enable_fallback})"
        )
