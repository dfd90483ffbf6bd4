"""
roi/benchmark_harness.py
────────────────────────
Offline benchmark of the ROI detectors against a labelled dataset.

Every item is run through every detector individually and through the
whole ensemble ("consensus"), each under a per-test timeout. Results are
aggregated into rankings, a bottleneck analysis and recommendations.

Usage:
    harness = BenchmarkHarness()
    report = harness.run(load_dataset("dataset.json"))
    print(report.top_ranking)
"""

from __future__ import annotations

import copy
import logging
import threading
import time
import tracemalloc
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional, Sequence

import numpy as np

from roi.dataset import BenchmarkItem, DatasetSource, load_dataset
from roi.errors import DetectionTimeoutError
from roi.image import Image
from roi.result_model import (
    METHOD_COLOR,
    METHOD_CORNER,
    METHOD_EDGE,
    METHOD_TEMPLATE,
    DetectionResult,
    Rectangle,
)
from roi.roi_coordinator import ROICoordinator

logger = logging.getLogger(__name__)

CONSENSUS = "consensus"
BENCHMARK_ALGORITHMS = (METHOD_EDGE, METHOD_COLOR, METHOD_TEMPLATE, METHOD_CORNER)


@dataclass(frozen=True)
class PerformanceTargets:
    """Production requirements an algorithm is measured against."""
    max_processing_time_ms: float = 4000.0
    max_memory_bytes: int = 150 * 1024 * 1024
    min_accuracy: float = 0.7

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class BenchmarkEntry:
    """Outcome of one (item, algorithm) test."""
    test_case: str
    algorithm: str
    success: bool
    processing_time_ms: float = 0.0
    memory_bytes: int = 0
    accuracy: float = 0.0
    confidence: float = 0.0
    bounds: Optional[Rectangle] = None
    selected_algorithm: Optional[str] = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "test_case": self.test_case,
            "algorithm": self.algorithm,
            "success": self.success,
            "processing_time_ms": round(self.processing_time_ms, 4),
            "memory_bytes": self.memory_bytes,
            "accuracy": round(self.accuracy, 4),
            "confidence": round(self.confidence, 4),
            "bounds": self.bounds.to_dict() if self.bounds else None,
            "selected_algorithm": self.selected_algorithm,
            "error": self.error,
            "timestamp": round(self.timestamp, 6),
        }


@dataclass
class _Aggregate:
    total_tests: int = 0
    successful_tests: int = 0
    total_accuracy: float = 0.0
    total_time_ms: float = 0.0
    total_memory: int = 0
    failures: List[dict] = field(default_factory=list)

    def add(self, entry: BenchmarkEntry) -> None:
        self.total_tests += 1
        if entry.success:
            self.successful_tests += 1
            self.total_accuracy += entry.accuracy
            self.total_time_ms += entry.processing_time_ms
            self.total_memory += entry.memory_bytes
        else:
            self.failures.append({"test_case": entry.test_case, "error": entry.error})

    def _mean(self, total: float) -> float:
        return total / self.successful_tests if self.successful_tests else 0.0

    @property
    def success_rate(self) -> float:
        return self.successful_tests / self.total_tests if self.total_tests else 0.0

    @property
    def avg_accuracy(self) -> float:
        return self._mean(self.total_accuracy)

    @property
    def avg_time_ms(self) -> float:
        return self._mean(self.total_time_ms)

    @property
    def avg_memory(self) -> float:
        return self._mean(self.total_memory)


@dataclass(frozen=True)
class BenchmarkReport:
    """Immutable benchmark outcome; every field is JSON-serialisable."""
    metadata: dict
    summary: dict
    rankings: List[dict]
    detailed_results: dict
    performance_analysis: dict
    recommendations: List[dict]
    export_data: dict

    @property
    def top_ranking(self) -> Optional[dict]:
        return self.rankings[0] if self.rankings else None

    def get_ranking(self, algorithm: str) -> Optional[dict]:
        for ranking in self.rankings:
            if ranking["algorithm"] == algorithm:
                return ranking
        return None

    @property
    def entries(self) -> List[dict]:
        return self.export_data["raw_results"]

    def to_dict(self) -> dict:
        return copy.deepcopy({
            "metadata": self.metadata,
            "summary": self.summary,
            "algorithm_rankings": self.rankings,
            "detailed_results": self.detailed_results,
            "performance_analysis": self.performance_analysis,
            "recommendations": self.recommendations,
            "export_data": self.export_data,
        })


@contextmanager
def _memory_probe() -> Iterator[Dict[str, int]]:
    """Peak traced allocation (bytes) inside the block; 0 when unmeasurable."""
    probe = {"bytes": 0}
    started = not tracemalloc.is_tracing()
    if started:
        tracemalloc.start()
    tracemalloc.reset_peak()
    base, _ = tracemalloc.get_traced_memory()
    try:
        yield probe
    finally:
        _, peak = tracemalloc.get_traced_memory()
        probe["bytes"] = max(0, peak - base)
        if started:
            tracemalloc.stop()


class BenchmarkHarness:
    """
    Args:
        coordinator        : Coordinator whose detectors are benchmarked
                             (default: all four detectors).
        algorithms         : Detectors benchmarked individually.
        per_test_timeout_ms: Budget of one (item, algorithm) test.
        targets            : Requirements used for ranking flags.
        measure_memory     : Trace allocations with tracemalloc.

    Raises:
        ConfigurationError: an algorithm has no detector in the coordinator.
    """

    def __init__(
        self,
        coordinator: Optional[ROICoordinator] = None,
        algorithms: Sequence[str] = BENCHMARK_ALGORITHMS,
        per_test_timeout_ms: float = 10_000.0,
        targets: PerformanceTargets = PerformanceTargets(),
        measure_memory: bool = True,
    ) -> None:
        self.algorithms = list(algorithms)
        self.per_test_timeout_ms = per_test_timeout_ms
        self.targets = targets
        self.measure_memory = measure_memory
        self.coordinator = coordinator or ROICoordinator.with_default_detectors(
            algorithms=self.algorithms, timeout_ms=per_test_timeout_ms)
        for name in self.algorithms:
            self.coordinator.get_detector(name)

        self._entries: List[BenchmarkEntry] = []
        self.report: Optional[BenchmarkReport] = None

    # ── Running ──────────────────────────────────

    def run(self, dataset: "Sequence[BenchmarkItem] | DatasetSource") -> BenchmarkReport:
        """
        Benchmarks every item; a failing test case never aborts the run.

        Raises:
            ValueError: empty or malformed dataset.
        """
        items = self._as_items(dataset)
        if not items:
            raise ValueError("No validation dataset provided")

        self._entries = []
        t0 = time.perf_counter()
        for i, item in enumerate(items, start=1):
            logger.info("Testing %d/%d: %s", i, len(items), item.filename)
            self._entries.extend(self.run_test_case(item))
        duration_ms = (time.perf_counter() - t0) * 1000.0

        self.report = self.generate_report(items, self._entries, duration_ms)
        logger.info("Benchmark completed in %.0f ms (%d entries)", duration_ms, len(self._entries))
        return self.report

    @staticmethod
    def _as_items(dataset) -> List[BenchmarkItem]:
        if isinstance(dataset, (list, tuple)) and all(isinstance(d, BenchmarkItem) for d in dataset):
            return list(dataset)
        return load_dataset(dataset)

    def run_test_case(self, item: BenchmarkItem) -> List[BenchmarkEntry]:
        """K individual entries + 1 consensus entry for one item."""
        names = self.algorithms + [CONSENSUS]
        try:
            image = item.load()
        except (ValueError, OSError) as exc:
            logger.error("Failed to load image %s: %s", item.filename, exc)
            message = f"Failed to load image: {exc}"
            return [BenchmarkEntry(item.filename, name, False, error=message) for name in names]

        entries = [self.run_algorithm_case(item, image, name) for name in self.algorithms]
        entries.append(self.run_consensus_case(item, image))
        return entries

    def run_algorithm_case(self, item: BenchmarkItem, image: Image, algorithm: str) -> BenchmarkEntry:
        """One detector on one item under the per-test timeout."""
        return self._measure(
            item, algorithm,
            lambda cancel: self.coordinator.run_algorithm(algorithm, image, cancel),
        )

    def run_consensus_case(self, item: BenchmarkItem, image: Image) -> BenchmarkEntry:
        """Whole ensemble on one item."""
        return self._measure(
            item, CONSENSUS,
            lambda cancel: self.coordinator.detect_roi(image, cancel_event=cancel),
        )

    def _measure(
        self,
        item: BenchmarkItem,
        algorithm: str,
        call: Callable[[threading.Event], Optional[DetectionResult]],
    ) -> BenchmarkEntry:
        t0 = time.perf_counter()
        try:
            if self.measure_memory:
                with _memory_probe() as probe:
                    detection = self._with_timeout(call)
                memory = probe["bytes"]
            else:
                detection, memory = self._with_timeout(call), 0
        except Exception as exc:
            logger.warning("%s failed on %s: %s", algorithm, item.filename, exc)
            return BenchmarkEntry(
                item.filename, algorithm, False,
                processing_time_ms=(time.perf_counter() - t0) * 1000.0,
                error=f"{type(exc).__name__}: {exc}",
            )

        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        return BenchmarkEntry(
            item.filename, algorithm, True,
            processing_time_ms=elapsed_ms,
            memory_bytes=memory,
            accuracy=self.calculate_accuracy(detection, item.ground_truth),
            confidence=detection.confidence if detection else 0.0,
            bounds=detection.bounds if detection else None,
            selected_algorithm=detection.method if detection and algorithm == CONSENSUS else None,
        )

    def _with_timeout(self, call: Callable[[threading.Event], Optional[DetectionResult]]):
        cancel_event = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bench")
        try:
            future = executor.submit(call, cancel_event)
            return future.result(timeout=self.per_test_timeout_ms / 1000.0)
        except FutureTimeoutError:
            cancel_event.set()
            raise DetectionTimeoutError(
                f"Algorithm timeout after {self.per_test_timeout_ms:.0f} ms") from None
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def calculate_accuracy(
        detection: Optional[DetectionResult],
        truth: Optional[Rectangle],
    ) -> float:
        """IoU of the detection with the ground truth; 0 when either is missing."""
        if detection is None or truth is None:
            return 0.0
        return detection.bounds.iou(truth)

    # ── Reporting ────────────────────────────────

    def _aggregate(self, entries: Sequence[BenchmarkEntry]) -> Dict[str, _Aggregate]:
        aggregates: Dict[str, _Aggregate] = {name: _Aggregate() for name in self.algorithms + [CONSENSUS]}
        for entry in entries:
            aggregates.setdefault(entry.algorithm, _Aggregate()).add(entry)
        return aggregates

    def generate_report(
        self,
        items: Sequence[BenchmarkItem],
        entries: Sequence[BenchmarkEntry],
        duration_ms: float = 0.0,
    ) -> BenchmarkReport:
        aggregates = self._aggregate(entries)
        rankings = self.rank_algorithms(aggregates)
        return BenchmarkReport(
            metadata={
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "total_tests": len(items),
                "algorithms_tested": len(self.algorithms),
                "per_test_timeout_ms": self.per_test_timeout_ms,
                "duration_ms": round(duration_ms, 4),
                "performance_targets": self.targets.to_dict(),
            },
            summary=self._summary(items, entries, aggregates),
            rankings=rankings,
            detailed_results=self._detailed(items, entries),
            performance_analysis=self.analyze_performance(aggregates, entries),
            recommendations=self.generate_recommendations(rankings),
            export_data={
                "raw_results": [e.to_dict() for e in entries],
                "performance_metrics": {
                    name: {
                        "total_tests": agg.total_tests,
                        "successful_tests": agg.successful_tests,
                        "total_accuracy": round(agg.total_accuracy, 4),
                        "total_processing_time_ms": round(agg.total_time_ms, 4),
                        "total_memory_bytes": agg.total_memory,
                        "failures": list(agg.failures),
                    }
                    for name, agg in aggregates.items()
                },
                "configuration": {
                    "algorithms": list(self.algorithms),
                    "per_test_timeout_ms": self.per_test_timeout_ms,
                    "targets": self.targets.to_dict(),
                },
                "dataset": [item.to_dict() for item in items],
            },
        )

    @staticmethod
    def _summary(items, entries, aggregates: Dict[str, _Aggregate]) -> dict:
        return {
            "total_test_cases": len(items),
            "total_results": len(entries),
            "algorithms": {
                name: {
                    "success_rate": agg.success_rate,
                    "average_accuracy": agg.avg_accuracy,
                    "average_processing_time_ms": agg.avg_time_ms,
                    "average_memory_bytes": agg.avg_memory,
                    "failure_count": len(agg.failures),
                }
                for name, agg in aggregates.items() if agg.total_tests
            },
        }

    def rank_algorithms(self, aggregates: Dict[str, _Aggregate]) -> List[dict]:
        """
        Weighted score 0.5·accuracy + 0.2·speed + 0.15·memory + 0.15·success rate,
        best first. Speed and memory scores fall linearly to 0 at the targets.
        """
        t = self.targets
        rankings: List[dict] = []
        for name, agg in aggregates.items():
            if not agg.total_tests:
                continue
            speed = max(0.0, (t.max_processing_time_ms - agg.avg_time_ms) / t.max_processing_time_ms)
            memory = max(0.0, (t.max_memory_bytes - agg.avg_memory) / t.max_memory_bytes)
            score = agg.avg_accuracy * 0.5 + speed * 0.2 + memory * 0.15 + agg.success_rate * 0.15

            meets_accuracy = agg.avg_accuracy >= t.min_accuracy
            meets_speed = agg.avg_time_ms <= t.max_processing_time_ms
            meets_memory = agg.avg_memory <= t.max_memory_bytes
            rankings.append({
                "algorithm": name,
                "weighted_score": score,
                "metrics": {
                    "accuracy": agg.avg_accuracy,
                    "processing_time_ms": agg.avg_time_ms,
                    "memory_bytes": agg.avg_memory,
                    "success_rate": agg.success_rate,
                },
                "meets_requirements": {
                    "accuracy": meets_accuracy,
                    "speed": meets_speed,
                    "memory": meets_memory,
                    "overall": meets_accuracy and meets_speed and meets_memory,
                },
            })
        rankings.sort(key=lambda r: r["weighted_score"], reverse=True)
        return rankings

    def _detailed(self, items, entries: Sequence[BenchmarkEntry]) -> dict:
        by_algorithm: Dict[str, List[dict]] = {name: [] for name in self.algorithms + [CONSENSUS]}
        by_test_case: Dict[str, List[dict]] = {item.filename: [] for item in items}
        failures: List[dict] = []
        for entry in entries:
            data = entry.to_dict()
            by_algorithm.setdefault(entry.algorithm, []).append(data)
            by_test_case.setdefault(entry.test_case, []).append(data)
            if not entry.success:
                failures.append(data)
        return {"by_algorithm": by_algorithm, "by_test_case": by_test_case, "failures": failures}

    def analyze_performance(
        self,
        aggregates: Dict[str, _Aggregate],
        entries: Sequence[BenchmarkEntry],
    ) -> dict:
        """Bottlenecks above the targets plus per-algorithm time distribution."""
        t = self.targets
        bottlenecks: List[dict] = []
        for name, agg in aggregates.items():
            if agg.avg_time_ms > t.max_processing_time_ms:
                bottlenecks.append({
                    "algorithm": name,
                    "type": "processing_time",
                    "actual": agg.avg_time_ms,
                    "target": t.max_processing_time_ms,
                    "severity": agg.avg_time_ms / t.max_processing_time_ms,
                })
            if agg.avg_memory > t.max_memory_bytes:
                bottlenecks.append({
                    "algorithm": name,
                    "type": "memory_usage",
                    "actual": agg.avg_memory,
                    "target": t.max_memory_bytes,
                    "severity": agg.avg_memory / t.max_memory_bytes,
                })

        distribution: Dict[str, dict] = {}
        resources: Dict[str, dict] = {}
        for name in aggregates:
            times = np.array([e.processing_time_ms for e in entries
                              if e.algorithm == name and e.success], dtype=np.float64)
            if times.size == 0:
                continue
            distribution[name] = {
                "min_ms": float(times.min()),
                "median_ms": float(np.median(times)),
                "max_ms": float(times.max()),
                "std_ms": float(times.std()),
            }
            mem = [e.memory_bytes for e in entries if e.algorithm == name and e.success]
            resources[name] = {"average_memory_bytes": float(np.mean(mem)),
                               "peak_memory_bytes": int(max(mem))}

        return {"bottlenecks": bottlenecks, "time_distribution": distribution,
                "resource_usage": resources}

    @staticmethod
    def generate_recommendations(rankings: Sequence[dict]) -> List[dict]:
        if not rankings or all(r["metrics"]["success_rate"] == 0 for r in rankings):
            return [{
                "type": "critical",
                "message": "No algorithms completed successfully. Review implementation and test data.",
            }]

        top = rankings[0]
        recommendations: List[dict] = []
        if top["meets_requirements"]["overall"]:
            recommendations.append({
                "type": "success",
                "message": f"Recommend {top['algorithm']} algorithm for production use",
                "details": {
                    "algorithm": top["algorithm"],
                    "score": top["weighted_score"],
                    "accuracy": top["metrics"]["accuracy"],
                    "processing_time_ms": top["metrics"]["processing_time_ms"],
                },
            })
        else:
            recommendations.append({
                "type": "warning",
                "message": f"Best algorithm ({top['algorithm']}) does not meet all requirements",
                "details": dict(top["meets_requirements"]),
            })

        if top["metrics"]["processing_time_ms"] > 2000:
            recommendations.append({
                "type": "optimization",
                "message": "Consider optimizing processing time for better user experience",
                "suggestion": "Implement progressive results or reduce image resolution for initial detection",
            })
        if top["metrics"]["accuracy"] < 0.8:
            recommendations.append({
                "type": "optimization",
                "message": "Consider improving accuracy through algorithm tuning or ensemble methods",
                "suggestion": "Experiment with parameter optimization or hybrid approaches",
            })
        return recommendations
