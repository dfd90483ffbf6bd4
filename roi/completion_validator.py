"""
roi/completion_validator.py
───────────────────────────
Production-readiness gate for the ROI detection subsystem.

Checks:
  • components : coordinator registry holds every detector
  • accuracy   : top-ranked benchmark algorithm reaches the target IoU
  • performance: ensemble average latency within the budget
  • fallbacks  : tiny image → fallback, None → InvalidInputError,
                 timeout without fallback → DetectionTimeoutError
  • dataset    : enough annotated screenshots

Each check runs once; a failing check is reported, never retried.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from roi.benchmark_harness import CONSENSUS, BenchmarkHarness, BenchmarkReport
from roi.dataset import BenchmarkItem
from roi.errors import DetectionTimeoutError, InvalidInputError
from roi.image import Image
from roi.result_model import DETECTOR_METHODS, METHOD_FALLBACK
from roi.roi_coordinator import ROICoordinator
from roi_utils.image_utils import make_synthetic_screenshot

logger = logging.getLogger(__name__)

CoordinatorFactory = Callable[..., ROICoordinator]
HarnessFactory = Callable[[ROICoordinator], BenchmarkHarness]

CHECK_COMPONENTS  = "components"
CHECK_ACCURACY    = "roi_accuracy"
CHECK_PERFORMANCE = "performance"
CHECK_FALLBACKS   = "fallbacks"
CHECK_DATASET     = "dataset"


@dataclass
class CheckResult:
    """Outcome of one readiness check."""
    name: str
    passed: bool = False
    details: dict = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"name": self.name, "passed": self.passed,
                "details": self.details, "error": self.error}


@dataclass
class ValidationReport:
    """All checks plus the overall verdict."""
    checks: Dict[str, CheckResult]
    phase_complete: bool
    ready_for_production: bool
    recommendations: List[dict]
    benchmark: Optional[BenchmarkReport] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def summary(self) -> dict:
        return {
            "total_validations": len(self.checks),
            "passed_validations": sum(1 for c in self.checks.values() if c.passed),
            "critical_issues": sum(1 for r in self.recommendations if r["type"] == "critical"),
            "ready_for_production": self.ready_for_production,
        }

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "validations": {name: c.to_dict() for name, c in self.checks.items()},
            "phase_complete": self.phase_complete,
            "ready_for_production": self.ready_for_production,
            "recommendations": self.recommendations,
            "summary": self.summary,
        }


class CompletionValidator:
    """
    Args:
        coordinator_factory: Builds coordinators; receives ROICoordinator
                             keyword arguments (enable_fallback, timeout_ms …).
        dataset            : Labelled items for the benchmark / dataset checks.
        harness_factory    : Builds the benchmark harness for a coordinator.
        min_accuracy       : Target IoU of the top-ranked algorithm.
        roi_budget_ms      : Ensemble latency budget.
        min_annotated      : Annotated items needed by the dataset check.
        target_dataset_size: Desired dataset size (reported only).
        timeout_probe_ms   : Timeout used to provoke DetectionTimeoutError.
        probe_iterations   : Timed runs when no benchmark report exists.
    """

    def __init__(
        self,
        coordinator_factory: CoordinatorFactory = ROICoordinator.with_default_detectors,
        dataset: Optional[Sequence[BenchmarkItem]] = None,
        harness_factory: Optional[HarnessFactory] = None,
        min_accuracy: float = 0.70,
        roi_budget_ms: float = 4000.0,
        min_annotated: int = 10,
        target_dataset_size: int = 40,
        timeout_probe_ms: float = 1.0,
        probe_iterations: int = 5,
    ) -> None:
        self.coordinator_factory = coordinator_factory
        self.dataset             = list(dataset) if dataset is not None else []
        self.harness_factory     = harness_factory or (lambda c: BenchmarkHarness(c))
        self.min_accuracy        = min_accuracy
        self.roi_budget_ms       = roi_budget_ms
        self.min_annotated       = min_annotated
        self.target_dataset_size = target_dataset_size
        self.timeout_probe_ms    = timeout_probe_ms
        self.probe_iterations    = probe_iterations
        self._benchmark: Optional[BenchmarkReport] = None

    # ── Entry point ──────────────────────────────

    def validate(self) -> ValidationReport:
        """Runs every check once and assembles the report."""
        logger.info("Starting completion validation")
        self._benchmark = None
        checks = {
            CHECK_COMPONENTS: self._run(CHECK_COMPONENTS, self.validate_components),
            CHECK_ACCURACY: self._run(CHECK_ACCURACY, self.validate_roi_accuracy),
            CHECK_PERFORMANCE: self._run(CHECK_PERFORMANCE, self.validate_performance),
            CHECK_FALLBACKS: self._run(CHECK_FALLBACKS, self.validate_fallbacks),
            CHECK_DATASET: self._run(CHECK_DATASET, self.validate_dataset),
        }
        complete = all(c.passed for c in checks.values())
        report = ValidationReport(
            checks=checks,
            phase_complete=complete,
            ready_for_production=complete,
            recommendations=[],
            benchmark=self._benchmark,
        )
        report.recommendations = self.generate_recommendations(report)
        logger.info("Validation finished: %s", report.summary)
        return report

    @staticmethod
    def _run(name: str, check: Callable[[CheckResult], None]) -> CheckResult:
        result = CheckResult(name)
        try:
            check(result)
        except Exception as exc:
            logger.error("%s check failed: %s", name, exc)
            result.passed = False
            result.error = f"{type(exc).__name__}: {exc}"
        return result

    # ── Checks ───────────────────────────────────

    def validate_components(self, result: CheckResult) -> None:
        coordinator = self.coordinator_factory()
        available = set(coordinator.available_algorithms)
        missing = [name for name in DETECTOR_METHODS if name not in available]
        result.details = {
            "available_components": sorted(available & set(DETECTOR_METHODS)),
            "missing_components": missing,
            "availability_rate": (len(DETECTOR_METHODS) - len(missing)) / len(DETECTOR_METHODS),
        }
        result.passed = not missing

    def validate_roi_accuracy(self, result: CheckResult) -> None:
        result.details = {"target_accuracy": self.min_accuracy, "actual_accuracy": 0.0,
                          "selected_algorithm": None}
        if not self.dataset:
            result.error = "No validation dataset available"
            return

        harness = self.harness_factory(self.coordinator_factory())
        self._benchmark = harness.run(self.dataset)
        top = self._benchmark.top_ranking
        if top is None:
            return
        result.details.update({
            "selected_algorithm": top["algorithm"],
            "actual_accuracy": top["metrics"]["accuracy"],
            "algorithm_rankings": self._benchmark.rankings,
        })
        result.passed = top["metrics"]["accuracy"] >= self.min_accuracy

    def validate_performance(self, result: CheckResult) -> None:
        if self._benchmark is not None:
            summary = self._benchmark.summary["algorithms"].get(CONSENSUS, {})
            average = summary.get("average_processing_time_ms", 0.0)
            source = "benchmark"
            if summary.get("success_rate", 0.0) == 0.0:
                result.error = "Ensemble never completed during the benchmark"
                result.details = {"budget_ms": self.roi_budget_ms, "source": source}
                return
        else:
            average = self._probe_latency()
            source = "synthetic"
        result.details = {"budget_ms": self.roi_budget_ms, "average_ms": average, "source": source}
        result.passed = average <= self.roi_budget_ms

    def _probe_latency(self) -> float:
        """Average detect_roi latency on a synthetic screenshot; failures count as 10 s."""
        coordinator = self.coordinator_factory()
        image, _ = make_synthetic_screenshot(1920, 1080)
        times: List[float] = []
        for _ in range(self.probe_iterations):
            t0 = time.perf_counter()
            try:
                coordinator.detect_roi(image)
                times.append((time.perf_counter() - t0) * 1000.0)
            except Exception as exc:
                logger.warning("Latency probe iteration failed: %s", exc)
                times.append(10_000.0)
        return float(np.mean(times))

    def validate_fallbacks(self, result: CheckResult) -> None:
        tests = [self._fallback_on_tiny_image(), self._rejects_missing_image(),
                 self._timeout_without_fallback()]
        result.details = {"fallback_tests": tests}
        result.passed = all(t["passed"] for t in tests)

    def _fallback_on_tiny_image(self) -> dict:
        tiny = Image.from_rgb(np.zeros((10, 10, 3), dtype=np.uint8), source="tiny")
        try:
            detection = self.coordinator_factory(enable_fallback=True).detect_roi(tiny)
        except Exception as exc:
            return {"name": "ROI detection fallback", "passed": False, "error": str(exc)}
        return {"name": "ROI detection fallback", "passed": detection.method == METHOD_FALLBACK,
                "result": detection.to_dict()}

    def _rejects_missing_image(self) -> dict:
        try:
            self.coordinator_factory().detect_roi(None)
        except InvalidInputError:
            return {"name": "Invalid input rejected", "passed": True}
        except Exception as exc:
            return {"name": "Invalid input rejected", "passed": False,
                    "error": f"unexpected {type(exc).__name__}: {exc}"}
        return {"name": "Invalid input rejected", "passed": False, "error": "no error raised"}

    def _timeout_without_fallback(self) -> dict:
        image, _ = make_synthetic_screenshot()
        coordinator = self.coordinator_factory(enable_fallback=False, timeout_ms=self.timeout_probe_ms)
        try:
            coordinator.detect_roi(image)
        except DetectionTimeoutError:
            return {"name": "Timeout handling", "passed": True}
        except Exception as exc:
            return {"name": "Timeout handling", "passed": False,
                    "error": f"unexpected {type(exc).__name__}: {exc}"}
        return {"name": "Timeout handling", "passed": False, "error": "detection finished in time"}

    def validate_dataset(self, result: CheckResult) -> None:
        annotated = [item for item in self.dataset if item.is_annotated]
        scores = [item.metadata["qualityScore"] for item in annotated
                  if isinstance(item.metadata.get("qualityScore"), (int, float))]
        result.details = {
            "target_count": self.target_dataset_size,
            "actual_count": len(self.dataset),
            "annotated_count": len(annotated),
            "completeness_ratio": len(self.dataset) / self.target_dataset_size,
            "quality_score": float(np.mean(scores)) if scores else 0.0,
        }
        result.passed = len(annotated) >= self.min_annotated

    # ── Recommendations ──────────────────────────

    def generate_recommendations(self, report: ValidationReport) -> List[dict]:
        checks = report.checks
        recommendations: List[dict] = []

        components = checks[CHECK_COMPONENTS]
        if not components.passed:
            missing = components.details.get("missing_components", [])
            recommendations.append({
                "type": "critical",
                "component": "Components",
                "message": f"Missing required components: {', '.join(missing) or components.error}",
                "action": "Register every ROI detector with the coordinator",
            })

        accuracy = checks[CHECK_ACCURACY]
        if not accuracy.passed:
            actual = accuracy.details.get("actual_accuracy", 0.0)
            recommendations.append({
                "type": "critical",
                "component": "ROI Detection",
                "message": f"Accuracy {actual * 100:.1f}% below target {self.min_accuracy * 100:.1f}%",
                "action": "Optimize algorithm parameters or collect more annotated screenshots",
            })

        if not checks[CHECK_PERFORMANCE].passed:
            recommendations.append({
                "type": "important",
                "component": "Performance",
                "message": "Performance budgets not met",
                "action": "Optimize algorithms or adjust performance targets",
            })

        if not checks[CHECK_FALLBACKS].passed:
            failed = [t["name"] for t in checks[CHECK_FALLBACKS].details.get("fallback_tests", [])
                      if not t["passed"]]
            recommendations.append({
                "type": "critical",
                "component": "Fallbacks",
                "message": f"Fallback checks failed: {', '.join(failed) or checks[CHECK_FALLBACKS].error}",
                "action": "Fix error handling in the coordinator before release",
            })

        dataset = checks[CHECK_DATASET]
        if not dataset.passed:
            recommendations.append({
                "type": "important",
                "component": "Dataset",
                "message": (f"Only {dataset.details.get('annotated_count', 0)}/"
                            f"{self.target_dataset_size} annotated test cases available"),
                "action": "Annotate more screenshots with build-area ground truth",
            })

        if report.ready_for_production:
            recommendations.append({
                "type": "success",
                "component": "Overall",
                "message": "Validation successful - ready for production",
                "action": "Configure the coordinator with the recommended algorithm",
            })
        return recommendations
