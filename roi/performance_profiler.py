"""
roi/performance_profiler.py
───────────────────────────
Per-algorithm performance bookkeeping.

Tracked per algorithm:
  • runs, total / average wall time
  • total / average confidence
  • successful runs (confidence > 0) and success rate

Visualisation:
  • comparison bar chart (time | confidence | success rate)
"""

from __future__ import annotations

import csv
import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from roi.result_model import DetectionResult

logger = logging.getLogger(__name__)

# Latency at which the speed score reaches zero (ms)
SPEED_BUDGET_MS = 4000.0


# ──────────────────────────────────────────────
# Data classes
# ──────────────────────────────────────────────

@dataclass
class PerformanceRecord:
    """Accumulated statistics of one algorithm."""
    algorithm: str
    total_runs: int = 0
    total_time_ms: float = 0.0
    total_confidence: float = 0.0
    successful_runs: int = 0

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.total_runs if self.total_runs else 0.0

    @property
    def avg_confidence(self) -> float:
        """Mean confidence of the successful runs."""
        return self.total_confidence / self.successful_runs if self.successful_runs else 0.0

    @property
    def success_rate(self) -> float:
        return self.successful_runs / self.total_runs if self.total_runs else 0.0

    @property
    def speed_score(self) -> float:
        return max(0.0, (SPEED_BUDGET_MS - self.avg_time_ms) / SPEED_BUDGET_MS)

    @property
    def overall_score(self) -> float:
        """0.7·avg confidence + 0.2·success rate + 0.1·speed score."""
        return self.avg_confidence * 0.7 + self.success_rate * 0.2 + self.speed_score * 0.1

    def copy(self) -> "PerformanceRecord":
        return PerformanceRecord(
            algorithm=self.algorithm,
            total_runs=self.total_runs,
            total_time_ms=self.total_time_ms,
            total_confidence=self.total_confidence,
            successful_runs=self.successful_runs,
        )

    def to_dict(self) -> dict:
        return {
            "algorithm": self.algorithm,
            "total_runs": self.total_runs,
            "total_time_ms": round(self.total_time_ms, 4),
            "avg_time_ms": round(self.avg_time_ms, 4),
            "avg_confidence": round(self.avg_confidence, 4),
            "successful_runs": self.successful_runs,
            "success_rate": round(self.success_rate, 4),
        }


# ──────────────────────────────────────────────
# Profiler
# ──────────────────────────────────────────────

class PerformanceProfiler:
    """
    Thread-safe performance tracker shared by all detectors.

    Usage:
        profiler = PerformanceProfiler()
        profiler.record("edge", 812.0, result)
        best = profiler.get_best_algorithm()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, PerformanceRecord] = {}
        self._total = PerformanceRecord("total")

    # ── Recording ────────────────────────────────

    def record(
        self,
        algorithm: str,
        elapsed_ms: float,
        result: Optional[DetectionResult],
    ) -> None:
        """
        Adds one run. A run succeeds when it produced a result with
        confidence > 0; failed or empty runs still count towards time.

        Args:
            algorithm : Algorithm name.
            elapsed_ms: Wall time of the run.
            result    : Detector output, or None.
        """
        with self._lock:
            rec = self._records.setdefault(algorithm, PerformanceRecord(algorithm))
            self._accumulate(rec, elapsed_ms, result)

    def record_total(self, elapsed_ms: float, result: Optional[DetectionResult]) -> None:
        """Adds one whole ensemble run (kept apart from the per-algorithm records)."""
        with self._lock:
            self._accumulate(self._total, elapsed_ms, result)

    @staticmethod
    def _accumulate(
        rec: PerformanceRecord,
        elapsed_ms: float,
        result: Optional[DetectionResult],
    ) -> None:
        confidence = result.confidence if result is not None else 0.0
        rec.total_runs += 1
        rec.total_time_ms += elapsed_ms
        if confidence > 0:
            rec.successful_runs += 1
            rec.total_confidence += confidence

    # ── Queries ──────────────────────────────────

    def get_record(self, algorithm: str) -> Optional[PerformanceRecord]:
        """Snapshot of one algorithm's record, or None."""
        with self._lock:
            rec = self._records.get(algorithm)
            return rec.copy() if rec is not None else None

    def get_statistics(self) -> Dict[str, PerformanceRecord]:
        """Snapshot of all records: {algorithm: PerformanceRecord}."""
        with self._lock:
            return {name: rec.copy() for name, rec in self._records.items()}

    def get_best_algorithm(self) -> Optional[str]:
        """
        Algorithm with the highest overall score.

        Returns:
            Algorithm name, or None when nothing scores above 0.
        """
        best_name, best_score = None, 0.0
        for name, rec in self.get_statistics().items():
            score = rec.overall_score
            if score > best_score:
                best_name, best_score = name, score
        return best_name

    def get_total(self) -> PerformanceRecord:
        """Snapshot of the whole-ensemble record."""
        with self._lock:
            return self._total.copy()

    def average_time_ms(self, algorithm: Optional[str] = None) -> float:
        """
        Average wall time of one algorithm, or across all algorithm runs
        when no name is given.
        """
        if algorithm is not None:
            rec = self.get_record(algorithm)
            return rec.avg_time_ms if rec is not None else 0.0
        stats = self.get_statistics().values()
        runs = sum(r.total_runs for r in stats)
        return sum(r.total_time_ms for r in stats) / runs if runs else 0.0

    # ── Export ───────────────────────────────────

    def export_csv(self, path: str) -> None:
        """Writes one row per algorithm."""
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        fields = ["algorithm", "total_runs", "total_time_ms", "avg_time_ms",
                  "avg_confidence", "successful_runs", "success_rate"]
        with open(path, "w", newline="", encoding="utf-8") as f:
            w = csv.DictWriter(f, fieldnames=fields)
            w.writeheader()
            for rec in self.get_statistics().values():
                w.writerow(rec.to_dict())
        logger.info("Profiler CSV → %s", path)

    def plot_comparison(self, save_path: str = "results/profiler.png") -> str:
        """
        Three-panel bar chart: avg time | avg confidence | success rate.

        Returns:
            Absolute path of the written PNG.

        Raises:
            RuntimeError: Nothing recorded yet.
        """
        stats = self.get_statistics()
        if not stats:
            raise RuntimeError("No records to plot.")

        algos  = list(stats.keys())
        colors = plt.cm.Set2(np.linspace(0, 0.8, len(algos)))
        fig, axes = plt.subplots(1, 3, figsize=(15, 5))
        fig.suptitle("Build-area ROI — algorithm performance",
                     fontsize=13, fontweight="bold", y=1.02)

        panels = [
            ([stats[a].avg_time_ms for a in algos], "Avg time (ms)", "ms", "{:.1f}"),
            ([stats[a].avg_confidence for a in algos], "Avg confidence", "", "{:.2f}"),
            ([stats[a].success_rate for a in algos], "Success rate", "", "{:.0%}"),
        ]
        for ax, (vals, title, ylabel, fmt) in zip(axes, panels):
            bars = ax.bar(algos, vals, color=colors, edgecolor="white")
            ax.set_title(title, fontsize=10)
            ax.set_ylabel(ylabel)
            ax.set_ylim(0, max(vals) * 1.3 if max(vals) > 0 else 1)
            for b, v in zip(bars, vals):
                ax.text(b.get_x() + b.get_width() / 2, v + ax.get_ylim()[1] * 0.01,
                        fmt.format(v), ha="center", va="bottom", fontsize=9)
            ax.grid(axis="y", alpha=0.4)

        plt.tight_layout()
        os.makedirs(os.path.dirname(os.path.abspath(save_path)), exist_ok=True)
        fig.savefig(save_path, dpi=150, bbox_inches="tight")
        plt.close(fig)
        logger.info("Profiler chart → %s", save_path)
        return os.path.abspath(save_path)

    def reset(self) -> None:
        """Drops all records."""
        with self._lock:
            self._records.clear()
            self._total = PerformanceRecord("total")

    def __repr__(self) -> str:
        with self._lock:
            total = sum(r.total_runs for r in self._records.values())
            return f"PerformanceProfiler(algos={list(self._records)}, runs={total})"
