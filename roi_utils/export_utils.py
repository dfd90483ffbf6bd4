"""
roi_utils/export_utils.py
─────────────────────────
Exporting detection results, benchmark reports and validation reports
as JSON / CSV / TXT / PNG.
"""

from __future__ import annotations

import csv
import json
import logging
import os
from typing import Any, Dict, List

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np

from roi.benchmark_harness import BenchmarkReport
from roi.result_model import DetectionResult

logger = logging.getLogger(__name__)


def _prepare(path: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)


def _write_json(data: Any, path: str) -> str:
    _prepare(path)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    return os.path.abspath(path)


def export_result_json(result: DetectionResult, path: str) -> str:
    """
    Writes one DetectionResult as JSON.

    Returns:
        Absolute path of the written file.
    """
    out = _write_json(result.to_dict(), path)
    logger.info("Result JSON → %s", path)
    return out


def export_report_json(report: Any, path: str) -> str:
    """
    Writes a BenchmarkReport or ValidationReport (anything with to_dict())
    or a plain mapping as JSON.

    Returns:
        Absolute path of the written file.
    """
    data = report.to_dict() if hasattr(report, "to_dict") else report
    out = _write_json(data, path)
    logger.info("Report JSON → %s", path)
    return out


def export_entries_csv(report: BenchmarkReport, path: str) -> str:
    """
    One row per (test case, algorithm) benchmark entry.

    Returns:
        Absolute path of the written file.
    """
    _prepare(path)
    fields = [
        "test_case", "algorithm", "success", "processing_time_ms",
        "memory_bytes", "accuracy", "confidence", "selected_algorithm", "error",
    ]
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fields, extrasaction="ignore")
        writer.writeheader()
        for entry in report.entries:
            writer.writerow(entry)
    logger.info("Benchmark CSV → %s", path)
    return os.path.abspath(path)


def export_summary_txt(report: BenchmarkReport, path: str) -> str:
    """
    Human-readable ranking / recommendation summary.

    Returns:
        Absolute path of the written file.
    """
    _prepare(path)
    lines = ["=" * 60, "  BUILD-AREA ROI DETECTION - BENCHMARK REPORT", "=" * 60, ""]
    meta = report.metadata
    lines += [
        f"  Test cases      : {meta['total_tests']}",
        f"  Algorithms      : {meta['algorithms_tested']}",
        f"  Duration (ms)   : {meta['duration_ms']:.0f}",
        "",
    ]

    for rank, r in enumerate(report.rankings, start=1):
        m = r["metrics"]
        lines += [
            f"  #{rank} [{r['algorithm']}]",
            f"    Score           : {r['weighted_score']:.3f}",
            f"    Accuracy (IoU)  : {m['accuracy']:.3f}",
            f"    Avg time (ms)   : {m['processing_time_ms']:.1f}",
            f"    Avg memory (MB) : {m['memory_bytes'] / (1024 * 1024):.2f}",
            f"    Success rate    : {m['success_rate']:.0%}",
            f"    Meets targets   : {'yes' if r['meets_requirements']['overall'] else 'no'}",
            "",
        ]

    if report.recommendations:
        lines.append("  Recommendations:")
        for rec in report.recommendations:
            lines.append(f"    [{rec['type']}] {rec['message']}")
        lines.append("")

    lines.append("=" * 60)
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines))
    logger.info("Summary → %s", path)
    return os.path.abspath(path)


def plot_rankings(report: BenchmarkReport, save_path: str = "results/rankings.png") -> str:
    """
    Bar chart of weighted score, accuracy and average time per algorithm.

    Returns:
        Absolute path of the written PNG.

    Raises:
        RuntimeError: The report has no rankings.
    """
    if not report.rankings:
        raise RuntimeError("No rankings to plot.")

    algos = [r["algorithm"] for r in report.rankings]
    colors = plt.cm.Set2(np.linspace(0, 0.8, len(algos)))
    panels: List[Dict[str, Any]] = [
        {"vals": [r["weighted_score"] for r in report.rankings], "title": "Weighted score", "fmt": "{:.2f}"},
        {"vals": [r["metrics"]["accuracy"] for r in report.rankings], "title": "Accuracy (IoU)", "fmt": "{:.2f}"},
        {"vals": [r["metrics"]["processing_time_ms"] for r in report.rankings],
         "title": "Avg time (ms)", "fmt": "{:.0f}"},
    ]

    fig, axes = plt.subplots(1, 3, figsize=(15, 5))
    fig.suptitle("Build-area ROI — benchmark rankings", fontsize=13, fontweight="bold", y=1.02)
    for ax, panel in zip(axes, panels):
        vals = panel["vals"]
        bars = ax.bar(algos, vals, color=colors, edgecolor="white")
        ax.set_title(panel["title"], fontsize=10)
        top = max(vals) * 1.3 if max(vals) > 0 else 1
        ax.set_ylim(0, top)
        for b, v in zip(bars, vals):
            ax.text(b.get_x() + b.get_width() / 2, v + top * 0.01,
                    panel["fmt"].format(v), ha="center", va="bottom", fontsize=9)
        ax.grid(axis="y", alpha=0.4)

    plt.tight_layout()
    _prepare(save_path)
    fig.savefig(save_path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    logger.info("Rankings chart → %s", save_path)
    return os.path.abspath(save_path)
