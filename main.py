"""
main.py
───────
Build-area ROI detection — entry point

Modes:
  python main.py --mode image     --source screenshot.png
  python main.py --mode benchmark [--source dataset.json]
  python main.py --mode validate  [--source dataset.json]

Without --source the benchmark and validate modes run on a synthetic
dataset of generated screenshots.

Parameters:
  --algo            : edge | color | template | corner (repeatable; default: edge color template)
  --output          : Output folder             (default: results/)
  --timeout         : Coordinator timeout (ms)  (default: 4000)
  --no_fallback     : Raise instead of returning the centred fallback
  --per_test_timeout: Benchmark per-test timeout (ms) (default: 10000)
  --synthetic_count : Synthetic dataset size    (default: 10)
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

# Add the project root to the path
sys.path.insert(0, os.path.dirname(__file__))

from roi.benchmark_harness import BenchmarkHarness
from roi.completion_validator import CompletionValidator
from roi.dataset import load_dataset
from roi.errors import ROIDetectionError
from roi.result_model import DETECTOR_METHODS
from roi.roi_coordinator import DEFAULT_ALGORITHMS, ROICoordinator
from roi_utils.export_utils import (
    export_entries_csv,
    export_report_json,
    export_result_json,
    export_summary_txt,
    plot_rankings,
)
from roi_utils.image_utils import (
    draw_roi_overlay,
    load_image,
    make_synthetic_dataset,
    save_image,
)

logger = logging.getLogger("roi")


# ──────────────────────────────────────────────
# Modes
# ──────────────────────────────────────────────

def _coordinator(args: argparse.Namespace, **overrides) -> ROICoordinator:
    kwargs = dict(
        algorithms=args.algo or list(DEFAULT_ALGORITHMS),
        timeout_ms=args.timeout,
        enable_fallback=not args.no_fallback,
        debug_mode=args.verbose,
    )
    kwargs.update(overrides)
    return ROICoordinator.with_default_detectors(**kwargs)


def _dataset(args: argparse.Namespace):
    if args.source:
        return load_dataset(args.source)
    logger.info("No --source given, generating %d synthetic screenshots", args.synthetic_count)
    return load_dataset(make_synthetic_dataset(args.synthetic_count))


def run_image(args: argparse.Namespace) -> int:
    """Detects the build area in one screenshot and writes the overlay."""
    if not args.source:
        logger.error("--source is required in image mode.")
        return 1
    try:
        image = load_image(args.source)
    except (FileNotFoundError, ValueError) as exc:
        logger.error("Could not read image: %s", exc)
        return 1

    coordinator = _coordinator(args)
    try:
        result = coordinator.detect_roi(image)
    except ROIDetectionError as exc:
        logger.error("Detection failed: %s", exc)
        return 2

    print(repr(result))
    save_image(draw_roi_overlay(image, result), os.path.join(args.output, "result.png"))
    export_result_json(result, os.path.join(args.output, "result.json"))
    return 0


def run_benchmark(args: argparse.Namespace) -> int:
    """Benchmarks every detector plus the ensemble and writes the reports."""
    algorithms = args.algo or list(DETECTOR_METHODS)
    harness = BenchmarkHarness(
        coordinator=_coordinator(args, algorithms=algorithms),
        algorithms=algorithms,
        per_test_timeout_ms=args.per_test_timeout,
    )
    report = harness.run(_dataset(args))

    _print_rankings(report.rankings)
    export_report_json(report, os.path.join(args.output, "benchmark.json"))
    export_entries_csv(report, os.path.join(args.output, "benchmark.csv"))
    export_summary_txt(report, os.path.join(args.output, "summary.txt"))
    try:
        plot_rankings(report, os.path.join(args.output, "rankings.png"))
    except RuntimeError as exc:
        logger.warning("Chart not created: %s", exc)
    return 0


def run_validate(args: argparse.Namespace) -> int:
    """Runs the production-readiness checks; exit code 0 only when ready."""
    validator = CompletionValidator(
        coordinator_factory=lambda **kw: _coordinator(args, **kw),
        dataset=_dataset(args),
        harness_factory=lambda c: BenchmarkHarness(c, per_test_timeout_ms=args.per_test_timeout),
    )
    report = validator.validate()

    print("\n" + "=" * 55)
    print("  COMPLETION VALIDATION")
    print("=" * 55)
    for name, check in report.checks.items():
        status = "PASS" if check.passed else "FAIL"
        print(f"  {name:<14}: {status}" + (f"  ({check.error})" if check.error else ""))
    for rec in report.recommendations:
        print(f"  [{rec['type']}] {rec['message']}")
    print("=" * 55 + "\n")

    export_report_json(report, os.path.join(args.output, "validation.json"))
    return 0 if report.ready_for_production else 3


def _print_rankings(rankings) -> None:
    """Terminal ranking table."""
    print("\n" + "=" * 55)
    print("  ALGORITHM RANKINGS")
    print("=" * 55)
    for i, r in enumerate(rankings, start=1):
        m = r["metrics"]
        print(f"  #{i} {r['algorithm']:<10} score {r['weighted_score']:.3f}  "
              f"IoU {m['accuracy']:.3f}  {m['processing_time_ms']:.0f} ms  "
              f"success {m['success_rate']:.0%}")
    print("=" * 55 + "\n")


# ──────────────────────────────────────────────
# Argparse
# ──────────────────────────────────────────────

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Build-area ROI detection",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--mode",       default="image",
                   choices=["image", "benchmark", "validate"],
                   help="Run mode.")
    p.add_argument("--source",     default=None,          help="Screenshot (image) or dataset JSON.")
    p.add_argument("--output",     default="results",     help="Output folder.")
    p.add_argument("--algo",       action="append", choices=list(DETECTOR_METHODS),
                   help="Algorithm to enable (repeatable).")
    p.add_argument("--timeout",    type=float, default=4000.0, help="Coordinator timeout (ms).")
    p.add_argument("--no_fallback", action="store_true",  help="Disable the centred fallback.")
    p.add_argument("--per_test_timeout", type=float, default=10_000.0,
                   help="Benchmark per-test timeout (ms).")
    p.add_argument("--synthetic_count", type=int, default=10,
                   help="Synthetic dataset size when --source is omitted.")
    p.add_argument("--verbose",    action="store_true",   help="Debug logging.")
    return p


# ──────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────

def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    os.makedirs(args.output, exist_ok=True)

    modes = {"image": run_image, "benchmark": run_benchmark, "validate": run_validate}
    return modes[args.mode](args)


if __name__ == "__main__":
    sys.exit(main())
