"""
tests/test_benchmark.py
───────────────────────
Dataset loading and BenchmarkHarness tests (stub detectors).
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import json
import time

import numpy as np
import pytest
from roi.benchmark_harness import CONSENSUS, BenchmarkHarness, PerformanceTargets
from roi.dataset import BenchmarkItem, load_dataset, parse_build_area
from roi.errors import ConfigurationError
from roi.image import Image
from roi.result_model import DetectionResult, Rectangle
from roi.roi_coordinator import ROICoordinator
from roi_utils.image_utils import encode_data_url

from test_coordinator import StubDetector

TRUTH = {"left": 100, "top": 100, "right": 500, "bottom": 350, "width": 400, "height": 250}


def make_annotation(i, image_data=None, truth=TRUTH):
    if image_data is None:
        image_data = encode_data_url(Image.from_rgb(np.zeros((60, 100, 3), dtype=np.uint8)))
    item = {"filename": f"shot-{i:02d}.png", "imageData": image_data,
            "metadata": {"qualityScore": 0.9}}
    if truth is not None:
        item["groundTruth"] = {"buildArea": truth}
    return item


def make_dataset(n=3, broken=()):
    annotations = []
    for i in range(n):
        data = "data:image/png;base64,aGVsbG8=" if i in broken else None
        annotations.append(make_annotation(i, data))
    return load_dataset({"annotations": annotations})


def make_harness(*detectors, enable_fallback=True, **kwargs):
    registry = {d.name: d for d in detectors}
    coord = ROICoordinator(registry, algorithms=list(registry), enable_fallback=enable_fallback)
    kwargs.setdefault("measure_memory", False)
    return BenchmarkHarness(coordinator=coord, algorithms=list(registry), **kwargs)


def good_detectors():
    return (StubDetector("edge", 0.9, bounds=(100, 100, 400, 250)),
            StubDetector("color", 0.5, bounds=(600, 300, 200, 100)))


class TestDataset:

    def test_parse_build_area(self):
        assert parse_build_area(TRUTH) == Rectangle(100, 100, 400, 250)
        assert parse_build_area({"left": 1, "top": 2, "right": 11, "bottom": 22}) == Rectangle(1, 2, 10, 20)
        with pytest.raises(ValueError):
            parse_build_area({"left": 1})

    def test_load_mapping(self):
        items = make_dataset(2)
        assert [it.filename for it in items] == ["shot-00.png", "shot-01.png"]
        assert all(it.is_annotated for it in items)
        assert items[0].ground_truth == Rectangle(100, 100, 400, 250)
        assert items[0].load().width == 100

    def test_unannotated_item(self):
        items = load_dataset([make_annotation(0, truth=None)])
        assert not items[0].is_annotated

    def test_invalid_format(self):
        with pytest.raises(ValueError, match="Invalid dataset format"):
            load_dataset({"annotations": "nope"})
        with pytest.raises(ValueError):
            load_dataset({})

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError):
            load_dataset(str(path))

    def test_relative_image_path(self, tmp_path):
        path = tmp_path / "dataset.json"
        path.write_text(json.dumps({"annotations": [
            {"filename": "a.png", "imagePath": "images/a.png"},
        ]}), encoding="utf-8")
        item = load_dataset(str(path))[0]
        assert item.image_path == str(tmp_path / "images" / "a.png")

    @pytest.mark.parametrize("area", [
        {"left": 1, "top": 2, "width": 0, "height": 5},
        {"top": 2, "width": 10, "height": 5},
        "100,100,400,250",
    ])
    def test_bad_ground_truth_kept_unannotated(self, area):
        items = load_dataset([make_annotation(0), make_annotation(1, truth=area)])
        assert len(items) == 2
        assert items[0].is_annotated
        assert not items[1].is_annotated
        assert items[1].metadata["groundTruthError"]
        assert items[1].metadata["qualityScore"] == 0.9

    def test_item_without_source(self):
        with pytest.raises(ValueError):
            BenchmarkItem("empty.png").load()


class TestBenchmarkHarness:

    def test_entry_count(self):
        harness = make_harness(*good_detectors())
        report = harness.run(make_dataset(3))
        assert len(report.entries) == 3 * (2 + 1)
        assert report.summary["total_test_cases"] == 3
        assert {e["algorithm"] for e in report.entries} == {"edge", "color", CONSENSUS}

    def test_accuracy_and_ranking(self):
        report = make_harness(*good_detectors()).run(make_dataset(2))
        assert report.get_ranking("edge")["metrics"]["accuracy"] == pytest.approx(1.0)
        assert report.get_ranking("color")["metrics"]["accuracy"] == 0.0
        assert report.rankings[-1]["algorithm"] == "color"
        assert report.top_ranking["algorithm"] in ("edge", CONSENSUS)
        consensus = [e for e in report.entries if e["algorithm"] == CONSENSUS]
        assert all(e["selected_algorithm"] == "edge" for e in consensus)

    def test_ranking_weights(self):
        harness = make_harness(*good_detectors())
        report = harness.run(make_dataset(1))
        edge = report.get_ranking("edge")
        m = edge["metrics"]
        t = harness.targets
        expected = (m["accuracy"] * 0.5
                    + (t.max_processing_time_ms - m["processing_time_ms"]) / t.max_processing_time_ms * 0.2
                    + 0.15 + m["success_rate"] * 0.15)
        assert edge["weighted_score"] == pytest.approx(expected)
        assert edge["meets_requirements"]["overall"] is True

    def test_load_failure_does_not_abort(self):
        report = make_harness(*good_detectors()).run(make_dataset(3, broken={1}))
        assert len(report.entries) == 9
        failed = [e for e in report.entries if e["test_case"] == "shot-01.png"]
        assert len(failed) == 3
        assert all(not e["success"] and "Failed to load image" in e["error"] for e in failed)
        assert report.get_ranking("edge")["metrics"]["success_rate"] == pytest.approx(2 / 3)

    def test_bad_ground_truth_does_not_abort(self):
        annotations = [make_annotation(0),
                       make_annotation(1, truth={"left": 1, "top": 2, "width": 0, "height": 5})]
        report = make_harness(*good_detectors()).run({"annotations": annotations})
        assert len(report.entries) == 6
        bad = [e for e in report.entries if e["test_case"] == "shot-01.png"]
        assert all(e["success"] and e["accuracy"] == 0.0 for e in bad)
        assert report.get_ranking("edge")["metrics"]["accuracy"] == pytest.approx(0.5)

    def test_per_test_timeout(self):
        harness = make_harness(StubDetector("edge", 0.9, delay_s=2.0), per_test_timeout_ms=100)
        report = harness.run(make_dataset(1))
        edge = [e for e in report.entries if e["algorithm"] == "edge"][0]
        assert not edge["success"]
        assert "DetectionTimeoutError" in edge["error"]

    def test_consensus_stops_on_per_test_timeout(self):
        harness = make_harness(StubDetector("edge", 0.9, delay_s=2.0), per_test_timeout_ms=100)
        report = harness.run(make_dataset(1))
        consensus = [e for e in report.entries if e["algorithm"] == CONSENSUS][0]
        assert not consensus["success"]
        assert "DetectionTimeoutError" in consensus["error"]

        profiler = harness.coordinator.profiler
        deadline = time.perf_counter() + 1.0
        while profiler.get_record("edge").total_runs < 2 and time.perf_counter() < deadline:
            time.sleep(0.01)
        assert profiler.get_record("edge").total_runs == 2
        assert profiler.get_record("edge").successful_runs == 0

    def test_failing_detector_recorded(self):
        harness = make_harness(StubDetector("edge", error=RuntimeError("boom")),
                               StubDetector("color", 0.5))
        report = harness.run(make_dataset(1))
        failures = report.detailed_results["failures"]
        assert [f["algorithm"] for f in failures] == ["edge"]
        assert "boom" in failures[0]["error"]

    def test_all_failures_critical(self):
        harness = make_harness(StubDetector("edge", error=RuntimeError("boom")),
                               enable_fallback=False)
        report = harness.run(make_dataset(2))
        assert report.recommendations[0]["type"] == "critical"

    def test_empty_dataset(self):
        with pytest.raises(ValueError):
            make_harness(*good_detectors()).run([])

    def test_unknown_algorithm(self):
        coord = ROICoordinator({"edge": StubDetector("edge")}, algorithms=["edge"])
        with pytest.raises(ConfigurationError):
            BenchmarkHarness(coordinator=coord, algorithms=["edge", "corner"])

    def test_memory_measured(self):
        harness = make_harness(*good_detectors(), measure_memory=True)
        report = harness.run(make_dataset(1))
        assert all(e["memory_bytes"] >= 0 for e in report.entries)
        assert "edge" in report.performance_analysis["resource_usage"]

    def test_report_to_dict(self):
        report = make_harness(*good_detectors()).run(make_dataset(1))
        data = report.to_dict()
        assert set(data) == {"metadata", "summary", "algorithm_rankings", "detailed_results",
                             "performance_analysis", "recommendations", "export_data"}
        json.dumps(data)
        data["algorithm_rankings"].clear()
        assert report.rankings

    def test_calculate_accuracy(self):
        assert BenchmarkHarness.calculate_accuracy(None, Rectangle(0, 0, 10, 10)) == 0.0
        detection = DetectionResult(bounds=Rectangle(0, 0, 20, 20), confidence=0.5, method="edge")
        assert BenchmarkHarness.calculate_accuracy(detection, None) == 0.0
        assert BenchmarkHarness.calculate_accuracy(detection, Rectangle(10, 0, 20, 20)) == pytest.approx(1 / 3)


class TestRecommendations:

    def ranking(self, accuracy=0.9, time_ms=500.0, overall=True):
        return {
            "algorithm": "edge",
            "weighted_score": 0.8,
            "metrics": {"accuracy": accuracy, "processing_time_ms": time_ms,
                        "memory_bytes": 0.0, "success_rate": 1.0},
            "meets_requirements": {"accuracy": overall, "speed": True,
                                   "memory": True, "overall": overall},
        }

    def test_success(self):
        recs = BenchmarkHarness.generate_recommendations([self.ranking()])
        assert [r["type"] for r in recs] == ["success"]

    def test_warning_and_optimizations(self):
        recs = BenchmarkHarness.generate_recommendations(
            [self.ranking(accuracy=0.5, time_ms=2500.0, overall=False)])
        assert [r["type"] for r in recs] == ["warning", "optimization", "optimization"]

    def test_no_rankings(self):
        assert BenchmarkHarness.generate_recommendations([])[0]["type"] == "critical"

    def test_targets(self):
        assert PerformanceTargets().to_dict() == {
            "max_processing_time_ms": 4000.0,
            "max_memory_bytes": 150 * 1024 * 1024,
            "min_accuracy": 0.7,
        }
