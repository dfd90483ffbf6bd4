"""
tests/test_result_model.py
──────────────────────────
Rectangle / DetectionResult unit tests.
Run: python -m pytest tests/ -v
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from roi.result_model import METHOD_EDGE, METHOD_FALLBACK, DetectionResult, Rectangle


def make_result(confidence=0.8, method=METHOD_EDGE, bounds=(10, 20, 300, 200)):
    return DetectionResult(bounds=Rectangle(*bounds), confidence=confidence, method=method)


class TestRectangle:

    def test_geometry(self):
        r = Rectangle(10, 20, 300, 200)
        assert r.right == 310
        assert r.bottom == 220
        assert r.area == 60_000
        assert r.aspect_ratio == pytest.approx(1.5)
        assert r.center == (160.0, 120.0)

    def test_from_ltrb(self):
        assert Rectangle.from_ltrb(5, 5, 15, 25) == Rectangle(5, 5, 10, 20)

    @pytest.mark.parametrize("w,h", [(0, 10), (10, 0), (-5, 10)])
    def test_non_positive_sides_rejected(self, w, h):
        with pytest.raises(ValueError):
            Rectangle(0, 0, w, h)

    def test_fits_within(self):
        assert Rectangle(0, 0, 100, 50).fits_within(100, 50)
        assert not Rectangle(1, 0, 100, 50).fits_within(100, 50)
        assert not Rectangle(-1, 0, 10, 10).fits_within(100, 50)

    def test_iou(self):
        a = Rectangle(0, 0, 20, 20)
        assert a.iou(a) == pytest.approx(1.0)
        assert a.iou(Rectangle(10, 0, 20, 20)) == pytest.approx(200 / 600)
        assert a.iou(Rectangle(50, 50, 5, 5)) == 0.0

    def test_iou_touching_edges(self):
        assert Rectangle(0, 0, 10, 10).iou(Rectangle(10, 0, 10, 10)) == 0.0

    def test_iou_symmetric(self):
        a, b = Rectangle(0, 0, 20, 20), Rectangle(5, 8, 30, 10)
        assert a.iou(b) == pytest.approx(b.iou(a))

    def test_to_dict(self):
        assert Rectangle(1, 2, 3, 4).to_dict() == {"x": 1, "y": 2, "width": 3, "height": 4}


class TestDetectionResult:

    def test_confidence_clamped(self):
        assert make_result(confidence=1.7).confidence == 1.0
        assert make_result(confidence=-0.2).confidence == 0.0
        assert make_result(confidence=float("nan")).confidence == 0.0

    def test_unknown_method_rejected(self):
        with pytest.raises(ValueError):
            make_result(method="magic")

    def test_bounds_must_be_rectangle(self):
        with pytest.raises(TypeError):
            DetectionResult(bounds=(0, 0, 10, 10), confidence=0.5, method=METHOD_EDGE)

    def test_is_fallback(self):
        assert make_result(method=METHOD_FALLBACK).is_fallback
        assert not make_result().is_fallback

    def test_immutable(self):
        r = make_result()
        with pytest.raises(Exception):
            r.confidence = 0.1

    def test_to_dict_keys(self):
        d = make_result().to_dict()
        assert set(d) == {"bounds", "confidence", "method", "metadata",
                          "inference_time_ms", "timestamp"}
        assert d["bounds"]["width"] == 300

    def test_summary(self):
        s = make_result(confidence=0.81234).summary()
        assert s["method"] == METHOD_EDGE
        assert s["confidence"] == pytest.approx(0.8123)

    def test_repr(self):
        assert "edge" in repr(make_result())
