"""
tests/test_corner_detector.py
─────────────────────────────
CornerDetector unit tests.
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import threading

import numpy as np
import pytest
from roi.corner_detector import Corner, CornerDetector
from roi.errors import DetectionCancelled, InvalidInputError
from roi.image import Image
from roi.result_model import Rectangle
from roi_utils.image_utils import make_synthetic_screenshot


def make_square_image(h=400, w=600, box=(150, 100, 450, 300)):
    frame = np.zeros((h, w, 3), dtype=np.uint8)
    x1, y1, x2, y2 = box
    frame[y1:y2, x1:x2] = 255
    return Image.from_rgb(frame)


def rect_corners(x1=200, y1=200, x2=800, y2=560, strength=1.0):
    return [Corner(x1, y1, strength), Corner(x2, y1, strength),
            Corner(x1, y2, strength), Corner(x2, y2, strength)]


class TestCornerDetector:

    def test_init_default(self):
        det = CornerDetector()
        assert det.get_name() == "corner"
        assert det.max_corners == 50
        assert det.axis_tolerance is None

    def test_invalid_input(self):
        with pytest.raises(InvalidInputError):
            CornerDetector().detect(None)

    def test_harris_finds_square_corners(self):
        det = CornerDetector()
        corners = det.detect_corners(make_square_image().gray)
        for cx, cy in [(150, 100), (449, 100), (150, 299), (449, 299)]:
            assert any(abs(c.x - cx) <= 5 and abs(c.y - cy) <= 5 for c in corners)

    def test_corners_sorted_by_strength(self):
        corners = CornerDetector().detect_corners(make_square_image().gray)
        strengths = [c.strength for c in corners]
        assert strengths == sorted(strengths, reverse=True)

    def test_blank_image_has_no_corners(self):
        frame = np.full((200, 300, 3), 40, dtype=np.uint8)
        assert CornerDetector().detect_corners(Image.from_rgb(frame).gray) == []

    def test_suppression_keeps_stronger(self):
        det = CornerDetector(suppression_radius=10)
        kept = det.filter_corners([
            Corner(105, 100, 3.0),
            Corner(100, 100, 5.0),
            Corner(300, 300, 1.0),
        ])
        assert kept == [Corner(100, 100, 5.0), Corner(300, 300, 1.0)]

    def test_suppression_respects_max_corners(self):
        det = CornerDetector(max_corners=3)
        corners = [Corner(i * 50, 0, float(i)) for i in range(10)]
        kept = det.filter_corners(corners)
        assert [c.strength for c in kept] == [9.0, 8.0, 7.0]

    def test_is_valid_rectangle(self):
        det = CornerDetector()
        assert det.is_valid_rectangle(Rectangle(200, 200, 600, 360), 1000, 800)
        assert not det.is_valid_rectangle(Rectangle(0, 0, 100, 60), 1000, 800)      # too small
        assert not det.is_valid_rectangle(Rectangle(0, 0, 400, 400), 1000, 800)     # square
        assert not det.is_valid_rectangle(Rectangle(700, 200, 600, 360), 1000, 800) # outside

    def test_find_rectangles(self):
        det = CornerDetector()
        rects = det.find_rectangles(rect_corners(), 1000, 800)
        # one 4-corner hypothesis followed by the two diagonals
        assert len(rects) == 3
        assert all(r.bounds == Rectangle(200, 200, 600, 360) for r in rects)
        assert len(rects[0].corners) == 4
        assert len(rects[1].corners) == 2

    def test_find_rectangles_cap(self):
        det = CornerDetector(max_rectangles=2)
        assert len(det.find_rectangles(rect_corners(), 1000, 800)) == 2

    def test_axis_tolerance_drops_skewed_quads(self):
        corners = rect_corners()
        corners[3] = Corner(700, 500, 1.0)
        det = CornerDetector(axis_tolerance=5)
        rects = det.find_rectangles(corners, 1000, 800)
        assert all(len(r.corners) == 2 for r in rects)

    def test_geometry_score(self):
        assert CornerDetector.geometry_score(Rectangle(0, 0, 800, 500)) == pytest.approx(1.0)
        assert CornerDetector.geometry_score(Rectangle(0, 0, 100, 100)) == pytest.approx(0.2)

    def test_cancellation(self):
        image, _ = make_synthetic_screenshot(640, 400)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(DetectionCancelled):
            CornerDetector().detect(image, cancel)

    def test_detect_returns_valid_result(self):
        image, _ = make_synthetic_screenshot(1280, 800)
        result = CornerDetector().detect(image)
        if result is not None:
            assert result.method == "corner"
            assert 0.3 < result.confidence <= 1.0
            assert result.bounds.fits_within(1280, 800)

    def test_set_params(self):
        det = CornerDetector()
        det.set_params(harris_threshold=0.5, max_rectangles=3, min_rectangle_size=100)
        assert (det.harris_threshold, det.max_rectangles, det.min_rectangle_size) == (0.5, 3, 100)
        with pytest.raises(ValueError):
            det.set_params(max_rectangles=0)
