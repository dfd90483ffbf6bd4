"""
tests/test_color_detector.py
────────────────────────────
ColorDetector unit tests.
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import threading

import numpy as np
import pytest
from roi.color_detector import (
    SPACE_BACKGROUND,
    TYPE_SPACE_REGION,
    TYPE_UI_FRAMED,
    UI_PANEL,
    ColorDetector,
    ColorRegion,
    color_distance,
)
from roi.errors import DetectionCancelled, InvalidInputError
from roi.image import Image
from roi.result_model import Rectangle


def make_panel_image(h=600, w=1000, panel_w=150, panel_top=200, panel_bottom=550):
    frame = np.empty((h, w, 3), dtype=np.uint8)
    frame[:] = SPACE_BACKGROUND.rgb
    frame[panel_top:panel_bottom, :panel_w] = UI_PANEL.rgb
    frame[panel_top:panel_bottom, w - panel_w:] = UI_PANEL.rgb
    return Image.from_rgb(frame)


def make_region(segment, x, y, w, h):
    return ColorRegion(segment, Rectangle(x, y, w, h), w * h)


class TestColorDistance:

    def test_zero_for_reference(self):
        rgb = np.array([[SPACE_BACKGROUND.rgb]], dtype=np.uint8)
        assert float(color_distance(rgb, SPACE_BACKGROUND.rgb)[0, 0]) == 0.0

    def test_weighted(self):
        rgb = np.array([[(10, 0, 0)]], dtype=np.uint8)
        assert float(color_distance(rgb, (0, 0, 0))[0, 0]) == pytest.approx(np.sqrt(30.0))


class TestColorDetector:

    def test_init_default(self):
        det = ColorDetector()
        assert det.get_name() == "color"
        assert det.min_region_pixels == pytest.approx(30_000 / 9)

    def test_invalid_input(self):
        with pytest.raises(InvalidInputError):
            ColorDetector().detect(None)

    def test_classify_pixels(self):
        labels = ColorDetector().classify_pixels(make_panel_image().rgb)
        assert labels[0, 500] == 1          # space
        assert labels[300, 50] == 2         # UI panel
        assert set(np.unique(labels)) == {1, 2}

    def test_find_regions(self):
        det = ColorDetector()
        regions = det.find_regions(det.classify_pixels(make_panel_image().rgb))
        ui = sorted((r for r in regions if r.segment == "ui"), key=lambda r: r.bounds.x)
        assert [r.bounds for r in ui] == [Rectangle(0, 200, 150, 350), Rectangle(850, 200, 150, 350)]
        assert any(r.segment == "space" for r in regions)

    def test_framed_area_between_panels(self):
        det = ColorDetector()
        regions = [make_region("ui", 0, 200, 150, 350), make_region("ui", 850, 200, 150, 350)]
        assert det.find_framed_area(regions, 1000, 600) == Rectangle(150, 0, 700, 600)

    def test_framed_area_needs_both_sides(self):
        det = ColorDetector()
        assert det.find_framed_area([make_region("ui", 0, 200, 150, 350)], 1000, 600) is None

    def test_framed_area_narrowed_by_top_bar(self):
        det = ColorDetector()
        regions = [
            make_region("ui", 0, 200, 150, 350),
            make_region("ui", 850, 200, 150, 350),
            make_region("ui", 300, 0, 400, 60),
        ]
        assert det.find_framed_area(regions, 1000, 600) == Rectangle(150, 60, 700, 540)

    def test_detect_prefers_framed_area(self):
        result = ColorDetector().detect(make_panel_image())
        assert result is not None
        assert result.method == "color"
        assert result.metadata["candidate_type"] == TYPE_UI_FRAMED
        assert result.bounds == Rectangle(150, 0, 700, 600)
        assert len(result.metadata["dominant_colors"]) >= 2

    def test_space_region_candidate(self):
        det = ColorDetector()
        regions = [make_region("space", 100, 100, 600, 400)]
        candidates = det.find_candidates(regions, 1000, 600)
        assert [c.kind for c in candidates] == [TYPE_SPACE_REGION]

    def test_color_distribution(self):
        analysis = ColorDetector().analyze_color_distribution(make_panel_image().rgb)
        top = analysis["dominant_colors"][0]
        assert (top["r"], top["g"], top["b"]) == (16, 16, 32)
        assert analysis["dark_pixel_ratio"] > 0.8
        assert 0.1 < analysis["blue_ui_ratio"] < 0.2

    def test_cancellation(self):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(DetectionCancelled):
            ColorDetector().detect(make_panel_image(), cancel)

    def test_set_params(self):
        det = ColorDetector()
        det.set_params(min_region_size=10_000, max_region_size=500_000)
        assert (det.min_region_size, det.max_region_size) == (10_000, 500_000)
        with pytest.raises(ValueError):
            det.set_params(min_region_size=600_000)
