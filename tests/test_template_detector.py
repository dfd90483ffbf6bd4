"""
tests/test_template_detector.py
───────────────────────────────
TemplateMatchDetector unit tests.
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import threading

import numpy as np
import pytest
from roi.errors import DetectionCancelled, InvalidInputError
from roi.image import Image
from roi.result_model import Rectangle
from roi.template_detector import (
    MatchCluster,
    TemplateMatch,
    TemplateMatchDetector,
    build_template_library,
)


def make_match(x, y, score=0.9, template_id="corner-tl-64x32", w=64, h=32):
    return TemplateMatch(x=x, y=y, width=w, height=h, score=score, template_id=template_id)


def make_gray_with_template(template, pos=(80, 40), shape=(200, 300)):
    background = int(template[0, 0])
    gray = np.full(shape, background, dtype=np.uint8)
    x, y = pos
    th, tw = template.shape
    gray[y:y + th, x:x + tw] = template
    return gray


class TestTemplateLibrary:

    def test_library_size(self):
        library = build_template_library()
        assert len(library) == 22
        assert sum(1 for k in library if k.startswith("corner")) == 12
        assert sum(1 for k in library if k.startswith("hex")) == 4
        assert sum(1 for k in library if k.startswith("frame")) == 6

    def test_no_hex_below_48px(self):
        assert "hex-outline-64x32" not in build_template_library()

    def test_templates_grayscale_read_only(self):
        tpl = build_template_library()["frame-h-96x48"]
        assert tpl.shape == (48, 96)
        assert tpl.dtype == np.uint8
        assert not tpl.flags.writeable

    def test_lazy_library_built_once(self):
        det = TemplateMatchDetector()
        assert det._library is None
        assert det.templates is det.templates

    def test_pattern_flags(self):
        det = TemplateMatchDetector(hex_patterns=False, frame_patterns=False)
        assert all(k.startswith("corner") for k in det.templates)


class TestMatching:

    def test_perfect_match_scores_one(self):
        det = TemplateMatchDetector()
        template = det.templates["corner-tl-64x32"]
        gray = make_gray_with_template(template)
        matches = det.match_template(gray, template, "corner-tl-64x32")
        best = max(matches, key=lambda m: m.score)
        assert (best.x, best.y) == (80, 40)
        assert best.score == pytest.approx(1.0, abs=1e-6)

    def test_flat_image_has_no_matches(self):
        det = TemplateMatchDetector()
        template = det.templates["corner-tl-64x32"]
        gray = np.full((200, 300), 30, dtype=np.uint8)
        assert det.match_template(gray, template, "corner-tl-64x32") == []

    def test_template_larger_than_image(self):
        det = TemplateMatchDetector()
        template = det.templates["frame-h-128x64"]
        assert det.match_template(np.zeros((10, 10), dtype=np.uint8), template, "x") == []

    def test_tiny_image_returns_none(self):
        image = Image.from_rgb(np.zeros((10, 10, 3), dtype=np.uint8))
        assert TemplateMatchDetector().detect(image) is None

    def test_invalid_input(self):
        with pytest.raises(InvalidInputError):
            TemplateMatchDetector().detect(None)

    def test_cancellation(self):
        cancel = threading.Event()
        cancel.set()
        image = Image.from_rgb(np.zeros((200, 300, 3), dtype=np.uint8))
        with pytest.raises(DetectionCancelled):
            TemplateMatchDetector().detect(image, cancel)


class TestClustering:

    def test_cluster_by_seed_distance(self):
        det = TemplateMatchDetector(cluster_distance=50)
        clusters = det.cluster_matches([
            make_match(0, 0), make_match(30, 0, score=0.7), make_match(200, 200),
        ])
        assert [len(c.matches) for c in clusters] == [2, 1]
        assert clusters[0].average_score == pytest.approx(0.8)
        assert (clusters[0].min_x, clusters[0].max_x) == (0, 94)

    def test_template_types(self):
        cluster = MatchCluster.seeded(make_match(0, 0))
        cluster.absorb(make_match(10, 0, template_id="hex-filled-96x48"))
        cluster.absorb(make_match(20, 0, template_id="frame-v-64x32"))
        assert cluster.template_types() == {"corners": 1, "hexes": 1, "frames": 1, "total": 3}
        assert TemplateMatchDetector.diversity_score(cluster.template_types()) == pytest.approx(1.0)

    def test_estimate_build_area(self):
        det = TemplateMatchDetector()
        cluster = MatchCluster.seeded(make_match(100, 100))
        cluster.absorb(make_match(436, 368))
        assert det.estimate_build_area(cluster, 1000, 800) == Rectangle(50, 50, 500, 400)

    def test_estimate_build_area_rejects_small(self):
        det = TemplateMatchDetector()
        cluster = MatchCluster.seeded(make_match(0, 0))
        assert det.estimate_build_area(cluster, 1000, 800) is None

    def test_single_match_clusters_skipped(self):
        det = TemplateMatchDetector()
        image = Image.from_rgb(np.zeros((800, 1000, 3), dtype=np.uint8))
        assert det.analyze_clusters([MatchCluster.seeded(make_match(100, 100))], image) == []

    def test_set_params(self):
        det = TemplateMatchDetector()
        det.set_params(match_threshold=0.8, cluster_distance=80)
        assert (det.match_threshold, det.cluster_distance) == (0.8, 80)
        with pytest.raises(ValueError):
            det.set_params(match_threshold=1.5)
