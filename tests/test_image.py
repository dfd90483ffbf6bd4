"""
tests/test_image.py
───────────────────
Image container, grayscale conversion and image_utils tests.
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import numpy as np
import pytest
from roi.image import Image, is_decoded, to_grayscale
from roi.result_model import METHOD_EDGE, DetectionResult, Rectangle
from roi_utils.image_utils import (
    decode_data_url,
    draw_roi_overlay,
    encode_data_url,
    load_image,
    make_synthetic_dataset,
    make_synthetic_screenshot,
    save_image,
)


def make_rgb(h=40, w=60, color=(10, 200, 30)):
    frame = np.zeros((h, w, 3), dtype=np.uint8)
    frame[:] = color
    return frame


class TestGrayscale:

    def test_luma_weights(self):
        gray = to_grayscale(make_rgb(color=(100, 150, 200)))
        expected = round(0.299 * 100 + 0.587 * 150 + 0.114 * 200)
        assert gray.dtype == np.uint8
        assert int(gray[0, 0]) == expected

    def test_extremes(self):
        assert int(to_grayscale(make_rgb(color=(255, 255, 255)))[0, 0]) == 255
        assert int(to_grayscale(make_rgb(color=(0, 0, 0)))[0, 0]) == 0

    def test_rejects_gray_input(self):
        with pytest.raises(ValueError):
            to_grayscale(np.zeros((4, 4), dtype=np.uint8))


class TestImage:

    def test_from_rgb(self):
        img = Image.from_rgb(make_rgb())
        assert (img.width, img.height, img.area) == (60, 40, 2400)
        assert img.pixels.shape == (40, 60, 4)
        assert tuple(img.rgb[0, 0]) == (10, 200, 30)

    def test_from_bgr_swaps_channels(self):
        img = Image.from_bgr(make_rgb(color=(1, 2, 3)))
        assert tuple(img.rgb[0, 0]) == (3, 2, 1)

    def test_pixels_read_only(self):
        img = Image.from_rgb(make_rgb())
        with pytest.raises(ValueError):
            img.pixels[0, 0, 0] = 1

    def test_gray_cached(self):
        img = Image.from_rgb(make_rgb())
        assert img.gray is img.gray
        assert img.gray.shape == (40, 60)

    def test_to_bgr_round_trip(self):
        img = Image.from_rgb(make_rgb(color=(5, 6, 7)))
        assert tuple(img.to_bgr()[0, 0]) == (7, 6, 5)

    def test_is_decoded(self):
        assert is_decoded(Image.from_rgb(make_rgb()))
        assert not is_decoded(None)
        assert not is_decoded(np.zeros((4, 4, 4), dtype=np.uint8))
        assert not is_decoded(Image(pixels=None, decoded=False))
        assert not is_decoded(Image(pixels=np.zeros((4, 4, 4), dtype=np.uint8), decoded=False))


class TestImageUtils:

    def test_data_url(self):
        img = Image.from_rgb(make_rgb(color=(12, 34, 56)))
        url = encode_data_url(img)
        assert url.startswith("data:image/png;base64,")
        decoded = decode_data_url(url)
        assert np.array_equal(decoded.pixels, img.pixels)

    def test_decode_garbage(self):
        with pytest.raises(ValueError):
            decode_data_url("data:image/png;base64,aGVsbG8=")

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_image(str(tmp_path / "nope.png"))

    def test_save_and_load(self, tmp_path):
        img = Image.from_rgb(make_rgb())
        path = str(tmp_path / "out" / "img.png")
        assert save_image(img.to_bgr(), path)
        assert np.array_equal(load_image(path).pixels, img.pixels)

    def test_synthetic_screenshot(self):
        img, truth = make_synthetic_screenshot(640, 400)
        assert (img.width, img.height) == (640, 400)
        assert truth == Rectangle(128, 60, 384, 280)
        assert truth.fits_within(640, 400)

    def test_synthetic_dataset(self):
        data = make_synthetic_dataset(count=2, width=320, height=200)
        assert len(data["annotations"]) == 2
        item = data["annotations"][0]
        assert item["imageData"].startswith("data:image/png")
        assert item["groundTruth"]["buildArea"]["width"] > 0

    def test_overlay_keeps_shape(self):
        img, truth = make_synthetic_screenshot(320, 200)
        result = DetectionResult(bounds=truth, confidence=0.9, method=METHOD_EDGE,
                                 metadata={"alternatives": []})
        frame = draw_roi_overlay(img, result, ground_truth=truth)
        assert frame.shape == (200, 320, 3)
