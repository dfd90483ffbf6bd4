"""
tests/test_main.py
──────────────────
CLI smoke tests.
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import json

from main import main
from roi_utils.image_utils import make_synthetic_screenshot, save_image


class TestCli:

    def test_image_mode(self, tmp_path):
        image, _ = make_synthetic_screenshot(960, 600)
        source = str(tmp_path / "shot.png")
        save_image(image.to_bgr(), source)
        out = tmp_path / "out"

        code = main(["--mode", "image", "--source", source, "--output", str(out), "--algo", "edge"])
        assert code == 0
        assert (out / "result.png").is_file()
        with open(out / "result.json", encoding="utf-8") as f:
            assert json.load(f)["method"] in ("edge", "fallback")

    def test_image_mode_missing_source(self, tmp_path):
        assert main(["--mode", "image", "--output", str(tmp_path)]) == 1
        assert main(["--mode", "image", "--source", str(tmp_path / "nope.png"),
                     "--output", str(tmp_path)]) == 1

    def test_benchmark_mode_synthetic(self, tmp_path):
        code = main(["--mode", "benchmark", "--algo", "edge", "--synthetic_count", "1",
                     "--output", str(tmp_path)])
        assert code == 0
        for name in ("benchmark.json", "benchmark.csv", "summary.txt", "rankings.png"):
            assert (tmp_path / name).is_file()
