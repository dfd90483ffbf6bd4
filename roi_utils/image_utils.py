"""
roi_utils/image_utils.py
────────────────────────
Image decoding, synthetic screenshots and drawing helpers.
Shared by the CLI, the benchmark harness and the tests.
"""

from __future__ import annotations

import base64
import binascii
import logging
import math
import os
from typing import List, Optional, Tuple

import cv2
import numpy as np

from roi.image import Image
from roi.result_model import DetectionResult, Rectangle

logger = logging.getLogger(__name__)

SPACE_RGB = (20, 25, 35)
PANEL_RGB = (60, 80, 120)
FRAME_RGB = (150, 180, 220)


# ── Decoding ─────────────────────────────────────

def decode_image_bytes(data: bytes, source: str = "") -> Image:
    """
    Encoded image bytes (PNG, JPEG …) → Image.

    Raises:
        ValueError: The bytes could not be decoded.
    """
    buffer = np.frombuffer(data, dtype=np.uint8)
    frame = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED) if buffer.size else None
    if frame is None:
        raise ValueError(f"Could not decode image data{f' ({source})' if source else ''}")
    return Image.from_bgr(frame, source=source)


def decode_data_url(data_url: str, source: str = "") -> Image:
    """
    "data:image/png;base64,…" URL (or a bare base64 string) → Image.

    Raises:
        ValueError: Not base64 or not a decodable image.
    """
    payload = data_url.split(",", 1)[1] if data_url.startswith("data:") else data_url
    try:
        raw = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 image data: {exc}") from exc
    return decode_image_bytes(raw, source=source)


def load_image(path: str) -> Image:
    """
    Reads an image file.

    Raises:
        FileNotFoundError: path does not exist.
        ValueError       : file is not a decodable image.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Image not found: {path}")
    with open(path, "rb") as f:
        data = f.read()
    return decode_image_bytes(data, source=os.path.basename(path))


def encode_data_url(image: Image, ext: str = ".png") -> str:
    """Image → base64 data URL."""
    ok, encoded = cv2.imencode(ext, image.to_bgr())
    if not ok:
        raise ValueError(f"Could not encode image as {ext}")
    mime = "jpeg" if ext.lower() in (".jpg", ".jpeg") else ext.lstrip(".").lower()
    return f"data:image/{mime};base64," + base64.b64encode(encoded.tobytes()).decode("ascii")


# ── Synthetic screenshots ────────────────────────

def _hexagon(cx: float, cy: float, radius: float) -> np.ndarray:
    return np.array([
        (int(round(cx + radius * math.cos(i * math.pi / 3))),
         int(round(cy + radius * math.sin(i * math.pi / 3))))
        for i in range(6)
    ], dtype=np.int32)


def make_synthetic_screenshot(
    width: int = 1280,
    height: int = 800,
    build_area: Optional[Rectangle] = None,
    seed: int = 0,
    stars: int = 150,
    hex_radius: int = 22,
    side_panels: bool = True,
) -> Tuple[Image, Rectangle]:
    """
    Draws a game-like screenshot: starfield background, UI side panels and a
    framed build area filled with a hexagon grid.

    Args:
        width, height: Screenshot size.
        build_area   : Frame position; defaults to a centred 60 % × 70 % box.
        seed         : Starfield / hex-fill RNG seed.
        stars        : Number of bright star pixels.
        hex_radius   : Hexagon radius inside the build area.
        side_panels  : Draw the left / right UI panels.

    Returns:
        (Image, build-area Rectangle).
    """
    if build_area is None:
        build_area = Rectangle(int(width * 0.2), int(height * 0.15),
                               int(width * 0.6), int(height * 0.7))
    rng = np.random.RandomState(seed)
    canvas = np.empty((height, width, 3), dtype=np.uint8)
    canvas[:] = SPACE_RGB

    ys = rng.randint(0, height, size=stars)
    xs = rng.randint(0, width, size=stars)
    canvas[ys, xs] = rng.randint(200, 256, size=(stars, 1))

    if side_panels:
        panel_w = max(1, int(width * 0.12))
        cv2.rectangle(canvas, (0, 0), (panel_w, height - 1), PANEL_RGB, -1)
        cv2.rectangle(canvas, (width - 1 - panel_w, 0), (width - 1, height - 1), PANEL_RGB, -1)

    b = build_area
    canvas[b.y:b.bottom, b.x:b.right] = SPACE_RGB
    step_x = hex_radius * 2
    step_y = int(hex_radius * 1.8)
    for row, cy in enumerate(range(b.y + hex_radius * 2, b.bottom - hex_radius * 2, step_y)):
        offset = hex_radius if row % 2 else 0
        for cx in range(b.x + hex_radius * 2 + offset, b.right - hex_radius * 2, step_x):
            points = _hexagon(cx, cy, hex_radius * 0.8)
            if rng.rand() < 0.3:
                cv2.fillPoly(canvas, [points], PANEL_RGB)
            cv2.polylines(canvas, [points], True, FRAME_RGB, 1, cv2.LINE_AA)

    cv2.rectangle(canvas, (b.x, b.y), (b.right - 1, b.bottom - 1), FRAME_RGB, 3)
    return Image.from_rgb(canvas, source=f"synthetic-{seed}"), build_area


def make_synthetic_dataset(count: int = 10, width: int = 960, height: int = 600) -> dict:
    """
    Annotated dataset mapping of synthetic screenshots with jittered build areas.

    Returns:
        {"annotations": [...]} in the benchmark dataset format.
    """
    annotations: List[dict] = []
    for i in range(count):
        rng = np.random.RandomState(1000 + i)
        w = int(width * rng.uniform(0.5, 0.65))
        h = int(height * rng.uniform(0.6, 0.72))
        x = int((width - w) / 2 + rng.randint(-20, 21))
        y = int((height - h) / 2 + rng.randint(-15, 16))
        image, truth = make_synthetic_screenshot(width, height, Rectangle(x, y, w, h), seed=i)
        annotations.append({
            "filename": f"synthetic-{i:02d}.png",
            "imageData": encode_data_url(image),
            "groundTruth": {"buildArea": {
                "left": truth.x, "top": truth.y,
                "right": truth.right, "bottom": truth.bottom,
                "width": truth.width, "height": truth.height,
            }},
            "metadata": {"captureType": "synthetic", "seed": i},
        })
    return {"annotations": annotations}


# ── Drawing ──────────────────────────────────────

def draw_overlay_text(
    frame: np.ndarray,
    lines: List[str],
    origin: Tuple[int, int] = (10, 20),
    font_scale: float = 0.55,
    color: Tuple[int, int, int] = (255, 255, 255),
    bg_color: Optional[Tuple[int, int, int]] = (0, 0, 0),
    thickness: int = 1,
    line_gap: int = 22,
) -> np.ndarray:
    """
    Multi-line text overlay on a copy of a BGR frame.

    Args:
        frame     : Target image (left untouched).
        lines     : Text lines.
        origin    : Top-left of the first line.
        font_scale: Font size.
        color     : Text color (BGR).
        bg_color  : Box behind each line; None draws none.
        thickness : Stroke thickness.
        line_gap  : Vertical distance between lines (px).
    """
    out = frame.copy()
    font = cv2.FONT_HERSHEY_SIMPLEX
    x, y = origin

    for i, line in enumerate(lines):
        ly = y + i * line_gap
        if bg_color is not None:
            (tw, th), _ = cv2.getTextSize(line, font, font_scale, thickness)
            cv2.rectangle(out, (x - 2, ly - th - 2), (x + tw + 2, ly + 4), bg_color, -1)
        cv2.putText(out, line, (x, ly), font, font_scale, color, thickness, cv2.LINE_AA)

    return out


def draw_roi_overlay(
    image: Image,
    result: DetectionResult,
    ground_truth: Optional[Rectangle] = None,
) -> np.ndarray:
    """
    BGR frame with the detected build area, optional ground truth (blue)
    and the alternatives listed in the corner.
    """
    frame = image.to_bgr()
    if ground_truth is not None:
        cv2.rectangle(frame, (ground_truth.x, ground_truth.y),
                      (ground_truth.right, ground_truth.bottom), (255, 140, 0), 1)

    color = (0, 160, 255) if result.is_fallback else (0, 220, 80)
    b = result.bounds
    cv2.rectangle(frame, (b.x, b.y), (b.right, b.bottom), color, 2)

    lines = [f"{result.method}  conf {result.confidence:.2f}  {result.inference_time_ms:.0f} ms"]
    for alt in result.metadata.get("alternatives", []):
        lines.append(f"alt {alt['method']}  conf {alt['confidence']:.2f}")
    return draw_overlay_text(frame, lines)


def save_image(frame_bgr: np.ndarray, path: str) -> bool:
    """
    Writes a BGR frame to disk.

    Returns:
        True on success.
    """
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    ok = bool(cv2.imwrite(path, frame_bgr))
    if ok:
        logger.info("Image → %s", path)
    else:
        logger.error("Could not write image → %s", path)
    return ok
