"""
roi/image.py
────────────
Decoded screenshot container and the shared grayscale converter.

Detectors only ever see fully decoded RGBA buffers; decoding files,
byte streams and data URLs is the job of roi_utils.image_utils.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property
from typing import Optional

import cv2
import numpy as np

# ITU-R BT.601 luminance weights
LUMA_R = 0.299
LUMA_G = 0.587
LUMA_B = 0.114


def to_grayscale(pixels: np.ndarray) -> np.ndarray:
    """
    RGB(A) pixel buffer → uint8 luminance buffer.

    Y = 0.299·R + 0.587·G + 0.114·B, rounded to the nearest integer.

    Args:
        pixels: (H, W, 3) or (H, W, 4) uint8 array in RGB(A) order.

    Returns:
        (H, W) uint8 array.
    """
    if pixels.ndim != 3 or pixels.shape[2] < 3:
        raise ValueError(f"RGB(A) buffer expected, got shape {pixels.shape}")
    rgb = pixels[..., :3].astype(np.float32)
    gray = rgb[..., 0] * LUMA_R + rgb[..., 1] * LUMA_G + rgb[..., 2] * LUMA_B
    return np.clip(np.rint(gray), 0, 255).astype(np.uint8)


@dataclass(frozen=True)
class Image:
    """
    Fully decoded screenshot.

    Attributes:
        pixels : (H, W, 4) uint8 RGBA array (made read-only on creation).
        decoded: False when the upstream decoder did not finish.
        source : Optional origin (file name, data URL label …) for logs.
    """

    pixels: Optional[np.ndarray]
    decoded: bool = True
    source: str = ""

    def __post_init__(self) -> None:
        if isinstance(self.pixels, np.ndarray):
            self.pixels.setflags(write=False)

    # ── Constructors ─────────────────────────────

    @classmethod
    def from_rgba(cls, rgba: np.ndarray, source: str = "") -> "Image":
        """Wraps a copy of an (H, W, 4) RGBA array."""
        return cls(pixels=np.ascontiguousarray(rgba, dtype=np.uint8).copy(), source=source)

    @classmethod
    def from_rgb(cls, rgb: np.ndarray, source: str = "") -> "Image":
        """RGB array → opaque RGBA image."""
        return cls(pixels=cv2.cvtColor(np.ascontiguousarray(rgb, dtype=np.uint8),
                                       cv2.COLOR_RGB2RGBA), source=source)

    @classmethod
    def from_bgr(cls, frame: np.ndarray, source: str = "") -> "Image":
        """
        OpenCV BGR / BGRA / gray frame → RGBA image.

        Args:
            frame : Array as returned by cv2.imread / cv2.imdecode.
            source: Origin label.
        """
        frame = np.ascontiguousarray(frame, dtype=np.uint8)
        if frame.ndim == 2:
            rgba = cv2.cvtColor(frame, cv2.COLOR_GRAY2RGBA)
        elif frame.shape[2] == 4:
            rgba = cv2.cvtColor(frame, cv2.COLOR_BGRA2RGBA)
        else:
            rgba = cv2.cvtColor(frame, cv2.COLOR_BGR2RGBA)
        return cls(pixels=rgba, source=source)

    # ── Access ───────────────────────────────────

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def rgb(self) -> np.ndarray:
        """(H, W, 3) view without the alpha channel."""
        return self.pixels[..., :3]

    @cached_property
    def gray(self) -> np.ndarray:
        """Luminance buffer, computed once and shared by all detectors."""
        gray = to_grayscale(self.pixels)
        gray.setflags(write=False)
        return gray

    def to_bgr(self) -> np.ndarray:
        """Writable BGR copy for OpenCV drawing / saving."""
        return cv2.cvtColor(np.ascontiguousarray(self.pixels), cv2.COLOR_RGBA2BGR)

    def __repr__(self) -> str:
        if not isinstance(self.pixels, np.ndarray):
            return f"Image(pixels=None, decoded={self.decoded})"
        return f"Image({self.width}x{self.height}, decoded={self.decoded}, source={self.source!r})"


def is_decoded(image: object) -> bool:
    """
    Checks whether an object is a usable, fully decoded Image.

    Returns:
        True for an Image with decoded=True and a non-empty (H, W, 4) uint8 buffer.
    """
    if image is None or not isinstance(image, Image):
        return False
    if not image.decoded:
        return False
    pixels = image.pixels
    if not isinstance(pixels, np.ndarray) or pixels.size == 0:
        return False
    if pixels.dtype != np.uint8 or pixels.ndim != 3 or pixels.shape[2] != 4:
        return False
    return True
