"""
roi/dataset.py
──────────────
Labelled benchmark dataset.

Format:
    {"annotations": [
        {"filename": "shot-01.png",
         "imageData": "data:image/png;base64,…",      # or "imagePath": "shot-01.png"
         "groundTruth": {"buildArea": {"left": …, "top": …, "right": …,
                                       "bottom": …, "width": …, "height": …}},
         "metadata": {…}},
        …]}
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from roi.image import Image
from roi.result_model import Rectangle
from roi_utils.image_utils import decode_data_url, load_image

logger = logging.getLogger(__name__)

DatasetSource = Union[str, "os.PathLike[str]", Mapping[str, Any], Sequence[Mapping[str, Any]]]


@dataclass(frozen=True)
class BenchmarkItem:
    """One labelled screenshot."""
    filename: str
    image_data: Optional[str] = None
    image_path: Optional[str] = None
    ground_truth: Optional[Rectangle] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_annotated(self) -> bool:
        return self.ground_truth is not None

    def load(self) -> Image:
        """
        Decodes the screenshot (data URL first, then file path).

        Raises:
            ValueError       : no image source, or undecodable data.
            FileNotFoundError: image_path does not exist.
        """
        if self.image_data:
            return decode_data_url(self.image_data, source=self.filename)
        if self.image_path:
            return load_image(self.image_path)
        raise ValueError(f"No image source found for {self.filename}")

    def to_dict(self) -> dict:
        return {"filename": self.filename, "metadata": self.metadata}


def parse_build_area(raw: Mapping[str, Any]) -> Rectangle:
    """
    buildArea mapping → Rectangle. width / height win over right / bottom.

    Raises:
        ValueError: missing keys or a degenerate box.
    """
    try:
        left, top = raw["left"], raw["top"]
        width = raw["width"] if "width" in raw else raw["right"] - left
        height = raw["height"] if "height" in raw else raw["bottom"] - top
        return Rectangle(int(left), int(top), int(width), int(height))
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Invalid buildArea: {dict(raw)!r}") from exc


def _parse_item(raw: Any, index: int, base_dir: Optional[str]) -> BenchmarkItem:
    if not isinstance(raw, Mapping):
        raise ValueError(f"Annotation #{index} is not an object")
    filename = str(raw.get("filename") or f"item-{index}")

    metadata = dict(raw.get("metadata") or {})
    truth = None
    ground = raw.get("groundTruth")
    if ground:
        area = ground.get("buildArea") if isinstance(ground, Mapping) else None
        if isinstance(area, Mapping) and area:
            try:
                truth = parse_build_area(area)
            except ValueError as exc:
                # Scored as accuracy 0, like an unannotated item
                logger.warning("Ignoring ground truth of %s: %s", filename, exc)
                metadata["groundTruthError"] = str(exc)
        elif area:
            logger.warning("Ignoring ground truth of %s: buildArea is not an object", filename)
            metadata["groundTruthError"] = "buildArea is not an object"

    path = raw.get("imagePath")
    if path and base_dir and not os.path.isabs(path):
        path = os.path.join(base_dir, path)

    return BenchmarkItem(
        filename=filename,
        image_data=raw.get("imageData") or None,
        image_path=path or None,
        ground_truth=truth,
        metadata=metadata,
    )


def load_dataset(source: DatasetSource) -> List[BenchmarkItem]:
    """
    Loads a dataset from a JSON file path, a parsed mapping, or a bare list
    of annotations. Relative imagePath entries resolve against the file's
    directory.

    Raises:
        ValueError: invalid JSON or no "annotations" list.
    """
    base_dir = None
    if isinstance(source, (str, os.PathLike)):
        path = os.fspath(source)
        base_dir = os.path.dirname(os.path.abspath(path))
        with open(path, "r", encoding="utf-8") as f:
            try:
                source = json.load(f)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Failed to parse dataset JSON: {exc}") from exc

    if isinstance(source, Mapping):
        annotations = source.get("annotations")
    else:
        annotations = source
    if not isinstance(annotations, list):
        raise ValueError("Invalid dataset format")

    items = [_parse_item(raw, i, base_dir) for i, raw in enumerate(annotations)]
    logger.info("Loaded dataset: %d items (%d annotated)",
                len(items), sum(1 for it in items if it.is_annotated))
    return items
