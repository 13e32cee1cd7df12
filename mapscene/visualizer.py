"""
Visualization for the map analysis pipeline.

Responsibility:
    Tint every segment's mask with its colour, then draw bounding boxes
    and optional labels onto an image. This is a pure rendering module:
    it produces an annotated copy of the image and performs no I/O.

Non-goals:
    - No file writing, window management, or display logic.
    - No decoding or analysis logic.
"""

from typing import Optional, Tuple

import cv2
import numpy as np

from mapscene.config import VisualizationConfig
from mapscene.geometry import Rect
from mapscene.image import MASK_THRESHOLD, resize_mask
from mapscene.results import AnalysisResults

# Hard-coded rendering constants (cosmetic internals, not user-facing)
_FONT = cv2.FONT_HERSHEY_SIMPLEX
_FONT_SCALE = 0.5
_FONT_THICKNESS = 1
_LABEL_PADDING = 4


def _pixel_box(box: Rect, width: int, height: int) -> Tuple[int, int, int, int]:
    x1 = int(np.clip(np.floor(box.x), 0, width - 1))
    y1 = int(np.clip(np.floor(box.y), 0, height - 1))
    x2 = int(np.clip(np.ceil(box.x_max), x1 + 1, width))
    y2 = int(np.clip(np.ceil(box.y_max), y1 + 1, height))
    return x1, y1, x2, y2


def _tint_mask(
    annotated: np.ndarray,
    box: Rect,
    mask: Optional[np.ndarray],
    color: Tuple[int, int, int],
    opacity: float,
) -> None:
    if mask is None or opacity <= 0:
        return
    h, w = annotated.shape[:2]
    x1, y1, x2, y2 = _pixel_box(box, w, h)
    member = resize_mask(mask, x2 - x1, y2 - y1) > MASK_THRESHOLD

    region = annotated[y1:y2, x1:x2]
    overlay = np.empty_like(region)
    overlay[:] = tuple(color) + (255,) * (region.shape[2] - 3)
    blended = cv2.addWeighted(np.ascontiguousarray(region), 1.0 - opacity, overlay, opacity, 0.0)
    region[member] = blended[member]


def _draw_box(
    annotated: np.ndarray,
    box: Rect,
    label: str,
    color: Tuple[int, int, int],
    config: VisualizationConfig,
) -> None:
    h, w = annotated.shape[:2]
    x1, y1, x2, y2 = _pixel_box(box, w, h)
    cv2.rectangle(annotated, (x1, y1), (x2, y2), color=color, thickness=config.thickness)

    if not label:
        return

    (text_w, text_h), _ = cv2.getTextSize(label, _FONT, _FONT_SCALE, _FONT_THICKNESS)

    # Label background (above the box, or below if too close to top)
    label_y = y1 - _LABEL_PADDING
    if label_y - text_h - _LABEL_PADDING < 0:
        label_y = y2 + text_h + _LABEL_PADDING

    cv2.rectangle(
        annotated,
        (x1, label_y - text_h - _LABEL_PADDING),
        (x1 + text_w + _LABEL_PADDING, label_y + _LABEL_PADDING),
        color=color,
        thickness=cv2.FILLED,
    )

    cv2.putText(
        annotated,
        label,
        (x1 + _LABEL_PADDING // 2, label_y),
        _FONT,
        _FONT_SCALE,
        (0, 0, 0),  # Black text on colored background
        _FONT_THICKNESS,
        cv2.LINE_AA,
    )


def draw_results(
    image: np.ndarray,
    results: AnalysisResults,
    config: VisualizationConfig,
) -> np.ndarray:
    """Draw segment overlays, boxes and labels onto an image.

    Terrain is drawn first so objects stay visible on top of it.

    Args:
        image: Input BGR image (not modified; a copy is returned).
        results: Analysis results to render.
        config: Visualization parameters (thickness, labels, opacity).

    Returns:
        A new BGR numpy array with the results drawn.
    """
    annotated = image.copy()

    for t in results.terrain_features:
        _tint_mask(annotated, t.bounding_box, t.mask, t.color, config.mask_opacity)
    for o in results.map_objects:
        _tint_mask(annotated, o.bounding_box, o.mask, o.color, config.mask_opacity)

    for t in results.terrain_features:
        label = f"{t.type} {t.elevation:.0f}m"
        if config.show_confidence:
            label += f" {t.confidence:.2f}"
        _draw_box(annotated, t.bounding_box, label, t.color, config)

    for o in results.map_objects:
        label = o.type
        if config.show_confidence:
            label += f" {o.confidence:.2f}"
        _draw_box(annotated, o.bounding_box, label, o.color, config)

    return annotated
