"""
Mask measurements and transforms.

Responsibility:
    Pure functions over alpha masks: area, similarity, centre of mass,
    bounding box, orientation, prototype decoding for segmentation
    heads, and remapping a box-framed mask into another frame.

Non-goals:
    - No image cropping (see image.py).
    - No segment bookkeeping (see segment.py).
"""

import math
from typing import Dict, Optional

import cv2
import numpy as np

from mapscene.geometry import Rect, Vec2
from mapscene.image import MASK_THRESHOLD, mask_alpha, resize_mask, sample_bilinear


def mask_area(mask: Optional[np.ndarray], threshold: float = MASK_THRESHOLD) -> int:
    """Number of pixels whose alpha exceeds ``threshold``."""
    if mask is None:
        return 0
    return int(np.count_nonzero(mask_alpha(mask) > threshold))


def _binary_pair(mask_a: np.ndarray, mask_b: np.ndarray):
    a = mask_alpha(mask_a)
    b = resize_mask(mask_b, a.shape[1], a.shape[0])
    return a > MASK_THRESHOLD, b > MASK_THRESHOLD


def mask_similarity(mask_a: Optional[np.ndarray], mask_b: Optional[np.ndarray]) -> float:
    """Pixel-overlap IoU of two masks, B resized to A's dimensions.

    Returns 0.0 if either mask is missing or both are empty.
    """
    if mask_a is None or mask_b is None:
        return 0.0
    a, b = _binary_pair(mask_a, mask_b)
    union = np.count_nonzero(a | b)
    if union == 0:
        return 0.0
    return np.count_nonzero(a & b) / union


def detailed_mask_similarity(
    mask_a: Optional[np.ndarray], mask_b: Optional[np.ndarray]
) -> Dict[str, float]:
    """IoU, Dice, precision and recall of B against A."""
    if mask_a is None or mask_b is None:
        return {"iou": 0.0, "dice": 0.0, "precision": 0.0, "recall": 0.0}

    a, b = _binary_pair(mask_a, mask_b)
    tp = int(np.count_nonzero(a & b))
    fp = int(np.count_nonzero(~a & b))
    fn = int(np.count_nonzero(a & ~b))

    union = tp + fp + fn
    return {
        "iou": tp / union if union else 0.0,
        "dice": 2 * tp / (2 * tp + fp + fn) if tp else 0.0,
        "precision": tp / (tp + fp) if tp + fp else 0.0,
        "recall": tp / (tp + fn) if tp + fn else 0.0,
    }


def center_of_mass(mask: Optional[np.ndarray]) -> Vec2:
    """Alpha-weighted centre in normalised mask coordinates.

    An empty or missing mask returns the centre (0.5, 0.5).
    """
    if mask is None:
        return (0.5, 0.5)
    alpha = mask_alpha(mask)
    total = float(alpha.sum())
    if total <= 0:
        return (0.5, 0.5)
    h, w = alpha.shape
    ys, xs = np.mgrid[0:h, 0:w]
    return (
        float((xs * alpha).sum()) / total / w,
        float((ys * alpha).sum()) / total / h,
    )


def mask_bounding_box(mask: np.ndarray, threshold: float = MASK_THRESHOLD) -> Rect:
    """Tight box around member pixels, the whole mask if none are set."""
    alpha = mask_alpha(mask)
    ys, xs = np.nonzero(alpha >= threshold)
    if xs.size == 0:
        return Rect(0, 0, alpha.shape[1], alpha.shape[0])
    return Rect.from_corners(xs.min(), ys.min(), xs.max() + 1, ys.max() + 1)


def mask_orientation(mask: Optional[np.ndarray]) -> float:
    """Principal axis angle in degrees from second-order moments."""
    if mask is None:
        return 0.0
    moments = cv2.moments(mask_alpha(mask))
    if moments["m00"] <= 0:
        return 0.0
    mu20 = moments["mu20"] / moments["m00"]
    mu02 = moments["mu02"] / moments["m00"]
    mu11 = moments["mu11"] / moments["m00"]
    if abs(mu11) < 1e-6 and abs(mu20 - mu02) < 1e-6:
        return 0.0
    return math.degrees(0.5 * math.atan2(2 * mu11, mu20 - mu02))


def masks_from_prototypes(
    coefficients: np.ndarray,
    prototypes: np.ndarray,
    box: Rect,
    image_width: int,
    image_height: int,
) -> np.ndarray:
    """Assemble a box-framed mask from segmentation-head prototypes.

    Args:
        coefficients: (K,) mask coefficients of one detection.
        prototypes: (K, mh, mw) or [1, K, mh, mw] prototype planes
            covering the whole image.
        box: Detection box in image pixels.
        image_width: Source image width.
        image_height: Source image height.

    Returns:
        Float32 alpha plane cropped to the box (at least 1x1).
    """
    protos = np.asarray(prototypes, dtype=np.float32)
    if protos.ndim == 4:
        protos = protos[0]
    k, mh, mw = protos.shape
    coeffs = np.asarray(coefficients, dtype=np.float32)[:k]

    logits = np.tensordot(coeffs, protos[: coeffs.shape[0]], axes=1)
    full = 1.0 / (1.0 + np.exp(-logits))

    sx, sy = mw / image_width, mh / image_height
    x0 = int(np.clip(np.floor(box.x * sx), 0, mw - 1))
    y0 = int(np.clip(np.floor(box.y * sy), 0, mh - 1))
    x1 = int(np.clip(np.ceil(box.x_max * sx), x0 + 1, mw))
    y1 = int(np.clip(np.ceil(box.y_max * sy), y0 + 1, mh))

    return full[y0:y1, x0:x1].astype(np.float32)


def remap_mask_to_frame(
    mask: Optional[np.ndarray],
    source: Rect,
    target: Rect,
    width: int,
    height: int,
) -> np.ndarray:
    """Resample a mask framed on ``source`` into a (height, width) grid framed on ``target``.

    Target pixels outside ``source`` get alpha 0. A missing mask stands
    for the full source box.
    """
    xs = target.x + (np.arange(width) + 0.5) * target.width / width
    ys = target.y + (np.arange(height) + 0.5) * target.height / height
    gx, gy = np.meshgrid(xs, ys)

    inside = (
        (gx >= source.x) & (gx < source.x_max)
        & (gy >= source.y) & (gy < source.y_max)
    )
    if mask is None:
        return inside.astype(np.float32)

    alpha = mask_alpha(mask)
    u = (gx - source.x) / max(source.width, 1e-9)
    v = (gy - source.y) / max(source.height, 1e-9)
    sampled = sample_bilinear(alpha, u, v).astype(np.float32)
    return np.where(inside, sampled, 0.0).astype(np.float32)
