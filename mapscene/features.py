"""
Typed feature sets computed from segment crops and height fields.

Responsibility:
    - ClassificationFeatures: a fixed eight-value appearance descriptor
      of a segment crop, every value in [0, 1].
    - TopologyFeatures: slope and roughness statistics of a height field.

Non-goals:
    - No classification decisions (see classification.py).
"""

import math
from dataclasses import asdict, dataclass
from typing import Dict

import cv2
import numpy as np

FEATURE_NAMES = (
    "density",
    "complexity",
    "symmetry",
    "texture_variance",
    "edge_density",
    "color_variance",
    "pattern_regularity",
    "contrast",
)


@dataclass(frozen=True, slots=True)
class ClassificationFeatures:
    """Appearance descriptor of a segment crop."""

    density: float = 0.0
    complexity: float = 0.0
    symmetry: float = 0.0
    texture_variance: float = 0.0
    edge_density: float = 0.0
    color_variance: float = 0.0
    pattern_regularity: float = 0.0
    contrast: float = 0.0

    def to_vector(self) -> np.ndarray:
        return np.array([getattr(self, name) for name in FEATURE_NAMES], dtype=np.float32)

    def to_dict(self) -> Dict[str, float]:
        return {k: round(v, 4) for k, v in asdict(self).items()}


@dataclass(frozen=True, slots=True)
class TopologyFeatures:
    """Slope (degrees) and roughness of a terrain height field."""

    slope: float = 0.0
    max_slope: float = 0.0
    roughness: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {k: round(v, 4) for k, v in asdict(self).items()}


def _clip01(value: float) -> float:
    return float(min(max(value, 0.0), 1.0))


def compute_classification_features(crop: np.ndarray) -> ClassificationFeatures:
    """Measure a BGRA (or BGR) crop.

    Pixels with alpha <= 127 are outside the segment; a crop with no
    member pixels is measured as a whole.
    """
    if crop is None or crop.size == 0:
        return ClassificationFeatures()

    if crop.ndim == 3 and crop.shape[2] == 4:
        member = crop[:, :, 3] > 127
        bgr = np.ascontiguousarray(crop[:, :, :3])
    else:
        member = np.ones(crop.shape[:2], dtype=bool)
        bgr = crop if crop.ndim == 3 else cv2.cvtColor(crop, cv2.COLOR_GRAY2BGR)

    density = float(member.mean())
    if not member.any():
        member = np.ones_like(member)

    gray = cv2.cvtColor(bgr, cv2.COLOR_BGR2GRAY)
    values = gray[member].astype(np.float32)

    return ClassificationFeatures(
        density=density,
        complexity=_complexity(member),
        symmetry=_symmetry(gray),
        texture_variance=_clip01(float(cv2.Laplacian(gray, cv2.CV_32F)[member].std()) / 128.0),
        edge_density=float(np.count_nonzero(cv2.Canny(gray, 50, 150)[member])) / values.size,
        color_variance=_clip01(float(bgr[member].astype(np.float32).std(axis=0).mean()) / 128.0),
        pattern_regularity=_pattern_regularity(gray),
        contrast=_clip01(float(np.percentile(values, 95) - np.percentile(values, 5)) / 255.0),
    )


def _complexity(member: np.ndarray) -> float:
    """One minus the circularity of the largest member contour."""
    contours, _ = cv2.findContours(
        member.astype(np.uint8), cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE
    )
    if not contours:
        return 0.0
    largest = max(contours, key=cv2.contourArea)
    area = cv2.contourArea(largest)
    perimeter = cv2.arcLength(largest, True)
    if area <= 0 or perimeter <= 0:
        return 0.0
    return _clip01(1.0 - 4.0 * math.pi * area / (perimeter * perimeter))


def _symmetry(gray: np.ndarray) -> float:
    """Left-right mirror agreement."""
    diff = np.abs(gray.astype(np.float32) - gray[:, ::-1].astype(np.float32))
    return _clip01(1.0 - float(diff.mean()) / 255.0)


def _pattern_regularity(gray: np.ndarray) -> float:
    """Share of spectral energy held by the strongest 1% of frequencies."""
    centred = gray.astype(np.float32) - float(gray.mean())
    energy = np.abs(np.fft.fft2(centred)) ** 2
    energy[0, 0] = 0.0
    total = float(energy.sum())
    if total <= 0:
        return 0.0
    flat = np.sort(energy.ravel())[::-1]
    top = max(1, flat.size // 100)
    return _clip01(float(flat[:top].sum()) / total)


def compute_topology(height_field: np.ndarray, vertical_scale: float = 1.0) -> TopologyFeatures:
    """Slope and roughness of a 2D height field.

    Slope is the central-difference gradient magnitude at every interior
    pixel converted to degrees with arctan; ``slope`` is its mean and
    ``max_slope`` its maximum. Roughness is the standard deviation of the
    field around its mean. Fields smaller than 3x3 have zero slope.
    """
    field = np.asarray(height_field, dtype=np.float64) * vertical_scale
    if field.ndim != 2 or field.size == 0:
        return TopologyFeatures()

    roughness = float(field.std())
    if field.shape[0] < 3 or field.shape[1] < 3:
        return TopologyFeatures(roughness=roughness)

    dx = (field[1:-1, 2:] - field[1:-1, :-2]) / 2.0
    dy = (field[2:, 1:-1] - field[:-2, 1:-1]) / 2.0
    degrees = np.degrees(np.arctan(np.hypot(dx, dy)))

    return TopologyFeatures(
        slope=float(degrees.mean()),
        max_slope=float(degrees.max()),
        roughness=roughness,
    )
