"""
Boundary contracts for external collaborators.

The pipeline owns no model weights. Classifiers, height estimators,
segmenters and description services are injected through these
protocols; any of them may be absent, in which case the pipeline falls
back to its heuristics.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import numpy as np

from mapscene.detection import Detection


class Classifier(Protocol):
    """Scores a BGRA crop; returns a 1D score vector."""

    def __call__(self, crop: np.ndarray) -> np.ndarray: ...


class HeightEstimator(Protocol):
    """Predicts a per-pixel height field for a BGRA crop."""

    def __call__(self, crop: np.ndarray) -> np.ndarray: ...


class Segmenter(Protocol):
    """Produces a box-framed alpha mask for a detection, or None."""

    def __call__(self, image: np.ndarray, detection: Detection) -> Optional[np.ndarray]: ...


class DescriptionEnhancer(Protocol):
    """Turns a structured prompt payload into descriptive text."""

    def __call__(self, payload: Dict[str, Any]) -> str: ...


@dataclass(frozen=True)
class ModelSet:
    """Optional collaborators available to one pipeline run.

    Attributes:
        terrain_classifier: Two-way terrain / non-terrain scores.
        detail_classifier: Scores indexed into the detail name tables.
        height_estimator: Per-pixel height field for terrain crops.
        segmenter: Mask provider for decoded detections.
        description_enhancer: Text service for richer descriptions.
    """

    terrain_classifier: Optional[Classifier] = None
    detail_classifier: Optional[Classifier] = None
    height_estimator: Optional[HeightEstimator] = None
    segmenter: Optional[Segmenter] = None
    description_enhancer: Optional[DescriptionEnhancer] = None
