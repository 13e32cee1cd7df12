"""
Two-stage segment classification.

Stage 1 decides terrain versus discrete object; stage 2 picks a detailed
label from one of two fixed tables depending on stage 1. Both stages use
an injected classifier when one is available and fall back to keyword
and label heuristics otherwise. A failing classifier is logged and
treated as absent.
"""

import logging
import re
from typing import Optional, Tuple

import numpy as np

from mapscene.collaborators import Classifier

logger = logging.getLogger(__name__)

# Coarse labels recognised as terrain when no classifier is available.
TERRAIN_KEYWORDS = frozenset({
    "water", "lake", "river", "ocean", "sea", "pond", "stream", "bay", "coast", "shore",
    "mountain", "hill", "peak", "ridge", "cliff", "highland", "plateau", "valley", "canyon",
    "forest", "woods", "jungle", "grove",
    "desert", "dune", "sand",
    "plain", "grass", "grassland", "meadow", "field", "prairie",
    "swamp", "marsh", "wetland", "bog",
    "beach",
    "snow", "ice", "glacier", "tundra",
    "terrain", "land", "island",
})

TERRAIN_DETAIL_NAMES = (
    "water", "lake", "river", "ocean", "mountain", "hill", "cliff", "ridge",
    "valley", "canyon", "forest", "grassland", "plain", "desert", "beach",
    "swamp", "snow", "plateau",
)

OBJECT_DETAIL_NAMES = (
    "building", "house", "tower", "bridge", "road", "wall", "fence", "vehicle",
    "boat", "tree", "rock", "monument", "windmill", "lighthouse", "dock",
    "castle", "farm", "well",
)

UNKNOWN_TERRAIN = "unknown_terrain"
UNKNOWN_OBJECT = "unknown_object"

_TOKEN = re.compile(r"[a-z]+")


def is_terrain_label(class_name: str) -> bool:
    """True if any word of the label is a terrain keyword."""
    return any(token in TERRAIN_KEYWORDS for token in _TOKEN.findall(class_name.lower()))


def _run(classifier: Classifier, crop: np.ndarray, stage: str) -> Optional[np.ndarray]:
    try:
        scores = np.asarray(classifier(crop), dtype=np.float64).ravel()
    except Exception as e:
        logger.warning("%s classifier failed, using fallback: %s", stage, e)
        return None
    if scores.size == 0:
        logger.warning("%s classifier returned no scores, using fallback.", stage)
        return None
    return scores


def classify_terrain(
    crop: Optional[np.ndarray],
    class_name: str,
    detection_confidence: float,
    classifier: Optional[Classifier] = None,
) -> Tuple[bool, float]:
    """Decide whether a segment is terrain.

    With a classifier: scores[0] is terrain, scores[1] non-terrain;
    terrain wins only on a strictly higher score and the confidence is
    the larger score. Without one (or on failure), the coarse label is
    matched against TERRAIN_KEYWORDS and the detection confidence is
    reused.

    Returns:
        (is_terrain, classification_confidence)
    """
    if classifier is not None and crop is not None:
        scores = _run(classifier, crop, "Terrain")
        if scores is not None and scores.size >= 2:
            return bool(scores[0] > scores[1]), float(np.clip(scores[:2].max(), 0.0, 1.0))
        if scores is not None:
            logger.warning("Terrain classifier returned %d score(s), expected 2.", scores.size)

    return is_terrain_label(class_name), detection_confidence


def classify_detail(
    crop: Optional[np.ndarray],
    is_terrain: bool,
    coarse_label: str,
    classifier: Optional[Classifier] = None,
) -> Tuple[str, Optional[float]]:
    """Pick a detailed label for a classified segment.

    The arg-max index is looked up in TERRAIN_DETAIL_NAMES or
    OBJECT_DETAIL_NAMES; indices past the table map to the matching
    ``unknown_*`` sentinel. Without a classifier the coarse label is kept.

    Returns:
        (label, score) where score is None for the fallback.
    """
    if classifier is not None and crop is not None:
        scores = _run(classifier, crop, "Detail")
        if scores is not None:
            index = int(np.argmax(scores))
            table = TERRAIN_DETAIL_NAMES if is_terrain else OBJECT_DETAIL_NAMES
            if index < len(table):
                return table[index], float(scores[index])
            return (UNKNOWN_TERRAIN if is_terrain else UNKNOWN_OBJECT), float(scores[index])

    return coarse_label, None
