"""
Analyzed segment types.

An analyzed segment is either terrain or an object, never both:
``AnalyzedSegment = Union[TerrainSegment, ObjectSegment]``. Consumers
branch with ``isinstance`` and must handle both cases.
"""

from dataclasses import dataclass, field, replace
from typing import List, Optional, Union

import numpy as np

from mapscene.features import ClassificationFeatures, TopologyFeatures
from mapscene.geometry import Rect, Vec2, Vec3
from mapscene.segment import Segment


@dataclass(frozen=True, eq=False)
class TerrainSegment:
    """Terrain branch output for one segment."""

    segment: Segment
    object_type: str
    detailed_classification: str
    classification_confidence: float
    features: ClassificationFeatures
    height_map: np.ndarray
    estimated_height: float
    topology: TopologyFeatures
    description: str = ""

    @property
    def is_terrain(self) -> bool:
        return True

    @property
    def bounding_box(self) -> Rect:
        return self.segment.bounding_box

    @property
    def mask(self) -> Optional[np.ndarray]:
        return self.segment.mask

    @property
    def confidence(self) -> float:
        return self.segment.confidence


@dataclass(frozen=True, eq=False)
class ObjectSegment:
    """Object branch output for one segment."""

    segment: Segment
    object_type: str
    detailed_classification: str
    classification_confidence: float
    features: ClassificationFeatures
    normalized_position: Vec2
    estimated_scale: Vec3
    estimated_rotation: float
    placement_confidence: float
    description: str = ""

    @property
    def is_terrain(self) -> bool:
        return False

    @property
    def bounding_box(self) -> Rect:
        return self.segment.bounding_box

    @property
    def mask(self) -> Optional[np.ndarray]:
        return self.segment.mask

    @property
    def confidence(self) -> float:
        return self.segment.confidence


AnalyzedSegment = Union[TerrainSegment, ObjectSegment]


def with_description(analyzed: AnalyzedSegment, description: str) -> AnalyzedSegment:
    """Copy of ``analyzed`` carrying a description."""
    return replace(analyzed, description=description)


@dataclass
class ObjectGrouping:
    """Near-duplicate objects sharing one representative.

    ``segments`` keeps discovery order; the first entry is the seed.
    """

    group_id: str
    object_type: str
    segments: List[ObjectSegment] = field(default_factory=list)

    @property
    def seed(self) -> ObjectSegment:
        return self.segments[0]

    @property
    def average_scale(self) -> Vec3:
        scales = np.array([s.estimated_scale for s in self.segments], dtype=np.float64)
        x, y, z = scales.mean(axis=0)
        return (float(x), float(y), float(z))

    def representative(self) -> ObjectSegment:
        """The seed object with the group's averaged scale."""
        return replace(self.seed, estimated_scale=self.average_scale)

    def __len__(self) -> int:
        return len(self.segments)
