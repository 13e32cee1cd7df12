"""
Result set handed to downstream consumers.

Responsibility:
    Flatten analyzed segments and object groupings into immutable
    records a terrain-synthesis or asset-generation collaborator can
    consume without knowing the pipeline's internal types.

Non-goals:
    - No scene construction, mesh generation or persistence.
    - Masks and height fields are carried as arrays; ``to_dict`` only
      reports their presence.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from mapscene.analysis import AnalyzedSegment, ObjectGrouping, ObjectSegment, TerrainSegment
from mapscene.features import TopologyFeatures
from mapscene.geometry import Rect, Vec2, Vec3
from mapscene.segment import Color


@dataclass(frozen=True, eq=False)
class TerrainFeature:
    id: str
    type: str
    label: str
    bounding_box: Rect
    mask: Optional[np.ndarray]
    color: Color
    confidence: float
    elevation: float
    topology: TopologyFeatures
    height_map: Optional[np.ndarray] = None
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "label": self.label,
            "bounding_box": self.bounding_box.to_dict(),
            "color": list(self.color),
            "confidence": round(self.confidence, 4),
            "elevation": round(self.elevation, 4),
            "topology": self.topology.to_dict(),
            "has_mask": self.mask is not None,
            "description": self.description,
        }


@dataclass(frozen=True, eq=False)
class MapObject:
    id: str
    type: str
    label: str
    bounding_box: Rect
    mask: Optional[np.ndarray]
    color: Color
    position: Vec2
    scale: Vec3
    rotation: float
    confidence: float
    group_id: Optional[str] = None
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "label": self.label,
            "bounding_box": self.bounding_box.to_dict(),
            "color": list(self.color),
            "position": [round(v, 4) for v in self.position],
            "scale": [round(v, 4) for v in self.scale],
            "rotation": round(self.rotation, 2),
            "confidence": round(self.confidence, 4),
            "group_id": self.group_id,
            "has_mask": self.mask is not None,
            "description": self.description,
        }


@dataclass(frozen=True)
class ObjectGroup:
    """Objects sharing one representative model."""

    group_id: str
    object_type: str
    representative_id: str
    object_ids: Tuple[str, ...]
    average_scale: Vec3

    def to_dict(self) -> dict:
        return {
            "group_id": self.group_id,
            "object_type": self.object_type,
            "representative_id": self.representative_id,
            "object_ids": list(self.object_ids),
            "average_scale": [round(v, 4) for v in self.average_scale],
        }


@dataclass(frozen=True)
class AnalysisResults:
    """Immutable outcome of one map analysis.

    Attributes:
        image_width: Source image width in pixels.
        image_height: Source image height in pixels.
        terrain_features: One entry per terrain segment.
        map_objects: One entry per object segment.
        object_groups: Similarity groups over ``map_objects``.
        placements: Redistributed normalised points per object type.
        timings: Seconds spent per pipeline stage.
        height_field: Whole-map height field in [0, 1] indexed [row, column],
                      or None when it was not built.
    """

    image_width: int
    image_height: int
    terrain_features: Tuple[TerrainFeature, ...] = ()
    map_objects: Tuple[MapObject, ...] = ()
    object_groups: Tuple[ObjectGroup, ...] = ()
    placements: Dict[str, Tuple[Vec2, ...]] = field(default_factory=dict)
    timings: Dict[str, float] = field(default_factory=dict)
    height_field: Optional[np.ndarray] = None

    @property
    def terrain_types(self) -> List[str]:
        """Distinct terrain types in first-seen order."""
        return list(dict.fromkeys(t.type for t in self.terrain_features))

    @property
    def object_types(self) -> List[str]:
        return list(dict.fromkeys(o.type for o in self.map_objects))

    def __len__(self) -> int:
        return len(self.terrain_features) + len(self.map_objects)

    def to_dict(self) -> dict:
        """Return a plain dict suitable for JSON serialization."""
        return {
            "image": {"width": self.image_width, "height": self.image_height},
            "terrain_types": self.terrain_types,
            "terrain_features": [t.to_dict() for t in self.terrain_features],
            "map_objects": [o.to_dict() for o in self.map_objects],
            "object_groups": [g.to_dict() for g in self.object_groups],
            "placements": {
                k: [[round(x, 4), round(y, 4)] for x, y in v] for k, v in self.placements.items()
            },
            "timings": {k: round(v, 4) for k, v in self.timings.items()},
            "height_field": None if self.height_field is None else {
                "shape": list(self.height_field.shape),
                "min": round(float(self.height_field.min()), 4),
                "max": round(float(self.height_field.max()), 4),
            },
        }


def _terrain_feature(t: TerrainSegment) -> TerrainFeature:
    return TerrainFeature(
        id=t.segment.id,
        type=t.detailed_classification,
        label=t.object_type,
        bounding_box=t.bounding_box,
        mask=t.mask,
        color=t.segment.color,
        confidence=t.classification_confidence,
        elevation=t.estimated_height,
        topology=t.topology,
        height_map=t.height_map,
        description=t.description,
    )


def _map_object(o: ObjectSegment, group_id: Optional[str]) -> MapObject:
    return MapObject(
        id=o.segment.id,
        type=o.detailed_classification,
        label=o.object_type,
        bounding_box=o.bounding_box,
        mask=o.mask,
        color=o.segment.color,
        position=o.normalized_position,
        scale=o.estimated_scale,
        rotation=o.estimated_rotation,
        confidence=o.placement_confidence,
        group_id=group_id,
        description=o.description,
    )


def build_results(
    analyzed: Sequence[AnalyzedSegment],
    groupings: Sequence[ObjectGrouping],
    image_width: int,
    image_height: int,
    placements: Optional[Dict[str, np.ndarray]] = None,
    timings: Optional[Dict[str, float]] = None,
    height_field: Optional[np.ndarray] = None,
) -> AnalysisResults:
    """Assemble the result set, preserving the order of ``analyzed``."""
    group_of: Dict[str, str] = {}
    groups: List[ObjectGroup] = []
    for g in groupings:
        ids = tuple(s.segment.id for s in g.segments)
        for object_id in ids:
            group_of[object_id] = g.group_id
        groups.append(ObjectGroup(
            group_id=g.group_id,
            object_type=g.object_type,
            representative_id=g.seed.segment.id,
            object_ids=ids,
            average_scale=g.average_scale,
        ))

    terrain: List[TerrainFeature] = []
    objects: List[MapObject] = []
    for a in analyzed:
        if isinstance(a, TerrainSegment):
            terrain.append(_terrain_feature(a))
        elif isinstance(a, ObjectSegment):
            objects.append(_map_object(a, group_of.get(a.segment.id)))
        else:
            raise TypeError(f"Unexpected analyzed segment type: {type(a).__name__}")

    points = {
        k: tuple((float(x), float(y)) for x, y in np.asarray(v).reshape(-1, 2))
        for k, v in (placements or {}).items()
    }

    return AnalysisResults(
        image_width=image_width,
        image_height=image_height,
        terrain_features=tuple(terrain),
        map_objects=tuple(objects),
        object_groups=tuple(groups),
        placements=points,
        timings=dict(timings or {}),
        height_field=height_field,
    )
