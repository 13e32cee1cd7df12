"""
Detection value object.

This module defines the Detection dataclass, the unit the decoder emits
for every accepted candidate row. It is frozen; the only way to combine
two detections is the explicit ``merge`` operation, which returns a new
instance.

Non-goals:
    - No pixel masks (see segment.py).
    - No rendering or file I/O.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from mapscene.geometry import Rect, Vec2, distance, rect_iou


@dataclass(frozen=True, slots=True)
class Detection:
    """A single decoded detection.

    Attributes:
        class_id: Index of the winning class in the model's class list.
        class_name: Human-readable class label.
        confidence: Detection confidence in [0.0, 1.0].
        bounding_box: Box in source-image pixels, top-left origin.
        class_scores: Optional per-class scores keyed by class name.
        metadata: Collaborator-supplied values (e.g. mask coefficients).
        description: Optional free-text description of the detection.
    """

    class_id: int
    class_name: str
    confidence: float
    bounding_box: Rect
    class_scores: Dict[str, float] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    description: str = ""

    def __post_init__(self) -> None:
        if not (0.0 <= self.confidence <= 1.0):
            raise ValueError(
                f"Detection confidence must be in [0.0, 1.0], got {self.confidence}."
            )

    @property
    def center(self) -> Vec2:
        """Centre of the bounding box in pixels."""
        return self.bounding_box.center

    @property
    def area(self) -> float:
        """Bounding box area in square pixels."""
        return self.bounding_box.area

    def overlaps_with(self, other: Optional["Detection"], iou_threshold: float = 0.5) -> bool:
        """True if the box IoU with ``other`` reaches ``iou_threshold``."""
        if other is None:
            return False
        return rect_iou(self.bounding_box, other.bounding_box) >= iou_threshold

    def distance_to(self, other: "Detection") -> float:
        """Centre-to-centre distance in pixels."""
        return distance(self.center, other.center)

    def merge(
        self,
        other: Optional["Detection"],
        merge_confidence: bool = True,
        merge_bounding_box: bool = False,
    ) -> "Detection":
        """Fold ``other`` into a copy of this detection.

        ``self`` is privileged: metadata keys already present are kept,
        and class identity only changes when ``other`` is strictly more
        confident. The operation is therefore not commutative.

        Args:
            other: Detection to merge from. None returns self unchanged.
            merge_confidence: Adopt other's class and confidence if higher.
            merge_bounding_box: Replace the box with the union of both.

        Returns:
            A new Detection.
        """
        if other is None:
            return self

        class_id, class_name, confidence = self.class_id, self.class_name, self.confidence
        if merge_confidence and other.confidence > self.confidence:
            class_id, class_name, confidence = other.class_id, other.class_name, other.confidence

        box = self.bounding_box
        if merge_bounding_box:
            box = box.union(other.bounding_box)

        scores = dict(self.class_scores)
        for name, score in other.class_scores.items():
            if name not in scores or scores[name] < score:
                scores[name] = score

        metadata = dict(other.metadata)
        metadata.update(self.metadata)

        description = self.description
        if other.description and len(other.description) > len(description):
            description = other.description

        return replace(
            self,
            class_id=class_id,
            class_name=class_name,
            confidence=confidence,
            bounding_box=box,
            class_scores=scores,
            metadata=metadata,
            description=description,
        )

    def normalized_bounding_box(self, image_width: int, image_height: int) -> Rect:
        return self.bounding_box.normalized(image_width, image_height)

    def normalized_center(self, image_width: int, image_height: int) -> Vec2:
        cx, cy = self.center
        return (cx / image_width, cy / image_height)

    def best_class(self) -> Tuple[str, float]:
        """Highest-scoring class, or the detection's own label without scores."""
        if not self.class_scores:
            return self.class_name, self.confidence
        name = max(self.class_scores, key=self.class_scores.get)
        return name, self.class_scores[name]

    def to_dict(self) -> dict:
        """Return a plain dict suitable for JSON serialization."""
        return {
            "class_id": self.class_id,
            "class_name": self.class_name,
            "confidence": round(self.confidence, 4),
            "bounding_box": self.bounding_box.to_dict(),
            "description": self.description,
        }
