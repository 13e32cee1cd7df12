"""
MapAnalyzer: the public entry point for map analysis.

Public contract:
    MapAnalyzer(context).analyze(image, buffer) -> AnalysisResults
    MapAnalyzer(context).analyze_iter(image, buffer) -> Iterator[StageEvent]

Stages, in order: decode → segment → merge → classify → group → finalize.
``analyze_iter`` yields a StageEvent between stages (and after every
dispatched segment) so a host loop can interleave its own work; its
return value is the AnalysisResults that ``analyze`` hands back.

Constraints:
    - Input must be a BGR or BGRA numpy array (as returned by OpenCV).
    - All run state lives in the AnalysisContext; there is no module-level
      mutable state, so analyzers may run in parallel across images.
    - Per-segment analysis runs on a bounded thread pool. Each segment
      writes only its own slot of a pre-sized result list.

Non-goals:
    - No model inference; buffers and collaborators are supplied.
    - No file I/O or visualization.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import reduce
from typing import Dict, Generator, List, Optional, Sequence

import cv2
import numpy as np

from mapscene.analysis import (
    AnalyzedSegment,
    ObjectGrouping,
    ObjectSegment,
    TerrainSegment,
    with_description,
)
from mapscene.classification import classify_detail, classify_terrain
from mapscene.clustering import Region, group_similar_objects, redistribute
from mapscene.collaborators import ModelSet
from mapscene.config import AppConfig
from mapscene.decoder import OutputLayout, decode, decode_per_class
from mapscene.describe import basic_description, build_prompt_payload, enhance_description
from mapscene.detection import Detection
from mapscene.features import ClassificationFeatures, compute_classification_features
from mapscene.geometry import Rect, rect_iou
from mapscene.image import mask_alpha
from mapscene.masks import masks_from_prototypes, remap_mask_to_frame
from mapscene.placement import ROTATION_STRATEGIES, estimate_placement
from mapscene.results import AnalysisResults, build_results
from mapscene.segment import Color, Segment
from mapscene.terrain import build_height_field, estimate_terrain

logger = logging.getLogger(__name__)

STAGES = ("decode", "segment", "merge", "classify", "group", "finalize")

# Merged mask side length limit in pixels.
_MAX_MERGED_MASK_SIDE = 2048

_PATH_WORDS = ("road", "path", "street", "trail", "rail", "railway", "bridge")


@dataclass(frozen=True)
class StageEvent:
    """Progress notification yielded between pipeline stages."""

    stage: str
    progress: float
    message: str


@dataclass
class AnalysisContext:
    """Everything one analysis run depends on.

    Attributes:
        config: Validated application configuration.
        models: Optional collaborators; missing ones fall back to heuristics.
        rng: Random generator for heuristics. Seeded from
             ``config.pipeline.seed`` when not given.
    """

    config: AppConfig = field(default_factory=AppConfig)
    models: ModelSet = field(default_factory=ModelSet)
    rng: Optional[np.random.Generator] = None

    def __post_init__(self) -> None:
        if self.rng is None:
            self.rng = np.random.default_rng(self.config.pipeline.seed)


# ---------------------------------------------------------------------------
# Region merging
# ---------------------------------------------------------------------------

def _merged_mask_size(members: Sequence[Segment], box: Rect) -> tuple:
    """Output resolution matching the finest member mask."""
    scale = 1.0
    for m in members:
        if m.mask is not None and m.bounding_box.width > 0 and m.bounding_box.height > 0:
            h, w = m.mask.shape
            scale = max(scale, w / m.bounding_box.width, h / m.bounding_box.height)
    width = int(np.clip(round(box.width * scale), 1, _MAX_MERGED_MASK_SIDE))
    height = int(np.clip(round(box.height * scale), 1, _MAX_MERGED_MASK_SIDE))
    return width, height


def _merge_group(members: List[Segment]) -> Segment:
    box = reduce(lambda acc, s: acc.union(s.bounding_box), members[1:], members[0].bounding_box)
    ordered = sorted(members, key=lambda s: s.confidence, reverse=True)
    best = ordered[0]

    detection = best.detection
    for other in ordered[1:]:
        detection = detection.merge(other.detection, merge_confidence=True, merge_bounding_box=True)

    mask = None
    if any(m.mask is not None for m in members):
        width, height = _merged_mask_size(members, box)
        planes = [
            remap_mask_to_frame(m.mask, m.bounding_box, box, width, height) for m in members
        ]
        mask = np.maximum.reduce(planes)

    return Segment(
        detection=detection,
        mask=mask,
        bounding_box=box,
        color=best.color,
        is_terrain=best.is_terrain,
        estimated_height=best.estimated_height,
        id=best.id,
    )


def merge_overlapping_segments(segments: Sequence[Segment], threshold: float = 0.3) -> List[Segment]:
    """Merge same-label segments whose box IoU with a seed exceeds ``threshold``.

    Each unclaimed segment seeds a group. A group becomes one segment with
    the union box, the identity of its most confident member, and a mask
    taking the per-pixel maximum alpha of all members remapped into the
    union frame (a member without a mask counts as its full box). Groups
    without any mask keep ``mask=None``.
    """
    claimed = [False] * len(segments)
    merged: List[Segment] = []

    for i, seed in enumerate(segments):
        if claimed[i]:
            continue
        claimed[i] = True
        members = [seed]
        for j in range(i + 1, len(segments)):
            other = segments[j]
            if claimed[j] or other.class_name != seed.class_name:
                continue
            if rect_iou(seed.bounding_box, other.bounding_box) > threshold:
                claimed[j] = True
                members.append(other)

        merged.append(seed if len(members) == 1 else _merge_group(members))

    if len(merged) < len(segments):
        logger.debug("Merged %d segments into %d.", len(segments), len(merged))
    return merged


def segment_color(index: int) -> Color:
    """Distinct BGR colour per segment index (hue steps of 37 degrees)."""
    # OpenCV hue spans 0-179.
    hue = ((index * 37) % 360) // 2
    hsv = np.array([[[hue, 204, 255]]], dtype=np.uint8)
    b, g, r = cv2.cvtColor(hsv, cv2.COLOR_HSV2BGR)[0, 0]
    return (int(b), int(g), int(r))


# ---------------------------------------------------------------------------
# Per-segment analysis
# ---------------------------------------------------------------------------

class SegmentAnalyzer:
    """Classify one segment and run its terrain or object branch.

    Stateless apart from the shared read-only context; safe to call from
    several worker threads as long as each call gets its own generator.
    """

    def __init__(self, context: AnalysisContext) -> None:
        self._context = context
        self._rotation = ROTATION_STRATEGIES[context.config.placement.rotation_strategy]

    def analyze(
        self,
        segment: Segment,
        image: np.ndarray,
        rng: Optional[np.random.Generator] = None,
    ) -> AnalyzedSegment:
        """Run classification and the matching branch for ``segment``.

        Never raises for a missing or failing collaborator; those degrade
        to heuristics inside the classification and terrain modules.
        """
        rng = rng if rng is not None else self._context.rng
        models = self._context.models
        config = self._context.config
        image_height, image_width = image.shape[:2]

        crop = segment.extract_image(image)
        is_terrain, confidence = classify_terrain(
            crop, segment.class_name, segment.confidence, models.terrain_classifier,
        )
        detail, _ = classify_detail(crop, is_terrain, segment.class_name, models.detail_classifier)
        features = (
            compute_classification_features(crop) if crop is not None else ClassificationFeatures()
        )

        if is_terrain:
            estimate = estimate_terrain(
                crop,
                segment.mask,
                detail,
                config.terrain.max_height,
                rng,
                estimator=models.height_estimator,
                resolution=config.terrain.height_map_resolution,
            )
            return TerrainSegment(
                segment=segment.with_classification(True, estimate.estimated_height),
                object_type=segment.class_name,
                detailed_classification=detail,
                classification_confidence=confidence,
                features=features,
                height_map=estimate.height_map,
                estimated_height=estimate.estimated_height,
                topology=estimate.topology,
            )

        placement = estimate_placement(
            detail,
            segment.bounding_box,
            segment.mask,
            image_width,
            image_height,
            segment.confidence,
            confidence,
            rng,
            rotation=self._rotation,
        )
        return ObjectSegment(
            segment=segment.with_classification(False),
            object_type=segment.class_name,
            detailed_classification=detail,
            classification_confidence=confidence,
            features=features,
            normalized_position=placement.normalized_position,
            estimated_scale=placement.estimated_scale,
            estimated_rotation=placement.estimated_rotation,
            placement_confidence=placement.placement_confidence,
        )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class MapAnalyzer:
    """Decode, merge, classify, group and describe the regions of one map image.

    Usage:
        analyzer = MapAnalyzer()                                # Safe defaults
        analyzer = MapAnalyzer(AnalysisContext(config, models))
        results = analyzer.analyze(image, buffer)

        for event in analyzer.analyze_iter(image, buffer):      # Cooperative
            host.tick(event)

    ``cancel()`` stops further segments from being dispatched; segments
    already running complete and the partial results are finalized.
    """

    def __init__(self, context: Optional[AnalysisContext] = None) -> None:
        self._context = context if context is not None else AnalysisContext()
        self._segment_analyzer = SegmentAnalyzer(self._context)
        self._cancelled = threading.Event()

    @property
    def context(self) -> AnalysisContext:
        return self._context

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop dispatching segments for the run in progress."""
        logger.info("Cancellation requested.")
        self._cancelled.set()

    def analyze(
        self,
        image: np.ndarray,
        buffer: Optional[np.ndarray] = None,
        detections: Optional[Sequence[Detection]] = None,
        prototypes: Optional[np.ndarray] = None,
    ) -> AnalysisResults:
        """Run every stage and return the result set."""
        events = self.analyze_iter(image, buffer, detections, prototypes)
        while True:
            try:
                next(events)
            except StopIteration as stop:
                return stop.value

    def analyze_iter(
        self,
        image: np.ndarray,
        buffer: Optional[np.ndarray] = None,
        detections: Optional[Sequence[Detection]] = None,
        prototypes: Optional[np.ndarray] = None,
    ) -> Generator[StageEvent, None, AnalysisResults]:
        """Run the pipeline, yielding a StageEvent between stages.

        Args:
            image: BGR or BGRA source image.
            buffer: Raw detector output [1, N, C]. Ignored when
                    ``detections`` is given.
            detections: Already-decoded detections.
            prototypes: Segmentation prototypes used to build masks from
                        decoded mask coefficients when no segmenter is set.

        Returns:
            (as the generator's return value) the AnalysisResults.

        Raises:
            TypeError: If image is not a numpy ndarray.
            ValueError: If image is empty or has an unsupported shape.
                Both are raised by this call, before any iteration.
        """
        self._validate_image(image)
        return self._run(image, buffer, detections, prototypes)

    def _run(
        self,
        image: np.ndarray,
        buffer: Optional[np.ndarray],
        detections: Optional[Sequence[Detection]],
        prototypes: Optional[np.ndarray],
    ) -> Generator[StageEvent, None, AnalysisResults]:
        self._cancelled.clear()
        config = self._context.config
        height, width = image.shape[:2]
        timings: Dict[str, float] = {}

        # --- decode ---
        start = time.perf_counter()
        if detections is None:
            detections = self._decode(buffer, width, height)
        detections = list(detections)
        timings["decode"] = time.perf_counter() - start
        yield StageEvent("decode", 0.1, f"Decoded {len(detections)} detections")

        # --- segment ---
        start = time.perf_counter()
        segments = self._build_segments(image, detections, prototypes)
        timings["segment"] = time.perf_counter() - start
        yield StageEvent("segment", 0.2, f"Built {len(segments)} segments")

        # --- merge ---
        start = time.perf_counter()
        if config.segmentation.merge_segments:
            segments = merge_overlapping_segments(segments, config.segmentation.merge_threshold)
        timings["merge"] = time.perf_counter() - start
        yield StageEvent("merge", 0.3, f"{len(segments)} segments after merging")

        # --- classify ---
        start = time.perf_counter()
        slots: List[Optional[AnalyzedSegment]] = [None] * len(segments)
        yield from self._classify(image, segments, slots)
        analyzed = [a for a in slots if a is not None]
        timings["classify"] = time.perf_counter() - start

        # --- group ---
        start = time.perf_counter()
        objects = [a for a in analyzed if isinstance(a, ObjectSegment)]
        groupings: List[ObjectGrouping] = []
        if config.clustering.group_similar:
            groupings = group_similar_objects(objects, config.clustering.similarity_threshold)
        timings["group"] = time.perf_counter() - start
        yield StageEvent("group", 0.85, f"{len(groupings)} object groups")

        # --- finalize ---
        start = time.perf_counter()
        analyzed = self._describe(analyzed, width, height)
        placements = self._redistribute(analyzed, width, height)
        height_field = self._height_field(image, analyzed)
        timings["finalize"] = time.perf_counter() - start

        by_id = {a.segment.id: a for a in analyzed}
        groupings = [
            ObjectGrouping(g.group_id, g.object_type, [by_id[s.segment.id] for s in g.segments])
            for g in groupings
        ]
        results = build_results(
            analyzed, groupings, width, height, placements, timings, height_field,
        )

        logger.info(
            "Analysis complete: %d terrain features, %d objects, %d groups in %.2fs%s.",
            len(results.terrain_features), len(results.map_objects), len(results.object_groups),
            sum(timings.values()), " (cancelled)" if self.cancelled else "",
        )
        yield StageEvent("finalize", 1.0, "Analysis complete")
        return results

    # -- stages -------------------------------------------------------------

    def _decode(self, buffer: Optional[np.ndarray], width: int, height: int) -> List[Detection]:
        det = self._context.config.detection
        layout = OutputLayout(det.layout) if det.layout else None
        labels = det.class_labels or None

        if det.per_class_nms:
            return decode_per_class(
                buffer, det.confidence_threshold, det.nms_threshold, width, height,
                layout=layout, class_labels=labels, max_per_class=det.max_per_class,
                num_mask_coefficients=det.num_mask_coefficients,
                max_candidates=det.max_candidates,
            )
        return decode(
            buffer, det.confidence_threshold, det.nms_threshold, width, height,
            layout=layout, class_labels=labels, max_candidates=det.max_candidates,
            num_mask_coefficients=det.num_mask_coefficients,
        )

    def _segment_mask(
        self,
        image: np.ndarray,
        detection: Detection,
        prototypes: Optional[np.ndarray],
    ) -> Optional[np.ndarray]:
        segmenter = self._context.models.segmenter
        if segmenter is not None:
            try:
                mask = segmenter(image, detection)
                return None if mask is None else mask_alpha(mask)
            except Exception as e:
                logger.warning("Segmenter failed for '%s', using box only: %s", detection.class_name, e)
                return None

        coefficients = detection.metadata.get("mask_coefficients")
        if prototypes is not None and coefficients is not None:
            height, width = image.shape[:2]
            return masks_from_prototypes(coefficients, prototypes, detection.bounding_box, width, height)
        return None

    def _build_segments(
        self,
        image: np.ndarray,
        detections: Sequence[Detection],
        prototypes: Optional[np.ndarray],
    ) -> List[Segment]:
        valid = []
        for det in detections:
            if det.bounding_box.area <= 0:
                logger.warning(
                    "Dropping '%s' detection with zero-area box %s.",
                    det.class_name, det.bounding_box.to_dict(),
                )
                continue
            valid.append(det)

        return [
            Segment(
                detection=det,
                mask=self._segment_mask(image, det, prototypes),
                color=segment_color(i),
            )
            for i, det in enumerate(valid)
        ]

    def _classify(
        self,
        image: np.ndarray,
        segments: Sequence[Segment],
        slots: List[Optional[AnalyzedSegment]],
    ) -> Generator[StageEvent, None, None]:
        """Dispatch segments to the worker pool, at most max_concurrency in flight."""
        total = len(segments)
        if total == 0:
            yield StageEvent("classify", 0.8, "No segments to classify")
            return

        max_workers = min(self._context.config.pipeline.max_concurrency, total)
        seeds = self._context.rng.integers(0, 2**63 - 1, size=total)
        in_flight = threading.BoundedSemaphore(max_workers)

        def run(index: int) -> None:
            segment = segments[index]
            try:
                slots[index] = self._segment_analyzer.analyze(
                    segment, image, np.random.default_rng(int(seeds[index])),
                )
            except Exception:
                logger.exception(
                    "Analysis failed for segment '%s' (%s), skipping it.",
                    segment.class_name, segment.id,
                )
            finally:
                in_flight.release()

        dispatched = []
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="segment") as pool:
            for i in range(total):
                in_flight.acquire()
                if self._cancelled.is_set():
                    in_flight.release()
                    logger.info("Cancelled after dispatching %d of %d segments.", i, total)
                    break
                dispatched.append(pool.submit(run, i))
                yield StageEvent(
                    "classify", 0.3 + 0.5 * (i + 1) / total, f"Dispatched segment {i + 1}/{total}",
                )

            for future in dispatched:
                future.result()

        yield StageEvent("classify", 0.8, f"Classified {len(dispatched)} segments")

    def _describe(
        self, analyzed: Sequence[AnalyzedSegment], width: int, height: int,
    ) -> List[AnalyzedSegment]:
        pipeline = self._context.config.pipeline
        enhancer = self._context.models.description_enhancer
        enhance = pipeline.enhance_descriptions and bool(analyzed)
        if enhance and enhancer is None:
            logger.warning("No description enhancer available, keeping basic descriptions.")

        described: List[AnalyzedSegment] = []
        for a in analyzed:
            basic = basic_description(a, width, height)
            text = ""
            if enhance and enhancer is not None:
                payload = build_prompt_payload(a, basic)
                text = enhance_description(enhancer, payload, pipeline.description_timeout)
            described.append(with_description(a, text or basic))
        return described

    def _redistribute(
        self, analyzed: Sequence[AnalyzedSegment], width: int, height: int,
    ) -> Dict[str, np.ndarray]:
        clustering = self._context.config.clustering
        points: Dict[str, List] = {}
        regions: Dict[str, List[Region]] = {}
        paths: List[np.ndarray] = []

        for a in analyzed:
            if not isinstance(a, ObjectSegment):
                continue
            box = a.bounding_box.normalized(width, height)
            points.setdefault(a.detailed_classification, []).append(a.normalized_position)
            regions.setdefault(a.detailed_classification, []).append((box, a.mask))
            if any(word in a.detailed_classification.lower() for word in _PATH_WORDS):
                paths.append(_centerline(box))

        return redistribute(
            {k: np.array(v, dtype=np.float64) for k, v in points.items()},
            clustering.density_multiplier,
            clustering.distribution_strategy,
            self._context.rng,
            paths=paths,
            regions=regions,
            downsample=clustering.downsample,
        )

    def _height_field(
        self, image: np.ndarray, analyzed: Sequence[AnalyzedSegment],
    ) -> Optional[np.ndarray]:
        terrain = self._context.config.terrain
        if terrain.height_field_resolution <= 0:
            return None
        regions = [
            (a.bounding_box, a.detailed_classification)
            for a in analyzed if isinstance(a, TerrainSegment)
        ]
        return build_height_field(
            image, regions, terrain.height_field_resolution, terrain.height_field_smoothing,
        )

    @staticmethod
    def _validate_image(image: np.ndarray) -> None:
        """Validate that the input image meets the API contract.

        Raises:
            TypeError: If image is not a numpy ndarray.
            ValueError: If image is empty or has wrong dimensions.
        """
        if not isinstance(image, np.ndarray):
            raise TypeError(
                f"Expected image to be a numpy ndarray, "
                f"got {type(image).__name__}. "
                f"Use cv2.imread() to obtain images."
            )

        if image.size == 0:
            raise ValueError("Image is empty (zero size).")

        if image.ndim != 3 or image.shape[2] not in (3, 4):
            raise ValueError(
                f"Expected a (H, W, 3) BGR or (H, W, 4) BGRA image, got shape {image.shape}."
            )


def _centerline(box: Rect) -> np.ndarray:
    """Polyline along the long axis of a (normalised) box."""
    cx, cy = box.center
    if box.width >= box.height:
        return np.array([[box.x, cy], [box.x_max, cy]])
    return np.array([[cx, box.y], [cx, box.y_max]])
