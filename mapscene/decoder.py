"""
Detection decoding for the map analysis pipeline.

Responsibility:
    Parse a raw detector output buffer into a list of Detection objects.
    Select the output layout, apply confidence thresholding, box
    un-normalization, a candidate cap, and non-maximum suppression.

Non-goals:
    - No model loading or inference.
    - No masks beyond carrying mask coefficients through metadata.

Hard-coded:
    - Buffer shape: [1, N, C], one row per candidate, the first four
      values of each row are (cx, cy, w, h).
    - Layout selection thresholds on C: >= 100 segment, >= 85 detect,
      >= 86 detect-v2 (shadowed by detect; reachable only through an
      explicit layout), otherwise the generic row sampling.

Failure behavior:
    - A missing or malformed buffer logs an error and returns [].
"""

import enum
import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from mapscene.detection import Detection
from mapscene.geometry import Rect, rect_iou

logger = logging.getLogger(__name__)

# Rows sampled by the generic layout to decide whether column 4 is objectness.
_GENERIC_PROBE_ROWS = 10


class OutputLayout(enum.Enum):
    """Known per-row layouts of a detector output buffer."""

    GENERIC = "generic"
    DETECT = "detect"
    DETECT_V2 = "detect_v2"
    SEGMENT = "segment"


def detect_layout(buffer: np.ndarray) -> Optional[OutputLayout]:
    """Guess the row layout of a detector buffer from its shape.

    Returns:
        The selected layout, or None if the buffer is not [1, N, C].
    """
    if buffer is None or buffer.ndim < 3 or buffer.shape[0] != 1:
        return None

    cols = buffer.shape[2]
    if cols >= 100:
        return OutputLayout.SEGMENT
    if cols >= 85:
        return OutputLayout.DETECT
    if cols >= 86:
        return OutputLayout.DETECT_V2
    return OutputLayout.GENERIC


def _generic_has_objectness(rows: np.ndarray) -> bool:
    """Probe column 4: an average in [0, 1] is read as objectness."""
    if rows.shape[0] == 0 or rows.shape[1] <= 4:
        return False
    average = float(np.mean(rows[:_GENERIC_PROBE_ROWS, 4]))
    return 0.0 <= average <= 1.0


def _score_rows(
    rows: np.ndarray,
    layout: OutputLayout,
    num_mask_coefficients: int,
) -> Tuple[np.ndarray, np.ndarray, int, int]:
    """Compute per-row class id and confidence for a layout.

    Returns:
        (class_ids, confidences, class_start, class_end) where the last
        two delimit the class-score columns.
    """
    cols = rows.shape[1]
    objectness = None

    if layout is OutputLayout.SEGMENT:
        class_start = 4
        class_end = max(class_start + 1, cols - num_mask_coefficients)
    elif layout is OutputLayout.DETECT_V2:
        class_start, class_end = 6, cols
        objectness = rows[:, 4]
    elif layout is OutputLayout.GENERIC:
        if _generic_has_objectness(rows):
            class_start = 5
            objectness = rows[:, 4]
        else:
            class_start = 4
        class_end = cols
    else:
        class_start, class_end = 4, cols

    n = rows.shape[0]
    if class_end <= class_start:
        return np.zeros(n, dtype=np.int64), np.zeros(n), class_start, class_end

    scores = rows[:, class_start:class_end]
    class_ids = np.argmax(scores, axis=1)
    best = scores[np.arange(n), class_ids]
    # Negative maxima (logit-style outputs) never beat an empty score.
    confidences = np.maximum(best, 0.0)
    if objectness is not None:
        confidences = objectness * confidences

    return class_ids, np.clip(confidences, 0.0, 1.0), class_start, class_end


def _decode_box(row: np.ndarray, image_width: int, image_height: int) -> Optional[Rect]:
    """Convert (cx, cy, w, h) to a top-left pixel rectangle, None if degenerate."""
    cx, cy, w, h = (float(v) for v in row[:4])
    if all(0.0 <= v <= 1.0 for v in (cx, cy, w, h)):
        cx, w = cx * image_width, w * image_width
        cy, h = cy * image_height, h * image_height
    if w <= 0 or h <= 0:
        return None
    return Rect(cx - w / 2, cy - h / 2, w, h)


def _label(class_id: int, class_labels: Optional[Sequence[str]]) -> str:
    if class_labels is not None and 0 <= class_id < len(class_labels):
        return class_labels[class_id]
    return f"class_{class_id}"


def _validate_buffer(buffer: Optional[np.ndarray]) -> bool:
    if buffer is None:
        logger.error("Detector output buffer is missing.")
        return False
    if buffer.ndim < 3:
        logger.error(
            "Invalid detector output shape %s: expected [1, N, C].", buffer.shape
        )
        return False
    if buffer.shape[0] != 1:
        logger.error(
            "Unsupported batch size %d in detector output %s: expected 1.",
            buffer.shape[0], buffer.shape,
        )
        return False
    if buffer.shape[2] < 5:
        logger.error(
            "Detector output has %d values per row: need a box and at least one score.",
            buffer.shape[2],
        )
        return False
    return True


def decode_candidates(
    buffer: Optional[np.ndarray],
    confidence_threshold: float,
    image_width: int,
    image_height: int,
    layout: Optional[OutputLayout] = None,
    class_labels: Optional[Sequence[str]] = None,
    num_mask_coefficients: int = 32,
) -> List[Detection]:
    """Decode every row that clears the threshold, in row order, without NMS.

    Each detection records its source row in ``metadata["row"]``.
    """
    if buffer is not None:
        buffer = np.asarray(buffer)
    if not _validate_buffer(buffer):
        return []

    rows = np.asarray(buffer[0], dtype=np.float64)
    if rows.ndim != 2:
        rows = rows.reshape(rows.shape[0], -1)

    if layout is None:
        layout = detect_layout(buffer)

    class_ids, confidences, class_start, class_end = _score_rows(
        rows, layout, num_mask_coefficients
    )

    detections: List[Detection] = []
    for i in np.flatnonzero(confidences >= confidence_threshold):
        row = rows[i]
        box = _decode_box(row, image_width, image_height)
        if box is None:
            logger.debug("Skipping row %d: degenerate box %s.", i, row[:4])
            continue

        class_id = int(class_ids[i])
        scores: Dict[str, float] = {
            _label(j, class_labels): float(s)
            for j, s in enumerate(row[class_start:class_end])
        }
        metadata = {"row": int(i), "layout": layout.value}
        if layout is OutputLayout.SEGMENT and class_end < rows.shape[1]:
            metadata["mask_coefficients"] = row[class_end:].astype(np.float32)

        detections.append(Detection(
            class_id=class_id,
            class_name=_label(class_id, class_labels),
            confidence=float(confidences[i]),
            bounding_box=box,
            class_scores=scores,
            metadata=metadata,
        ))

    return detections


def non_max_suppression(detections: List[Detection], nms_threshold: float) -> List[Detection]:
    """Greedy NMS over all detections regardless of class.

    Candidates are visited in descending confidence (stable for ties);
    each kept detection discards every remaining candidate whose IoU
    with it exceeds ``nms_threshold``.
    """
    ordered = sorted(detections, key=lambda d: d.confidence, reverse=True)
    kept: List[Detection] = []
    suppressed = [False] * len(ordered)

    for i, candidate in enumerate(ordered):
        if suppressed[i]:
            continue
        kept.append(candidate)
        for j in range(i + 1, len(ordered)):
            if not suppressed[j] and rect_iou(
                candidate.bounding_box, ordered[j].bounding_box
            ) > nms_threshold:
                suppressed[j] = True

    return kept


def _cap(detections: List[Detection], max_candidates: Optional[int]) -> List[Detection]:
    if max_candidates is None or len(detections) <= max_candidates:
        return detections
    logger.warning(
        "Capping %d candidates to %d before NMS.", len(detections), max_candidates
    )
    return sorted(detections, key=lambda d: d.confidence, reverse=True)[:max_candidates]


def decode(
    buffer: Optional[np.ndarray],
    confidence_threshold: float,
    nms_threshold: float,
    image_width: int,
    image_height: int,
    layout: Optional[OutputLayout] = None,
    class_labels: Optional[Sequence[str]] = None,
    max_candidates: Optional[int] = None,
    num_mask_coefficients: int = 32,
) -> List[Detection]:
    """Decode a raw detector buffer into NMS-filtered detections.

    Args:
        buffer: Raw output, expected shape [1, N, C].
        confidence_threshold: Minimum confidence to accept a row.
        nms_threshold: IoU above which a weaker overlapping box is dropped.
        image_width: Source image width (for normalized boxes).
        image_height: Source image height (for normalized boxes).
        layout: Explicit row layout; auto-detected when None.
        class_labels: Optional class names indexed by class id.
        max_candidates: Optional cap on candidates entering NMS.
        num_mask_coefficients: Trailing mask columns in the segment layout.

    Returns:
        Detections sorted by confidence (descending). Empty when the
        buffer is missing or malformed.
    """
    if layout is None and buffer is not None:
        layout = detect_layout(np.asarray(buffer))

    candidates = decode_candidates(
        buffer, confidence_threshold, image_width, image_height,
        layout=layout, class_labels=class_labels,
        num_mask_coefficients=num_mask_coefficients,
    )
    detections = non_max_suppression(_cap(candidates, max_candidates), nms_threshold)

    logger.debug(
        "Decoded %d detections (%s layout, %d candidates, threshold %.2f).",
        len(detections), layout.value if layout else "none",
        len(candidates), confidence_threshold,
    )
    return detections


def decode_per_class(
    buffer: Optional[np.ndarray],
    confidence_threshold: float,
    nms_threshold: float,
    image_width: int,
    image_height: int,
    layout: Optional[OutputLayout] = None,
    class_labels: Optional[Sequence[str]] = None,
    max_per_class: int = 0,
    num_mask_coefficients: int = 32,
    max_candidates: Optional[int] = None,
) -> List[Detection]:
    """Decode with NMS applied independently within each class.

    Classes are emitted in order of first appearance. ``max_per_class``
    of 0 means unlimited; otherwise each class keeps its most confident
    detections, ties broken by original row order. ``max_candidates``
    caps the thresholded candidates across all classes before NMS.
    """
    candidates = decode_candidates(
        buffer, 0.0, image_width, image_height,
        layout=layout, class_labels=class_labels,
        num_mask_coefficients=num_mask_coefficients,
    )

    accepted = _cap(
        [d for d in candidates if d.confidence >= confidence_threshold], max_candidates,
    )
    accepted.sort(key=lambda d: d.metadata.get("row", 0))

    by_class: "OrderedDict[int, List[Detection]]" = OrderedDict()
    for det in accepted:
        by_class.setdefault(det.class_id, []).append(det)

    results: List[Detection] = []
    for class_detections in by_class.values():
        kept = non_max_suppression(class_detections, nms_threshold)
        if max_per_class > 0 and len(kept) > max_per_class:
            kept = sorted(
                kept, key=lambda d: (-d.confidence, d.metadata.get("row", 0))
            )[:max_per_class]
        results.extend(kept)

    logger.debug(
        "Decoded %d detections across %d classes.", len(results), len(by_class)
    )
    return results
