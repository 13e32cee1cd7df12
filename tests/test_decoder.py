"""
Tests for the detector-output decoder.
"""

import logging

import numpy as np
import pytest

from mapscene.decoder import (
    OutputLayout,
    decode,
    decode_candidates,
    decode_per_class,
    detect_layout,
    non_max_suppression,
)
from mapscene.detection import Detection
from mapscene.geometry import Rect


def _buffer(rows, cols):
    """Build a [1, len(rows), cols] buffer from (box, {col: value}) pairs."""
    buf = np.zeros((1, len(rows), cols), dtype=np.float32)
    for i, (box, values) in enumerate(rows):
        buf[0, i, :4] = box
        for col, value in values.items():
            buf[0, i, col] = value
    return buf


def test_decode_detect_layout():
    """Row 0 scores 0.9 at class 3 with a normalized box."""
    buf = _buffer([((0.5, 0.5, 0.2, 0.2), {4 + 3: 0.9})], 85)
    buf = np.concatenate([buf, np.zeros((1, 1, 85), dtype=np.float32)], axis=1)

    detections = decode(buf, 0.5, 0.45, 640, 480)

    assert len(detections) == 1
    det = detections[0]
    assert det.class_id == 3
    assert det.confidence == pytest.approx(0.9, abs=1e-5)
    assert det.bounding_box.x == pytest.approx(256, abs=1)
    assert det.bounding_box.y == pytest.approx(192, abs=1)
    assert det.bounding_box.width == pytest.approx(128, abs=1)
    assert det.bounding_box.height == pytest.approx(96, abs=1)


def test_confidence_floor():
    buf = _buffer([
        ((0.5, 0.5, 0.2, 0.2), {4: 0.5}),
        ((0.2, 0.2, 0.1, 0.1), {4: 0.49}),
    ], 85)

    detections = decode(buf, 0.5, 0.45, 100, 100)

    assert len(detections) == 1
    assert detections[0].confidence >= 0.5


def test_detect_layout_thresholds():
    assert detect_layout(np.zeros((1, 3, 116))) is OutputLayout.SEGMENT
    assert detect_layout(np.zeros((1, 3, 100))) is OutputLayout.SEGMENT
    assert detect_layout(np.zeros((1, 3, 85))) is OutputLayout.DETECT
    assert detect_layout(np.zeros((1, 3, 86))) is OutputLayout.DETECT
    assert detect_layout(np.zeros((1, 3, 10))) is OutputLayout.GENERIC
    assert detect_layout(np.zeros((3, 10))) is None


def _pixel_det(box, confidence, class_id=0):
    return Detection(
        class_id=class_id,
        class_name=f"class_{class_id}",
        confidence=confidence,
        bounding_box=box,
    )


def test_nms_threshold_behavior():
    a = _pixel_det(Rect(0, 0, 10, 10), 0.9)
    b = _pixel_det(Rect(5, 5, 10, 10), 0.8)

    assert len(non_max_suppression([a, b], 0.3)) == 2

    kept = non_max_suppression([b, a], 0.1)
    assert kept == [a]


def test_nms_idempotent_and_sorted():
    dets = [
        _pixel_det(Rect(0, 0, 10, 10), 0.7),
        _pixel_det(Rect(1, 1, 10, 10), 0.9),
        _pixel_det(Rect(40, 40, 10, 10), 0.8),
        _pixel_det(Rect(2, 0, 10, 10), 0.6),
    ]

    once = non_max_suppression(dets, 0.45)
    twice = non_max_suppression(once, 0.45)

    assert once == twice
    assert [d.confidence for d in once] == [0.9, 0.8]


@pytest.mark.parametrize("buffer", [
    None,
    np.zeros((4, 85), dtype=np.float32),
    np.zeros((2, 4, 85), dtype=np.float32),
])
def test_malformed_buffer_logs_error(buffer, caplog):
    with caplog.at_level(logging.ERROR, logger="mapscene.decoder"):
        detections = decode(buffer, 0.5, 0.45, 640, 480)

    assert detections == []
    assert any(r.levelno == logging.ERROR for r in caplog.records)


def test_max_candidates_cap(caplog):
    rows = [((0.1 * i + 0.05, 0.5, 0.04, 0.04), {4: 0.5 + 0.04 * i}) for i in range(10)]
    buf = _buffer(rows, 85)

    with caplog.at_level(logging.WARNING, logger="mapscene.decoder"):
        detections = decode(buf, 0.1, 0.45, 100, 100, max_candidates=3)

    assert len(detections) == 3
    assert detections[0].confidence == pytest.approx(0.86, abs=1e-5)
    assert "Capping" in caplog.text


def test_max_candidates_cap_per_class(caplog):
    # Alternating classes, confidence rising with the row index
    rows = [
        ((0.1 * i + 0.05, 0.5, 0.04, 0.04), {4 + i % 2: 0.5 + 0.04 * i}) for i in range(10)
    ]
    buf = _buffer(rows, 85)

    with caplog.at_level(logging.WARNING, logger="mapscene.decoder"):
        detections = decode_per_class(buf, 0.1, 0.45, 100, 100, max_candidates=4)

    assert [d.class_id for d in detections] == [0, 0, 1, 1]
    assert [d.metadata["row"] for d in detections] == [8, 6, 9, 7]
    assert "Capping" in caplog.text


def test_pixel_space_boxes_are_kept():
    buf = _buffer([((50, 40, 20, 10), {4: 0.9})], 85)

    det = decode(buf, 0.5, 0.45, 640, 480)[0]
    assert det.bounding_box == Rect(40, 35, 20, 10)


def test_class_labels_and_scores():
    buf = _buffer([((0.5, 0.5, 0.2, 0.2), {4: 0.2, 5: 0.7})], 85)
    labels = ["water", "forest"] + [f"c{i}" for i in range(79)]

    det = decode(buf, 0.5, 0.45, 100, 100, class_labels=labels)[0]

    assert det.class_name == "forest"
    assert det.class_scores["water"] == pytest.approx(0.2, abs=1e-5)
    assert det.metadata["layout"] == "detect"


def test_generic_layout_with_objectness():
    # Column 4 averages into [0, 1]: objectness, classes from column 5.
    buf = _buffer([((0.5, 0.5, 0.2, 0.2), {4: 0.8, 6: 0.9})], 8)

    det = decode(buf, 0.5, 0.45, 100, 100)[0]

    assert det.class_id == 1
    assert det.confidence == pytest.approx(0.72, abs=1e-5)


def test_generic_layout_without_objectness():
    # Column 4 is far outside [0, 1]: class scores start at column 4.
    buf = _buffer([((0.5, 0.5, 0.2, 0.2), {4: 5.0, 5: 0.0})], 6)

    det = decode(buf, 0.5, 0.45, 100, 100)[0]

    assert det.class_id == 0
    assert det.confidence == pytest.approx(1.0)


def test_explicit_detect_v2_layout():
    buf = _buffer([((0.5, 0.5, 0.2, 0.2), {4: 0.5, 5: 0.9, 7: 0.8})], 86)

    det = decode(buf, 0.3, 0.45, 100, 100, layout=OutputLayout.DETECT_V2)[0]

    assert det.class_id == 1
    assert det.confidence == pytest.approx(0.4, abs=1e-5)


def test_segment_layout_carries_mask_coefficients():
    cols = 4 + 80 + 32
    buf = _buffer([((0.5, 0.5, 0.2, 0.2), {4 + 2: 0.9, 4 + 80: 1.5})], cols)

    det = decode(buf, 0.5, 0.45, 100, 100)[0]

    assert det.class_id == 2
    coeffs = det.metadata["mask_coefficients"]
    assert coeffs.shape == (32,)
    assert coeffs[0] == pytest.approx(1.5)
    assert len(det.class_scores) == 80


def test_decode_candidates_records_rows():
    buf = _buffer([
        ((0.5, 0.5, 0.2, 0.2), {4: 0.1}),
        ((0.5, 0.5, 0.2, 0.2), {4: 0.9}),
    ], 85)

    candidates = decode_candidates(buf, 0.5, 100, 100)
    assert [c.metadata["row"] for c in candidates] == [1]


def test_per_class_nms_keeps_overlapping_classes():
    # Same box, two classes: global NMS keeps one, per-class keeps both.
    buf = _buffer([
        ((0.5, 0.5, 0.2, 0.2), {4: 0.9}),
        ((0.5, 0.5, 0.2, 0.2), {5: 0.8}),
        ((0.51, 0.5, 0.2, 0.2), {4: 0.7}),
    ], 85)

    assert len(decode(buf, 0.5, 0.45, 100, 100)) == 1

    per_class = decode_per_class(buf, 0.5, 0.45, 100, 100)
    assert [d.class_id for d in per_class] == [0, 1]


def test_per_class_cap():
    rows = [((0.1 * i + 0.05, 0.5, 0.04, 0.04), {4: 0.5 + 0.04 * i}) for i in range(5)]
    buf = _buffer(rows, 85)

    kept = decode_per_class(buf, 0.1, 0.45, 100, 100, max_per_class=2)

    assert len(kept) == 2
    assert [round(d.confidence, 2) for d in kept] == [0.66, 0.62]
