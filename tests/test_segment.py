"""
Tests for segments and pixel-precision overlap.
"""

import numpy as np
import pytest

from mapscene.detection import Detection
from mapscene.geometry import Rect
from mapscene.segment import Segment, mask_iou


def _segment(box, mask=None, name="forest", confidence=0.8):
    det = Detection(class_id=0, class_name=name, confidence=confidence, bounding_box=box)
    return Segment(detection=det, mask=mask)


def test_bounding_box_defaults_to_detection():
    seg = _segment(Rect(1, 2, 3, 4))
    assert seg.bounding_box == Rect(1, 2, 3, 4)
    assert seg.area == pytest.approx(12)


def test_uint8_mask_is_normalised():
    seg = _segment(Rect(0, 0, 4, 4), mask=np.full((4, 4), 255, dtype=np.uint8))

    assert seg.mask.dtype == np.float32
    assert seg.mask.max() == pytest.approx(1.0)
    assert seg.area == 16


def test_mask_iou_half_mask():
    half = np.zeros((10, 10), dtype=np.float32)
    half[:, :5] = 1.0
    a = _segment(Rect(0, 0, 10, 10), mask=half)
    b = _segment(Rect(0, 0, 10, 10), mask=np.ones((10, 10), dtype=np.float32))

    assert mask_iou(a, b) == pytest.approx(0.5)
    assert mask_iou(b, a) == pytest.approx(0.5)


def test_mask_iou_disjoint_boxes():
    a = _segment(Rect(0, 0, 10, 10), mask=np.ones((4, 4)))
    b = _segment(Rect(20, 20, 10, 10), mask=np.ones((4, 4)))
    assert mask_iou(a, b) == 0.0


def test_mask_iou_resolution_independent():
    """Masks of different resolutions framed on the same box agree."""
    a = _segment(Rect(0, 0, 20, 20), mask=np.ones((5, 5)))
    b = _segment(Rect(0, 0, 20, 20), mask=np.ones((40, 40)))
    assert mask_iou(a, b) == pytest.approx(1.0)


def test_overlap_falls_back_to_rect_iou():
    a = _segment(Rect(0, 0, 10, 10), mask=np.ones((10, 10)))
    b = _segment(Rect(5, 5, 10, 10))

    assert a.overlap(b) == pytest.approx(25 / 175)
    assert a.overlaps_with(b, threshold=0.1)
    assert not a.overlaps_with(None)


def test_contains_point_uses_mask():
    left = np.zeros((10, 10), dtype=np.float32)
    left[:, :5] = 1.0
    seg = _segment(Rect(10, 10, 10, 10), mask=left)

    assert seg.contains_point((12, 15))
    assert not seg.contains_point((18, 15))
    assert not seg.contains_point((0, 0))


def test_extract_image_writes_alpha():
    source = np.full((50, 50, 3), 100, dtype=np.uint8)
    seg = _segment(Rect(10, 10, 20, 10), mask=np.ones((5, 5)))

    crop = seg.extract_image(source)

    assert crop.shape == (10, 20, 4)
    assert (crop[:, :, 3] == 255).all()
    assert (crop[:, :, 0] == 100).all()


def test_with_classification_returns_copy():
    seg = _segment(Rect(0, 0, 1, 1))
    terrain = seg.with_classification(True, 12.5)

    assert terrain.is_terrain and not seg.is_terrain
    assert terrain.id == seg.id
    assert terrain.to_dict()["estimated_height"] == 12.5
