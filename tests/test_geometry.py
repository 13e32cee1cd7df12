"""
Tests for rectangle geometry.
"""

import pytest

from mapscene.geometry import Rect, distance, rect_iou


def test_iou_partial_overlap():
    """Two 10x10 boxes offset by 5 share a quarter of each."""
    a = Rect(0, 0, 10, 10)
    b = Rect(5, 5, 10, 10)

    assert rect_iou(a, b) == pytest.approx(25 / 175)
    assert rect_iou(a, b) == pytest.approx(rect_iou(b, a))


def test_iou_bounds():
    a = Rect(0, 0, 10, 10)

    assert rect_iou(a, a) == pytest.approx(1.0)
    assert rect_iou(a, Rect(20, 20, 5, 5)) == 0.0
    assert rect_iou(Rect(0, 0, 0, 0), Rect(0, 0, 0, 0)) == 0.0


def test_rect_rejects_negative_size():
    with pytest.raises(ValueError):
        Rect(0, 0, -1, 5)


def test_union_and_intersection():
    a = Rect(0, 0, 10, 10)
    b = Rect(5, 5, 10, 10)

    assert a.union(b) == Rect(0, 0, 15, 15)
    assert a.intersection(b) == Rect(5, 5, 5, 5)
    assert a.intersection(Rect(50, 50, 1, 1)).area == 0
    assert a.union(b).contains(a)


def test_clamp_and_normalize():
    clamped = Rect(-10, -10, 40, 40).clamp_to(20, 20)
    assert clamped == Rect(0, 0, 20, 20)

    norm = Rect(64, 48, 128, 96).normalized(640, 480)
    assert norm.x == pytest.approx(0.1)
    assert norm.height == pytest.approx(0.2)


def test_contains_point_half_open():
    r = Rect(0, 0, 10, 10)
    assert r.contains_point((0, 0))
    assert not r.contains_point((10, 5))


def test_distance():
    assert distance((0, 0), (3, 4)) == pytest.approx(5.0)
