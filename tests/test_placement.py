"""
Tests for object placement heuristics and appearance features.
"""

import numpy as np
import pytest

from mapscene.features import ClassificationFeatures, compute_classification_features
from mapscene.geometry import Rect
from mapscene.placement import (
    DEFAULT_BASE_SIZE,
    aspect_ratio_rotation,
    estimate_placement,
    estimate_scale,
    mask_axis_rotation,
)


@pytest.fixture
def rng():
    return np.random.default_rng(42)


def test_scale_follows_aspect_ratio():
    assert estimate_scale("house", Rect(0, 0, 20, 10)) == pytest.approx((16.0, 6.0, 8.0))
    assert estimate_scale("house", Rect(0, 0, 10, 20)) == pytest.approx((8.0, 6.0, 16.0))
    assert estimate_scale("flying saucer", Rect(0, 0, 5, 5)) == DEFAULT_BASE_SIZE


def test_scale_of_zero_width_box_is_base_size():
    assert estimate_scale("house", Rect(0, 0, 0, 20)) == pytest.approx((8.0, 6.0, 8.0))


def test_aspect_ratio_rotation(rng):
    assert aspect_ratio_rotation(Rect(0, 0, 30, 10), None, rng) == 0.0
    assert aspect_ratio_rotation(Rect(0, 0, 10, 30), None, rng) == 90.0

    angle = aspect_ratio_rotation(Rect(0, 0, 10, 10), None, rng)
    assert 0.0 <= angle < 360.0


def test_mask_axis_rotation(rng):
    diagonal = np.eye(20, dtype=np.float32)
    assert mask_axis_rotation(Rect(0, 0, 10, 10), diagonal, rng) == pytest.approx(45.0, abs=1e-3)
    assert mask_axis_rotation(Rect(0, 0, 30, 10), None, rng) == 0.0


def test_estimate_placement(rng):
    placement = estimate_placement(
        "tower", Rect(256, 192, 128, 96), None, 640, 480,
        detection_confidence=0.9, classification_confidence=0.5, rng=rng,
    )

    assert placement.normalized_position == pytest.approx((0.5, 0.5))
    assert placement.placement_confidence == pytest.approx(0.45)
    assert placement.estimated_scale[1] == 20.0
    assert 0.0 <= placement.estimated_rotation < 360.0


def test_uniform_crop_features():
    crop = np.full((32, 32, 4), 120, dtype=np.uint8)
    crop[:, :, 3] = 255

    features = compute_classification_features(crop)

    assert features.density == pytest.approx(1.0)
    assert features.symmetry == pytest.approx(1.0)
    assert features.texture_variance == pytest.approx(0.0)
    assert features.edge_density == 0.0
    assert features.contrast == 0.0
    assert features.pattern_regularity == 0.0


def test_masked_crop_density():
    crop = np.full((10, 10, 4), 50, dtype=np.uint8)
    crop[:, 5:, 3] = 0
    crop[:, :5, 3] = 255

    assert compute_classification_features(crop).density == pytest.approx(0.5)


def test_features_are_bounded():
    crop = np.random.default_rng(3).integers(0, 256, (24, 40, 4), dtype=np.uint8)
    vector = compute_classification_features(crop).to_vector()

    assert vector.shape == (8,)
    assert (vector >= 0.0).all() and (vector <= 1.0).all()


def test_empty_crop_features():
    assert compute_classification_features(None) == ClassificationFeatures()
