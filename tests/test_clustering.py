"""
Tests for grouping, k-means and point redistribution.
"""

import numpy as np
import pytest

from mapscene.analysis import ObjectSegment
from mapscene.clustering import (
    farthest_point_subset,
    feature_adaptive_distribution,
    grid_distribution,
    group_similar_objects,
    kmeans,
    path_aligned_distribution,
    redistribute,
)
from mapscene.detection import Detection
from mapscene.features import ClassificationFeatures
from mapscene.geometry import Rect
from mapscene.segment import Segment


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


def _object(object_type, mask, scale=(1.0, 1.0, 1.0)):
    det = Detection(class_id=0, class_name=object_type, confidence=0.9, bounding_box=Rect(0, 0, 20, 20))
    return ObjectSegment(
        segment=Segment(detection=det, mask=mask),
        object_type=object_type,
        detailed_classification=object_type,
        classification_confidence=0.9,
        features=ClassificationFeatures(),
        normalized_position=(0.5, 0.5),
        estimated_scale=scale,
        estimated_rotation=0.0,
        placement_confidence=0.81,
    )


def _near_identical_masks():
    a = np.ones((20, 20), dtype=np.float32)
    b = a.copy()
    b[0, :] = 0.0  # 380 of 400 pixels: similarity 0.95
    return a, b


def _clusters(rng):
    centers = np.array([[0.2, 0.2], [0.8, 0.2], [0.5, 0.8]])
    return np.vstack([c + rng.normal(0, 0.02, size=(20, 2)) for c in centers])


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------

def test_near_identical_objects_collapse():
    a, b = _near_identical_masks()
    objects = [_object("house", a, (8.0, 6.0, 8.0)), _object("house", b, (10.0, 6.0, 8.0))]

    groups = group_similar_objects(objects, threshold=0.8)

    assert len(groups) == 1
    assert len(groups[0]) == 2
    rep = groups[0].representative()
    assert rep.segment is objects[0].segment
    assert rep.estimated_scale == pytest.approx((9.0, 6.0, 8.0))


def test_grouping_respects_type_and_threshold():
    a, b = _near_identical_masks()

    groups = group_similar_objects([_object("house", a), _object("tree", b)], threshold=0.8)
    assert len(groups) == 2

    groups = group_similar_objects([_object("house", a), _object("house", b)], threshold=0.96)
    assert len(groups) == 2


def test_objects_without_masks_stay_apart():
    groups = group_similar_objects([_object("rock", None), _object("rock", None)])
    assert [len(g) for g in groups] == [1, 1]


def test_group_ids_unique():
    groups = group_similar_objects([_object("rock", None) for _ in range(3)])
    assert len({g.group_id for g in groups}) == 3


# ---------------------------------------------------------------------------
# k-means
# ---------------------------------------------------------------------------

def test_kmeans_finds_clusters(rng):
    points = _clusters(rng)
    result = kmeans(points, 3, rng)

    assert result.centroids.shape == (3, 2)
    assert len(result.labels) == len(points)
    assert len(result.costs) == result.iterations + 1
    for earlier, later in zip(result.costs, result.costs[1:]):
        assert later <= earlier + 1e-9

    expected = np.array([[0.2, 0.2], [0.8, 0.2], [0.5, 0.8]])
    for center in expected:
        assert np.min(np.linalg.norm(result.centroids - center, axis=1)) < 0.05


def test_kmeans_caps_k(rng):
    result = kmeans([[0.1, 0.1], [0.9, 0.9]], 5, rng)
    assert len(result.centroids) <= 2


def test_kmeans_invalid_input(rng):
    with pytest.raises(ValueError):
        kmeans([[0.1, 0.1]], 0, rng)
    with pytest.raises(ValueError):
        kmeans([[0.1, 0.2, 0.3]], 1, rng)

    empty = kmeans([], 3, rng)
    assert empty.centroids.shape == (0, 2)


# ---------------------------------------------------------------------------
# Subsets and strategies
# ---------------------------------------------------------------------------

def test_farthest_point_single_is_nearest_center(rng):
    points = rng.uniform(0, 1, size=(50, 2))
    nearest = points[np.argmin(np.linalg.norm(points - 0.5, axis=1))]

    subset = farthest_point_subset(points, 1)

    assert subset.shape == (1, 2)
    assert np.allclose(subset[0], nearest)


def test_farthest_point_order():
    points = np.array([[0.0, 0.0], [0.5, 0.5], [1.0, 1.0], [0.45, 0.5]])
    subset = farthest_point_subset(points, 2)

    assert np.allclose(subset[0], [0.5, 0.5])
    assert np.allclose(subset[1], [0.0, 0.0]) or np.allclose(subset[1], [1.0, 1.0])
    assert len(farthest_point_subset(points, 10)) == 4


def test_grid_distribution_distinct_cells(rng):
    points = np.array([[0.1, 0.1], [0.12, 0.1], [0.9, 0.9], [0.88, 0.9]])
    snapped = grid_distribution(points, rng, jitter=0.0)

    assert len({tuple(p) for p in snapped}) == 4
    assert set(np.round(snapped.ravel(), 6)) <= {0.25, 0.75}


def test_path_aligned_distribution():
    points = np.array([[0.5, 0.9], [0.1, 0.4]])
    path = np.array([[0.0, 0.5], [1.0, 0.5]])

    aligned = path_aligned_distribution(points, [path])

    assert np.allclose(aligned, [[0.5, 0.5], [0.1, 0.5]])
    assert np.allclose(path_aligned_distribution(points, []), points)


def test_feature_adaptive_respects_mask(rng):
    mask = np.zeros((10, 10), dtype=np.float32)
    mask[:, :5] = 1.0
    region = (Rect(0.0, 0.0, 0.5, 0.5), mask)

    points = feature_adaptive_distribution(30, [region], rng)

    assert len(points) == 30
    assert (points[:, 0] < 0.25).all()
    assert (points[:, 1] <= 0.5).all()
    assert len(feature_adaptive_distribution(5, [], rng)) == 0


# ---------------------------------------------------------------------------
# Redistribution
# ---------------------------------------------------------------------------

def test_redistribute_upsamples_each_type(rng):
    points = {
        "tree": rng.uniform(0, 1, size=(5, 2)),
        "house": rng.uniform(0, 1, size=(2, 2)),
    }

    out = redistribute(points, 2.0, "grid", rng)

    assert list(out) == ["tree", "house"]
    assert len(out["tree"]) == 10
    assert len(out["house"]) == 4
    assert ((out["tree"] >= 0) & (out["tree"] <= 1)).all()


def test_redistribute_path_aligned(rng):
    points = {"fence": np.array([[0.2, 0.5], [0.8, 0.5]])}
    path = np.array([[0.0, 0.5], [1.0, 0.5]])

    out = redistribute(points, 3.0, "path_aligned", rng, paths=[path])["fence"]

    assert len(out) == 6
    assert np.allclose(out[:, 1], 0.5)


def test_redistribute_feature_adaptive_per_type(rng):
    points = {"tree": np.array([[0.1, 0.1], [0.2, 0.2]])}
    regions = {"tree": [(Rect(0.0, 0.0, 0.3, 0.3), None)]}

    out = redistribute(points, 2.5, "feature_adaptive", rng, regions=regions)["tree"]

    assert len(out) == 5
    assert (out <= 0.3).all()


def test_redistribute_downsamples(rng):
    pts = _clusters(rng)

    farthest = redistribute({"rock": pts}, 0.05, "grid", rng)["rock"]
    assert len(farthest) == 3
    for p in farthest:
        assert np.any(np.all(np.isclose(pts, p), axis=1))

    centroids = redistribute({"rock": pts}, 0.05, "grid", rng, downsample="kmeans")["rock"]
    assert len(centroids) == 3


def test_redistribute_edge_cases(rng):
    pts = np.array([[0.1, 0.1], [0.9, 0.9]])

    assert len(redistribute({"a": pts}, 0.0, "grid", rng)["a"]) == 0
    assert np.allclose(redistribute({"a": pts}, 1.0, "grid", rng)["a"], pts)
    assert len(redistribute({"a": np.empty((0, 2))}, 4.0, "grid", rng)["a"]) == 0

    with pytest.raises(ValueError):
        redistribute({"a": pts}, 2.0, "spiral", rng)
    with pytest.raises(ValueError):
        redistribute({"a": pts}, -1.0, "grid", rng)
    with pytest.raises(ValueError):
        redistribute({"a": pts}, 0.5, "grid", rng, downsample="random")
