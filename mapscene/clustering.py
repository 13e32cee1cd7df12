"""
Clustering and spatial distribution of analyzed objects.

Responsibility:
    Group near-duplicate objects for instancing, cluster and subsample
    placement points, and regenerate per-type point sets to hit a target
    density. Points are normalised (x, y) coordinates in the unit square.

Non-goals:
    - No I/O, no collaborator calls, no logging of per-point detail.
    - No knowledge of the scene engine that consumes the points.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from mapscene.analysis import ObjectGrouping, ObjectSegment
from mapscene.geometry import Rect
from mapscene.image import MASK_THRESHOLD, mask_alpha
from mapscene.masks import mask_similarity

logger = logging.getLogger(__name__)

MaskSimilarity = Callable[[Optional[np.ndarray], Optional[np.ndarray]], float]

# (normalised box, optional box-framed mask)
Region = Tuple[Rect, Optional[np.ndarray]]

STRATEGIES = ("grid", "path_aligned", "feature_adaptive")
DOWNSAMPLERS = ("farthest", "kmeans")

_UNIT_CENTER = np.array([0.5, 0.5])


# ---------------------------------------------------------------------------
# Similarity grouping
# ---------------------------------------------------------------------------

def group_similar_objects(
    objects: Sequence[ObjectSegment],
    threshold: float = 0.8,
    similarity: MaskSimilarity = mask_similarity,
) -> List[ObjectGrouping]:
    """Single-pass, seed-based grouping of same-type objects.

    Each unclaimed object seeds a group; every later unclaimed object of
    the same coarse type whose mask similarity to the seed exceeds
    ``threshold`` joins it. Groups and their members keep input order.
    """
    claimed = [False] * len(objects)
    groups: List[ObjectGrouping] = []

    for i, seed in enumerate(objects):
        if claimed[i]:
            continue
        claimed[i] = True
        group = ObjectGrouping(uuid.uuid4().hex, seed.object_type, [seed])

        for j in range(i + 1, len(objects)):
            candidate = objects[j]
            if claimed[j] or candidate.object_type != seed.object_type:
                continue
            if similarity(seed.mask, candidate.mask) > threshold:
                claimed[j] = True
                group.segments.append(candidate)

        groups.append(group)

    logger.debug("Grouped %d objects into %d groups.", len(objects), len(groups))
    return groups


# ---------------------------------------------------------------------------
# k-means
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class KMeansResult:
    """Outcome of a k-means run.

    Attributes:
        centroids: (k', 2) array, k' <= k.
        labels: Centroid index per input point, for the final centroids.
        costs: Sum of squared distances after each assignment step; the
            last entry is for the final centroids.
        iterations: Number of update steps performed.
    """

    centroids: np.ndarray
    labels: np.ndarray
    costs: List[float]
    iterations: int


def _as_points(points) -> np.ndarray:
    arr = np.asarray(points, dtype=np.float64)
    if arr.size == 0:
        return np.empty((0, 2), dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValueError(f"points must have shape (N, 2), got {arr.shape}")
    return arr


def _squared_distances(points: np.ndarray, centers: np.ndarray) -> np.ndarray:
    diff = points[:, None, :] - centers[None, :, :]
    return np.einsum("ijk,ijk->ij", diff, diff)


def _assign(points: np.ndarray, centroids: np.ndarray) -> Tuple[np.ndarray, float]:
    d2 = _squared_distances(points, centroids)
    labels = np.argmin(d2, axis=1)
    cost = float(d2[np.arange(len(points)), labels].sum())
    return labels, cost


def _seed_centroids(points: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """First seed uniformly at random, the rest by farthest-point."""
    chosen = [int(rng.integers(len(points)))]
    min_d2 = _squared_distances(points, points[chosen]).ravel()
    while len(chosen) < k:
        nxt = int(np.argmax(min_d2))
        chosen.append(nxt)
        min_d2 = np.minimum(min_d2, _squared_distances(points, points[[nxt]]).ravel())
    return points[chosen].copy()


def kmeans(
    points,
    k: int,
    rng: np.random.Generator,
    max_iterations: int = 10,
    epsilon: float = 1e-4,
) -> KMeansResult:
    """Lloyd's k-means with farthest-point seeding.

    Empty clusters keep their previous centroid. Iteration stops once no
    centroid moves more than ``epsilon`` or after ``max_iterations``.

    Raises:
        ValueError: If k < 1 or the points are not (N, 2).
    """
    if k < 1:
        raise ValueError(f"k must be >= 1, got {k}.")
    pts = _as_points(points)
    if len(pts) == 0:
        return KMeansResult(np.empty((0, 2)), np.empty(0, dtype=np.intp), [], 0)

    centroids = _seed_centroids(pts, min(k, len(pts)), rng)
    costs: List[float] = []
    iterations = 0

    for _ in range(max_iterations):
        labels, cost = _assign(pts, centroids)
        costs.append(cost)

        updated = centroids.copy()
        for c in range(len(centroids)):
            members = pts[labels == c]
            if len(members):
                updated[c] = members.mean(axis=0)

        shift = float(np.max(np.linalg.norm(updated - centroids, axis=1)))
        centroids = updated
        iterations += 1
        if shift <= epsilon:
            break

    labels, cost = _assign(pts, centroids)
    costs.append(cost)
    return KMeansResult(centroids, labels, costs, iterations)


# ---------------------------------------------------------------------------
# Subset selection and generation strategies
# ---------------------------------------------------------------------------

def farthest_point_subset(points, count: int) -> np.ndarray:
    """Spread-out subset of ``points`` in selection order.

    Starts from the point nearest the unit-square centre, then repeatedly
    adds the candidate with the largest minimum distance to the selection.
    """
    pts = _as_points(points)
    count = min(max(count, 0), len(pts))
    if count == 0:
        return np.empty((0, 2), dtype=np.float64)

    first = int(np.argmin(np.linalg.norm(pts - _UNIT_CENTER, axis=1)))
    selected = [first]
    min_d = np.linalg.norm(pts - pts[first], axis=1)
    min_d[first] = -1.0

    while len(selected) < count:
        nxt = int(np.argmax(min_d))
        selected.append(nxt)
        min_d = np.minimum(min_d, np.linalg.norm(pts - pts[nxt], axis=1))
        min_d[selected] = -1.0

    return pts[selected].copy()


def grid_distribution(points, rng: np.random.Generator, jitter: float = 0.1) -> np.ndarray:
    """Snap points to distinct cells of a uniform grid sized for their count.

    Each point, in order, takes the nearest free cell centre; ``jitter``
    is a fraction of the cell size. Output is clipped to [0, 1].
    """
    pts = _as_points(points)
    n = len(pts)
    if n == 0:
        return pts.copy()

    side = math.ceil(math.sqrt(n))
    cell = 1.0 / side
    axis = (np.arange(side) + 0.5) * cell
    gx, gy = np.meshgrid(axis, axis)
    cells = np.column_stack([gx.ravel(), gy.ravel()])
    free = np.ones(len(cells), dtype=bool)

    snapped = np.empty_like(pts)
    for i, p in enumerate(pts):
        d = np.linalg.norm(cells - p, axis=1)
        d[~free] = np.inf
        j = int(np.argmin(d))
        free[j] = False
        snapped[i] = cells[j]

    if jitter > 0:
        snapped += rng.uniform(-jitter, jitter, size=snapped.shape) * cell
    return np.clip(snapped, 0.0, 1.0)


def project_to_segment(point: np.ndarray, a: np.ndarray, b: np.ndarray) -> Tuple[np.ndarray, float]:
    """Closest point on segment ab to ``point`` and its distance."""
    ab = b - a
    denom = float(np.dot(ab, ab))
    if denom == 0.0:
        closest = a
    else:
        t = float(np.clip(np.dot(point - a, ab) / denom, 0.0, 1.0))
        closest = a + t * ab
    return closest, float(np.linalg.norm(point - closest))


def path_aligned_distribution(points, paths: Sequence) -> np.ndarray:
    """Move every point onto its nearest path segment.

    ``paths`` is a sequence of polylines, each an (M, 2) array. A
    single-vertex polyline acts as a point. Without paths the points are
    returned unchanged.
    """
    pts = _as_points(points)
    polylines = [np.asarray(p, dtype=np.float64).reshape(-1, 2) for p in paths]
    polylines = [p for p in polylines if len(p)]
    if not polylines:
        return pts.copy()

    segments = []
    for line in polylines:
        if len(line) == 1:
            segments.append((line[0], line[0]))
        else:
            segments.extend(zip(line[:-1], line[1:]))

    out = np.empty_like(pts)
    for i, p in enumerate(pts):
        best, best_d = p, math.inf
        for a, b in segments:
            closest, d = project_to_segment(p, a, b)
            if d < best_d:
                best, best_d = closest, d
        out[i] = best
    return out


def _inside(region: Region, point: np.ndarray) -> bool:
    box, mask = region
    if mask is None:
        return True
    alpha = mask_alpha(mask)
    h, w = alpha.shape
    u = (point[0] - box.x) / box.width if box.width > 0 else 0.0
    v = (point[1] - box.y) / box.height if box.height > 0 else 0.0
    px = min(max(int(math.floor(u * w)), 0), w - 1)
    py = min(max(int(math.floor(v * h)), 0), h - 1)
    return bool(alpha[py, px] > MASK_THRESHOLD)


def feature_adaptive_distribution(
    count: int,
    regions: Sequence[Region],
    rng: np.random.Generator,
    max_attempts_per_point: int = 20,
) -> np.ndarray:
    """Rejection-sample points inside region boxes and their masks.

    Regions are chosen in proportion to box area. Sampling stops after
    ``count * max_attempts_per_point`` attempts, so fewer than ``count``
    points may be returned.
    """
    usable = [r for r in regions if r[0].area > 0]
    if count <= 0 or not usable:
        return np.empty((0, 2), dtype=np.float64)

    areas = np.array([r[0].area for r in usable], dtype=np.float64)
    weights = areas / areas.sum()
    accepted: List[np.ndarray] = []

    for _ in range(count * max_attempts_per_point):
        region = usable[int(rng.choice(len(usable), p=weights))]
        box = region[0]
        p = np.array([
            rng.uniform(box.x, box.x_max),
            rng.uniform(box.y, box.y_max),
        ])
        if _inside(region, p):
            accepted.append(np.clip(p, 0.0, 1.0))
            if len(accepted) == count:
                break

    if len(accepted) < count:
        logger.debug("Feature-adaptive sampling placed %d of %d points.", len(accepted), count)
    if not accepted:
        return np.empty((0, 2), dtype=np.float64)
    return np.vstack(accepted)


# ---------------------------------------------------------------------------
# Density redistribution
# ---------------------------------------------------------------------------

def _jittered_copies(pts: np.ndarray, count: int, rng: np.random.Generator, spread: float) -> np.ndarray:
    if count <= 0:
        return np.empty((0, 2), dtype=np.float64)
    picks = pts[rng.integers(len(pts), size=count)]
    return np.clip(picks + rng.normal(0.0, spread, size=picks.shape), 0.0, 1.0)


def _upsample(
    pts: np.ndarray,
    target: int,
    strategy: str,
    rng: np.random.Generator,
    paths: Sequence,
    regions: Sequence[Region],
    spread: float,
) -> np.ndarray:
    extra = target - len(pts)
    if strategy == "grid":
        combined = np.vstack([pts, _jittered_copies(pts, extra, rng, spread)])
        return grid_distribution(combined, rng)
    if strategy == "path_aligned":
        added = path_aligned_distribution(_jittered_copies(pts, extra, rng, spread), paths)
        return np.vstack([pts, added])

    added = feature_adaptive_distribution(extra, regions, rng)
    shortfall = extra - len(added)
    if shortfall > 0:
        added = np.vstack([added, _jittered_copies(pts, shortfall, rng, spread)])
    return np.vstack([pts, added])


def redistribute(
    points_by_type: Dict[str, np.ndarray],
    density_multiplier: float,
    strategy: str,
    rng: np.random.Generator,
    paths: Sequence = (),
    regions: Union[Sequence[Region], Mapping[str, Sequence[Region]]] = (),
    downsample: str = "farthest",
    spread: float = 0.02,
) -> Dict[str, np.ndarray]:
    """Resample each type's points to ``round(n * density_multiplier)``.

    Downsampling keeps a farthest-point subset or k-means centroids;
    upsampling adds points with the selected generation strategy. Types
    are processed independently and keep their keys and order. ``regions``
    may be shared by all types or keyed by type.

    Raises:
        ValueError: On an unknown strategy or downsampler, or a negative
            multiplier.
    """
    if strategy not in STRATEGIES:
        raise ValueError(f"Unknown distribution strategy '{strategy}'. Must be one of {STRATEGIES}.")
    if downsample not in DOWNSAMPLERS:
        raise ValueError(f"Unknown downsampler '{downsample}'. Must be one of {DOWNSAMPLERS}.")
    if density_multiplier < 0:
        raise ValueError(f"density_multiplier must be >= 0, got {density_multiplier}.")

    result: Dict[str, np.ndarray] = {}
    for object_type, points in points_by_type.items():
        pts = _as_points(points)
        n = len(pts)
        target = int(round(n * density_multiplier))

        if n == 0 or target == n:
            result[object_type] = pts.copy()
        elif target == 0:
            result[object_type] = np.empty((0, 2), dtype=np.float64)
        elif target < n:
            if downsample == "kmeans":
                result[object_type] = kmeans(pts, target, rng).centroids
            else:
                result[object_type] = farthest_point_subset(pts, target)
        else:
            if isinstance(regions, Mapping):
                type_regions = regions.get(object_type, ())
            else:
                type_regions = regions
            result[object_type] = _upsample(pts, target, strategy, rng, paths, type_regions, spread)

        logger.debug("Redistributed '%s': %d -> %d points.", object_type, n, len(result[object_type]))

    return result
