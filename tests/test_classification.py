"""
Tests for the two-stage classifier logic.
"""

import logging

import numpy as np
import pytest

from mapscene.classification import (
    OBJECT_DETAIL_NAMES,
    TERRAIN_DETAIL_NAMES,
    UNKNOWN_OBJECT,
    UNKNOWN_TERRAIN,
    classify_detail,
    classify_terrain,
    is_terrain_label,
)

CROP = np.zeros((8, 8, 4), dtype=np.uint8)


def _fixed(scores):
    return lambda crop: np.array(scores, dtype=np.float32)


def _failing(crop):
    raise RuntimeError("model offline")


def test_keyword_fallback():
    assert classify_terrain(None, "lake", 0.7) == (True, 0.7)
    assert classify_terrain(CROP, "Snowy Mountain", 0.6) == (True, 0.6)
    assert classify_terrain(CROP, "house", 0.7) == (False, 0.7)
    assert not is_terrain_label("lighthouse")


def test_classifier_scores_decide():
    is_terrain, confidence = classify_terrain(CROP, "house", 0.4, _fixed([0.8, 0.2]))
    assert is_terrain is True
    assert confidence == pytest.approx(0.8)

    is_terrain, confidence = classify_terrain(CROP, "lake", 0.4, _fixed([0.3, 0.6]))
    assert is_terrain is False
    assert confidence == pytest.approx(0.6)


def test_classifier_tie_is_object():
    is_terrain, _ = classify_terrain(CROP, "lake", 0.4, _fixed([0.5, 0.5]))
    assert is_terrain is False


def test_failing_classifier_falls_back(caplog):
    with caplog.at_level(logging.WARNING, logger="mapscene.classification"):
        result = classify_terrain(CROP, "forest", 0.55, _failing)

    assert result == (True, 0.55)
    assert "model offline" in caplog.text


def test_single_score_falls_back(caplog):
    with caplog.at_level(logging.WARNING, logger="mapscene.classification"):
        result = classify_terrain(CROP, "house", 0.5, _fixed([0.9]))
    assert result == (False, 0.5)
    assert "expected 2" in caplog.text


def test_detail_lookup():
    scores = np.zeros(len(TERRAIN_DETAIL_NAMES))
    scores[4] = 0.9
    label, score = classify_detail(CROP, True, "land", _fixed(scores))
    assert label == TERRAIN_DETAIL_NAMES[4] == "mountain"
    assert score == pytest.approx(0.9)

    label, _ = classify_detail(CROP, False, "thing", _fixed([0.9, 0.1]))
    assert label == OBJECT_DETAIL_NAMES[0]


def test_detail_index_out_of_range():
    scores = np.zeros(40)
    scores[30] = 1.0

    assert classify_detail(CROP, True, "x", _fixed(scores))[0] == UNKNOWN_TERRAIN
    assert classify_detail(CROP, False, "x", _fixed(scores))[0] == UNKNOWN_OBJECT


def test_detail_without_classifier_keeps_label():
    assert classify_detail(CROP, False, "house", None) == ("house", None)
    assert classify_detail(CROP, False, "house", _failing) == ("house", None)
