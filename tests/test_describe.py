"""
Tests for rule-based and enhanced descriptions.
"""

import logging
import time

import numpy as np
import pytest

from mapscene.analysis import ObjectSegment, TerrainSegment
from mapscene.describe import basic_description, build_prompt_payload, enhance_description
from mapscene.detection import Detection
from mapscene.features import ClassificationFeatures, TopologyFeatures
from mapscene.geometry import Rect
from mapscene.segment import Segment


def _segment(name, box):
    return Segment(detection=Detection(class_id=0, class_name=name, confidence=0.9, bounding_box=box))


def _terrain(box, detail="forest"):
    return TerrainSegment(
        segment=_segment("forest", box),
        object_type="forest",
        detailed_classification=detail,
        classification_confidence=0.9,
        features=ClassificationFeatures(),
        height_map=np.zeros((4, 4), dtype=np.float32),
        estimated_height=3.0,
        topology=TopologyFeatures(),
    )


def _object(box):
    return ObjectSegment(
        segment=_segment("house", box),
        object_type="house",
        detailed_classification="house",
        classification_confidence=0.9,
        features=ClassificationFeatures(),
        normalized_position=(0.5, 0.5),
        estimated_scale=(8.0, 6.0, 8.0),
        estimated_rotation=0.0,
        placement_confidence=0.81,
    )


def test_basic_terrain_description():
    text = basic_description(_terrain(Rect(0, 0, 60, 60)), 200, 200)
    assert text == "A medium-sized forest terrain feature on the left of the top of the map."


def test_basic_object_description():
    text = basic_description(_object(Rect(140, 140, 10, 10)), 200, 200)
    assert text == "A small house on the right of the bottom of the map."

    text = basic_description(_object(Rect(0, 0, 200, 200)), 200, 200)
    assert text == "A very large house in the center of the middle of the map."


def test_prompt_payload():
    terrain = build_prompt_payload(_terrain(Rect(0, 0, 10, 10)), "basic")
    assert terrain["segment_type"] == "terrain"
    assert terrain["height"] == 3.0
    assert "topology" in terrain
    assert terrain["basic_description"] == "basic"

    obj = build_prompt_payload(_object(Rect(0, 0, 10, 10)))
    assert obj["segment_type"] == "object"
    assert obj["height"] == 6.0
    assert obj["scale"] == [8.0, 6.0, 8.0]
    assert len(obj["features"]) == 8


def test_enhancer_text_is_stripped():
    assert enhance_description(lambda p: "  A red barn. ", {"label": "house"}, 1.0) == "A red barn."


@pytest.mark.parametrize("enhancer, expected_log", [
    (None, "No description enhancer"),
    (lambda p: 42, "expected str"),
])
def test_enhancer_unusable(enhancer, expected_log, caplog):
    with caplog.at_level(logging.WARNING, logger="mapscene.describe"):
        assert enhance_description(enhancer, {"label": "house"}, 1.0) == ""
    assert expected_log in caplog.text


def test_enhancer_failure(caplog):
    def broken(payload):
        raise ConnectionError("service down")

    with caplog.at_level(logging.WARNING, logger="mapscene.describe"):
        assert enhance_description(broken, {"label": "house"}, 1.0) == ""
    assert "service down" in caplog.text


def test_enhancer_timeout(caplog):
    def slow(payload):
        time.sleep(0.5)
        return "too late"

    start = time.perf_counter()
    with caplog.at_level(logging.WARNING, logger="mapscene.describe"):
        assert enhance_description(slow, {"label": "house"}, 0.05) == ""

    assert time.perf_counter() - start < 0.4
    assert "timed out" in caplog.text
