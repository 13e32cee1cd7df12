"""
Tests for the configuration module.
"""

import pytest

from mapscene.config import (
    AppConfig,
    ClusteringConfig,
    DetectionConfig,
    ModelConfig,
    PipelineConfig,
    TerrainConfig,
    load_config,
    validate_config,
)


def test_load_defaults():
    """Test loading configuration without any file."""
    config = load_config(None)
    assert isinstance(config, AppConfig)
    assert config.model.backend == "cpu"
    assert config.detection.confidence_threshold == 0.5
    assert config.segmentation.merge_threshold == pytest.approx(0.3)
    assert config.clustering.similarity_threshold == pytest.approx(0.8)
    assert config.pipeline.max_concurrency >= 1


def test_validation_failure():
    """Test fail-fast validation."""
    bad_config = AppConfig(detection=DetectionConfig(confidence_threshold=1.5))
    with pytest.raises(ValueError, match="confidence_threshold"):
        validate_config(bad_config)

    bad_config = AppConfig(model=ModelConfig(backend="invalid"))
    with pytest.raises(ValueError, match="backend"):
        validate_config(bad_config)

    bad_config = AppConfig(detection=DetectionConfig(layout="yolo9000"))
    with pytest.raises(ValueError, match="layout"):
        validate_config(bad_config)

    bad_config = AppConfig(clustering=ClusteringConfig(distribution_strategy="spiral"))
    with pytest.raises(ValueError, match="distribution_strategy"):
        validate_config(bad_config)

    bad_config = AppConfig(pipeline=PipelineConfig(max_concurrency=0))
    with pytest.raises(ValueError, match="max_concurrency"):
        validate_config(bad_config)

    bad_config = AppConfig(terrain=TerrainConfig(height_field_resolution=2))
    with pytest.raises(ValueError, match="height_field_resolution"):
        validate_config(bad_config)


def test_env_override(monkeypatch):
    """Test environment variable overrides."""
    monkeypatch.setenv("MAPSCENE_DETECTION_CONFIDENCE_THRESHOLD", "0.9")
    monkeypatch.setenv("MAPSCENE_MODEL_BACKEND", "cuda")
    monkeypatch.setenv("MAPSCENE_PIPELINE_SEED", "7")
    monkeypatch.setenv("MAPSCENE_DETECTION_MAX_CANDIDATES", "none")

    config = load_config(None)

    assert config.detection.confidence_threshold == 0.9
    assert config.model.backend == "cuda"
    assert config.pipeline.seed == 7
    assert config.detection.max_candidates is None


def test_yaml_file(tmp_path):
    """Test loading sections from a YAML file."""
    path = tmp_path / "config.yaml"
    path.write_text(
        "detection:\n"
        "  nms_threshold: 0.3\n"
        "  per_class_nms: true\n"
        "  class_labels: [water, forest, house]\n"
        "terrain:\n"
        "  max_height: 250\n"
        "placement:\n"
        "  rotation_strategy: mask_axis\n",
        encoding="utf-8",
    )

    config = load_config(str(path))

    assert config.detection.nms_threshold == pytest.approx(0.3)
    assert config.detection.per_class_nms is True
    assert config.detection.class_labels == ("water", "forest", "house")
    assert config.terrain.max_height == pytest.approx(250.0)
    assert config.placement.rotation_strategy == "mask_axis"


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/mapscene.yaml")
