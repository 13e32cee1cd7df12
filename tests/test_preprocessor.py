"""
Tests for the preprocessing module.
"""

import numpy as np
import pytest

from mapscene.config import ModelConfig
from mapscene.preprocessor import preprocess


def test_preprocess_valid_input():
    """Test standard preprocessing on a valid image."""
    config = ModelConfig(input_size=(320, 320))

    # Create a dummy BGR image (solid green)
    image = np.zeros((480, 640, 3), dtype=np.uint8)
    image[:, :, 1] = 255

    blob = preprocess(image, config)

    assert isinstance(blob, np.ndarray)
    assert blob.shape == (1, 3, 320, 320)
    assert blob.dtype == np.float32
    assert blob.max() == pytest.approx(1.0)


def test_preprocess_bgra_crop():
    """Test that BGRA segment crops are reduced to three channels."""
    config = ModelConfig()
    crop = np.full((40, 60, 4), 128, dtype=np.uint8)

    blob = preprocess(crop, config, size=(224, 224))
    assert blob.shape == (1, 3, 224, 224)


def test_preprocess_empty_image():
    """Test that preprocessing rejects empty images."""
    config = ModelConfig()

    with pytest.raises(ValueError):
        preprocess(np.array([]), config)


def test_preprocess_none_image():
    """Test that preprocessing rejects None."""
    config = ModelConfig()

    with pytest.raises(ValueError):
        preprocess(None, config)
