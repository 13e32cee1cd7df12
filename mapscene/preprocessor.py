"""
Preprocessing for the optional ONNX collaborators.

Responsibility:
    Convert a BGR image or BGRA segment crop into a 4D DNN-compatible
    input blob using cv2.dnn.blobFromImage.

Non-goals:
    - No image acquisition or I/O.
    - No inference or coordinate mapping.
    - No model-awareness beyond the blob parameters.
"""

from typing import Optional, Tuple

import numpy as np
import cv2

from mapscene.config import ModelConfig


def to_bgr(image: np.ndarray) -> np.ndarray:
    """Drop alpha or expand grayscale so the blob always has 3 channels."""
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    return image


def preprocess(
    image: np.ndarray,
    config: ModelConfig,
    size: Optional[Tuple[int, int]] = None,
) -> np.ndarray:
    """Convert an image into a DNN input blob.

    Args:
        image: Input image as a BGR (H, W, 3), BGRA (H, W, 4) or
               grayscale (H, W) numpy array.
        config: ModelConfig providing input_size, scale_factor,
                mean_values and swap_rb.
        size: Optional (width, height) overriding config.input_size.

    Returns:
        A 4D numpy array of shape (1, 3, H, W) with dtype float32,
        ready to be passed to net.setInput().

    Raises:
        ValueError: If the image is empty.
    """
    if image is None or image.size == 0:
        raise ValueError(
            "Cannot preprocess an empty image. "
            "Ensure the image or crop is valid."
        )

    blob = cv2.dnn.blobFromImage(
        image=to_bgr(image),
        scalefactor=config.scale_factor,
        size=tuple(size or config.input_size),
        mean=config.mean_values,
        swapRB=config.swap_rb,
        crop=False,
    )

    return blob
