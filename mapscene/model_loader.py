"""
Model loading for the optional ONNX collaborators.

Responsibility:
    Load ONNX models from disk, configure the compute backend, and wrap
    them as the raw-buffer producer and classifier the pipeline consumes.

Non-goals:
    - No decoding, classification heuristics, or segment-level logic.
    - No automatic model downloading.
    - No fallback to alternative models.

Failure behavior:
    - Missing model files raise FileNotFoundError with the exact
      missing path and expected location.
    - Incompatible backend raises RuntimeError.
"""

import logging
import threading
from pathlib import Path
from typing import Optional, Tuple

import cv2
import numpy as np

from mapscene.config import ModelConfig, get_project_root
from mapscene.preprocessor import preprocess

logger = logging.getLogger(__name__)


def _resolve(path: str, config_key: str) -> Path:
    resolved = Path(path)
    if not resolved.is_absolute():
        resolved = get_project_root() / resolved

    if not resolved.is_file():
        raise FileNotFoundError(
            f"Model file not found.\n"
            f"  Expected: {resolved}\n"
            f"  Provide the file or update '{config_key}' in your config."
        )
    return resolved


def load_model(config: ModelConfig, model_path: Optional[str] = None) -> cv2.dnn.Net:
    """Load and configure an ONNX model.

    Args:
        config: ModelConfig containing the backend preference.
        model_path: ONNX file to load. Defaults to config.detector_path.

    Returns:
        A configured cv2.dnn.Net ready for inference.

    Raises:
        FileNotFoundError: If the model file does not exist.
        ValueError: If no model path is configured.
        RuntimeError: If the requested backend is unavailable.
    """
    path = model_path if model_path is not None else config.detector_path
    if path is None:
        raise ValueError(
            "No model path configured. Set 'model.detector_path' in your "
            "config or pass a detections buffer instead."
        )
    onnx_path = _resolve(path, "model.detector_path" if model_path is None else "model")

    logger.info("Loading model: %s", onnx_path)
    net = cv2.dnn.readNetFromONNX(str(onnx_path))

    # Configure backend and target
    if config.backend == "cuda":
        logger.info("Setting CUDA backend and target.")
        try:
            net.setPreferableBackend(cv2.dnn.DNN_BACKEND_CUDA)
            net.setPreferableTarget(cv2.dnn.DNN_TARGET_CUDA)
        except cv2.error as e:
            raise RuntimeError(
                f"Failed to set CUDA backend. Ensure OpenCV was built with "
                f"CUDA support (opencv-contrib-python or custom build).\n"
                f"  OpenCV error: {e}"
            ) from e
    else:
        logger.info("Using CPU backend.")
        net.setPreferableBackend(cv2.dnn.DNN_BACKEND_OPENCV)
        net.setPreferableTarget(cv2.dnn.DNN_TARGET_CPU)

    logger.info("Model loaded successfully.")
    return net


def normalize_output(output: np.ndarray, input_size: Tuple[int, int]) -> np.ndarray:
    """Bring a raw detector output into [1, N, C] with normalised boxes.

    Exporters commonly emit [1, C, N]; the smaller trailing axis is taken
    as the row axis. Boxes in input-blob pixels are divided by the blob
    size so the decoder rescales them to the source image.
    """
    buffer = np.asarray(output, dtype=np.float32)
    if buffer.ndim == 2:
        buffer = buffer[None]
    if buffer.ndim != 3:
        raise ValueError(f"Expected a rank-3 detector output, got shape {buffer.shape}.")
    if buffer.shape[1] < buffer.shape[2]:
        buffer = np.transpose(buffer, (0, 2, 1))

    buffer = np.array(buffer)
    boxes = buffer[..., :4]
    if boxes.size and boxes.max() > 1.0:
        in_w, in_h = input_size
        boxes[..., 0::2] /= in_w
        boxes[..., 1::2] /= in_h
    return buffer


def run_detector(net: cv2.dnn.Net, image: np.ndarray, config: ModelConfig) -> np.ndarray:
    """Run the detector on ``image`` and return a decoder-ready buffer."""
    net.setInput(preprocess(image, config))
    output = net.forward()
    return normalize_output(output, config.input_size)


class DnnClassifier:
    """Classifier collaborator backed by an ONNX classification network.

    Usage:
        terrain = DnnClassifier(load_model(cfg, cfg.terrain_classifier_path), cfg)
        models = ModelSet(terrain_classifier=terrain)

    Raw logits are turned into probabilities with a softmax; outputs that
    already look like probabilities are returned unchanged. Calls are
    serialized because a cv2.dnn.Net is not safe to share across threads.
    """

    def __init__(
        self,
        net: cv2.dnn.Net,
        config: ModelConfig,
        input_size: Tuple[int, int] = (224, 224),
    ) -> None:
        self._net = net
        self._config = config
        self._input_size = input_size
        self._lock = threading.Lock()

    def __call__(self, crop: np.ndarray) -> np.ndarray:
        blob = preprocess(crop, self._config, size=self._input_size)
        with self._lock:
            self._net.setInput(blob)
            scores = np.asarray(self._net.forward(), dtype=np.float64).ravel()
        return softmax_if_logits(scores)


def softmax_if_logits(scores: np.ndarray) -> np.ndarray:
    scores = np.asarray(scores, dtype=np.float64)
    if scores.size and scores.min() >= 0.0 and abs(scores.sum() - 1.0) < 1e-3:
        return scores
    shifted = np.exp(scores - scores.max())
    return shifted / shifted.sum()
