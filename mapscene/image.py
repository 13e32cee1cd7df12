"""
Pixel buffer operations for the map analysis pipeline.

Responsibility:
    The only image operations the pipeline needs: normalising masks to
    an alpha plane, bilinear sampling, resizing, and cropping a segment
    out of the source image with its mask composited into alpha.

Conventions:
    - Images are uint8 numpy arrays, (H, W, 3) BGR or (H, W, 4) BGRA,
      as returned by OpenCV. Row 0 is the top of the image.
    - Masks are (H, W) alpha planes or (H, W, 4) buffers whose last
      channel is alpha. uint8 masks are scaled to [0, 1].
    - Membership is alpha > MASK_THRESHOLD.
"""

from typing import Optional

import cv2
import numpy as np

from mapscene.geometry import Rect

MASK_THRESHOLD = 0.5


def mask_alpha(mask: np.ndarray) -> np.ndarray:
    """Return the alpha plane of a mask as float32 in [0, 1].

    Raises:
        ValueError: If the mask is not 2D or a 4-channel buffer.
    """
    arr = np.asarray(mask)
    if arr.ndim == 3:
        if arr.shape[2] != 4:
            raise ValueError(
                f"Expected a 4-channel mask buffer, got {arr.shape[2]} channels."
            )
        arr = arr[:, :, 3]
    elif arr.ndim != 2:
        raise ValueError(
            f"Expected a 2D alpha mask or (H, W, 4) buffer, got shape {arr.shape}."
        )

    if arr.dtype == np.uint8:
        return arr.astype(np.float32) / 255.0
    return np.clip(arr.astype(np.float32), 0.0, 1.0)


def sample_bilinear(alpha: np.ndarray, u: np.ndarray, v: np.ndarray) -> np.ndarray:
    """Bilinearly sample an alpha plane at normalised coordinates.

    Pixel centres sit at ``(i + 0.5) / n``; coordinates outside the
    plane are clamped to the edge pixels.

    Args:
        alpha: (H, W) float array.
        u: Horizontal coordinates in [0, 1] (any shape).
        v: Vertical coordinates in [0, 1], same shape as ``u``.

    Returns:
        Sampled values with the shape of ``u``.
    """
    h, w = alpha.shape
    fx = np.asarray(u, dtype=np.float64) * w - 0.5
    fy = np.asarray(v, dtype=np.float64) * h - 0.5

    x0 = np.floor(fx)
    y0 = np.floor(fy)
    tx = fx - x0
    ty = fy - y0

    x0 = x0.astype(np.int64)
    y0 = y0.astype(np.int64)
    x1 = np.clip(x0 + 1, 0, w - 1)
    y1 = np.clip(y0 + 1, 0, h - 1)
    x0 = np.clip(x0, 0, w - 1)
    y0 = np.clip(y0, 0, h - 1)

    top = alpha[y0, x0] * (1 - tx) + alpha[y0, x1] * tx
    bottom = alpha[y1, x0] * (1 - tx) + alpha[y1, x1] * tx
    return top * (1 - ty) + bottom * ty


def resize_mask(mask: np.ndarray, width: int, height: int, bilinear: bool = True) -> np.ndarray:
    """Resample a mask's alpha plane to ``(height, width)``."""
    alpha = mask_alpha(mask)
    if alpha.shape == (height, width):
        return alpha
    interpolation = cv2.INTER_LINEAR if bilinear else cv2.INTER_NEAREST
    return cv2.resize(alpha, (width, height), interpolation=interpolation)


def crop_image(
    image: np.ndarray,
    rect: Rect,
    mask: Optional[np.ndarray] = None,
    apply_mask: bool = True,
) -> Optional[np.ndarray]:
    """Extract a BGRA sub-image for a rectangle.

    The rectangle is clamped to the source bounds (at least one pixel).
    When a mask is given and ``apply_mask`` is set, the mask is resized
    to the crop and written into the crop's alpha channel.

    Returns:
        A new (h, w, 4) uint8 array, or None for an empty source.
    """
    if image is None or image.size == 0:
        return None

    src_h, src_w = image.shape[:2]
    x = min(max(int(np.floor(rect.x)), 0), src_w - 1)
    y = min(max(int(np.floor(rect.y)), 0), src_h - 1)
    w = min(max(int(np.floor(rect.width)), 1), src_w - x)
    h = min(max(int(np.floor(rect.height)), 1), src_h - y)

    crop = to_bgra(np.ascontiguousarray(image[y:y + h, x:x + w]))

    if apply_mask and mask is not None:
        alpha = resize_mask(mask, w, h)
        crop[:, :, 3] = np.round(alpha * 255.0).astype(np.uint8)

    return crop


def to_bgra(image: np.ndarray) -> np.ndarray:
    """Return a BGRA uint8 copy of a grayscale, BGR or BGRA image."""
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGRA)
    if image.shape[2] == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2BGRA)
    return image.copy()
