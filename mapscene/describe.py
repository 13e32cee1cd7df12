"""
Segment descriptions.

Responsibility:
    Produce a short rule-based description for every analyzed segment
    and, when a description enhancer is injected, ask it for a richer
    text under a caller-defined timeout.

Non-goals:
    - No network client. The enhancer is an opaque callable.
    - A failed or slow enhancer never blocks or fails the pipeline.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Dict, Optional

from mapscene.analysis import AnalyzedSegment, TerrainSegment
from mapscene.collaborators import DescriptionEnhancer

logger = logging.getLogger(__name__)

_EXPERT_ROLES = {
    "terrain": (
        "You are a terrain analysis expert who describes geographical features.",
        "Include typical elevation, formation process, vegetation and appearance.",
    ),
    "object": (
        "You are a 3D modeling expert who describes objects for realistic rendering.",
        "Include materials, dimensions, colors and notable features.",
    ),
}


def _size_word(relative_area: float) -> str:
    if relative_area > 0.25:
        return "very large"
    if relative_area > 0.1:
        return "large"
    if relative_area > 0.01:
        return "medium-sized"
    return "small"


def _position_words(nx: float, ny: float) -> str:
    if nx < 0.33:
        horizontal = "on the left"
    elif nx > 0.66:
        horizontal = "on the right"
    else:
        horizontal = "in the center"

    # Image rows grow downward.
    if ny < 0.33:
        vertical = "top"
    elif ny > 0.66:
        vertical = "bottom"
    else:
        vertical = "middle"
    return f"{horizontal} of the {vertical}"


def basic_description(analyzed: AnalyzedSegment, image_width: int, image_height: int) -> str:
    """One-sentence size and position description of a segment.

    Example: "A large forest terrain feature on the left of the top of the map."
    """
    box = analyzed.bounding_box
    image_area = float(image_width * image_height)
    relative = box.area / image_area if image_area > 0 else 0.0
    cx, cy = box.center
    nx = cx / image_width if image_width else 0.5
    ny = cy / image_height if image_height else 0.5

    size = _size_word(relative)
    where = _position_words(nx, ny)
    label = analyzed.detailed_classification or analyzed.object_type

    if isinstance(analyzed, TerrainSegment):
        return f"A {size} {label} terrain feature {where} of the map."
    return f"A {size} {label} {where} of the map."


def build_prompt_payload(analyzed: AnalyzedSegment, basic: str = "") -> Dict[str, Any]:
    """Structured request for a description enhancer."""
    kind = "terrain" if isinstance(analyzed, TerrainSegment) else "object"
    role, details = _EXPERT_ROLES[kind]
    payload: Dict[str, Any] = {
        "segment_type": kind,
        "label": analyzed.detailed_classification,
        "coarse_label": analyzed.object_type,
        "basic_description": basic,
        "features": analyzed.features.to_dict(),
        "instructions": [role, details, "Keep the description to 2-3 sentences."],
    }
    if isinstance(analyzed, TerrainSegment):
        payload["height"] = analyzed.estimated_height
        payload["topology"] = analyzed.topology.to_dict()
    else:
        payload["height"] = analyzed.estimated_scale[1]
        payload["scale"] = list(analyzed.estimated_scale)
    return payload


def enhance_description(
    enhancer: Optional[DescriptionEnhancer],
    payload: Dict[str, Any],
    timeout: float,
) -> str:
    """Ask the enhancer for a description, waiting at most ``timeout`` seconds.

    Returns an empty string (and logs a warning) when the enhancer is
    absent, raises, times out, or returns something other than text.
    """
    if enhancer is None:
        logger.warning("No description enhancer available; description left empty.")
        return ""

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="describe")
    future = executor.submit(enhancer, payload)
    try:
        text = future.result(timeout=timeout)
    except FutureTimeout:
        logger.warning(
            "Description enhancer timed out after %.1fs for '%s'.", timeout, payload.get("label"),
        )
        return ""
    except Exception as e:
        logger.warning("Description enhancer failed for '%s': %s", payload.get("label"), e)
        return ""
    finally:
        executor.shutdown(wait=False)

    if not isinstance(text, str):
        logger.warning("Description enhancer returned %s, expected str.", type(text).__name__)
        return ""
    return text.strip()
