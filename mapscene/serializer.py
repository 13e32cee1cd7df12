"""
Serialization for the map analysis pipeline.

Responsibility:
    Export analysis results to structured file formats (JSON, CSV)
    for downstream consumption or offline analysis.

Non-goals:
    - No rendering, display, or analysis logic.
    - Masks and height fields are not written; only a summary is (presence,
      shape and range).
"""

import csv
import json
import logging
from pathlib import Path

from mapscene.results import AnalysisResults

logger = logging.getLogger(__name__)

CSV_FIELDS = [
    "id", "kind", "type", "label", "x", "y", "width", "height",
    "confidence", "elevation", "position_x", "position_y",
    "scale_x", "scale_y", "scale_z", "rotation", "group_id",
]


def save_json(results: AnalysisResults, output_path: str) -> None:
    """Export the full result set to a JSON file.

    Output schema:
        {
            "image": {"width": W, "height": H},
            "terrain_types": [...],
            "terrain_features": [{"id": ..., "type": ..., "elevation": ..., ...}],
            "map_objects": [{"id": ..., "type": ..., "position": [x, y], ...}],
            "object_groups": [{"group_id": ..., "object_ids": [...], ...}],
            "placements": {"tree": [[x, y], ...]},
            "timings": {"decode": s, ...},
            "total_terrain_features": N,
            "total_map_objects": M
        }

    Args:
        results: The AnalysisResults to write.
        output_path: Path to the output JSON file.

    Raises:
        OSError: If the output path is not writable.
    """
    _ensure_parent_dir(output_path)

    payload = results.to_dict()
    payload["total_terrain_features"] = len(results.terrain_features)
    payload["total_map_objects"] = len(results.map_objects)

    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)

    logger.info(
        "JSON output saved: %s (%d terrain features, %d objects)",
        output_path, len(results.terrain_features), len(results.map_objects),
    )


def save_csv(results: AnalysisResults, output_path: str) -> None:
    """Export one row per terrain feature and map object to a CSV file.

    Columns: see CSV_FIELDS. Fields that do not apply to a row's kind
    are left empty.

    Args:
        results: The AnalysisResults to write.
        output_path: Path to the output CSV file.

    Raises:
        OSError: If the output path is not writable.
    """
    _ensure_parent_dir(output_path)

    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_FIELDS, restval="")
        writer.writeheader()

        total = 0
        for t in results.terrain_features:
            writer.writerow({
                "id": t.id,
                "kind": "terrain",
                "type": t.type,
                "label": t.label,
                **t.bounding_box.to_dict(),
                "confidence": round(t.confidence, 4),
                "elevation": round(t.elevation, 4),
            })
            total += 1

        for o in results.map_objects:
            writer.writerow({
                "id": o.id,
                "kind": "object",
                "type": o.type,
                "label": o.label,
                **o.bounding_box.to_dict(),
                "confidence": round(o.confidence, 4),
                "position_x": round(o.position[0], 4),
                "position_y": round(o.position[1], 4),
                "scale_x": round(o.scale[0], 4),
                "scale_y": round(o.scale[1], 4),
                "scale_z": round(o.scale[2], 4),
                "rotation": round(o.rotation, 2),
                "group_id": o.group_id or "",
            })
            total += 1

    logger.info("CSV output saved: %s (%d rows)", output_path, total)


def _ensure_parent_dir(path: str) -> None:
    """Create parent directories if they don't exist."""
    parent = Path(path).parent
    parent.mkdir(parents=True, exist_ok=True)
