"""
Map image analysis: detection decoding, region merging, terrain and
object classification, and clustering for scene synthesis.

Public API:
    - MapAnalyzer: Runs the full pipeline on an image and a detector buffer.
    - AnalysisContext: Config, collaborators and random generator for a run.
    - ModelSet: Optional classifier, height, segmenter and text collaborators.
    - AnalysisResults: Immutable result set handed to downstream consumers.
    - Detection, Segment, Rect: Core value types.
    - decode, decode_per_class: Standalone detector-buffer decoding.
    - load_config: Layered configuration loader.

Usage:
    from mapscene import MapAnalyzer

    analyzer = MapAnalyzer()
    results = analyzer.analyze(image, buffer)
"""

from mapscene.config import AppConfig, load_config
from mapscene.collaborators import ModelSet
from mapscene.decoder import OutputLayout, decode, decode_per_class
from mapscene.detection import Detection
from mapscene.geometry import Rect
from mapscene.pipeline import AnalysisContext, MapAnalyzer, StageEvent
from mapscene.results import AnalysisResults
from mapscene.segment import Segment

__all__ = [
    "AnalysisContext",
    "AnalysisResults",
    "AppConfig",
    "Detection",
    "MapAnalyzer",
    "ModelSet",
    "OutputLayout",
    "Rect",
    "Segment",
    "StageEvent",
    "decode",
    "decode_per_class",
    "load_config",
]
