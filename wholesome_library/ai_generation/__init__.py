"""
Cover art generation utilities.
"""

from .cover_art import CoverArtGenerator, CoverResult, fallback_cover_for
from .prompting import CoverPrompt, build_cover_prompt
from .replicate_service import ImageGenerator, ReplicateImageGenerator, normalize_image_outputs

__all__ = [
    "CoverArtGenerator",
    "CoverResult",
    "fallback_cover_for",
    "CoverPrompt",
    "build_cover_prompt",
    "ImageGenerator",
    "ReplicateImageGenerator",
    "normalize_image_outputs",
]
