"""
Story generation utilities: briefs, brief synthesis, and chaptered drafts.
"""

from .brief import READING_LEVELS, BriefStatus, ReadingLevelProfile, StoryBrief, utc_now
from .brief_generator import (
    VARIETY_MATRIX,
    BriefAxes,
    BriefGenerationReport,
    BriefGenerator,
    BriefSynthesisFailure,
)
from .prompting import StoryPrompt, build_story_prompt
from .story_service import Chapter, StoryDraft, StoryGenerator, count_words

__all__ = [
    "READING_LEVELS",
    "BriefStatus",
    "ReadingLevelProfile",
    "StoryBrief",
    "utc_now",
    "VARIETY_MATRIX",
    "BriefAxes",
    "BriefGenerationReport",
    "BriefGenerator",
    "BriefSynthesisFailure",
    "StoryPrompt",
    "build_story_prompt",
    "Chapter",
    "StoryDraft",
    "StoryGenerator",
    "count_words",
]
