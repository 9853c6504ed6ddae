"""
Wholesome Library story pipeline: briefs in, vetted and illustrated children's stories out.
"""

from .config import PipelineSettings, load_settings
from .models import GeneratedStory, PipelineRun, RunOutcome, RunState
from .pipeline import BriefQueue, Persister, PipelineRunner
from .storage import SqliteStoryStore, StoryStore
from .story_generation import BriefGenerator, StoryBrief, StoryGenerator

__all__ = [
    "PipelineSettings",
    "load_settings",
    "GeneratedStory",
    "PipelineRun",
    "RunOutcome",
    "RunState",
    "BriefQueue",
    "Persister",
    "PipelineRunner",
    "SqliteStoryStore",
    "StoryStore",
    "BriefGenerator",
    "StoryBrief",
    "StoryGenerator",
]
