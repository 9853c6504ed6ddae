"""
High-level orchestration: claiming briefs, running the stages, and persisting stories.
"""

from .brief_queue import DEAD_LETTER_REASON, BriefQueue, QueueStats
from .persister import Persister, determine_publication_status, slugify
from .pipeline import PERSISTENCE_FAILURE_REASON, PipelineRunner, ProgressCallback

__all__ = [
    "DEAD_LETTER_REASON",
    "BriefQueue",
    "QueueStats",
    "Persister",
    "determine_publication_status",
    "slugify",
    "PERSISTENCE_FAILURE_REASON",
    "PipelineRunner",
    "ProgressCallback",
]
