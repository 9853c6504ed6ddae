"""
Persistent storage for briefs, runs and stories.
"""

from .base import StoryStore
from .sqlite_store import SqliteStoryStore

__all__ = ["StoryStore", "SqliteStoryStore"]
