"""
Validation gates applied to every story draft: safety, values alignment and quality.
"""

from .base import LLMJudge, SafetyVerdict, ScoreVerdict
from .quality import QUALITY_DIMENSIONS, QualityChecker
from .safety import SAFETY_CRITERIA, SafetyChecker, find_avoided_terms
from .values import VALUES_DIMENSIONS, ValuesChecker

__all__ = [
    "LLMJudge",
    "SafetyVerdict",
    "ScoreVerdict",
    "QUALITY_DIMENSIONS",
    "QualityChecker",
    "SAFETY_CRITERIA",
    "SafetyChecker",
    "find_avoided_terms",
    "VALUES_DIMENSIONS",
    "ValuesChecker",
]
