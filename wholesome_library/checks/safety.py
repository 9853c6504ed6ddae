"""
Hard safety gate: any reported violation rejects the draft.
"""

from __future__ import annotations

import logging
import re

from wholesome_library.story_generation import StoryDraft

from .base import LLMJudge, SafetyVerdict, as_flag_list

logger = logging.getLogger(__name__)

SAFETY_CRITERIA: tuple[str, ...] = (
    "No violence beyond age level",
    "No death of main characters (for early and independent readers)",
    "No mature romantic content",
    "No substance references",
    "No self-harm or dangerous behavior a child could imitate",
    "No discriminatory content",
    "No horror or extreme fear elements",
    "No profanity or crude language",
)

_SYSTEM_PROMPT = "You are a children's content safety expert. You judge strictly and never rewrite the story."


def find_avoided_terms(draft: StoryDraft) -> list[str]:
    """Return the brief's ``avoid_content`` terms that appear as whole words in the draft."""
    haystack = f"{draft.title}\n{draft.blurb}\n{draft.full_text}"
    found = []
    for term in draft.brief.avoid_content:
        if re.search(rf"\b{re.escape(term)}\b", haystack, re.IGNORECASE):
            found.append(term)
    return found


class SafetyChecker(LLMJudge):
    """
    Binary safety scan over the full draft text.

    A draft that contains any of the brief's avoided terms is rejected before the LLM is
    consulted. Otherwise the draft passes only when the judge answers ``passed: true`` and
    lists no issues.
    """

    default_temperature = 0.0

    def check(self, draft: StoryDraft) -> SafetyVerdict:
        avoided = find_avoided_terms(draft)
        if avoided:
            logger.info("Draft %r contains avoided terms: %s", draft.title, ", ".join(avoided))
            return SafetyVerdict(
                passed=False,
                rationale="Draft contains content the brief asked to avoid.",
                issues=tuple(f"avoid_content: {term}" for term in avoided),
            )

        payload, tokens = self._judge(system=_SYSTEM_PROMPT, user=_build_prompt(draft), source="safety scan")
        issues = as_flag_list(payload.get("issues"))
        passed = payload.get("passed") is True and not issues
        rationale = str(payload.get("rationale") or "").strip()
        if not rationale:
            rationale = "All safety criteria met." if passed else "; ".join(issues) or "Judge rejected the draft."
        return SafetyVerdict(passed=passed, rationale=rationale, issues=issues, tokens_used=tokens)


def _build_prompt(draft: StoryDraft) -> str:
    brief = draft.brief
    criteria = "\n".join(f"{index}. {criterion}" for index, criterion in enumerate(SAFETY_CRITERIA, start=1))
    return f"""Perform a safety scan on this children's story for ages {brief.age_range}.

Reading level: {brief.reading_level}
Story title: {draft.title}

Safety criteria (ALL must pass):
{criteria}

Full story text:
{draft.full_text}

For each criterion, check whether the story passes. Report ANY violations.

Return JSON:
{{
  "passed": true or false,
  "rationale": "one or two sentences",
  "issues": [
    {{"type": "criterion violated", "severity": "critical or warning", "description": "what was found", "location": "chapter number"}}
  ]
}}"""
