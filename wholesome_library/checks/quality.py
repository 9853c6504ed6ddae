"""
Quality gate, five capped dimensions summed to a 0-100 score.
"""

from __future__ import annotations

from wholesome_library.common import LLMContentError
from wholesome_library.story_generation import StoryDraft

from .base import LLMJudge, ScoreVerdict, as_flag_list, clamp_score

# Dimension name -> (maximum points, question for the judge).
QUALITY_DIMENSIONS: dict[str, tuple[int, str]] = {
    "narrative_coherence": (25, "Does the plot make sense? Are transitions smooth? Is the arc complete?"),
    "character_consistency": (20, "Same names and personalities across chapters? Clear character arcs?"),
    "age_appropriateness": (20, "Do vocabulary, sentence complexity and themes match the reading level?"),
    "engagement": (20, "Would a child want to keep reading? Compelling hooks? Satisfying resolution?"),
    "technical_quality": (15, "Grammar, spelling and formatting correct? Length close to the target?"),
}

_SYSTEM_PROMPT = "You are a children's literature quality assessor."


class QualityChecker(LLMJudge):
    """
    Each dimension is clamped to ``[0, cap]`` before summing.
    A response missing any dimension raises :class:`LLMContentError`.
    """

    def check(self, draft: StoryDraft) -> ScoreVerdict:
        payload, tokens = self._judge(system=_SYSTEM_PROMPT, user=_build_prompt(draft), source="quality check")

        dimensions: dict[str, float] = {}
        for name, (cap, _) in QUALITY_DIMENSIONS.items():
            if name not in payload:
                raise LLMContentError(f"Quality check response is missing {name!r}.")
            dimensions[name] = clamp_score(payload[name], low=0.0, high=float(cap), name=name)

        return ScoreVerdict(
            score=round(sum(dimensions.values()), 2),
            rationale=str(payload.get("rationale") or "").strip(),
            dimensions=dimensions,
            flags=as_flag_list(payload.get("flags")),
            tokens_used=tokens,
        )


def _build_prompt(draft: StoryDraft) -> str:
    brief = draft.brief
    questions = "\n".join(
        f"{index}. {name} (0-{cap}): {question}"
        for index, (name, (cap, question)) in enumerate(QUALITY_DIMENSIONS.items(), start=1)
    )
    fields = ",\n".join(f'  "{name}": 0-{cap}' for name, (cap, _) in QUALITY_DIMENSIONS.items())
    return f"""Assess this children's story for quality across {len(QUALITY_DIMENSIONS)} dimensions.

Story title: {draft.title}
Reading level: {brief.reading_level} (ages {brief.age_range})
Genre: {brief.genre}
Target length: about {brief.target_word_count} words; actual length: {draft.total_word_count} words

Full story text:
{draft.full_text}

Score each dimension:
{questions}

Return JSON:
{{
{fields},
  "rationale": "one or two sentences",
  "flags": ["specific issues, if any"]
}}"""
