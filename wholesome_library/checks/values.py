"""
Values alignment gate, scored 1-5 and averaged.
"""

from __future__ import annotations

from wholesome_library.common import LLMContentError
from wholesome_library.story_generation import StoryDraft

from .base import LLMJudge, ScoreVerdict, as_flag_list, clamp_score

VALUES_DIMENSIONS: dict[str, str] = {
    "positive_role_models": "Do protagonists demonstrate virtues? Are they relatable?",
    "consequence_logic": "Do actions have natural, appropriate consequences?",
    "conflict_resolution": "Is conflict resolved through positive means rather than violence?",
    "authority_respect": "Are parents, teachers and mentors portrayed positively?",
    "virtue_integration": "Is the primary virtue woven in naturally rather than preached?",
    "hopeful_ending": "Does the story end on a positive, growth-oriented note?",
}

_SYSTEM_PROMPT = "You are a children's values education expert."


class ValuesChecker(LLMJudge):
    """
    Scores six values dimensions from 1 to 5; the verdict score is their mean, rounded to two decimals.
    """

    def check(self, draft: StoryDraft) -> ScoreVerdict:
        payload, tokens = self._judge(system=_SYSTEM_PROMPT, user=_build_prompt(draft), source="values check")

        dimensions: dict[str, float] = {}
        for name in VALUES_DIMENSIONS:
            if name not in payload:
                raise LLMContentError(f"Values check response is missing {name!r}.")
            dimensions[name] = clamp_score(payload[name], low=1.0, high=5.0, name=name)

        score = round(sum(dimensions.values()) / len(dimensions), 2)
        return ScoreVerdict(
            score=score,
            rationale=str(payload.get("rationale") or "").strip(),
            dimensions=dimensions,
            flags=as_flag_list(payload.get("flags")),
            tokens_used=tokens,
        )


def _build_prompt(draft: StoryDraft) -> str:
    questions = "\n".join(
        f"{index}. {name} (1=poor, 5=excellent): {question}"
        for index, (name, question) in enumerate(VALUES_DIMENSIONS.items(), start=1)
    )
    fields = ",\n".join(f'  "{name}": 1-5' for name in VALUES_DIMENSIONS)
    return f"""Assess this children's story for values alignment. Score each dimension 1-5.

Story title: {draft.title}
Target virtue: {draft.brief.primary_virtue}

Full story text:
{draft.full_text}

Score 1-5 for each dimension:
{questions}

Return JSON:
{{
{fields},
  "rationale": "one or two sentences",
  "flags": ["concerns, if any"]
}}"""
