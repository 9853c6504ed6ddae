"""
Prompt construction for book cover illustrations.
"""

from __future__ import annotations

from dataclasses import dataclass

from wholesome_library.story_generation import StoryDraft

NEGATIVE_PROMPT = (
    "text, title lettering, watermark, logo, frightening imagery, gore, weapons, "
    "harsh shadows, cluttered composition, uncanny faces, photorealistic skin"
)


@dataclass(frozen=True)
class CoverPrompt:
    """Container for the positive and negative prompts passed to the image model."""

    positive: str
    negative: str = NEGATIVE_PROMPT


def build_cover_prompt(draft: StoryDraft) -> CoverPrompt:
    """
    Build the prompt for a portrait children's book cover from the vetted draft.
    """
    brief = draft.brief
    setting_clause = f" set in {brief.setting}" if brief.setting else ""
    premise_clause = f"\n- Hint at the story without spoilers: {brief.premise}" if brief.premise else ""

    positive_prompt = f"""TASK
Create a whimsical children's book cover illustration for "{draft.title}", a {brief.genre} story{setting_clause}.

STYLE
- Colorful, friendly, age-appropriate for {brief.age_range} year-olds; professional book cover quality.
- Warm, hopeful mood that reflects the virtue of {brief.primary_virtue}.
- Clear focal character, uncluttered background, space at the top for a title added later.{premise_clause}

OUTPUT
- Portrait 3:4 composition. Do not draw any text or lettering."""

    return CoverPrompt(positive=positive_prompt)
