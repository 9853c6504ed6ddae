"""Tests for story_generation.story_service and prompting."""

from __future__ import annotations

import json

import pytest

from tests.conftest import ScriptedCompletion, story_payload
from wholesome_library.common import GenerationError, TransientAPIError
from wholesome_library.story_generation import StoryGenerator, build_story_prompt


def _generator(*responses) -> tuple[StoryGenerator, ScriptedCompletion]:
    completion = ScriptedCompletion(*responses)
    return StoryGenerator(api_key="sk-test", model="story-model", completion_fn=completion, timeout=30.0), completion


class TestBuildStoryPrompt:
    def test_prompt_reflects_brief(self, make_brief):
        brief = make_brief(target_chapters=4, target_word_count=3200)
        prompt = build_story_prompt(brief)
        assert "exactly 4 chapters of roughly 800 words" in prompt.system
        assert "ages 7-9" in prompt.system
        assert "Theme: facing fears" in prompt.user
        assert '"chapters"' in prompt.user


class TestStoryGenerator:
    def test_valid_response_builds_draft(self, make_brief):
        generator, completion = _generator(story_payload(chapters=3, words=200))
        draft = generator.generate(make_brief())

        assert draft.title == "Milo and the Lantern Path"
        assert [chapter.number for chapter in draft.chapters] == [1, 2, 3]
        assert draft.total_word_count == 600
        assert draft.estimated_read_minutes == 3

        call = completion.calls[0]
        assert call["model"] == "story-model"
        assert call["timeout"] == 30.0
        assert call["response_format"] == {"type": "json_object"}

    def test_reported_tokens_are_kept_on_the_draft(self, make_brief):
        completion = ScriptedCompletion(story_payload(), tokens_per_call=2100)
        generator = StoryGenerator(api_key="sk-test", model="story-model", completion_fn=completion)
        assert generator.generate(make_brief()).tokens_used == 2100

    def test_reading_minutes_round_up(self, make_brief):
        generator, _ = _generator(story_payload(chapters=1, words=208))
        assert generator.generate(make_brief()).estimated_read_minutes == 2

    def test_json_wrapped_in_prose_is_accepted(self, make_brief):
        text = "Sure! Here is the story:\n" + json.dumps(story_payload()) + "\nEnjoy."
        generator, _ = _generator(text)
        assert len(generator.generate(make_brief()).chapters) == 3

    def test_missing_blurb_falls_back(self, make_brief):
        payload = story_payload()
        payload.pop("blurb")
        generator, _ = _generator(payload)
        draft = generator.generate(make_brief())
        assert draft.blurb.startswith("A adventure story about courage.")

    @pytest.mark.parametrize(
        "payload",
        [
            {"title": "Empty", "chapters": []},
            {"title": "No list", "chapters": "once upon a time"},
            {"chapters": [{"title": "One", "text": "Words."}]},
            {"title": "Untitled chapter", "chapters": [{"title": "", "text": "Words."}]},
            {"title": "Empty chapter", "chapters": [{"title": "One", "text": "  "}]},
        ],
    )
    def test_malformed_drafts_raise_generation_error(self, make_brief, payload):
        generator, _ = _generator(payload)
        with pytest.raises(GenerationError):
            generator.generate(make_brief())

    def test_unparseable_text_is_generation_error(self, make_brief):
        generator, _ = _generator("I would rather not.")
        with pytest.raises(GenerationError):
            generator.generate(make_brief())

    def test_transient_errors_propagate_for_stage_retry(self, make_brief):
        generator, _ = _generator(TransientAPIError("timed out", reason="timeout"))
        with pytest.raises(TransientAPIError):
            generator.generate(make_brief())
