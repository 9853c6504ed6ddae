"""Tests for story_generation.brief."""

from __future__ import annotations

from datetime import timezone

import pytest

from wholesome_library.story_generation import BriefStatus, StoryBrief


class TestFromMapping:
    def test_targets_default_from_reading_level(self):
        brief = StoryBrief.from_mapping(
            {"theme": "helping others", "reading_level": "Early", "primary_virtue": "kindness", "genre": "animal"}
        )
        assert brief.reading_level == "early"
        assert brief.target_chapters == 3
        assert brief.target_word_count == 1800
        assert brief.status is BriefStatus.QUEUED
        assert brief.age_range == "5-7"
        assert brief.created_at.tzinfo is not None

    def test_parses_stored_row_values(self):
        brief = StoryBrief.from_mapping(
            {
                "id": "b-1",
                "theme": "telling the truth",
                "reading_level": "confident",
                "primary_virtue": "honesty",
                "genre": "mystery",
                "status": "processing",
                "priority": "2",
                "attempts": 1,
                "created_at": "2026-03-01T10:00:00",
                "claimed_at": "2026-03-01T11:00:00+00:00",
                "avoid_content": "spiders, thunder",
            }
        )
        assert brief.status is BriefStatus.PROCESSING
        assert brief.priority == 2
        assert brief.created_at.tzinfo == timezone.utc
        assert brief.claimed_at is not None
        assert brief.avoid_content == ("spiders", "thunder")

    def test_missing_fields_rejected(self):
        with pytest.raises(ValueError, match="genre"):
            StoryBrief.from_mapping({"theme": "x", "reading_level": "early", "primary_virtue": "y"})

    def test_unknown_reading_level_rejected(self):
        with pytest.raises(ValueError, match="reading level"):
            StoryBrief.from_mapping(
                {"theme": "x", "reading_level": "expert", "primary_virtue": "y", "genre": "z"}
            )


class TestWithStatus:
    def test_forward_transitions_allowed(self, make_brief):
        brief = make_brief()
        processing = brief.with_status(BriefStatus.PROCESSING)
        assert processing.with_status(BriefStatus.COMPLETED).status is BriefStatus.COMPLETED

    @pytest.mark.parametrize(
        "start, target",
        [
            (BriefStatus.QUEUED, BriefStatus.COMPLETED),
            (BriefStatus.PROCESSING, BriefStatus.QUEUED),
            (BriefStatus.COMPLETED, BriefStatus.PROCESSING),
            (BriefStatus.FAILED, BriefStatus.QUEUED),
        ],
    )
    def test_backward_or_skipping_transitions_rejected(self, make_brief, start, target):
        brief = make_brief(status=start)
        with pytest.raises(ValueError):
            brief.with_status(target)


class TestPromptContext:
    def test_summary_mentions_avoided_content(self, make_brief):
        brief = make_brief(avoid_content=("thunderstorms",))
        summary = brief.summary_for_prompt()
        assert "Never include: thunderstorms" in summary
        assert "Primary virtue: courage" in summary
