"""Tests for the safety, values and quality gates."""

from __future__ import annotations

from dataclasses import replace

import pytest

from tests.conftest import ScriptedCompletion, quality_payload, safety_payload, values_payload
from wholesome_library.checks import (
    QUALITY_DIMENSIONS,
    VALUES_DIMENSIONS,
    QualityChecker,
    SafetyChecker,
    ValuesChecker,
    find_avoided_terms,
)
from wholesome_library.checks.base import as_flag_list, clamp_score
from wholesome_library.common import LLMContentError
from wholesome_library.story_generation import StoryDraft


def _checker(cls, *responses):
    completion = ScriptedCompletion(*responses)
    return cls(api_key="sk-test", model="judge-model", completion_fn=completion), completion


def _with_avoid(draft: StoryDraft, *terms: str) -> StoryDraft:
    return replace(draft, brief=replace(draft.brief, avoid_content=terms))


class TestHelpers:
    def test_clamp_score_bounds(self):
        assert clamp_score(9, low=1.0, high=5.0, name="x") == 5.0
        assert clamp_score("-2", low=0.0, high=25.0, name="x") == 0.0
        assert clamp_score(3.5, low=1.0, high=5.0, name="x") == 3.5

    def test_clamp_score_rejects_non_numbers(self):
        with pytest.raises(LLMContentError):
            clamp_score("great", low=1.0, high=5.0, name="engagement")

    def test_flag_list_accepts_issue_objects(self):
        flags = as_flag_list([{"type": "violence", "description": "a sword fight"}, "tone"])
        assert flags == ("violence: a sword fight", "tone")
        assert as_flag_list(None) == ()
        assert as_flag_list("single") == ("single",)


class TestJudgeTokens:
    @pytest.mark.parametrize(
        "cls, payload",
        [
            (SafetyChecker, safety_payload()),
            (ValuesChecker, values_payload(4.0)),
            (QualityChecker, quality_payload(80)),
        ],
    )
    def test_verdict_carries_reported_tokens(self, sample_draft, cls, payload):
        completion = ScriptedCompletion(payload, tokens_per_call=333)
        checker = cls(api_key="sk-test", model="judge-model", completion_fn=completion)
        assert checker.check(sample_draft).tokens_used == 333

    def test_no_usage_means_no_tokens(self, sample_draft):
        checker, _ = _checker(ValuesChecker, values_payload(4.0))
        assert checker.check(sample_draft).tokens_used is None


class TestSafetyChecker:
    def test_clean_draft_passes(self, sample_draft):
        checker, completion = _checker(SafetyChecker, safety_payload(passed=True))
        verdict = checker.check(sample_draft)

        assert verdict.passed is True
        assert verdict.issues == ()
        call = completion.calls[0]
        assert call["temperature"] == 0.0
        assert call["response_format"] == {"type": "json_object"}
        assert sample_draft.full_text in call["messages"][1]["content"]

    def test_reported_violation_fails(self, sample_draft):
        checker, _ = _checker(
            SafetyChecker,
            safety_payload(passed=False, issues=[{"type": "horror", "description": "a monster eats a duckling"}]),
        )
        verdict = checker.check(sample_draft)
        assert verdict.passed is False
        assert verdict.issues == ("horror: a monster eats a duckling",)

    def test_passed_with_issues_still_fails(self, sample_draft):
        checker, _ = _checker(SafetyChecker, {"passed": True, "rationale": "", "issues": ["mild peril"]})
        verdict = checker.check(sample_draft)
        assert verdict.passed is False
        assert verdict.rationale == "mild peril"

    def test_non_boolean_passed_fails(self, sample_draft):
        checker, _ = _checker(SafetyChecker, {"passed": "yes", "issues": []})
        assert checker.check(sample_draft).passed is False

    def test_avoided_terms_reject_without_calling_the_judge(self, sample_draft):
        draft = _with_avoid(sample_draft, "dark", "spiders")
        checker, completion = _checker(SafetyChecker)

        verdict = checker.check(draft)

        assert verdict.passed is False
        assert verdict.issues == ("avoid_content: dark",)
        assert completion.calls == []

    def test_avoided_terms_match_whole_words_only(self, sample_draft):
        draft = _with_avoid(sample_draft, "ark")
        assert find_avoided_terms(draft) == []

    def test_malformed_response_is_content_error(self, sample_draft):
        checker, _ = _checker(SafetyChecker, "I cannot answer that.")
        with pytest.raises(LLMContentError):
            checker.check(sample_draft)


class TestValuesChecker:
    def test_score_is_rounded_mean(self, sample_draft):
        payload = dict(zip(VALUES_DIMENSIONS, [5, 4, 4, 4, 4, 4]))
        payload["rationale"] = "Warm and hopeful."
        checker, _ = _checker(ValuesChecker, payload)

        verdict = checker.check(sample_draft)

        assert verdict.score == 4.17
        assert verdict.rationale == "Warm and hopeful."
        assert set(verdict.dimensions) == set(VALUES_DIMENSIONS)

    def test_dimensions_are_clamped(self, sample_draft):
        payload = values_payload(4.0)
        payload["hopeful_ending"] = 11
        payload["authority_respect"] = 0
        checker, _ = _checker(ValuesChecker, payload)

        verdict = checker.check(sample_draft)

        assert verdict.dimensions["hopeful_ending"] == 5.0
        assert verdict.dimensions["authority_respect"] == 1.0
        assert verdict.score == 4.0

    def test_missing_dimension_is_content_error(self, sample_draft):
        payload = values_payload(4.0)
        payload.pop("consequence_logic")
        checker, _ = _checker(ValuesChecker, payload)
        with pytest.raises(LLMContentError):
            checker.check(sample_draft)

    def test_prompt_names_target_virtue(self, sample_draft):
        checker, completion = _checker(ValuesChecker, values_payload(3.0))
        checker.check(sample_draft)
        assert "Target virtue: courage" in completion.calls[0]["messages"][1]["content"]


class TestQualityChecker:
    def test_dimensions_sum_to_score(self, sample_draft):
        checker, _ = _checker(QualityChecker, quality_payload(80))
        verdict = checker.check(sample_draft)
        assert verdict.score == 80.0
        assert verdict.dimensions["narrative_coherence"] == 20.0

    def test_over_cap_values_are_clamped(self, sample_draft):
        payload = {name: 99 for name in QUALITY_DIMENSIONS}
        checker, _ = _checker(QualityChecker, payload)
        verdict = checker.check(sample_draft)
        assert verdict.score == 100.0

    def test_missing_dimension_raises(self, sample_draft):
        payload = quality_payload(100)
        payload.pop("technical_quality")
        checker, _ = _checker(QualityChecker, payload)
        with pytest.raises(LLMContentError, match="technical_quality"):
            checker.check(sample_draft)

    def test_null_dimension_is_not_a_number(self, sample_draft):
        payload = quality_payload(100)
        payload["engagement"] = None
        checker, _ = _checker(QualityChecker, payload)
        with pytest.raises(LLMContentError, match="engagement"):
            checker.check(sample_draft)

    def test_flags_are_carried(self, sample_draft):
        payload = quality_payload(60)
        payload["flags"] = ["chapter two is rushed"]
        checker, _ = _checker(QualityChecker, payload)
        assert checker.check(sample_draft).flags == ("chapter two is rushed",)
