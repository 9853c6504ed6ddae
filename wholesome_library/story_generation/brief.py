"""
Structured representation of a story brief, the input of one pipeline run.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Sequence


class BriefStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[BriefStatus, frozenset[BriefStatus]] = {
    BriefStatus.QUEUED: frozenset({BriefStatus.PROCESSING}),
    BriefStatus.PROCESSING: frozenset(
        {BriefStatus.PROCESSING, BriefStatus.COMPLETED, BriefStatus.FAILED}
    ),
    BriefStatus.COMPLETED: frozenset(),
    BriefStatus.FAILED: frozenset(),
}


@dataclass(frozen=True)
class ReadingLevelProfile:
    """Sizing and audience defaults that follow from a reading level."""

    age_range: str
    target_chapters: int
    target_word_count: int


READING_LEVELS: dict[str, ReadingLevelProfile] = {
    "early": ReadingLevelProfile(age_range="5-7", target_chapters=3, target_word_count=1800),
    "independent": ReadingLevelProfile(age_range="7-9", target_chapters=4, target_word_count=3200),
    "confident": ReadingLevelProfile(age_range="9-11", target_chapters=5, target_word_count=5000),
    "advanced": ReadingLevelProfile(age_range="11-13", target_chapters=5, target_word_count=7000),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None

    text = str(value).strip()
    return text or None


def _coerce_int(value: Any, *, name: str, default: int) -> int:
    if value is None or value == "":
        return default

    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected an integer-compatible value for {name}, got {value!r}") from exc


def _normalize_terms(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()

    if isinstance(value, str):
        parts = [item.strip() for item in value.split(",")]
    elif isinstance(value, Sequence):
        parts = [str(item).strip() for item in value]
    else:
        raise TypeError("avoid_content must be a string or sequence of strings.")

    return tuple(filter(None, parts))


def _coerce_datetime(value: Any) -> datetime:
    if value is None or value == "":
        return utc_now()
    if isinstance(value, datetime):
        moment = value
    else:
        moment = datetime.fromisoformat(str(value))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass(frozen=True)
class StoryBrief:
    """
    Canonical representation of a queued story request.

    Attributes
    ----------
    theme:
        Central theme, e.g. "facing fears".
    reading_level:
        One of ``early``, ``independent``, ``confident`` or ``advanced``.
    primary_virtue:
        The virtue the story should model, e.g. "courage".
    genre:
        Story genre such as "adventure" or "mystery".
    target_word_count / target_chapters:
        Length targets for the draft. Default from the reading level.
    setting / premise:
        Optional scene and one-line premise proposed when the brief was synthesized.
    avoid_content:
        Terms that must not appear anywhere in the finished story.
    priority:
        Higher priorities are claimed first; ties fall back to the oldest brief.
    """

    id: str
    theme: str
    reading_level: str
    primary_virtue: str
    genre: str
    target_word_count: int
    target_chapters: int
    status: BriefStatus = BriefStatus.QUEUED
    created_at: datetime = field(default_factory=utc_now)
    priority: int = 0
    setting: str | None = None
    premise: str | None = None
    avoid_content: tuple[str, ...] = ()
    attempts: int = 0
    claimed_at: datetime | None = None
    failure_reason: str | None = None

    @property
    def age_range(self) -> str:
        return READING_LEVELS[self.reading_level].age_range

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StoryBrief":
        """
        Build a brief from a dict-like object (e.g., parsed JSON/YAML or a database row).
        """
        missing = [
            key
            for key in ("theme", "reading_level", "primary_virtue", "genre")
            if not _coerce_optional_str(data.get(key))
        ]
        if missing:
            raise ValueError(f"Brief data is missing required fields: {', '.join(missing)}.")

        reading_level = str(data["reading_level"]).strip().lower()
        if reading_level not in READING_LEVELS:
            allowed = ", ".join(READING_LEVELS)
            raise ValueError(f"Unknown reading level {reading_level!r}; expected one of {allowed}.")
        level = READING_LEVELS[reading_level]

        claimed_at = data.get("claimed_at")
        return cls(
            id=_coerce_optional_str(data.get("id")) or str(uuid.uuid4()),
            theme=str(data["theme"]).strip(),
            reading_level=reading_level,
            primary_virtue=str(data["primary_virtue"]).strip(),
            genre=str(data["genre"]).strip(),
            target_word_count=_coerce_int(
                data.get("target_word_count"), name="target_word_count", default=level.target_word_count
            ),
            target_chapters=_coerce_int(
                data.get("target_chapters"), name="target_chapters", default=level.target_chapters
            ),
            status=BriefStatus(data.get("status") or BriefStatus.QUEUED.value),
            created_at=_coerce_datetime(data.get("created_at")),
            priority=_coerce_int(data.get("priority"), name="priority", default=0),
            setting=_coerce_optional_str(data.get("setting")),
            premise=_coerce_optional_str(data.get("premise")),
            avoid_content=_normalize_terms(data.get("avoid_content")),
            attempts=_coerce_int(data.get("attempts"), name="attempts", default=0),
            claimed_at=_coerce_datetime(claimed_at) if claimed_at else None,
            failure_reason=_coerce_optional_str(data.get("failure_reason")),
        )

    def with_status(self, status: BriefStatus, **changes: Any) -> "StoryBrief":
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(f"Brief {self.id} cannot move from {self.status.value} to {status.value}.")
        return replace(self, status=status, **changes)

    def context_bullets(self) -> list[str]:
        """
        Produce bullet-friendly lines describing the brief, for prompt conditioning.
        """
        bullets = [
            f"Genre: {self.genre}",
            f"Reading level: {self.reading_level} (ages {self.age_range})",
            f"Primary virtue: {self.primary_virtue}",
            f"Theme: {self.theme}",
            f"Chapters: {self.target_chapters}",
            f"Target length: about {self.target_word_count} words in total",
        ]

        if self.setting:
            bullets.append(f"Setting: {self.setting}")

        if self.premise:
            bullets.append(f"Premise: {self.premise}")

        if self.avoid_content:
            bullets.append(f"Never include: {', '.join(self.avoid_content)}")

        return bullets

    def summary_for_prompt(self) -> str:
        """
        Format the brief as a readable block suitable for LLM prompting.
        """
        return "\n".join(f"- {line}" for line in self.context_bullets())
