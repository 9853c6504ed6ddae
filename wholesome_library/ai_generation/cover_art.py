"""
Cover stage: illustrate a vetted draft, or fall back to a genre template.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import requests

from wholesome_library.common import (
    NO_RETRY,
    IllustrationDegraded,
    RetryPolicy,
    RunLogger,
    TransientAPIError,
    call_with_retry,
)
from wholesome_library.story_generation import StoryDraft

from .prompting import build_cover_prompt
from .replicate_service import ImageGenerator

logger = logging.getLogger(__name__)

STAGE = "illustration"

GENRE_TEMPLATES: dict[str, str] = {
    "adventure": "template-adventure.png",
    "fantasy": "template-fantasy.png",
    "mystery": "template-mystery.png",
    "friendship": "template-friendship.png",
    "sci-fi": "template-scifi.png",
}
DEFAULT_TEMPLATE = "template-default.png"


def fallback_cover_for(genre: str, cover_dir: str = "/covers") -> str:
    """Return the template cover reference for ``genre``."""
    template = GENRE_TEMPLATES.get(genre.strip().lower(), DEFAULT_TEMPLATE)
    return f"{cover_dir.rstrip('/')}/{template}"


@dataclass(frozen=True)
class CoverResult:
    image_ref: str
    degraded: bool
    note: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"image_ref": self.image_ref, "degraded": self.degraded, "note": self.note}


class CoverArtGenerator:
    """
    Produces a cover image reference for a draft and never raises.

    Missing credentials, provider errors, content rejections and exhausted retries all
    resolve to the genre template with ``degraded=True`` and a note explaining why. When a
    download directory is configured, generated covers are saved locally with ``requests``.
    """

    def __init__(
        self,
        image_generator: ImageGenerator | None,
        *,
        fallback_cover_dir: str = "/covers",
        download_dir: str | Path | None = None,
        download_timeout: float = 30.0,
        retry_policy: RetryPolicy = NO_RETRY,
        session: requests.Session | None = None,
    ) -> None:
        self._image_generator = image_generator
        self._fallback_cover_dir = fallback_cover_dir
        self._download_dir = Path(download_dir).expanduser() if download_dir else None
        self._download_timeout = download_timeout
        self._retry_policy = retry_policy
        self._session = session or requests.Session()

    def illustrate(self, draft: StoryDraft, *, run_logger: RunLogger | None = None) -> CoverResult:
        log = run_logger or RunLogger()
        genre = draft.brief.genre

        if self._image_generator is None:
            return self._fallback(genre, "No image credentials configured; used genre template.", log)

        prompt = build_cover_prompt(draft)
        try:
            image_ref, attempts = call_with_retry(
                lambda: self._image_generator.generate_cover(prompt),
                policy=self._retry_policy,
                stage=STAGE,
                run_logger=log,
            )
        except (IllustrationDegraded, TransientAPIError) as exc:
            return self._fallback(genre, f"Cover generation failed: {exc}", log)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error from image provider")
            return self._fallback(genre, f"Cover generation failed unexpectedly: {exc}", log)

        log.info(STAGE, "Cover generated", attempts=attempts, image_ref=image_ref)

        if self._download_dir is not None:
            try:
                image_ref = self._download(image_ref, draft)
            except (requests.RequestException, OSError) as exc:
                log.warning(STAGE, "Cover download failed; keeping remote reference", error=str(exc))
                return CoverResult(
                    image_ref=image_ref,
                    degraded=False,
                    note=f"Cover download failed: {exc}",
                )

        return CoverResult(image_ref=image_ref, degraded=False)

    def _fallback(self, genre: str, note: str, log: RunLogger) -> CoverResult:
        image_ref = fallback_cover_for(genre, self._fallback_cover_dir)
        log.warning(STAGE, "Using genre template fallback", image_ref=image_ref, note=note)
        return CoverResult(image_ref=image_ref, degraded=True, note=note)

    def _download(self, url: str, draft: StoryDraft) -> str:
        response = self._session.get(url, timeout=self._download_timeout)
        response.raise_for_status()

        self._download_dir.mkdir(parents=True, exist_ok=True)
        path = self._download_dir / f"cover-{draft.brief.id}.png"
        path.write_bytes(response.content)
        return str(path)
