"""
Runtime configuration for the story pipeline, read from the environment and an optional YAML file.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from wholesome_library.common import ConfigurationError, RetryPolicy

DEFAULT_STORY_MODEL = "gpt-4.1-mini"
DEFAULT_CHECK_MODEL = "gpt-4o-mini"
DEFAULT_DB_PATH = "data/wholesome_library.db"
DEFAULT_FALLBACK_COVER_DIR = "/covers"


def _env_first(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigurationError(f"Environment variable {name} must be a number, got {value!r}.") from exc


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"Environment variable {name} must be an integer, got {value!r}.") from exc


@dataclass(frozen=True)
class PipelineSettings:
    """
    Every tunable of the pipeline in one immutable object.

    Attributes
    ----------
    llm_api_key:
        Credential for the LLM provider. Required before any brief is claimed.
    image_api_token:
        Replicate token. When missing, covers degrade to the fallback template.
    values_threshold / quality_threshold:
        Minimum scores (0-5 and 0-100) a draft needs to be persisted.
    approval_quality_threshold:
        Quality score from which a persisted story is published without editor review.
    stale_claim_after_s:
        Age after which a ``processing`` brief may be claimed again.
    max_claim_attempts:
        Claims allowed per brief; a stale brief at the cap is failed instead of reclaimed.
    """

    llm_api_key: str | None = None
    image_api_token: str | None = None
    image_model: str = "black-forest-labs/flux-schnell"

    story_model: str = DEFAULT_STORY_MODEL
    check_model: str = DEFAULT_CHECK_MODEL
    brief_model: str = DEFAULT_CHECK_MODEL
    story_temperature: float = 0.8
    story_max_tokens: int = 12000
    check_max_tokens: int = 1000

    values_threshold: float = 3.0
    quality_threshold: float = 70.0
    approval_quality_threshold: float = 85.0

    retry_max_attempts: int = 3
    retry_base_delay_s: float = 1.0
    retry_backoff_factor: float = 2.0
    retry_max_delay_s: float = 8.0

    llm_timeout_s: float = 120.0
    image_timeout_s: float = 90.0
    store_timeout_s: float = 30.0

    stale_claim_after_s: float = 1800.0
    max_claim_attempts: int = 3

    db_path: str = DEFAULT_DB_PATH
    fallback_cover_dir: str = DEFAULT_FALLBACK_COVER_DIR
    cover_download_dir: str | None = None
    log_dir: str | None = None
    artifact_dir: str | None = None

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay_s=self.retry_base_delay_s,
            backoff_factor=self.retry_backoff_factor,
            max_delay_s=self.retry_max_delay_s,
        )

    @property
    def illustration_enabled(self) -> bool:
        return bool(self.image_api_token)

    def require_llm_credentials(self) -> None:
        if not self.llm_api_key:
            raise ConfigurationError(
                "LLM credentials are required. Set OPENAI_API_KEY or LITELLM_API_KEY."
            )

    def with_overrides(self, overrides: Mapping[str, Any]) -> "PipelineSettings":
        known = {item.name for item in dataclasses.fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}.")
        return dataclasses.replace(self, **dict(overrides))

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        defaults = cls()
        return cls(
            llm_api_key=_env_first("OPENAI_API_KEY", "LITELLM_API_KEY"),
            image_api_token=_env_first("REPLICATE_API_TOKEN"),
            image_model=_env_first("WHOLESOME_COVER_MODEL", "REPLICATE_MODEL") or defaults.image_model,
            story_model=(
                _env_first("WHOLESOME_STORY_MODEL", "LITELLM_STORY_MODEL", "LITELLM_MODEL")
                or defaults.story_model
            ),
            check_model=(
                _env_first("WHOLESOME_CHECK_MODEL", "LITELLM_CHECK_MODEL", "LITELLM_MODEL")
                or defaults.check_model
            ),
            brief_model=(
                _env_first("WHOLESOME_BRIEF_MODEL", "WHOLESOME_CHECK_MODEL", "LITELLM_MODEL")
                or defaults.brief_model
            ),
            values_threshold=_env_float("WHOLESOME_VALUES_THRESHOLD", defaults.values_threshold),
            quality_threshold=_env_float("WHOLESOME_QUALITY_THRESHOLD", defaults.quality_threshold),
            approval_quality_threshold=_env_float(
                "WHOLESOME_APPROVAL_THRESHOLD", defaults.approval_quality_threshold
            ),
            retry_max_attempts=_env_int("WHOLESOME_RETRY_MAX_ATTEMPTS", defaults.retry_max_attempts),
            retry_base_delay_s=_env_float("WHOLESOME_RETRY_BASE_DELAY_S", defaults.retry_base_delay_s),
            llm_timeout_s=_env_float("WHOLESOME_LLM_TIMEOUT_S", defaults.llm_timeout_s),
            image_timeout_s=_env_float("WHOLESOME_IMAGE_TIMEOUT_S", defaults.image_timeout_s),
            stale_claim_after_s=_env_float("WHOLESOME_STALE_CLAIM_AFTER_S", defaults.stale_claim_after_s),
            max_claim_attempts=_env_int("WHOLESOME_MAX_CLAIM_ATTEMPTS", defaults.max_claim_attempts),
            db_path=_env_first("WHOLESOME_DB_PATH") or defaults.db_path,
            fallback_cover_dir=_env_first("WHOLESOME_FALLBACK_COVER_DIR") or defaults.fallback_cover_dir,
            cover_download_dir=_env_first("WHOLESOME_COVER_DIR"),
            log_dir=_env_first("WHOLESOME_LOG_DIR"),
            artifact_dir=_env_first("WHOLESOME_ARTIFACT_DIR"),
        )


def load_settings(config_path: str | Path | None = None) -> PipelineSettings:
    """
    Build settings from the environment, then overlay keys from a YAML file if given.
    """
    settings = PipelineSettings.from_env()
    if config_path is None:
        return settings

    path = Path(config_path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, Mapping):
        raise ConfigurationError("Configuration YAML must deserialize to a mapping.")
    return settings.with_overrides(data)
