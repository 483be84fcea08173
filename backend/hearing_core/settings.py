from __future__ import annotations

import os
from dataclasses import dataclass


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class PipelineSettings:
    extraction_floor: float = 0.7
    auto_apply_threshold: float = 0.8
    delete_threshold: float = 0.95
    fallback_action_confidence: float = 0.85
    min_profile_chars: int = 20
    history_limit: int = 20
    max_message_chars: int = 5000
    model_timeout_seconds: float = 25.0
    skip_marks_answered: bool = True

    @classmethod
    def from_env(cls) -> PipelineSettings:
        return cls(
            extraction_floor=_env_float("HEARING_EXTRACTION_FLOOR", 0.7),
            auto_apply_threshold=_env_float("HEARING_AUTO_APPLY_THRESHOLD", 0.8),
            delete_threshold=_env_float("HEARING_DELETE_THRESHOLD", 0.95),
            min_profile_chars=_env_int("HEARING_MIN_PROFILE_CHARS", 20),
            history_limit=_env_int("HEARING_HISTORY_LIMIT", 20),
            max_message_chars=_env_int("HEARING_MAX_MESSAGE_CHARS", 5000),
            model_timeout_seconds=_env_float("HEARING_MODEL_TIMEOUT_SECONDS", 25.0),
            skip_marks_answered=_env_bool("HEARING_SKIP_MARKS_ANSWERED", True),
        )
