from __future__ import annotations

from dataclasses import dataclass

from .models import ProfileAction
from .settings import PipelineSettings


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    code: str
    message: str


class ConfidencePolicy:
    def __init__(self, *, auto_apply_threshold: float = 0.8, delete_threshold: float = 0.95) -> None:
        if not (0.0 <= auto_apply_threshold <= 1.0 and 0.0 <= delete_threshold <= 1.0):
            raise ValueError("Confidence thresholds must be between 0 and 1.")
        self.auto_apply_threshold = auto_apply_threshold
        self.delete_threshold = delete_threshold

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> ConfidencePolicy:
        return cls(
            auto_apply_threshold=settings.auto_apply_threshold,
            delete_threshold=settings.delete_threshold,
        )

    def threshold_for(self, action: ProfileAction) -> float:
        if action.type == "DELETE":
            return max(self.delete_threshold, self.auto_apply_threshold)
        return self.auto_apply_threshold

    def evaluate(self, action: ProfileAction, *, user_confirmed: bool = False) -> PolicyDecision:
        if action.type == "NONE":
            return PolicyDecision(False, "noop", action.reason or "No change requested.")
        if user_confirmed:
            return PolicyDecision(True, "user_confirmed", "Confirmed by the user.")
        threshold = self.threshold_for(action)
        if action.confidence >= threshold:
            return PolicyDecision(True, "auto_apply", f"Confidence {action.confidence:.2f} >= {threshold:.2f}.")
        return PolicyDecision(
            False,
            "needs_confirmation",
            f"Confidence {action.confidence:.2f} below {threshold:.2f}; waiting for user confirmation.",
        )
