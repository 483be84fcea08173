from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")

ISSUE_TYPES = {"DUPLICATE", "CONFLICT", "OUTDATED"}
ACTION_TYPES = {"ADD", "UPDATE", "DELETE", "NONE"}
PRIORITY_TIERS = (3, 2, 1)


@dataclass(frozen=True)
class Section:
    id: str
    title: str


@dataclass(frozen=True)
class Question:
    id: str
    section_id: str
    priority: int
    question: str
    intent: str = ""
    extraction_hints: tuple[str, ...] = ()

    def preview(self) -> dict[str, Any]:
        return {
            "question_id": self.id,
            "section_id": self.section_id,
            "priority": self.priority,
            "question": self.question,
        }


@dataclass(frozen=True)
class MissingQuestion:
    question_id: str
    question: str
    section_id: str
    priority: int
    reason: str = "not_answered"


@dataclass
class ProfileAction:
    type: str
    section_id: str
    target_text: str | None = None
    new_text: str | None = None
    reason: str = ""
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "section_id": self.section_id,
            "target_text": self.target_text,
            "new_text": self.new_text,
            "reason": self.reason,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ProfileAction:
        return cls(
            type=str(payload.get("type") or "NONE").upper(),
            section_id=str(payload.get("section_id") or ""),
            target_text=payload.get("target_text"),
            new_text=payload.get("new_text"),
            reason=str(payload.get("reason") or ""),
            confidence=float(payload.get("confidence") or 0.0),
        )

    @classmethod
    def none(cls, section_id: str, reason: str) -> ProfileAction:
        return cls(type="NONE", section_id=section_id, reason=reason, confidence=1.0)


@dataclass
class ProfileIssue:
    type: str
    section_id: str
    description: str
    existing_texts: list[str] = field(default_factory=list)
    suggested_resolution: str = ""
    suggested_action: ProfileAction | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "section_id": self.section_id,
            "description": self.description,
            "existing_texts": list(self.existing_texts),
            "suggested_resolution": self.suggested_resolution,
            "suggested_action": self.suggested_action.to_dict() if self.suggested_action else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ProfileIssue:
        action = payload.get("suggested_action")
        return cls(
            type=str(payload.get("type") or ""),
            section_id=str(payload.get("section_id") or ""),
            description=str(payload.get("description") or ""),
            existing_texts=[str(item) for item in payload.get("existing_texts") or []],
            suggested_resolution=str(payload.get("suggested_resolution") or ""),
            suggested_action=ProfileAction.from_dict(action) if isinstance(action, dict) else None,
        )


@dataclass
class ExtractedFact:
    hint: str
    value: str
    confidence: float


@dataclass
class ExtractedData:
    question_id: str
    section_id: str
    raw_answer: str = ""
    extracted_facts: list[ExtractedFact] = field(default_factory=list)
    is_skipped: bool = False
    needs_clarification: bool = False

    def facts_above(self, floor: float) -> list[ExtractedFact]:
        return [fact for fact in self.extracted_facts if fact.confidence >= floor and fact.value.strip()]

    def to_dict(self) -> dict[str, Any]:
        return {
            "question_id": self.question_id,
            "section_id": self.section_id,
            "raw_answer": self.raw_answer,
            "extracted_facts": [
                {"hint": fact.hint, "value": fact.value, "confidence": fact.confidence}
                for fact in self.extracted_facts
            ],
            "is_skipped": self.is_skipped,
            "needs_clarification": self.needs_clarification,
        }


@dataclass(frozen=True)
class IssueDecision:
    decision: str
    custom_text: str | None = None
    custom_action: ProfileAction | None = None


@dataclass
class HearingTurn:
    response_text: str
    extracted_data: ExtractedData | None = None
    session_control: str | None = None
    issue_decision: IssueDecision | None = None
    # Reported by the model for logging only; turns are routed by question state.
    mode_switch: str | None = None


@dataclass
class AnalysisResult:
    issues: list[ProfileIssue] = field(default_factory=list)
    missing_questions: list[MissingQuestion] = field(default_factory=list)
    already_answered_ids: list[str] = field(default_factory=list)


@dataclass
class EditorResult:
    actions: list[ProfileAction] = field(default_factory=list)
    answered_question_id: str | None = None


@dataclass(frozen=True)
class StageOutcome(Generic[T]):
    status: str
    value: T
    reason: str | None = None

    @classmethod
    def ok(cls, value: T) -> StageOutcome[T]:
        return cls(status="ok", value=value)

    @classmethod
    def fallback(cls, value: T, reason: str) -> StageOutcome[T]:
        return cls(status="fallback", value=value, reason=reason)

    @property
    def is_fallback(self) -> bool:
        return self.status == "fallback"


@dataclass
class ExecutionReport:
    executed: list[dict[str, Any]] = field(default_factory=list)
    pending: list[dict[str, Any]] = field(default_factory=list)
    rejected: list[dict[str, Any]] = field(default_factory=list)

    def merge(self, other: ExecutionReport) -> None:
        self.executed.extend(other.executed)
        self.pending.extend(other.pending)
        self.rejected.extend(other.rejected)

    def as_envelope(self) -> dict[str, Any]:
        return {
            "executed_actions": self.executed,
            "pending_actions": self.pending,
            "rejected_actions": self.rejected,
        }


@dataclass
class TurnResult:
    session_id: str
    reply: str
    paused: bool
    report: ExecutionReport = field(default_factory=ExecutionReport)
    answered_question_id: str | None = None
    next_question: Question | None = None
    stage_fallbacks: list[str] = field(default_factory=list)

    def as_envelope(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "reply": self.reply,
            "paused": self.paused,
            "answered_question_id": self.answered_question_id,
            "next_question": self.next_question.preview() if self.next_question else None,
            "profile_updated": bool(self.report.executed),
            "stage_fallbacks": list(self.stage_fallbacks),
            **self.report.as_envelope(),
        }
