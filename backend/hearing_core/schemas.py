from __future__ import annotations

from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import (
    ExtractedData,
    ExtractedFact,
    IssueDecision,
    ProfileAction,
    ProfileIssue,
)


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class FactPayload(_StrictModel):
    hint: str = Field(min_length=1)
    value: Union[str, int, float, bool]
    confidence: float = Field(ge=0.0, le=1.0)

    @field_validator("value")
    @classmethod
    def _stringify(cls, value: Union[str, int, float, bool]) -> str:
        return str(value).strip()


class ExtractedDataPayload(_StrictModel):
    question_id: str = Field(min_length=1)
    section_id: str = ""
    raw_answer: str = ""
    extracted_facts: list[FactPayload]
    is_skipped: bool = False
    needs_clarification: bool = False

    def to_model(self) -> ExtractedData:
        return ExtractedData(
            question_id=self.question_id,
            section_id=self.section_id,
            raw_answer=self.raw_answer,
            extracted_facts=[
                ExtractedFact(hint=fact.hint, value=str(fact.value), confidence=fact.confidence)
                for fact in self.extracted_facts
            ],
            is_skipped=self.is_skipped,
            needs_clarification=self.needs_clarification,
        )


class ActionPayload(_StrictModel):
    type: Literal["ADD", "UPDATE", "DELETE", "NONE"]
    section_id: str = Field(min_length=1)
    target_text: str | None = None
    new_text: str | None = None
    reason: str = ""
    confidence: float = Field(ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_required_texts(self) -> ActionPayload:
        if self.type in {"ADD", "UPDATE"} and not (self.new_text or "").strip():
            raise ValueError(f"{self.type} requires new_text")
        if self.type in {"UPDATE", "DELETE"} and not (self.target_text or "").strip():
            raise ValueError(f"{self.type} requires target_text")
        return self

    def to_model(self) -> ProfileAction:
        return ProfileAction(
            type=self.type,
            section_id=self.section_id,
            target_text=self.target_text,
            new_text=(self.new_text or "").strip() or None,
            reason=self.reason,
            confidence=self.confidence,
        )


class IssuePayload(_StrictModel):
    type: Literal["DUPLICATE", "CONFLICT", "OUTDATED"]
    section_id: str = Field(min_length=1)
    description: str
    existing_texts: list[str] = Field(default_factory=list)
    suggested_resolution: str = ""
    suggested_action: ActionPayload | None = None

    def to_model(self) -> ProfileIssue:
        return ProfileIssue(
            type=self.type,
            section_id=self.section_id,
            description=self.description,
            existing_texts=list(self.existing_texts),
            suggested_resolution=self.suggested_resolution,
            suggested_action=self.suggested_action.to_model() if self.suggested_action else None,
        )


class AnalyzerResponse(_StrictModel):
    issues: list[IssuePayload]
    already_answered_ids: list[str]


class EditorResponse(_StrictModel):
    actions: list[ActionPayload]


class IssueDecisionPayload(_StrictModel):
    decision: Literal["approve", "reject", "custom", "clarify"]
    custom_text: str | None = None
    custom_action: ActionPayload | None = None

    def to_model(self) -> IssueDecision:
        return IssueDecision(
            decision=self.decision,
            custom_text=self.custom_text,
            custom_action=self.custom_action.to_model() if self.custom_action else None,
        )
