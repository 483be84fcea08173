from __future__ import annotations

import logging
from typing import Iterable

from pydantic import ValidationError

from .llm import CompletionClient, CompletionUnavailable, extract_json_object
from .models import AnalysisResult, Question, StageOutcome
from .question_bank import QuestionBank
from .schemas import AnalyzerResponse

logger = logging.getLogger(__name__)

ANALYZER_TEMPERATURE = 0.1
ANALYZER_MAX_TOKENS = 4096


class ProfileAnalyzer:
    def __init__(self, bank: QuestionBank, completion: CompletionClient, *, min_profile_chars: int = 20) -> None:
        self.bank = bank
        self.completion = completion
        self.min_profile_chars = min_profile_chars

    def _db_only(self, answered: set[str]) -> AnalysisResult:
        return AnalysisResult(issues=[], missing_questions=self.bank.missing(answered), already_answered_ids=[])

    def build_prompt(self, profile_text: str, unanswered: list[Question]) -> str:
        section_lines = "\n".join(
            f"- {section_id}: {self.bank.section_title(section_id)}" for section_id in self.bank.section_ids
        )
        question_lines = "\n".join(
            f"{question.id}|{self.bank.section_title(question.section_id)}|P{question.priority}|"
            f"{question.question}|{', '.join(question.extraction_hints)}"
            for question in unanswered
        )
        return (
            "You audit a user's health profile.\n\n"
            "Tasks:\n"
            "1. Find problems in the profile text:\n"
            "   - DUPLICATE: the same fact is stated more than once.\n"
            "   - CONFLICT: two statements contradict each other.\n"
            "   - OUTDATED: a statement is clearly stale (old dates, 'currently' about something long past).\n"
            "2. Decide which of the unanswered questions below are already answered by the profile text.\n\n"
            "Valid section ids (use only these, never invent one):\n"
            f"{section_lines}\n\n"
            "Unanswered questions (id|section|priority|question|extraction hints):\n"
            f"{question_lines or '(none)'}\n\n"
            "Profile text:\n"
            f"{profile_text}\n\n"
            "Respond with JSON only, no prose, in exactly this shape:\n"
            '{"issues": [{"type": "DUPLICATE|CONFLICT|OUTDATED", "section_id": "<section id>", '
            '"description": "<what is wrong>", "existing_texts": ["<exact offending text>"], '
            '"suggested_resolution": "<how to fix it>", '
            '"suggested_action": {"type": "UPDATE|DELETE", "section_id": "<section id>", '
            '"target_text": "<exact text from the profile>", "new_text": "<replacement or null>", '
            '"reason": "<why>", "confidence": 0.0}}], '
            '"already_answered_ids": ["<question id>"]}\n'
            "suggested_action may be null. existing_texts and target_text must be copied verbatim from the profile."
        )

    def analyze(self, profile_text: str | None, answered_question_ids: Iterable[str]) -> StageOutcome[AnalysisResult]:
        answered = set(answered_question_ids)
        text = (profile_text or "").strip()
        if len(text) < self.min_profile_chars:
            return StageOutcome.ok(self._db_only(answered))

        unanswered = self.bank.unanswered(answered)
        prompt = self.build_prompt(text, unanswered)
        try:
            raw = self.completion.complete(prompt, temperature=ANALYZER_TEMPERATURE, max_tokens=ANALYZER_MAX_TOKENS)
        except CompletionUnavailable as exc:
            logger.warning("profile analyzer falling back: %s", exc)
            return StageOutcome.fallback(self._db_only(answered), "model_unavailable")

        payload = extract_json_object(raw)
        if payload is None:
            logger.warning("profile analyzer falling back: response was not JSON")
            return StageOutcome.fallback(self._db_only(answered), "malformed_output")
        try:
            parsed = AnalyzerResponse.model_validate(payload)
        except ValidationError as exc:
            logger.warning("profile analyzer falling back: %s", exc.errors()[:3])
            return StageOutcome.fallback(self._db_only(answered), "schema_violation")

        issues = []
        for issue in parsed.issues:
            if not self.bank.has_section(issue.section_id):
                logger.info("dropping analyzer issue for unknown section %s", issue.section_id)
                continue
            issues.append(issue.to_model())

        unanswered_ids = {question.id for question in unanswered}
        already_answered: list[str] = []
        for question_id in parsed.already_answered_ids:
            if question_id in unanswered_ids and question_id not in already_answered:
                already_answered.append(question_id)

        return StageOutcome.ok(
            AnalysisResult(
                issues=issues,
                missing_questions=self.bank.missing(answered | set(already_answered)),
                already_answered_ids=already_answered,
            )
        )
