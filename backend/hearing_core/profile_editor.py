from __future__ import annotations

import logging
import re

from pydantic import ValidationError

from .llm import CompletionClient, CompletionUnavailable, extract_json_object
from .models import EditorResult, ExtractedData, ExtractedFact, ProfileAction, StageOutcome
from .schemas import EditorResponse

logger = logging.getLogger(__name__)

EDITOR_TEMPERATURE = 0.1
EDITOR_MAX_TOKENS = 2048

_STOPWORDS = {
    "about", "also", "and", "are", "but", "does", "did", "for", "from", "has", "have", "into", "just",
    "non", "not", "none", "per", "the", "than", "that", "this", "was", "were", "with", "without", "yes",
    "day", "days", "week", "weeks", "month", "months", "year", "years", "time", "times", "usually",
    "currently", "around", "approximately", "amount", "level", "type",
}
_SUFFIXES = ("ings", "ing", "ers", "er", "es", "ed", "s", "e")


def _stem(token: str) -> str:
    for suffix in _SUFFIXES:
        if token.endswith(suffix) and len(token) - len(suffix) >= 3:
            return token[: -len(suffix)]
    return token


def theme_stems(text: str) -> set[str]:
    tokens = re.findall(r"[a-z]+", (text or "").lower().replace("_", " "))
    return {_stem(token) for token in tokens if len(token) >= 3 and token not in _STOPWORDS}


def _content_lines(content: str) -> list[str]:
    return [line.strip() for line in (content or "").splitlines() if line.strip()]


def find_theme_line(fact: ExtractedFact, content: str) -> str | None:
    hint = theme_stems(fact.hint)
    value = theme_stems(fact.value)
    for line in _content_lines(content):
        stems = theme_stems(line)
        if hint and hint <= stems:
            return line
        if hint & stems and value & stems:
            return line
    return None


def compose_text(facts: list[ExtractedFact]) -> str:
    parts = []
    for fact in facts:
        label = fact.hint.replace("_", " ").strip().capitalize()
        parts.append(f"{label}: {fact.value.strip()}")
    return "; ".join(parts)


class ProfileEditor:
    def __init__(
        self,
        completion: CompletionClient,
        *,
        extraction_floor: float = 0.7,
        fallback_confidence: float = 0.85,
    ) -> None:
        self.completion = completion
        self.extraction_floor = extraction_floor
        self.fallback_confidence = fallback_confidence

    def build_prompt(self, extracted: ExtractedData, existing_content: str, section_title: str) -> str:
        fact_lines = "\n".join(
            f"- {fact.hint}: {fact.value} (confidence {fact.confidence:.2f})" for fact in extracted.extracted_facts
        )
        existing = existing_content.strip() or "(empty)"
        return (
            "You maintain one section of a user's health profile.\n\n"
            f"Section: {section_title} ({extracted.section_id})\n"
            f"Current content:\n{existing}\n\n"
            f"The user just answered question {extracted.question_id}: {extracted.raw_answer or '(no summary)'}\n"
            f"Extracted facts:\n{fact_lines}\n\n"
            "Decide how to change the section:\n"
            "- If the section is empty or nothing in it covers these facts, use ADD.\n"
            "- If a line already covers the same theme, use UPDATE with target_text copied exactly from that line. "
            "Never ADD a second statement about a theme that is already present.\n"
            "- Use DELETE only when a line is clearly wrong and the user said so.\n"
            "- Write new_text as one concise sentence of natural prose, not a key-value list.\n"
            "- Give every action a confidence between 0 and 1.\n\n"
            "Respond with JSON only:\n"
            '{"actions": [{"type": "ADD|UPDATE|DELETE|NONE", "section_id": "'
            f"{extracted.section_id}"
            '", "target_text": "<exact existing text or null>", "new_text": "<text or null>", '
            '"reason": "<why>", "confidence": 0.0}]}'
        )

    def generate_actions(
        self,
        extracted_data: ExtractedData,
        existing_section_content: str,
        section_title: str,
    ) -> StageOutcome[EditorResult]:
        section_id = extracted_data.section_id
        if extracted_data.is_skipped:
            return StageOutcome.ok(
                EditorResult(
                    actions=[ProfileAction.none(section_id, "User skipped the question.")],
                    answered_question_id=extracted_data.question_id,
                )
            )
        if extracted_data.needs_clarification:
            return StageOutcome.ok(
                EditorResult(actions=[ProfileAction.none(section_id, "Answer needs clarification.")])
            )
        if not extracted_data.extracted_facts:
            return StageOutcome.ok(EditorResult(actions=[ProfileAction.none(section_id, "No facts extracted.")]))

        prompt = self.build_prompt(extracted_data, existing_section_content, section_title)
        try:
            raw = self.completion.complete(prompt, temperature=EDITOR_TEMPERATURE, max_tokens=EDITOR_MAX_TOKENS)
        except CompletionUnavailable as exc:
            logger.warning("profile editor falling back: %s", exc)
            return StageOutcome.fallback(self.fallback_actions(extracted_data, existing_section_content), "model_unavailable")

        payload = extract_json_object(raw)
        if payload is None:
            logger.warning("profile editor falling back: response was not JSON")
            return StageOutcome.fallback(self.fallback_actions(extracted_data, existing_section_content), "malformed_output")

        try:
            parsed = EditorResponse.model_validate(payload)
        except ValidationError as exc:
            logger.warning("profile editor falling back: %s", exc.errors()[:3])
            return StageOutcome.fallback(self.fallback_actions(extracted_data, existing_section_content), "schema_violation")

        actions = [action.to_model() for action in parsed.actions]
        for action in actions:
            action.section_id = section_id
        actions = self.reconcile_themes(actions, extracted_data, existing_section_content)
        if not actions:
            actions = [ProfileAction.none(section_id, "Model proposed no change.")]
        return StageOutcome.ok(EditorResult(actions=actions, answered_question_id=extracted_data.question_id))

    def reconcile_themes(
        self,
        actions: list[ProfileAction],
        extracted: ExtractedData,
        existing_content: str,
    ) -> list[ProfileAction]:
        theme_lines: list[str] = []
        for fact in extracted.extracted_facts:
            line = find_theme_line(fact, existing_content)
            if line is not None and line not in theme_lines:
                theme_lines.append(line)
        updates: dict[str, ProfileAction] = {
            action.target_text: action for action in actions if action.type == "UPDATE" and action.target_text
        }
        reconciled: list[ProfileAction] = []
        for action in actions:
            if action.type != "ADD" or not action.new_text:
                reconciled.append(action)
                continue
            new_stems = theme_stems(action.new_text)
            target = next((line for line in theme_lines if theme_stems(line) & new_stems), None)
            if target is None:
                reconciled.append(action)
                continue
            if target in updates:
                merged = updates[target]
                merged.new_text = f"{merged.new_text} {action.new_text}".strip()
                merged.confidence = min(merged.confidence, action.confidence)
                logger.info("merged duplicate ADD into existing UPDATE of %r", target)
                continue
            converted = ProfileAction(
                type="UPDATE",
                section_id=action.section_id,
                target_text=target,
                new_text=action.new_text,
                reason=f"{action.reason} (existing statement covers the same theme)".strip(),
                confidence=action.confidence,
            )
            updates[target] = converted
            reconciled.append(converted)
            logger.info("converted ADD into UPDATE of %r", target)
        return reconciled

    def fallback_actions(self, extracted: ExtractedData, existing_content: str) -> EditorResult:
        section_id = extracted.section_id
        facts = extracted.facts_above(self.extraction_floor)
        if not facts:
            return EditorResult(
                actions=[ProfileAction.none(section_id, "No high-confidence facts.")],
                answered_question_id=extracted.question_id,
            )

        by_line: dict[str, list[ExtractedFact]] = {}
        unmatched: list[ExtractedFact] = []
        for fact in facts:
            line = find_theme_line(fact, existing_content)
            if line is None:
                unmatched.append(fact)
            else:
                by_line.setdefault(line, []).append(fact)

        reason = f"Extracted from the answer to question {extracted.question_id}."
        actions = [
            ProfileAction(
                type="UPDATE",
                section_id=section_id,
                target_text=line,
                new_text=compose_text(line_facts),
                reason=reason,
                confidence=self.fallback_confidence,
            )
            for line, line_facts in by_line.items()
        ]
        if unmatched:
            actions.append(
                ProfileAction(
                    type="ADD",
                    section_id=section_id,
                    new_text=compose_text(unmatched),
                    reason=reason,
                    confidence=self.fallback_confidence,
                )
            )
        return EditorResult(actions=actions, answered_question_id=extracted.question_id)
