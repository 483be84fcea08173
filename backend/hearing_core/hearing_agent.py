from __future__ import annotations

import logging
from typing import Any, Sequence

from pydantic import ValidationError

from . import markers
from .models import ExtractedData, HearingTurn, ProfileIssue, Question
from .schemas import ExtractedDataPayload, IssueDecisionPayload

logger = logging.getLogger(__name__)

HEARING_TEMPERATURE = 0.7
HEARING_MAX_TOKENS = 1200

_ISSUE_LABELS = {
    "DUPLICATE": "Duplicate",
    "CONFLICT": "Contradiction",
    "OUTDATED": "Possibly outdated",
}


def describe_issue(issue: ProfileIssue) -> str:
    label = _ISSUE_LABELS.get(issue.type, issue.type)
    quoted = "; ".join(f'"{text}"' for text in issue.existing_texts) or "(no exact text)"
    lines = [f"[{issue.type}] {label}: {issue.description}", f"  Text: {quoted}"]
    if issue.suggested_resolution:
        lines.append(f"  Suggested fix: {issue.suggested_resolution}")
    return "\n".join(lines)


def format_history(history: Sequence[dict[str, Any]], limit: int) -> str:
    if not history:
        return "(no previous messages)"
    recent = list(history)[-limit:] if limit > 0 else []
    omitted = len(history) - len(recent)
    lines: list[str] = []
    if omitted:
        lines.append(f"({omitted} earlier messages omitted)")
    for message in recent:
        role = "User" if message.get("role") == "user" else "Assistant"
        lines.append(f"{role}: {str(message.get('content') or '').strip()}")
    return "\n".join(lines)


def _extraction_format(question: Question) -> str:
    example = {
        "question_id": question.id,
        "section_id": question.section_id,
        "raw_answer": "<short summary of what the user said>",
        "extracted_facts": [{"hint": hint, "value": "<value>", "confidence": 0.9} for hint in question.extraction_hints[:2]],
        "is_skipped": False,
        "needs_clarification": False,
    }
    return markers.render_block(markers.EXTRACTED_DATA, example)


def build_turn_prompt(
    current_question: Question | None,
    existing_section_content: str,
    pending_issues: Sequence[ProfileIssue],
    is_first_question: bool,
    next_question_preview: Question | None,
    *,
    section_title: str = "",
    user_message: str = "",
    history: Sequence[dict[str, Any]] = (),
    history_limit: int = 20,
) -> str:
    parts: list[str] = [
        "You are a warm, concise health interviewer helping the user build their health profile.",
        "Reply in plain conversational prose. Never show JSON or markup to the user outside the marker blocks described below.",
        "",
        "Conversation so far:",
        format_history(history, history_limit),
        "",
        f"User's latest message:\n{user_message or '(none)'}",
        "",
    ]

    if pending_issues:
        parts.append("Issues found in the user's existing profile:")
        parts.extend(describe_issue(issue) for issue in pending_issues)
        parts.extend(
            [
                "If these issues have not been presented in the conversation yet, present each one with its label, "
                "the offending text and the suggested fix, and ask whether to reconcile them before asking anything else.",
                "If the user is responding to them, report their decision in exactly this block:",
                markers.render_block(
                    markers.ISSUE_DECISION,
                    {
                        "decision": "approve|reject|custom|clarify",
                        "custom_text": None,
                        "custom_action": {
                            "type": "UPDATE|DELETE",
                            "section_id": pending_issues[0].section_id,
                            "target_text": "<exact text from the profile>",
                            "new_text": "<replacement, or null for DELETE>",
                            "reason": "<what the user asked for>",
                            "confidence": 1.0,
                        },
                    },
                ),
                "Use approve when they accept the suggested fixes, reject when they decline, custom when they give their own "
                "correction (summarize it in custom_text and write the edit as custom_action; otherwise custom_action is "
                "null), clarify when their intent is unclear.",
                "",
            ]
        )

    if current_question is None:
        parts.extend(
            [
                "Every structured question has been answered. Chat freely about the user's health profile.",
                "Do not output an EXTRACTED_DATA block.",
            ]
        )
    else:
        title = section_title or current_question.section_id
        parts.extend(
            [
                f"Current section: {title} ({current_question.section_id})",
                f"Current question [{current_question.id}]: {current_question.question}",
                f"Intent: {current_question.intent or '(none)'}",
                f"Facts to extract: {', '.join(current_question.extraction_hints) or '(free text)'}",
                "Ask only about this question. Ignore every other topic even if the user mentions it.",
                "",
            ]
        )
        existing = existing_section_content.strip()
        if existing:
            parts.extend(
                [
                    "The profile already contains this for the section. Do not ask again for what is already there:",
                    existing,
                    "",
                ]
            )
        if is_first_question:
            parts.append("This is the user's first answer in this session. Thank them briefly.")
        else:
            parts.append("Start with one short, empathetic acknowledgement of what the user said.")
        if next_question_preview is not None:
            parts.append(
                f"If the answer is complete, move on by asking this next question: {next_question_preview.question}"
            )
        else:
            parts.append("If the answer is complete, tell the user the structured questions are finished.")
        parts.extend(
            [
                "",
                "Rules:",
                "- Ask one question at a time.",
                "- If the user says skip, pass or that they don't know, set is_skipped to true and move on.",
                "- If the answer is one or two words where more detail is needed, set needs_clarification to true "
                "and ask a follow-up about the same question instead of moving on.",
                "- If the user corrects an earlier answer, extract the corrected values.",
                "- Give every fact a confidence between 0 and 1.",
                "",
                "When the user's message answers, skips or partially answers the current question, end your reply with:",
                _extraction_format(current_question),
                "Omit the block when the message says nothing about the current question.",
            ]
        )

    parts.extend(
        [
            "",
            "If the user wants to stop, save or end the session, acknowledge that their progress is saved and add "
            f"{markers.render_control(markers.SESSION_CONTROL, 'pause')} at the end of your reply.",
        ]
    )
    return "\n".join(parts)


def parse_turn_response(model_output: str | None, *, current_question: Question | None = None) -> HearingTurn:
    scanned = markers.scan(model_output)

    extracted: ExtractedData | None = None
    payload = scanned.block_json(markers.EXTRACTED_DATA)
    if payload is not None:
        try:
            extracted = ExtractedDataPayload.model_validate(payload).to_model()
        except ValidationError as exc:
            logger.warning("discarding invalid extracted data: %s", exc.errors()[:3])
            extracted = None
    elif markers.EXTRACTED_DATA in scanned.blocks:
        logger.warning("discarding unparsable extracted data block")

    if extracted is not None and current_question is not None:
        if extracted.question_id != current_question.id:
            logger.warning(
                "extracted data for %s does not match current question %s",
                extracted.question_id,
                current_question.id,
            )
            extracted = None
        else:
            extracted.section_id = current_question.section_id
    elif extracted is not None and current_question is None:
        extracted = None

    decision = None
    decision_payload = scanned.block_json(markers.ISSUE_DECISION)
    if decision_payload is not None:
        try:
            decision = IssueDecisionPayload.model_validate(decision_payload).to_model()
        except ValidationError as exc:
            logger.warning("discarding invalid issue decision: %s", exc.errors()[:3])

    control = scanned.controls.get(markers.SESSION_CONTROL)
    return HearingTurn(
        response_text=scanned.visible_text,
        extracted_data=extracted,
        session_control=control if control == "pause" else None,
        issue_decision=decision,
        mode_switch=scanned.controls.get(markers.MODE_SWITCH),
    )
