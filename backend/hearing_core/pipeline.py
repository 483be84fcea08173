from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import asdict
from typing import Any, Iterable

from profile_memory import ProfileMemoryService

from .analyzer import ProfileAnalyzer
from .executor import ActionExecutor
from .hearing_agent import HEARING_MAX_TOKENS, HEARING_TEMPERATURE, build_turn_prompt, parse_turn_response
from .lifecycle import PAUSE_ACKNOWLEDGEMENT, SessionLifecycle, SessionStart, issues_message
from .llm import CompletionClient, CompletionUnavailable
from .models import (
    EditorResult,
    ExecutionReport,
    HearingTurn,
    IssueDecision,
    ProfileAction,
    ProfileIssue,
    Question,
    StageOutcome,
    TurnResult,
)
from .policy import ConfidencePolicy
from .profile_editor import ProfileEditor
from .question_bank import QuestionBank
from .settings import PipelineSettings

logger = logging.getLogger(__name__)


def _continue_prompt(question: Question | None) -> str:
    if question is None:
        return "Let's keep going. Is there anything else about your health you would like to add?"
    return f"Let's keep going. {question.question}"


class HearingPipeline:
    def __init__(
        self,
        *,
        memory: ProfileMemoryService,
        bank: QuestionBank,
        completion: CompletionClient,
        settings: PipelineSettings | None = None,
    ) -> None:
        self.memory = memory
        self.bank = bank
        self.completion = completion
        self.settings = settings or PipelineSettings.from_env()
        self.policy = ConfidencePolicy.from_settings(self.settings)
        self.analyzer = ProfileAnalyzer(bank, completion, min_profile_chars=self.settings.min_profile_chars)
        self.editor = ProfileEditor(
            completion,
            extraction_floor=self.settings.extraction_floor,
            fallback_confidence=self.settings.fallback_action_confidence,
        )
        self.executor = ActionExecutor(memory=memory, bank=bank, policy=self.policy)
        self.lifecycle = SessionLifecycle(memory=memory, bank=bank, analyzer=self.analyzer)
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[session_id] = lock
            return lock

    def start_session(self, user_id: str) -> SessionStart:
        return self.lifecycle.start(user_id)

    def pause_session(self, user_id: str, session_id: str) -> dict[str, Any]:
        with self._session_lock(session_id):
            session = self.memory.session_for_user(user_id, session_id)
            return self.lifecycle.pause(session)

    def check_profile(self, user_id: str, session_id: str | None = None) -> dict[str, Any]:
        session = (
            self.memory.session_for_user(user_id, session_id)
            if session_id
            else self.memory.sessions.latest(user_id, status="active")
        )
        if session is None:
            session = self.lifecycle.start(user_id).session
        with self._session_lock(session["id"]):
            outcome = self.lifecycle.check_profile(session)
            question = self.lifecycle.recompute_pointer(session)
        return {
            "session_id": session["id"],
            "status": outcome.status,
            "issues": [issue.to_dict() for issue in outcome.value.issues],
            "already_answered_ids": list(outcome.value.already_answered_ids),
            "missing_questions": [asdict(missing) for missing in outcome.value.missing_questions],
            "next_question": question.preview() if question else None,
        }

    def confirm_actions(
        self,
        user_id: str,
        session_id: str,
        *,
        approve: bool,
        action_ids: Iterable[str] | None = None,
    ) -> ExecutionReport:
        with self._session_lock(session_id):
            self.memory.session_for_user(user_id, session_id)
            return self.executor.confirm_pending(
                user_id=user_id,
                session_id=session_id,
                approve=approve,
                action_ids=action_ids,
            )

    def run_turn(self, user_id: str, session_id: str, message: str) -> TurnResult:
        guarded = self.memory.guard.inspect(message)
        with self._session_lock(session_id):
            session = self.memory.session_for_user(user_id, session_id)
            self.lifecycle.ensure_active(session)
            question = self.bank.get(session["current_question_id"])

            if guarded.pause_requested:
                return self._pause_turn(session, guarded.text, question)
            if guarded.profile_check_requested:
                return self._profile_check_turn(session, guarded.text, question)
            return self._hearing_turn(session, guarded.text, question)

    def _persist_exchange(
        self,
        session_id: str,
        user_text: str,
        reply: str,
        *,
        user_question: Question | None,
        reply_question: Question | None,
    ) -> None:
        self.memory.sessions.append_message(
            session_id=session_id,
            role="user",
            content=user_text,
            question_id=user_question.id if user_question else None,
        )
        self.memory.sessions.append_message(
            session_id=session_id,
            role="assistant",
            content=reply,
            question_id=reply_question.id if reply_question else None,
        )

    def _pause_turn(self, session: dict[str, Any], text: str, question: Question | None) -> TurnResult:
        self._persist_exchange(session["id"], text, PAUSE_ACKNOWLEDGEMENT, user_question=question, reply_question=None)
        self.lifecycle.pause(session, acknowledgement=None)
        return TurnResult(session_id=session["id"], reply=PAUSE_ACKNOWLEDGEMENT, paused=True, next_question=question)

    def _profile_check_turn(self, session: dict[str, Any], text: str, question: Question | None) -> TurnResult:
        outcome = self.lifecycle.check_profile(session)
        next_question = self.lifecycle.recompute_pointer(session)
        if outcome.value.issues:
            reply = issues_message(outcome.value.issues)
        else:
            reply = "I checked your profile and found no duplicates, contradictions or outdated entries."
            if next_question is not None:
                reply = f"{reply} {_continue_prompt(next_question)}"
        self._persist_exchange(session["id"], text, reply, user_question=question, reply_question=next_question)
        return TurnResult(
            session_id=session["id"],
            reply=reply,
            paused=False,
            next_question=next_question,
            stage_fallbacks=["profile_analyzer"] if outcome.is_fallback else [],
        )

    def _next_preview(self, session: dict[str, Any], question: Question | None) -> Question | None:
        if question is None:
            return None
        answered = self.memory.progress.answered_ids(session["user_id"]) | {question.id}
        _, preview = self.bank.resolve_next(
            answered,
            int(session["current_priority"]),
            session.get("skipped_question_ids") or (),
        )
        return preview

    def _hearing_turn(self, session: dict[str, Any], text: str, question: Question | None) -> TurnResult:
        session_id = session["id"]
        user_id = session["user_id"]
        history = self.memory.sessions.list_messages(session_id)
        pending_issues = [ProfileIssue.from_dict(item) for item in session.get("pending_issues") or []]
        section_content = self.memory.sections.get_content(user_id, question.section_id) if question else ""
        section_title = self.bank.section_title(question.section_id) if question else ""

        prompt = build_turn_prompt(
            question,
            section_content,
            pending_issues,
            not any(message["role"] == "user" for message in history),
            self._next_preview(session, question),
            section_title=section_title,
            user_message=text,
            history=history,
            history_limit=self.settings.history_limit,
        )
        try:
            raw = self.completion.complete(prompt, temperature=HEARING_TEMPERATURE, max_tokens=HEARING_MAX_TOKENS)
        except CompletionUnavailable as exc:
            logger.warning("hearing agent unavailable, asking the user to retry: %s", exc)
            reply = _continue_prompt(question)
            self._persist_exchange(session_id, text, reply, user_question=question, reply_question=question)
            return TurnResult(
                session_id=session_id,
                reply=reply,
                paused=False,
                next_question=question,
                stage_fallbacks=["hearing_agent"],
            )

        turn = parse_turn_response(raw, current_question=question)
        if turn.mode_switch:
            logger.info("hearing agent reported mode %s for session %s", turn.mode_switch, session_id)
        fallbacks: list[str] = []
        editor_outcome: StageOutcome[EditorResult] | None = None
        if turn.extracted_data is not None:
            editor_outcome = self.editor.generate_actions(turn.extracted_data, section_content, section_title)
            if editor_outcome.is_fallback:
                fallbacks.append("profile_editor")

        # Every model call of the turn is done; store writes start here.
        report = ExecutionReport()
        if pending_issues:
            decision = turn.issue_decision
            if decision is not None and decision.decision != "clarify":
                report.merge(self._resolve_issues(user_id, session_id, pending_issues, decision))
                self.memory.sessions.set_pending_issues(session_id, [], surfaced=True)

        answered_question_id = None
        if editor_outcome is not None and turn.extracted_data is not None:
            report.merge(
                self.executor.execute(user_id=user_id, session_id=session_id, actions=editor_outcome.value.actions)
            )
            answered_question_id = self._record_progress(session_id, user_id, turn, editor_outcome.value)

        next_question = self.lifecycle.recompute_pointer(session)
        paused = turn.session_control == "pause"
        reply = turn.response_text or _continue_prompt(next_question)
        if paused and "saved" not in reply.lower():
            reply = f"{reply}\n\n{PAUSE_ACKNOWLEDGEMENT}"
        self._persist_exchange(session_id, text, reply, user_question=question, reply_question=next_question)
        if paused:
            self.lifecycle.pause(session, acknowledgement=None)

        return TurnResult(
            session_id=session_id,
            reply=reply,
            paused=paused,
            report=report,
            answered_question_id=answered_question_id,
            next_question=next_question,
            stage_fallbacks=fallbacks,
        )

    def _resolve_issues(
        self,
        user_id: str,
        session_id: str,
        issues: list[ProfileIssue],
        decision: IssueDecision,
    ) -> ExecutionReport:
        actions: list[ProfileAction] = []
        if decision.decision == "approve":
            actions = [issue.suggested_action for issue in issues if issue.suggested_action]
        elif decision.decision == "custom" and decision.custom_action is not None:
            actions = [decision.custom_action]
        if not actions:
            logger.info("profile issues left as-is (decision=%s)", decision.decision)
            return ExecutionReport()
        return self.executor.execute(user_id=user_id, session_id=session_id, actions=actions, user_confirmed=True)

    def _record_progress(
        self,
        session_id: str,
        user_id: str,
        turn: HearingTurn,
        result: EditorResult,
    ) -> str | None:
        extracted = turn.extracted_data
        question = self.bank.get(result.answered_question_id)
        if extracted is None or question is None:
            return None
        if extracted.is_skipped and not self.settings.skip_marks_answered:
            self.memory.sessions.add_skipped_question(session_id, question.id)
            return None
        summary = extracted.raw_answer or "; ".join(f"{fact.hint}: {fact.value}" for fact in extracted.extracted_facts)
        self.memory.progress.mark_answered(
            user_id=user_id,
            question_id=question.id,
            section_id=question.section_id,
            priority=question.priority,
            answered_via="skip" if extracted.is_skipped else "answer",
            answer_summary=summary or None,
            session_id=session_id,
        )
        return question.id
