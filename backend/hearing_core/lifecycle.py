from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from profile_memory import ProfileMemoryService

from .analyzer import ProfileAnalyzer
from .hearing_agent import describe_issue
from .models import AnalysisResult, ProfileIssue, Question, StageOutcome
from .question_bank import QuestionBank

logger = logging.getLogger(__name__)

PAUSE_ACKNOWLEDGEMENT = "Your progress is saved. You can pick up right where you left off anytime."


class LifecycleError(Exception):
    pass


@dataclass
class SessionStart:
    session: dict[str, Any]
    resumed: bool
    welcome_message: str
    analysis: AnalysisResult
    analysis_status: str
    current_question: Question | None


def issues_message(issues: list[ProfileIssue]) -> str:
    narrated = "\n".join(describe_issue(issue) for issue in issues)
    return (
        "Before we continue, I noticed a few things in your profile that may need attention:\n"
        f"{narrated}\n"
        "Shall I fix these as suggested? You can also tell me what is actually correct."
    )


class SessionLifecycle:
    _TRANSITIONS = {
        "active": {"paused"},
        "paused": {"active"},
    }

    def __init__(self, *, memory: ProfileMemoryService, bank: QuestionBank, analyzer: ProfileAnalyzer) -> None:
        self.memory = memory
        self.bank = bank
        self.analyzer = analyzer

    def transition(self, session: dict[str, Any], target: str) -> dict[str, Any]:
        current = session["status"]
        if target not in self._TRANSITIONS.get(current, set()):
            raise LifecycleError(f"Invalid session transition {current} -> {target}")
        self.memory.sessions.set_status(session["id"], target)
        logger.info("session %s %s -> %s", session["id"], current, target)
        return {**session, "status": target}

    def ensure_active(self, session: dict[str, Any]) -> None:
        if session["status"] != "active":
            raise LifecycleError("Session is paused; start or resume it before sending messages.")

    def sync_analysis(self, user_id: str, session_id: str) -> StageOutcome[AnalysisResult]:
        answered = self.memory.progress.answered_ids(user_id)
        profile_text = self.memory.sections.profile_text(user_id, self.bank.section_ids)
        outcome = self.analyzer.analyze(profile_text, answered)
        for question_id in outcome.value.already_answered_ids:
            question = self.bank.get(question_id)
            if question is None:
                continue
            self.memory.progress.mark_answered(
                user_id=user_id,
                question_id=question.id,
                section_id=question.section_id,
                priority=question.priority,
                answered_via="analyzer",
                answer_summary="Already covered by the existing profile.",
                session_id=session_id,
            )
        return outcome

    def recompute_pointer(self, session: dict[str, Any]) -> Question | None:
        answered = self.memory.progress.answered_ids(session["user_id"])
        stored = self.memory.sessions.get(session["id"]) or session
        tier, question = self.bank.resolve_next(
            answered,
            int(session["current_priority"]),
            stored.get("skipped_question_ids") or (),
        )
        self.memory.sessions.update_pointer(
            session["id"],
            current_priority=tier,
            current_section_id=question.section_id if question else None,
            current_question_id=question.id if question else None,
        )
        return question

    def welcome_message(self, *, resumed: bool, issues: list[ProfileIssue], question: Question | None) -> str:
        if resumed:
            greeting = "Welcome back! Everything you told me last time has been saved."
        else:
            greeting = (
                "Hi! Let's build your health profile together, one question at a time. "
                'Say "skip" for anything you would rather not answer, or "save and stop" to pause at any point.'
            )
        if issues:
            return f"{greeting}\n\n{issues_message(issues)}"
        if question is None:
            return f"{greeting}\n\nAll the structured questions are answered. Feel free to tell me anything else about your health."
        lead = "Let's pick up where we left off" if resumed else "Let's start"
        return f"{greeting}\n\n{lead}: {question.question}"

    def start(self, user_id: str) -> SessionStart:
        paused = self.memory.sessions.latest(user_id, status="paused")
        if paused is not None:
            self.memory.sessions.pause_active(user_id, except_session_id=paused["id"])
            session = self.transition(paused, "active")
            resumed = True
        else:
            paused_count = self.memory.sessions.pause_active(user_id)
            if paused_count:
                logger.info("paused %s active session(s) for %s before starting a new one", paused_count, user_id)
            session = self.memory.sessions.create(user_id=user_id, current_priority=3)
            resumed = False

        outcome = self.sync_analysis(user_id, session["id"])
        question = self.recompute_pointer(session)
        issues = [] if session["issues_surfaced"] else list(outcome.value.issues)
        if issues:
            self.memory.sessions.set_pending_issues(session["id"], [issue.to_dict() for issue in issues], surfaced=True)
        welcome = self.welcome_message(resumed=resumed, issues=issues, question=question)
        self.memory.sessions.append_message(
            session_id=session["id"],
            role="assistant",
            content=welcome,
            question_id=question.id if question else None,
        )
        refreshed = self.memory.sessions.get(session["id"]) or session
        return SessionStart(
            session=refreshed,
            resumed=resumed,
            welcome_message=welcome,
            analysis=outcome.value,
            analysis_status=outcome.status,
            current_question=question,
        )

    def pause(self, session: dict[str, Any], *, acknowledgement: str | None = PAUSE_ACKNOWLEDGEMENT) -> dict[str, Any]:
        if session["status"] == "paused":
            return session
        paused = self.transition(session, "paused")
        if acknowledgement:
            self.memory.sessions.append_message(session_id=session["id"], role="assistant", content=acknowledgement)
        return paused

    def check_profile(self, session: dict[str, Any]) -> StageOutcome[AnalysisResult]:
        outcome = self.sync_analysis(session["user_id"], session["id"])
        self.memory.sessions.set_pending_issues(
            session["id"],
            [issue.to_dict() for issue in outcome.value.issues],
            surfaced=True,
        )
        return outcome

    def summary(self, user_id: str) -> dict[str, Any]:
        answered = self.memory.progress.answered_ids(user_id)
        progress = self.bank.progress(answered)
        session = self.memory.sessions.latest(user_id, status="active") or self.memory.sessions.latest(user_id)
        if session is None:
            _, question = self.bank.resolve_next(answered, 3)
            return {
                "session": None,
                "can_resume": False,
                "progress": progress,
                "next_question": question.preview() if question else None,
                "messages": [],
            }
        question = self.bank.get(session["current_question_id"])
        return {
            "session": session,
            "can_resume": session["status"] == "paused",
            "progress": progress,
            "next_question": question.preview() if question else None,
            "messages": self.memory.sessions.list_messages(session["id"]),
        }
