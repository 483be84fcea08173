from __future__ import annotations

import logging
from typing import Iterable

from profile_memory import ProfileMemoryService

from .models import ExecutionReport, ProfileAction
from .policy import ConfidencePolicy
from .question_bank import QuestionBank

logger = logging.getLogger(__name__)


class ActionRejected(Exception):
    pass


def _tidy(content: str) -> str:
    lines = [line.rstrip() for line in content.splitlines()]
    return "\n".join(line for line in lines if line.strip())


def apply_action(action: ProfileAction, content: str) -> str:
    current = content or ""
    if action.type == "ADD":
        new_text = (action.new_text or "").strip()
        if not new_text:
            raise ActionRejected("ADD requires new_text.")
        return f"{current.rstrip()}\n{new_text}" if current.strip() else new_text
    if action.type in {"UPDATE", "DELETE"}:
        target = action.target_text or ""
        if not target.strip():
            raise ActionRejected(f"{action.type} requires target_text.")
        if target not in current:
            raise ActionRejected(f"target_text not found verbatim in section {action.section_id}.")
        if action.type == "UPDATE":
            new_text = (action.new_text or "").strip()
            if not new_text:
                raise ActionRejected("UPDATE requires new_text.")
            return _tidy(current.replace(target, new_text, 1))
        return _tidy(current.replace(target, "", 1))
    raise ActionRejected(f"Unsupported action type {action.type}.")


class ActionExecutor:
    def __init__(self, *, memory: ProfileMemoryService, bank: QuestionBank, policy: ConfidencePolicy) -> None:
        self.memory = memory
        self.bank = bank
        self.policy = policy

    def _apply(self, user_id: str, action: ProfileAction) -> None:
        if not self.bank.has_section(action.section_id):
            raise ActionRejected(f"Unknown section {action.section_id}.")
        current = self.memory.sections.get_content(user_id, action.section_id)
        updated = apply_action(action, current)
        self.memory.sections.upsert_content(
            user_id=user_id,
            section_id=action.section_id,
            title=self.bank.section_title(action.section_id),
            content=updated,
        )

    def execute(
        self,
        *,
        user_id: str,
        session_id: str,
        actions: Iterable[ProfileAction],
        user_confirmed: bool = False,
    ) -> ExecutionReport:
        report = ExecutionReport()
        for action in actions:
            decision = self.policy.evaluate(action, user_confirmed=user_confirmed)
            if decision.code == "noop":
                continue
            if not self.bank.has_section(action.section_id):
                logger.warning("rejected profile action for unknown section %s", action.section_id)
                report.rejected.append({**action.to_dict(), "error": f"Unknown section {action.section_id}."})
                continue
            if not decision.allowed:
                pending_id = self.memory.sessions.add_pending_action(
                    user_id=user_id,
                    session_id=session_id,
                    action=action.to_dict(),
                )
                report.pending.append({"id": pending_id, **action.to_dict(), "policy": decision.message})
                continue
            try:
                self._apply(user_id, action)
            except ActionRejected as exc:
                logger.warning("rejected profile action %s on %s: %s", action.type, action.section_id, exc)
                report.rejected.append({**action.to_dict(), "error": str(exc)})
                continue
            report.executed.append({**action.to_dict(), "policy": decision.code})
        return report

    def confirm_pending(
        self,
        *,
        user_id: str,
        session_id: str,
        approve: bool,
        action_ids: Iterable[str] | None = None,
    ) -> ExecutionReport:
        wanted = set(action_ids) if action_ids is not None else None
        report = ExecutionReport()
        for record in self.memory.sessions.list_pending_actions(session_id):
            if record["user_id"] != user_id:
                continue
            if wanted is not None and record["id"] not in wanted:
                continue
            action = ProfileAction.from_dict(record["action"])
            if not approve:
                self.memory.sessions.set_pending_action_status(record["id"], "discarded")
                continue
            try:
                self._apply(user_id, action)
            except ActionRejected as exc:
                logger.warning("rejected confirmed action %s: %s", record["id"], exc)
                self.memory.sessions.set_pending_action_status(record["id"], "rejected")
                report.rejected.append({"id": record["id"], **action.to_dict(), "error": str(exc)})
                continue
            self.memory.sessions.set_pending_action_status(record["id"], "applied")
            report.executed.append({"id": record["id"], **action.to_dict(), "policy": "user_confirmed"})
        return report
