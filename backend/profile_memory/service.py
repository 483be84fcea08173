from __future__ import annotations

from typing import Any

from .database import SQLiteProfileDB
from .input_guard import ConversationGuard
from .progress_store import ProgressStore
from .section_store import SectionStore
from .session_store import SessionStore


class SessionNotFound(Exception):
    pass


class ProfileMemoryService:
    def __init__(self, db: SQLiteProfileDB, *, max_message_chars: int | None = None) -> None:
        self.db = db
        self.guard = ConversationGuard() if max_message_chars is None else ConversationGuard(max_chars=max_message_chars)
        self.sections = SectionStore(db)
        self.progress = ProgressStore(db)
        self.sessions = SessionStore(db)

    def session_for_user(self, user_id: str, session_id: str) -> dict[str, Any]:
        session = self.sessions.get(session_id)
        if session is None or session["user_id"] != user_id:
            raise SessionNotFound("Session not found.")
        return session

    def active_session_count(self, user_id: str) -> int:
        return sum(1 for session in self.sessions.list_for_user(user_id) if session["status"] == "active")

    def discard_sessions(self, user_id: str) -> int:
        return self.sessions.delete_for_user(user_id)
