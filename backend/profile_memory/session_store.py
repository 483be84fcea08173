from __future__ import annotations

import json
import sqlite3
import uuid
from typing import Any

from .database import SQLiteProfileDB
from .time_utils import to_iso, utc_now

SESSION_STATUSES = {"active", "paused"}
PENDING_ACTION_STATUSES = {"pending", "applied", "discarded", "rejected"}


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _session_from_row(row: sqlite3.Row) -> dict[str, Any]:
    session = dict(row)
    session["pending_issues"] = json.loads(session.pop("pending_issues_json") or "[]")
    session["skipped_question_ids"] = json.loads(session.pop("skipped_question_ids_json", None) or "[]")
    session["issues_surfaced"] = bool(session.get("issues_surfaced"))
    return session


class SessionStore:
    def __init__(self, db: SQLiteProfileDB) -> None:
        self._db = db

    def create(self, *, user_id: str, current_priority: int = 3) -> dict[str, Any]:
        now = to_iso(utc_now())
        session_id = uuid.uuid4().hex
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO chat_sessions (
                  id, user_id, status, current_priority, current_section_id, current_question_id,
                  pending_issues_json, issues_surfaced, created_at, updated_at
                )
                VALUES (?, ?, 'active', ?, NULL, NULL, '[]', 0, ?, ?)
                """,
                (session_id, user_id, int(current_priority), now, now),
            )
        session = self.get(session_id)
        if session is None:
            raise sqlite3.DatabaseError(f"Session {session_id} was not stored.")
        return session

    def get(self, session_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM chat_sessions WHERE id = ? LIMIT 1", (session_id,)).fetchone()
        return _session_from_row(row) if row else None

    def list_for_user(self, user_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM chat_sessions
                WHERE user_id = ?
                ORDER BY updated_at DESC, rowid DESC
                """,
                (user_id,),
            ).fetchall()
        return [_session_from_row(row) for row in rows]

    def latest(self, user_id: str, *, status: str | None = None) -> dict[str, Any] | None:
        for session in self.list_for_user(user_id):
            if status is None or session["status"] == status:
                return session
        return None

    def set_status(self, session_id: str, status: str) -> None:
        if status not in SESSION_STATUSES:
            raise ValueError(f"Unsupported session status: {status}")
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE chat_sessions SET status = ?, updated_at = ? WHERE id = ?",
                (status, to_iso(utc_now()), session_id),
            )

    def pause_active(self, user_id: str, *, except_session_id: str | None = None) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE chat_sessions
                SET status = 'paused', updated_at = ?
                WHERE user_id = ? AND status = 'active' AND id != COALESCE(?, '')
                """,
                (to_iso(utc_now()), user_id, except_session_id),
            )
            return int(cursor.rowcount or 0)

    def update_pointer(
        self,
        session_id: str,
        *,
        current_priority: int,
        current_section_id: str | None,
        current_question_id: str | None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE chat_sessions
                SET current_priority = ?, current_section_id = ?, current_question_id = ?, updated_at = ?
                WHERE id = ?
                """,
                (int(current_priority), current_section_id, current_question_id, to_iso(utc_now()), session_id),
            )

    def set_pending_issues(self, session_id: str, issues: list[dict[str, Any]], *, surfaced: bool) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE chat_sessions
                SET pending_issues_json = ?, issues_surfaced = MAX(issues_surfaced, ?), updated_at = ?
                WHERE id = ?
                """,
                (_json_dumps(issues), 1 if surfaced else 0, to_iso(utc_now()), session_id),
            )

    def add_skipped_question(self, session_id: str, question_id: str) -> list[str]:
        """Move ``question_id`` to the end of the session's skip order and return the new order."""
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT skipped_question_ids_json FROM chat_sessions WHERE id = ? LIMIT 1",
                (session_id,),
            ).fetchone()
            if row is None:
                raise ValueError(f"Unknown session: {session_id}")
            skipped = [qid for qid in json.loads(row["skipped_question_ids_json"] or "[]") if qid != question_id]
            skipped.append(question_id)
            conn.execute(
                "UPDATE chat_sessions SET skipped_question_ids_json = ?, updated_at = ? WHERE id = ?",
                (_json_dumps(skipped), to_iso(utc_now()), session_id),
            )
        return skipped

    def append_message(
        self,
        *,
        session_id: str,
        role: str,
        content: str,
        question_id: str | None = None,
    ) -> dict[str, Any]:
        if role not in {"user", "assistant"}:
            raise ValueError(f"Unsupported message role: {role}")
        now = to_iso(utc_now())
        message_id = uuid.uuid4().hex
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(seq), 0) AS last_seq FROM chat_messages WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            seq = int(row["last_seq"]) + 1
            conn.execute(
                """
                INSERT INTO chat_messages (id, session_id, seq, role, content, question_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (message_id, session_id, seq, role, content, question_id, now),
            )
            conn.execute("UPDATE chat_sessions SET updated_at = ? WHERE id = ?", (now, session_id))
        return {
            "id": message_id,
            "session_id": session_id,
            "seq": seq,
            "role": role,
            "content": content,
            "question_id": question_id,
            "created_at": now,
        }

    def list_messages(self, session_id: str, *, limit: int | None = None) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            if limit is None:
                rows = conn.execute(
                    "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY seq",
                    (session_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM (
                      SELECT * FROM chat_messages WHERE session_id = ? ORDER BY seq DESC LIMIT ?
                    ) ORDER BY seq
                    """,
                    (session_id, int(limit)),
                ).fetchall()
        return [dict(row) for row in rows]

    def count_messages(self, session_id: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM chat_messages WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return int(row["total"])

    def delete_for_user(self, user_id: str) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM chat_sessions WHERE user_id = ?", (user_id,))
            return int(cursor.rowcount or 0)

    def add_pending_action(self, *, user_id: str, session_id: str, action: dict[str, Any]) -> str:
        now = to_iso(utc_now())
        action_id = uuid.uuid4().hex
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO pending_actions (id, user_id, session_id, action_json, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, 'pending', ?, ?)
                """,
                (action_id, user_id, session_id, _json_dumps(action), now, now),
            )
        return action_id

    def list_pending_actions(self, session_id: str, *, status: str = "pending") -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, session_id, action_json, status, created_at
                FROM pending_actions
                WHERE session_id = ? AND status = ?
                ORDER BY created_at, rowid
                """,
                (session_id, status),
            ).fetchall()
        pending: list[dict[str, Any]] = []
        for row in rows:
            record = dict(row)
            record["action"] = json.loads(record.pop("action_json"))
            pending.append(record)
        return pending

    def set_pending_action_status(self, action_id: str, status: str) -> None:
        if status not in PENDING_ACTION_STATUSES:
            raise ValueError(f"Unsupported pending action status: {status}")
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE pending_actions SET status = ?, updated_at = ? WHERE id = ?",
                (status, to_iso(utc_now()), action_id),
            )
