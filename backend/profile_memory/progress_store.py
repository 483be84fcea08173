from __future__ import annotations

import uuid
from typing import Any

from .database import SQLiteProfileDB
from .time_utils import to_iso, utc_now

ANSWERED_VIA = {"answer", "skip", "analyzer"}


class ProgressStore:
    def __init__(self, db: SQLiteProfileDB) -> None:
        self._db = db

    def answered_ids(self, user_id: str) -> set[str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT question_id
                FROM question_progress
                WHERE user_id = ? AND is_answered = 1
                """,
                (user_id,),
            ).fetchall()
        return {str(row["question_id"]) for row in rows}

    def mark_answered(
        self,
        *,
        user_id: str,
        question_id: str,
        section_id: str,
        priority: int,
        answered_via: str,
        answer_summary: str | None = None,
        session_id: str | None = None,
    ) -> None:
        if answered_via not in ANSWERED_VIA:
            raise ValueError(f"Unsupported answered_via: {answered_via}")
        now = to_iso(utc_now())
        # is_answered only ever moves to 1; there is no write path back to 0.
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO question_progress (
                  id, user_id, question_id, section_id, priority, is_answered,
                  answer_summary, answered_via, session_id, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, question_id) DO UPDATE SET
                  is_answered = 1,
                  answer_summary = COALESCE(excluded.answer_summary, question_progress.answer_summary),
                  answered_via = COALESCE(question_progress.answered_via, excluded.answered_via),
                  session_id = COALESCE(excluded.session_id, question_progress.session_id),
                  updated_at = excluded.updated_at
                """,
                (
                    uuid.uuid4().hex,
                    user_id,
                    question_id,
                    section_id,
                    int(priority),
                    answer_summary,
                    answered_via,
                    session_id,
                    now,
                    now,
                ),
            )

    def list_progress(self, user_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT question_id, section_id, priority, is_answered, answer_summary, answered_via, session_id, updated_at
                FROM question_progress
                WHERE user_id = ?
                ORDER BY priority DESC, question_id
                """,
                (user_id,),
            ).fetchall()
        return [{**dict(row), "is_answered": bool(row["is_answered"])} for row in rows]
