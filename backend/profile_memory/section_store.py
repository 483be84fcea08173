from __future__ import annotations

import uuid
from typing import Any, Iterable

from .database import SQLiteProfileDB
from .time_utils import to_iso, utc_now


class SectionStore:
    def __init__(self, db: SQLiteProfileDB) -> None:
        self._db = db

    def get_content(self, user_id: str, section_id: str) -> str:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT content
                FROM profile_sections
                WHERE user_id = ? AND section_id = ?
                LIMIT 1
                """,
                (user_id, section_id),
            ).fetchone()
        return str(row["content"]) if row else ""

    def list_sections(self, user_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT section_id, title, content, updated_at
                FROM profile_sections
                WHERE user_id = ?
                ORDER BY section_id
                """,
                (user_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def upsert_content(self, *, user_id: str, section_id: str, title: str, content: str) -> None:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO profile_sections (id, user_id, section_id, title, content, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, section_id) DO UPDATE SET
                  title = excluded.title,
                  content = excluded.content,
                  updated_at = excluded.updated_at
                """,
                (uuid.uuid4().hex, user_id, section_id, title, content, now, now),
            )

    def profile_text(self, user_id: str, section_order: Iterable[str] = ()) -> str:
        sections = self.list_sections(user_id)
        rank = {section_id: idx for idx, section_id in enumerate(section_order)}
        sections.sort(key=lambda row: (rank.get(row["section_id"], len(rank)), row["section_id"]))
        blocks = [
            f"[{row['title']}]\n{row['content'].strip()}"
            for row in sections
            if str(row.get("content") or "").strip()
        ]
        return "\n\n".join(blocks)
