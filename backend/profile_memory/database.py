from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteProfileDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS profile_sections (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  section_id TEXT NOT NULL,
                  title TEXT NOT NULL,
                  content TEXT NOT NULL DEFAULT '',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  UNIQUE(user_id, section_id)
                );

                CREATE TABLE IF NOT EXISTS question_progress (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  question_id TEXT NOT NULL,
                  section_id TEXT NOT NULL,
                  priority INTEGER NOT NULL,
                  is_answered INTEGER NOT NULL DEFAULT 0,
                  answer_summary TEXT,
                  answered_via TEXT,
                  session_id TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  UNIQUE(user_id, question_id)
                );

                CREATE TABLE IF NOT EXISTS chat_sessions (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'active',
                  current_priority INTEGER NOT NULL DEFAULT 3,
                  current_section_id TEXT,
                  current_question_id TEXT,
                  pending_issues_json TEXT NOT NULL DEFAULT '[]',
                  issues_surfaced INTEGER NOT NULL DEFAULT 0,
                  skipped_question_ids_json TEXT NOT NULL DEFAULT '[]',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS chat_messages (
                  id TEXT PRIMARY KEY,
                  session_id TEXT NOT NULL,
                  seq INTEGER NOT NULL,
                  role TEXT NOT NULL,
                  content TEXT NOT NULL,
                  question_id TEXT,
                  created_at TEXT NOT NULL,
                  UNIQUE(session_id, seq),
                  FOREIGN KEY(session_id) REFERENCES chat_sessions(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS pending_actions (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  session_id TEXT NOT NULL,
                  action_json TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'pending',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  FOREIGN KEY(session_id) REFERENCES chat_sessions(id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_progress_user ON question_progress(user_id, is_answered);
                CREATE INDEX IF NOT EXISTS idx_sessions_user_status ON chat_sessions(user_id, status, updated_at);
                CREATE INDEX IF NOT EXISTS idx_messages_session ON chat_messages(session_id, seq);
                CREATE INDEX IF NOT EXISTS idx_pending_session ON pending_actions(session_id, status);
                """
            )
            self._ensure_column(conn, "chat_sessions", "skipped_question_ids_json", "TEXT NOT NULL DEFAULT '[]'")

    @staticmethod
    def _ensure_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
        existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
        if column not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
