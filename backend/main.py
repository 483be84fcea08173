from __future__ import annotations

import hashlib
import logging
import os
import re
import sqlite3
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from hearing_core import (
    CompletionClient,
    HearingPipeline,
    HttpCompletionClient,
    LifecycleError,
    PipelineSettings,
    question_bank_from_env,
)
from profile_memory import ConversationInputError, ProfileMemoryService, SessionNotFound, SQLiteProfileDB
from profile_memory.time_utils import to_iso, utc_now

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in [repo_root / ".env", repo_root / "backend/.env"]:
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()

logging.basicConfig(
    level=(os.getenv("HEARING_LOG_LEVEL") or "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("hearing")


class TurnRequest(BaseModel):
    message: str


class ConfirmActionsRequest(BaseModel):
    approve: bool = True
    action_ids: list[str] | None = None


class AnalyzeRequest(BaseModel):
    session_id: str | None = Field(default=None, max_length=64)


class ProfileHearingApp:
    def __init__(self, completion: CompletionClient | None = None) -> None:
        db_path = os.getenv(
            "HEARING_DB_PATH",
            str((Path(__file__).resolve().parent / "hearing.sqlite")),
        )
        self.settings = PipelineSettings.from_env()
        self.db = SQLiteProfileDB(db_path)
        self.memory = ProfileMemoryService(self.db, max_message_chars=self.settings.max_message_chars)
        self.bank = question_bank_from_env()
        self.completion = completion or HttpCompletionClient(timeout_seconds=self.settings.model_timeout_seconds)
        self.pipeline = HearingPipeline(
            memory=self.memory,
            bank=self.bank,
            completion=self.completion,
            settings=self.settings,
        )


container = ProfileHearingApp()
app = FastAPI(title="Health Profile Hearing Backend")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(sqlite3.Error)
async def _storage_error_handler(request: Request, exc: sqlite3.Error) -> JSONResponse:
    logger.error("storage failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Profile storage is unavailable. Please try again."})


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate or not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    return candidate


def get_user_id(auth_header: str | None) -> str:
    raw = (auth_header or "").replace("Bearer", "", 1).strip()
    if not raw:
        if os.getenv("ALLOW_ANON", "false").lower() == "true":
            return "demo-user"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    # Bearer token is opaque here; identity is verified upstream.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def resolve_user_id(authorization: str | None, x_user_id: str | None) -> str:
    if x_user_id is not None:
        return _validated_trusted_user_id(x_user_id)
    return get_user_id(authorization)


def _session_view(session: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": session["id"],
        "status": session["status"],
        "current_priority": session["current_priority"],
        "current_section_id": session["current_section_id"],
        "current_question_id": session["current_question_id"],
        "pending_issue_count": len(session.get("pending_issues") or []),
        "created_at": session["created_at"],
        "updated_at": session["updated_at"],
    }


@app.get("/health-chat/session")
def get_session(authorization: str | None = Header(default=None), x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(authorization, x_user_id)
    summary = container.pipeline.lifecycle.summary(user_id)
    session = summary["session"]
    return {
        "user_id": user_id,
        "session": _session_view(session) if session else None,
        "can_resume": summary["can_resume"],
        "progress": summary["progress"],
        "progress_percent": summary["progress"]["overall_percent"],
        "next_question": summary["next_question"],
        "messages": [
            {"role": row["role"], "content": row["content"], "question_id": row["question_id"], "created_at": row["created_at"]}
            for row in summary["messages"]
        ],
    }


@app.post("/health-chat/session")
def start_session(authorization: str | None = Header(default=None), x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(authorization, x_user_id)
    started = container.pipeline.start_session(user_id)
    answered = container.memory.progress.answered_ids(user_id)
    return {
        "session": _session_view(started.session),
        "resumed": started.resumed,
        "message": started.welcome_message,
        "analysis_status": started.analysis_status,
        "issues": [issue.to_dict() for issue in started.analysis.issues],
        "next_question": started.current_question.preview() if started.current_question else None,
        "progress_percent": container.bank.progress(answered)["overall_percent"],
    }


@app.post("/health-chat/session/analyze")
def analyze_profile(
    payload: AnalyzeRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        return container.pipeline.check_profile(user_id, payload.session_id)
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/health-chat/session/{session_id}/turn")
def post_turn(
    session_id: str,
    payload: TurnRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        result = container.pipeline.run_turn(user_id, session_id, payload.message)
    except ConversationInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except LifecycleError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    answered = container.memory.progress.answered_ids(user_id)
    return {
        **result.as_envelope(),
        "progress_percent": container.bank.progress(answered)["overall_percent"],
    }


@app.post("/health-chat/session/{session_id}/pause")
def pause_session(
    session_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        session = container.pipeline.pause_session(user_id, session_id)
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"session": _session_view(session), "paused": True}


@app.post("/health-chat/session/{session_id}/actions/confirm")
def confirm_actions(
    session_id: str,
    payload: ConfirmActionsRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        report = container.pipeline.confirm_actions(
            user_id,
            session_id,
            approve=payload.approve,
            action_ids=payload.action_ids,
        )
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"ok": True, **report.as_envelope()}


@app.delete("/health-chat/session")
def delete_sessions(authorization: str | None = Header(default=None), x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(authorization, x_user_id)
    deleted = container.memory.discard_sessions(user_id)
    logger.info("discarded %s session(s) for %s", deleted, user_id)
    return {"ok": True, "deleted_sessions": deleted}


@app.get("/health-profile")
def get_health_profile(authorization: str | None = Header(default=None), x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(authorization, x_user_id)
    sections = {row["section_id"]: row for row in container.memory.sections.list_sections(user_id)}
    return {
        "user_id": user_id,
        "sections": [
            {
                "section_id": section_id,
                "title": container.bank.section_title(section_id),
                "content": sections[section_id]["content"] if section_id in sections else "",
                "updated_at": sections[section_id]["updated_at"] if section_id in sections else None,
            }
            for section_id in container.bank.section_ids
        ],
        "progress": container.bank.progress(container.memory.progress.answered_ids(user_id)),
        "generated_at": to_iso(utc_now()),
    }
