#!/usr/bin/env python3
from __future__ import annotations

import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from fastapi.testclient import TestClient


@dataclass
class Step:
  name: str
  run: Callable[[TestClient, dict[str, Any]], dict[str, Any]]
  checks: list[str] = field(default_factory=list)


class ScriptedCompletion:
  """Offline stand-in for the model: replies by prompt prefix, in order."""

  def __init__(self, replies: dict[str, list[str]]) -> None:
    self.replies = replies
    self.calls: list[str] = []

  def complete(self, prompt: str, *, temperature: float, max_tokens: int) -> str:
    from hearing_core import CompletionUnavailable

    for prefix, queue in self.replies.items():
      if prompt.startswith(prefix) and queue:
        self.calls.append(prefix)
        return queue.pop(0)
    raise CompletionUnavailable("no scripted reply")


def scripted_replies() -> dict[str, list[str]]:
  from hearing_core.markers import EXTRACTED_DATA, render_block

  extracted = render_block(
    EXTRACTED_DATA,
    {
      "question_id": "1-1",
      "section_id": "basic_attributes",
      "raw_answer": "170cm and 65kg",
      "extracted_facts": [
        {"hint": "height", "value": "170cm", "confidence": 0.95},
        {"hint": "weight", "value": "65kg", "confidence": 0.95},
      ],
      "is_skipped": False,
      "needs_clarification": False,
    },
  )
  return {
    "You are a warm, concise health interviewer": [f"Thanks! Next: how old are you?\n{extracted}"],
    "You maintain one section of a user's health profile.": [
      json.dumps(
        {
          "actions": [
            {
              "type": "ADD",
              "section_id": "basic_attributes",
              "target_text": None,
              "new_text": "Height 170cm, weight 65kg.",
              "reason": "First answer for the section.",
              "confidence": 0.95,
            }
          ]
        }
      )
    ],
  }


def _start(client: TestClient, state: dict[str, Any]) -> dict[str, Any]:
  response = client.post("/health-chat/session", headers=state["headers"])
  body = response.json()
  state["session_id"] = body.get("session", {}).get("id")
  checks = [
    f"status {response.status_code}",
    f"resumed={body.get('resumed')}",
    f"next_question={(body.get('next_question') or {}).get('question_id')}",
  ]
  ok = response.status_code == 200 and (body.get("next_question") or {}).get("question_id") == "1-1"
  return {"pass": ok, "checks": checks, "body": body}


def _answer(client: TestClient, state: dict[str, Any]) -> dict[str, Any]:
  response = client.post(
    f"/health-chat/session/{state['session_id']}/turn",
    headers=state["headers"],
    json={"message": "I'm 170cm and 65kg"},
  )
  body = response.json()
  profile = client.get("/health-profile", headers=state["headers"]).json()
  basic = next((row for row in profile.get("sections", []) if row["section_id"] == "basic_attributes"), {})
  content = basic.get("content") or ""
  ok = (
    response.status_code == 200
    and body.get("answered_question_id") == "1-1"
    and "170cm" in content
    and "65kg" in content
  )
  return {
    "pass": ok,
    "checks": [f"status {response.status_code}", f"answered={body.get('answered_question_id')}", f"content={content!r}"],
    "body": body,
  }


def _pause(client: TestClient, state: dict[str, Any]) -> dict[str, Any]:
  response = client.post(
    f"/health-chat/session/{state['session_id']}/turn",
    headers=state["headers"],
    json={"message": "save and stop"},
  )
  body = response.json()
  return {"pass": response.status_code == 200 and body.get("paused") is True, "checks": [f"paused={body.get('paused')}"], "body": body}


def _resume(client: TestClient, state: dict[str, Any]) -> dict[str, Any]:
  previous = state["session_id"]
  result = _start(client, state)
  body = result["body"]
  ok = (
    body.get("resumed") is True
    and state["session_id"] == previous
    and (body.get("next_question") or {}).get("question_id") == "1-2"
  )
  return {**result, "pass": ok}


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  workdir = tempfile.mkdtemp(prefix="hearing-smoke-")
  os.environ["HEARING_DB_PATH"] = str(Path(workdir) / "hearing-smoke.sqlite")
  os.environ.pop("HEARING_QUESTION_BANK_PATH", None)

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)
  completion = ScriptedCompletion(scripted_replies())
  backend_module.container = backend_module.ProfileHearingApp(completion=completion)

  steps = [
    Step("Start a new session", _start),
    Step("Answer height and weight", _answer),
    Step("Pause by phrase", _pause),
    Step("Resume where we left off", _resume),
  ]
  state: dict[str, Any] = {"headers": {"Authorization": "Bearer smoke-user"}}
  results: list[dict[str, Any]] = []

  with TestClient(backend_module.app) as client:
    for step in steps:
      outcome = step.run(client, state)
      results.append({"name": step.name, **outcome})
      if not outcome["pass"]:
        break

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(steps) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Profile Hearing Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- Database: `{os.environ['HEARING_DB_PATH']}`",
    f"- Model calls: `{len(completion.calls)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Steps",
    "",
  ]
  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    for check in item.get("checks", []):
      report_lines.append(f"- {check}")
    report_lines.append("```json")
    report_lines.append(json.dumps(item.get("body"), indent=2, ensure_ascii=True))
    report_lines.append("```")
    report_lines.append("")

  report_path = repo_root / "HEARING_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(steps)} steps.")

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
