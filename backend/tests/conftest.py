from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from completion_fakes import RoutedCompletion  # noqa: E402
from hearing_core import HearingPipeline, PipelineSettings, Question, QuestionBank, Section  # noqa: E402
from profile_memory import ProfileMemoryService, SQLiteProfileDB  # noqa: E402

_PROVIDER_ENV = (
    "ANTHROPIC_API_KEY",
    "OPENROUTER_API_KEY",
    "OPENAI_API_KEY",
    "HEARING_CHAT_PROVIDER",
    "HEARING_QUESTION_BANK_PATH",
)


@pytest.fixture
def memory(tmp_path) -> ProfileMemoryService:
    return ProfileMemoryService(SQLiteProfileDB(str(tmp_path / "hearing-test.sqlite")))


@pytest.fixture
def completion() -> RoutedCompletion:
    return RoutedCompletion()


@pytest.fixture
def basic_bank() -> QuestionBank:
    return QuestionBank(
        [
            Question(
                id="1-1",
                section_id="basic",
                priority=3,
                question="What is your height and weight?",
                intent="Body size baseline.",
                extraction_hints=("height", "weight"),
            )
        ],
        [Section("basic", "Basic attributes")],
    )


@pytest.fixture
def tiered_bank() -> QuestionBank:
    return QuestionBank(
        [
            Question("b-1", "basic", 3, "What is your height and weight?", "", ("height", "weight")),
            Question("s-1", "substances", 3, "Do you smoke?", "", ("smoking",)),
            Question("s-2", "substances", 2, "Do you drink alcohol?", "", ("alcohol_frequency",)),
            Question("e-1", "exercise", 1, "How often do you exercise?", "", ("exercise_frequency",)),
        ],
        [Section("basic", "Basic attributes"), Section("substances", "Substances"), Section("exercise", "Exercise")],
    )


@pytest.fixture
def make_pipeline(memory, completion) -> Callable[..., HearingPipeline]:
    def _make(bank: QuestionBank, **overrides) -> HearingPipeline:
        return HearingPipeline(
            memory=memory,
            bank=bank,
            completion=completion,
            settings=PipelineSettings(**overrides),
        )

    return _make


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "hearing-api-test.sqlite"
    monkeypatch.setenv("HEARING_DB_PATH", str(db_path))
    monkeypatch.setenv("ALLOW_ANON", "false")
    # No real providers in CI; dedicated tests inject a scripted completion client.
    for name in _PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def scripted_backend(backend_module, completion, monkeypatch):
    monkeypatch.setattr(backend_module, "container", backend_module.ProfileHearingApp(completion=completion))
    return backend_module


@pytest.fixture
def client(scripted_backend):
    with TestClient(scripted_backend.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {user_id}"}

    return _make
