from __future__ import annotations

import json

from hearing_core import Question, QuestionBank, Section, load_question_bank
from hearing_core.question_bank import DEFAULT_SECTIONS


def test_first_three_picks_stay_in_top_tier():
    bank = QuestionBank(
        [
            Question("x-1", "basic", 3, "A?"),
            Question("x-2", "substances", 3, "B?"),
            Question("x-3", "basic", 3, "C?"),
            Question("x-4", "basic", 2, "D?"),
            Question("x-5", "exercise", 1, "E?"),
        ],
        [Section("basic", "Basic"), Section("substances", "Substances"), Section("exercise", "Exercise")],
    )
    answered: set[str] = set()
    picks = []
    priority = 3
    for _ in range(4):
        priority, question = bank.resolve_next(answered, priority)
        assert question is not None
        picks.append(question)
        answered.add(question.id)

    assert [question.priority for question in picks] == [3, 3, 3, 2]
    assert [question.id for question in picks] == ["x-1", "x-3", "x-2", "x-4"]


def test_missing_questions_order_by_priority_section_then_id():
    bank = QuestionBank(
        [
            Question("1-10", "basic_attributes", 3, "Q10"),
            Question("2-1", "genetics", 3, "G1"),
            Question("1-2", "basic_attributes", 3, "Q2"),
            Question("1-3", "basic_attributes", 1, "Q3"),
        ],
        DEFAULT_SECTIONS,
    )
    assert [missing.question_id for missing in bank.missing(set())] == ["1-2", "1-10", "2-1", "1-3"]
    assert [missing.question_id for missing in bank.missing({"1-2"})] == ["1-10", "2-1", "1-3"]


def test_tier_exhaustion_drops_to_free_form(tiered_bank):
    everything = {question.id for question in tiered_bank}
    assert tiered_bank.resolve_next(everything, 3) == (1, None)
    priority, question = tiered_bank.resolve_next(everything - {"e-1"}, 3)
    assert (priority, question.id) == (1, "e-1")


def test_skipped_questions_wait_for_the_rest_of_their_tier(tiered_bank):
    assert tiered_bank.resolve_next(set(), 3, ["b-1"])[1].id == "s-1"
    assert tiered_bank.resolve_next({"s-1"}, 3, ["b-1"]) == (3, tiered_bank.get("b-1"))
    priority, question = tiered_bank.resolve_next({"s-1"}, 3, ["s-2", "b-1"])
    assert (priority, question.id) == (3, "b-1")
    # Earliest skip comes back first once nothing else is open.
    assert tiered_bank.resolve_next(set(), 3, ["s-1", "b-1"])[1].id == "s-1"
    assert tiered_bank.resolve_next({"b-1", "s-1"}, 3, ["b-1"])[1].id == "s-2"


def test_next_question_never_returns_answered_question_from_any_section(tiered_bank):
    question = tiered_bank.next_question({"b-1"}, 3)
    assert question is not None
    assert question.id == "s-1"


def test_progress_counts_per_tier_and_section(tiered_bank):
    progress = tiered_bank.progress({"b-1", "s-2", "unknown"})
    assert progress["completed"] == 2
    assert progress["total"] == 4
    assert progress["overall_percent"] == 50
    assert progress["by_priority"]["3"] == {"total": 2, "completed": 1}
    assert progress["by_priority"]["2"] == {"total": 1, "completed": 1}
    assert [row["section_id"] for row in progress["by_section"]] == ["basic", "substances", "exercise"]


def test_default_catalog_is_well_formed():
    bank = QuestionBank()
    assert len(bank) >= 40
    assert bank.section_ids[:2] == ["basic_attributes", "genetics"]
    first = bank.next_question(set(), 3)
    assert first is not None and first.id == "1-1"
    assert all(question.extraction_hints for question in bank)


def test_catalog_loads_from_json(tmp_path):
    path = tmp_path / "bank.json"
    path.write_text(
        json.dumps(
            {
                "sections": [{"id": "basic", "title": "Basic"}],
                "questions": [
                    {
                        "id": "1-1",
                        "section_id": "basic",
                        "priority": 3,
                        "question": "What is your height and weight?",
                        "extraction_hints": ["height", "weight"],
                    }
                ],
            }
        ),
        encoding="utf-8",
    )
    bank = load_question_bank(path)
    question = bank.get("1-1")
    assert question is not None
    assert question.extraction_hints == ("height", "weight")
    assert bank.section_title("basic") == "Basic"
