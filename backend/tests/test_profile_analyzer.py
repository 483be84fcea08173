from __future__ import annotations

import json

from completion_fakes import analyzer_reply

from hearing_core.analyzer import ProfileAnalyzer

PROFILE = "[Substances]\nnon-smoker\nsmokes 5 cigarettes a day"


def _conflict(section_id: str = "substances") -> dict:
    return {
        "type": "CONFLICT",
        "section_id": section_id,
        "description": "Smoking status contradicts itself.",
        "existing_texts": ["non-smoker", "smokes 5 cigarettes a day"],
        "suggested_resolution": "Keep the most recent statement.",
        "suggested_action": {
            "type": "DELETE",
            "section_id": section_id,
            "target_text": "non-smoker",
            "new_text": None,
            "reason": "Contradicted by the daily habit.",
            "confidence": 0.9,
        },
    }


def test_short_profile_skips_the_model(tiered_bank, completion):
    analyzer = ProfileAnalyzer(tiered_bank, completion)
    outcome = analyzer.analyze("Height 170", {"b-1"})

    assert outcome.status == "ok"
    assert completion.calls == []
    assert [missing.question_id for missing in outcome.value.missing_questions] == ["s-1", "s-2", "e-1"]


def test_model_unavailable_falls_back_to_stored_progress(tiered_bank, completion):
    outcome = ProfileAnalyzer(tiered_bank, completion).analyze(PROFILE, {"b-1"})

    assert outcome.is_fallback
    assert outcome.reason == "model_unavailable"
    assert outcome.value.issues == []
    assert outcome.value.already_answered_ids == []
    assert [missing.question_id for missing in outcome.value.missing_questions] == ["s-1", "s-2", "e-1"]


def test_prose_response_is_malformed(tiered_bank, completion):
    completion.script("analyzer", "Sorry, I cannot help with that.")
    outcome = ProfileAnalyzer(tiered_bank, completion).analyze(PROFILE, set())
    assert outcome.reason == "malformed_output"
    assert len(outcome.value.missing_questions) == 4


def test_unexpected_fields_fail_validation(tiered_bank, completion):
    completion.script("analyzer", json.dumps({"issues": [], "already_answered_ids": [], "notes": "extra"}))
    outcome = ProfileAnalyzer(tiered_bank, completion).analyze(PROFILE, set())
    assert outcome.reason == "schema_violation"


def test_issues_and_answered_questions_are_filtered(tiered_bank, completion):
    completion.script(
        "analyzer",
        analyzer_reply(
            issues=[_conflict(), _conflict("made_up_section")],
            already_answered_ids=["s-1", "b-1", "zzz", "s-1"],
        ),
    )
    analyzer = ProfileAnalyzer(tiered_bank, completion)
    outcome = analyzer.analyze(PROFILE, {"b-1"})

    assert outcome.status == "ok"
    assert [issue.section_id for issue in outcome.value.issues] == ["substances"]
    assert outcome.value.issues[0].suggested_action.type == "DELETE"
    assert outcome.value.already_answered_ids == ["s-1"]
    assert [missing.question_id for missing in outcome.value.missing_questions] == ["s-2", "e-1"]

    prompt = completion.prompts("analyzer")[0]
    assert "s-1|Substances|P3|Do you smoke?|smoking" in prompt
    assert "b-1|" not in prompt
    assert completion.calls[0]["temperature"] == 0.1
