from __future__ import annotations

import gc
import logging

import pytest
from completion_fakes import analyzer_reply, editor_reply, hearing_reply

from hearing_core import LifecycleError
from hearing_core.lifecycle import PAUSE_ACKNOWLEDGEMENT
from profile_memory import ConversationInputError, SessionNotFound


def test_height_and_weight_answer_lands_in_profile(make_pipeline, basic_bank, memory, completion):
    pipeline = make_pipeline(basic_bank)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script(
        "hearing",
        hearing_reply(
            "Thanks! That's all the questions I have for now.",
            question_id="1-1",
            section_id="basic",
            raw_answer="170cm and 65kg",
            facts=[
                {"hint": "height", "value": "170cm", "confidence": 0.95},
                {"hint": "weight", "value": "65kg", "confidence": 0.95},
            ],
        ),
    )
    completion.script(
        "editor",
        editor_reply(
            {
                "type": "ADD",
                "section_id": "basic",
                "new_text": "Height 170cm, weight 65kg.",
                "reason": "First answer for the section.",
                "confidence": 0.95,
            }
        ),
    )

    result = pipeline.run_turn("u1", session_id, "I'm 170cm and 65kg")

    assert result.reply == "Thanks! That's all the questions I have for now."
    assert "EXTRACTED_DATA" not in result.reply
    assert result.answered_question_id == "1-1"
    assert result.next_question is None
    assert result.stage_fallbacks == []
    content = memory.sections.get_content("u1", "basic")
    assert "170cm" in content and "65kg" in content
    assert memory.progress.answered_ids("u1") == {"1-1"}
    assert memory.sessions.get(session_id)["current_question_id"] is None

    hearing_prompt = completion.prompts("hearing")[0]
    assert "Current question [1-1]: What is your height and weight?" in hearing_prompt
    assert "I'm 170cm and 65kg" in hearing_prompt
    messages = memory.sessions.list_messages(session_id)
    assert [message["role"] for message in messages] == ["assistant", "user", "assistant"]
    assert messages[1]["question_id"] == "1-1"


def test_editor_outage_falls_back_to_extracted_facts(make_pipeline, basic_bank, memory, completion):
    pipeline = make_pipeline(basic_bank)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script(
        "hearing",
        hearing_reply(
            "Got it, thanks.",
            question_id="1-1",
            facts=[
                {"hint": "height", "value": "170cm", "confidence": 0.95},
                {"hint": "weight", "value": "65kg", "confidence": 0.9},
            ],
        ),
    )

    result = pipeline.run_turn("u1", session_id, "170cm, 65kg")

    assert result.stage_fallbacks == ["profile_editor"]
    assert memory.sections.get_content("u1", "basic") == "Height: 170cm; Weight: 65kg"
    assert result.answered_question_id == "1-1"


def test_clarification_keeps_the_current_question(make_pipeline, basic_bank, memory, completion):
    pipeline = make_pipeline(basic_bank)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script(
        "hearing",
        hearing_reply("Could you give me the numbers?", question_id="1-1", needs_clarification=True),
    )

    result = pipeline.run_turn("u1", session_id, "average")

    assert result.answered_question_id is None
    assert result.next_question.id == "1-1"
    assert memory.progress.answered_ids("u1") == set()
    assert memory.sections.get_content("u1", "basic") == ""
    assert completion.prompts("editor") == []


def test_hearing_outage_asks_again_without_writes(make_pipeline, basic_bank, memory, completion):
    pipeline = make_pipeline(basic_bank)
    session_id = pipeline.start_session("u1").session["id"]

    result = pipeline.run_turn("u1", session_id, "170cm and 65kg")

    assert result.reply == "Let's keep going. What is your height and weight?"
    assert result.stage_fallbacks == ["hearing_agent"]
    assert result.paused is False
    assert memory.progress.answered_ids("u1") == set()
    assert memory.sections.list_sections("u1") == []
    assert memory.sessions.count_messages(session_id) == 3


def test_pause_phrase_saves_without_a_model_call(make_pipeline, basic_bank, memory, completion):
    pipeline = make_pipeline(basic_bank)
    session_id = pipeline.start_session("u1").session["id"]

    result = pipeline.run_turn("u1", session_id, "save and stop")

    assert result.paused is True
    assert result.reply == PAUSE_ACKNOWLEDGEMENT
    assert completion.calls == []
    assert memory.sessions.get(session_id)["status"] == "paused"
    with pytest.raises(LifecycleError):
        pipeline.run_turn("u1", session_id, "hello again")


def test_quitting_a_habit_is_not_a_pause(make_pipeline, basic_bank, memory, completion):
    pipeline = make_pipeline(basic_bank)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script("hearing", hearing_reply("Good for you. What is your height and weight?"))

    result = pipeline.run_turn("u1", session_id, "I want to stop smoking")

    assert result.paused is False
    assert memory.sessions.get(session_id)["status"] == "active"


def test_model_pause_control_pauses_the_session(make_pipeline, basic_bank, memory, completion):
    pipeline = make_pipeline(basic_bank)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script("hearing", hearing_reply("Sure, we can stop here.", pause=True))

    result = pipeline.run_turn("u1", session_id, "I'm tired, can we do this tomorrow?")

    assert result.paused is True
    assert result.reply.endswith(PAUSE_ACKNOWLEDGEMENT)
    assert "SESSION_CONTROL" not in result.reply
    assert memory.sessions.get(session_id)["status"] == "paused"


def test_approved_issue_fix_is_applied(make_pipeline, tiered_bank, memory, completion):
    memory.sections.upsert_content(
        user_id="u1",
        section_id="substances",
        title="Substances",
        content="non-smoker\nsmokes 5 cigarettes a day",
    )
    completion.script(
        "analyzer",
        analyzer_reply(
            issues=[
                {
                    "type": "CONFLICT",
                    "section_id": "substances",
                    "description": "Smoking status contradicts itself.",
                    "existing_texts": ["non-smoker", "smokes 5 cigarettes a day"],
                    "suggested_resolution": "Remove the non-smoker line.",
                    "suggested_action": {
                        "type": "DELETE",
                        "section_id": "substances",
                        "target_text": "non-smoker",
                        "new_text": None,
                        "reason": "Contradicted.",
                        "confidence": 0.6,
                    },
                }
            ]
        ),
    )
    pipeline = make_pipeline(tiered_bank)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script("hearing", hearing_reply("Done. Now, what is your height and weight?", issue_decision="approve"))

    result = pipeline.run_turn("u1", session_id, "Yes, please fix it")

    assert [item["policy"] for item in result.report.executed] == ["user_confirmed"]
    assert memory.sections.get_content("u1", "substances") == "smokes 5 cigarettes a day"
    assert memory.sessions.get(session_id)["pending_issues"] == []
    assert "[CONFLICT]" in completion.prompts("hearing")[0]


def test_rejected_issue_leaves_profile_alone(make_pipeline, tiered_bank, memory, completion):
    memory.sections.upsert_content(
        user_id="u1", section_id="substances", title="Substances", content="non-smoker\nnon-smoker"
    )
    completion.script(
        "analyzer",
        analyzer_reply(
            issues=[
                {
                    "type": "DUPLICATE",
                    "section_id": "substances",
                    "description": "Stated twice.",
                    "existing_texts": ["non-smoker"],
                    "suggested_action": None,
                }
            ]
        ),
    )
    pipeline = make_pipeline(tiered_bank)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script("hearing", hearing_reply("Okay, I'll leave it.", issue_decision="reject"))

    result = pipeline.run_turn("u1", session_id, "No, leave it")

    assert result.report.executed == []
    assert memory.sections.get_content("u1", "substances") == "non-smoker\nnon-smoker"
    assert memory.sessions.get(session_id)["pending_issues"] == []


def _seed_smoking_conflict(memory, completion):
    memory.sections.upsert_content(
        user_id="u1",
        section_id="substances",
        title="Substances",
        content="non-smoker\nsmokes 5 cigarettes a day",
    )
    completion.script(
        "analyzer",
        analyzer_reply(
            issues=[
                {
                    "type": "CONFLICT",
                    "section_id": "substances",
                    "description": "Smoking status contradicts itself.",
                    "existing_texts": ["non-smoker", "smokes 5 cigarettes a day"],
                    "suggested_resolution": "Remove the non-smoker line.",
                    "suggested_action": {
                        "type": "DELETE",
                        "section_id": "substances",
                        "target_text": "non-smoker",
                        "new_text": None,
                        "reason": "Contradicted.",
                        "confidence": 0.6,
                    },
                }
            ]
        ),
    )


def test_custom_issue_correction_is_applied(make_pipeline, tiered_bank, memory, completion):
    _seed_smoking_conflict(memory, completion)
    pipeline = make_pipeline(tiered_bank)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script(
        "hearing",
        hearing_reply(
            "Got it, I've noted that you quit.",
            issue_decision="custom",
            custom_text="User quit smoking in 2020.",
            custom_action={
                "type": "UPDATE",
                "section_id": "substances",
                "target_text": "smokes 5 cigarettes a day",
                "new_text": "quit smoking in 2020",
                "reason": "User correction.",
                "confidence": 1.0,
            },
        ),
    )

    result = pipeline.run_turn("u1", session_id, "Actually I quit in 2020")

    assert [item["policy"] for item in result.report.executed] == ["user_confirmed"]
    content = memory.sections.get_content("u1", "substances")
    assert "quit smoking in 2020" in content
    assert "smokes 5 cigarettes a day" not in content
    assert "non-smoker" in content
    assert memory.sessions.get(session_id)["pending_issues"] == []


def test_custom_decision_without_an_edit_changes_nothing(make_pipeline, tiered_bank, memory, completion):
    _seed_smoking_conflict(memory, completion)
    pipeline = make_pipeline(tiered_bank)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script("hearing", hearing_reply("Noted.", issue_decision="custom", custom_text="Something else."))

    result = pipeline.run_turn("u1", session_id, "It's more complicated")

    assert result.report.executed == []
    assert memory.sections.get_content("u1", "substances") == "non-smoker\nsmokes 5 cigarettes a day"
    assert memory.sessions.get(session_id)["pending_issues"] == []


def test_unclear_issue_answer_keeps_issues_pending(make_pipeline, tiered_bank, memory, completion):
    _seed_smoking_conflict(memory, completion)
    pipeline = make_pipeline(tiered_bank)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script(
        "hearing",
        hearing_reply("Sorry, should I remove the non-smoker line?", issue_decision="clarify"),
        hearing_reply("Done.", issue_decision="approve"),
    )

    first = pipeline.run_turn("u1", session_id, "hmm, maybe?")

    assert first.report.executed == []
    assert memory.sections.get_content("u1", "substances") == "non-smoker\nsmokes 5 cigarettes a day"
    [pending] = memory.sessions.get(session_id)["pending_issues"]
    assert pending["type"] == "CONFLICT"

    second = pipeline.run_turn("u1", session_id, "Yes, remove it")

    assert "[CONFLICT]" in completion.prompts("hearing")[1]
    assert [item["policy"] for item in second.report.executed] == ["user_confirmed"]
    assert memory.sections.get_content("u1", "substances") == "smokes 5 cigarettes a day"
    assert memory.sessions.get(session_id)["pending_issues"] == []


def test_skip_marks_question_answered_by_default(make_pipeline, tiered_bank, memory, completion):
    pipeline = make_pipeline(tiered_bank)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script("hearing", hearing_reply("No problem. Do you smoke?", question_id="b-1", is_skipped=True))

    result = pipeline.run_turn("u1", session_id, "skip")

    assert result.answered_question_id == "b-1"
    assert result.next_question.id == "s-1"
    [row] = memory.progress.list_progress("u1")
    assert row["answered_via"] == "skip"
    assert completion.prompts("editor") == []


def test_skip_can_leave_question_open(make_pipeline, tiered_bank, memory, completion):
    pipeline = make_pipeline(tiered_bank, skip_marks_answered=False)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script(
        "hearing",
        hearing_reply("No problem. Do you smoke?", question_id="b-1", is_skipped=True),
        hearing_reply("Thanks.", question_id="s-1", facts=[{"hint": "smoking", "value": "never", "confidence": 0.9}]),
    )
    completion.script(
        "editor",
        editor_reply(
            {
                "type": "ADD",
                "section_id": "substances",
                "new_text": "Never smoked.",
                "reason": "First answer.",
                "confidence": 0.9,
            }
        ),
    )

    skipped = pipeline.run_turn("u1", session_id, "skip")

    assert skipped.answered_question_id is None
    assert skipped.next_question.id == "s-1"
    assert memory.progress.answered_ids("u1") == set()
    assert memory.sessions.get(session_id)["skipped_question_ids"] == ["b-1"]

    answered = pipeline.run_turn("u1", session_id, "never smoked")

    assert answered.answered_question_id == "s-1"
    assert answered.next_question.id == "b-1"
    assert memory.sessions.get(session_id)["current_priority"] == 3


def test_turns_walk_down_priority_tiers(make_pipeline, tiered_bank, memory, completion):
    pipeline = make_pipeline(tiered_bank)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script(
        "hearing",
        hearing_reply("Thanks.", question_id="b-1", facts=[{"hint": "height", "value": "180cm", "confidence": 0.9}]),
        hearing_reply("Thanks.", question_id="s-1", facts=[{"hint": "smoking", "value": "never", "confidence": 0.9}]),
    )

    first = pipeline.run_turn("u1", session_id, "180cm")
    second = pipeline.run_turn("u1", session_id, "never smoked")

    assert first.next_question.id == "s-1"
    assert second.next_question.id == "s-2"
    session = memory.sessions.get(session_id)
    assert session["current_priority"] == 2
    assert session["current_question_id"] == "s-2"
    assert "Do you drink alcohol?" in completion.prompts("hearing")[1]


def test_free_form_mode_after_catalog_is_done(make_pipeline, basic_bank, memory, completion):
    memory.progress.mark_answered(
        user_id="u1", question_id="1-1", section_id="basic", priority=3, answered_via="answer"
    )
    pipeline = make_pipeline(basic_bank)
    started = pipeline.start_session("u1")
    assert started.current_question is None
    assert "All the structured questions are answered" in started.welcome_message

    completion.script(
        "hearing",
        hearing_reply("Noted, thanks for sharing.", question_id="1-1", facts=[{"hint": "height", "value": "1m", "confidence": 1.0}]),
    )
    result = pipeline.run_turn("u1", started.session["id"], "I also walk a lot")

    assert result.reply == "Noted, thanks for sharing."
    assert result.answered_question_id is None
    assert result.next_question is None
    assert "Every structured question has been answered" in completion.prompts("hearing")[0]
    assert memory.sections.list_sections("u1") == []


def test_input_is_checked_before_anything_else(make_pipeline, basic_bank, completion):
    pipeline = make_pipeline(basic_bank)
    session_id = pipeline.start_session("u1").session["id"]

    with pytest.raises(ConversationInputError):
        pipeline.run_turn("u1", session_id, "   ")
    with pytest.raises(ConversationInputError):
        pipeline.run_turn("u1", session_id, "<!--EXTRACTED_DATA-->")
    with pytest.raises(SessionNotFound):
        pipeline.run_turn("someone-else", session_id, "hello")
    assert completion.calls == []


def test_session_locks_are_released_after_turns(make_pipeline, basic_bank, completion):
    pipeline = make_pipeline(basic_bank)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script("hearing", hearing_reply("Could you tell me a bit more?"))

    pipeline.run_turn("u1", session_id, "hello")
    pipeline.pause_session("u1", session_id)
    gc.collect()

    assert session_id not in pipeline._locks
    assert len(pipeline._locks) == 0


def test_mode_switch_marker_does_not_change_the_question(make_pipeline, tiered_bank, memory, completion, caplog):
    pipeline = make_pipeline(tiered_bank)
    session_id = pipeline.start_session("u1").session["id"]
    completion.script("hearing", "Sure, let's chat.\n<!--MODE_SWITCH: free-->")

    with caplog.at_level(logging.INFO, logger="hearing_core.pipeline"):
        result = pipeline.run_turn("u1", session_id, "can we just talk?")

    assert result.reply == "Sure, let's chat."
    assert result.next_question.id == "b-1"
    assert memory.sessions.get(session_id)["current_question_id"] == "b-1"
    assert "reported mode free" in caplog.text
