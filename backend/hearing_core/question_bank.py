from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

from .models import PRIORITY_TIERS, MissingQuestion, Question, Section

DEFAULT_SECTIONS: tuple[Section, ...] = (
    Section("basic_attributes", "Basic attributes"),
    Section("genetics", "Genetics and family history"),
    Section("medical_history", "Medical history"),
    Section("physiology", "Physiology and body condition"),
    Section("circadian", "Sleep and circadian rhythm"),
    Section("diet_nutrition", "Diet and nutrition"),
    Section("substances", "Substances and supplements"),
    Section("exercise", "Exercise and activity"),
    Section("mental", "Mental health"),
    Section("beauty_hygiene", "Skin, beauty and hygiene"),
    Section("environment", "Living and working environment"),
)


def _q(qid: str, section_id: str, priority: int, question: str, intent: str, hints: Iterable[str]) -> Question:
    return Question(
        id=qid,
        section_id=section_id,
        priority=priority,
        question=question,
        intent=intent,
        extraction_hints=tuple(hints),
    )


DEFAULT_QUESTIONS: tuple[Question, ...] = (
    _q("1-1", "basic_attributes", 3, "What is your height and weight?", "Baseline body size for BMI and dosing context.", ["height", "weight"]),
    _q("1-2", "basic_attributes", 3, "How old are you, and what sex were you assigned at birth?", "Age and sex drive reference ranges.", ["age", "sex"]),
    _q("1-3", "basic_attributes", 3, "Do you know your blood type?", "Blood type for emergency context.", ["blood_type"]),
    _q("1-4", "basic_attributes", 2, "Has your weight changed noticeably over the last year?", "Recent weight trend.", ["weight_trend", "weight_change_amount"]),
    _q("1-5", "basic_attributes", 3, "Do you have any allergies to food, medication or anything else?", "Allergies and reactions.", ["allergen", "reaction"]),
    _q("1-6", "basic_attributes", 1, "What is your typical body temperature and resting heart rate, if you know them?", "Personal vital baselines.", ["body_temperature", "resting_heart_rate"]),
    _q("2-1", "genetics", 3, "Are there any illnesses that run in your family, such as diabetes, heart disease or cancer?", "Hereditary risk.", ["family_condition", "relative"]),
    _q("2-2", "genetics", 3, "How old were your parents and grandparents when they passed away, or how healthy are they now?", "Family longevity.", ["family_longevity", "cause_of_death"]),
    _q("2-3", "genetics", 2, "Have you ever done a genetic test? If so, were there any notable results?", "Known genetic markers.", ["genetic_test", "genetic_result"]),
    _q("2-4", "genetics", 1, "Does alcohol make your face flush quickly?", "Alcohol metabolism phenotype.", ["alcohol_flush"]),
    _q("3-1", "medical_history", 3, "Do you currently have any diagnosed conditions?", "Active chronic conditions.", ["condition", "diagnosed_year"]),
    _q("3-2", "medical_history", 3, "Are you taking any prescription medications right now?", "Current medications and doses.", ["medication", "dose", "frequency"]),
    _q("3-3", "medical_history", 3, "Have you had any surgeries or hospital stays?", "Past procedures.", ["surgery", "hospitalization", "year"]),
    _q("3-4", "medical_history", 2, "Have you had any serious illnesses in the past that are now resolved?", "Resolved history.", ["past_condition", "year"]),
    _q("3-5", "medical_history", 2, "When was your last health checkup, and was anything flagged?", "Recent screening results.", ["last_checkup", "flagged_findings"]),
    _q("3-6", "medical_history", 1, "Which vaccinations have you had in recent years?", "Vaccination status.", ["vaccination", "year"]),
    _q("4-1", "physiology", 3, "What is your usual blood pressure?", "Cardiovascular baseline.", ["blood_pressure"]),
    _q("4-2", "physiology", 2, "How is your digestion, including bowel regularity?", "Digestive function.", ["bowel_frequency", "digestive_issue"]),
    _q("4-3", "physiology", 2, "Do you often feel cold, tired or short of breath?", "General physiological complaints.", ["cold_sensitivity", "fatigue", "breathlessness"]),
    _q("4-4", "physiology", 1, "If applicable, how regular is your menstrual cycle?", "Hormonal cycle pattern.", ["cycle_regularity", "cycle_length"]),
    _q("5-1", "circadian", 3, "What time do you usually go to bed and wake up?", "Sleep schedule.", ["bedtime", "wake_time"]),
    _q("5-2", "circadian", 3, "How would you rate the quality of your sleep?", "Subjective sleep quality.", ["sleep_quality", "night_waking"]),
    _q("5-3", "circadian", 2, "Do you work night shifts or have an irregular schedule?", "Circadian disruption.", ["shift_work", "schedule_pattern"]),
    _q("5-4", "circadian", 1, "Do you nap during the day?", "Daytime sleep.", ["nap_frequency", "nap_length"]),
    _q("6-1", "diet_nutrition", 3, "What does a typical day of eating look like for you?", "Meal pattern.", ["meals_per_day", "typical_meals"]),
    _q("6-2", "diet_nutrition", 3, "Do you follow any particular diet or avoid certain foods?", "Dietary restrictions.", ["diet_type", "avoided_foods"]),
    _q("6-3", "diet_nutrition", 2, "How much water and caffeine do you drink per day?", "Hydration and stimulant intake.", ["water_intake", "caffeine_intake"]),
    _q("6-4", "diet_nutrition", 1, "How often do you eat out or eat processed food?", "Food quality.", ["eating_out_frequency", "processed_food"]),
    _q("7-1", "substances", 3, "Do you smoke or use nicotine in any form?", "Tobacco exposure.", ["smoking", "smoking_amount"]),
    _q("7-2", "substances", 3, "How often and how much alcohol do you drink?", "Alcohol intake.", ["alcohol_frequency", "alcohol_amount"]),
    _q("7-3", "substances", 2, "Which supplements or vitamins do you take regularly?", "Supplement stack.", ["supplement", "dose"]),
    _q("7-4", "substances", 1, "Do you use any other substances recreationally?", "Other substance use.", ["substance", "frequency"]),
    _q("8-1", "exercise", 3, "How often do you exercise, and what kind of exercise do you do?", "Activity pattern.", ["exercise_type", "exercise_frequency"]),
    _q("8-2", "exercise", 2, "About how many steps do you walk on a typical day?", "Daily movement.", ["daily_steps"]),
    _q("8-3", "exercise", 1, "Do you have any injuries or limitations that affect exercise?", "Physical limitations.", ["injury", "limitation"]),
    _q("9-1", "mental", 3, "How would you describe your stress level lately?", "Current stress load.", ["stress_level", "stress_source"]),
    _q("9-2", "mental", 2, "Have you been diagnosed with or treated for any mental health condition?", "Mental health history.", ["mental_condition", "treatment"]),
    _q("9-3", "mental", 1, "What helps you relax or recover from stress?", "Coping strategies.", ["coping_method"]),
    _q("10-1", "beauty_hygiene", 2, "Do you have any skin concerns or a skin type you know of?", "Skin condition.", ["skin_type", "skin_concern"]),
    _q("10-2", "beauty_hygiene", 1, "How do you take care of your teeth, and when did you last see a dentist?", "Oral hygiene.", ["dental_routine", "last_dental_visit"]),
    _q("11-1", "environment", 2, "What is your job, and is it mostly sitting or physically active?", "Occupational exposure.", ["occupation", "work_activity_level"]),
    _q("11-2", "environment", 1, "Who do you live with, and how is your living environment?", "Household context.", ["household", "living_environment"]),
    _q("11-3", "environment", 1, "Are you exposed to anything at home or work that could affect your health, like smoke or chemicals?", "Environmental exposure.", ["exposure"]),
)


def _id_sort_key(question_id: str) -> tuple[Any, ...]:
    parts = re.split(r"[-_.]", question_id)
    return tuple((0, int(part), "") if part.isdigit() else (1, 0, part) for part in parts)


class QuestionBank:
    def __init__(
        self,
        questions: Iterable[Question] = DEFAULT_QUESTIONS,
        sections: Iterable[Section] = DEFAULT_SECTIONS,
    ) -> None:
        self._questions = list(questions)
        self._by_id = {question.id: question for question in self._questions}
        if len(self._by_id) != len(self._questions):
            raise ValueError("Question ids must be unique.")
        self._sections = {section.id: section for section in sections}
        self._section_order = {section_id: idx for idx, section_id in enumerate(self._sections)}
        for question in self._questions:
            if question.priority not in PRIORITY_TIERS:
                raise ValueError(f"Question {question.id} has invalid priority {question.priority}.")
            if question.section_id not in self._section_order:
                self._section_order[question.section_id] = len(self._section_order)
                self._sections[question.section_id] = Section(question.section_id, question.section_id)

    def __iter__(self) -> Iterator[Question]:
        return iter(self.ordered(self._questions))

    def __len__(self) -> int:
        return len(self._questions)

    def get(self, question_id: str | None) -> Question | None:
        if not question_id:
            return None
        return self._by_id.get(question_id)

    @property
    def section_ids(self) -> list[str]:
        return sorted(self._section_order, key=self._section_order.__getitem__)

    def has_section(self, section_id: str) -> bool:
        return section_id in self._sections

    def section_title(self, section_id: str) -> str:
        section = self._sections.get(section_id)
        return section.title if section else section_id

    def sort_key(self, question: Question) -> tuple[Any, ...]:
        return (-question.priority, self._section_order.get(question.section_id, len(self._section_order)), _id_sort_key(question.id))

    def ordered(self, questions: Iterable[Question]) -> list[Question]:
        return sorted(questions, key=self.sort_key)

    def unanswered(self, answered_ids: Iterable[str]) -> list[Question]:
        answered = set(answered_ids)
        return self.ordered(question for question in self._questions if question.id not in answered)

    def missing(self, answered_ids: Iterable[str]) -> list[MissingQuestion]:
        return [
            MissingQuestion(
                question_id=question.id,
                question=question.question,
                section_id=question.section_id,
                priority=question.priority,
            )
            for question in self.unanswered(answered_ids)
        ]

    def next_question(self, answered_ids: Iterable[str], priority: int) -> Question | None:
        for question in self.unanswered(answered_ids):
            if question.priority == priority:
                return question
        return None

    def resolve_next(
        self,
        answered_ids: Iterable[str],
        start_priority: int,
        skipped_ids: Sequence[str] = (),
    ) -> tuple[int, Question | None]:
        """Walk tiers from ``start_priority`` down and return the first open question.

        Questions in ``skipped_ids`` are passed over while their tier still has
        something else open; once only skipped ones remain, the earliest skipped
        question comes back before the walk drops to a lower tier.
        """
        answered = set(answered_ids)
        skipped = [qid for qid in skipped_ids if qid not in answered]
        for tier in PRIORITY_TIERS:
            if tier > start_priority:
                continue
            question = self.next_question(answered | set(skipped), tier)
            if question is not None:
                return tier, question
            for question_id in skipped:
                question = self._by_id.get(question_id)
                if question is not None and question.priority == tier:
                    return tier, question
        return PRIORITY_TIERS[-1], None

    def progress(self, answered_ids: Iterable[str]) -> dict[str, Any]:
        answered = set(answered_ids) & set(self._by_id)
        by_priority: dict[int, dict[str, int]] = {}
        by_section: dict[str, dict[str, Any]] = {}
        for question in self._questions:
            done = 1 if question.id in answered else 0
            tier = by_priority.setdefault(question.priority, {"total": 0, "completed": 0})
            tier["total"] += 1
            tier["completed"] += done
            section = by_section.setdefault(
                question.section_id,
                {"section_id": question.section_id, "title": self.section_title(question.section_id), "total": 0, "completed": 0},
            )
            section["total"] += 1
            section["completed"] += done
        total = len(self._questions)
        return {
            "total": total,
            "completed": len(answered),
            "overall_percent": round(100 * len(answered) / total) if total else 100,
            "by_priority": {str(tier): by_priority[tier] for tier in sorted(by_priority, reverse=True)},
            "by_section": sorted(by_section.values(), key=lambda row: self._section_order[row["section_id"]]),
        }


def load_question_bank(path: str | Path) -> QuestionBank:
    payload = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    sections = [Section(str(row["id"]), str(row.get("title") or row["id"])) for row in payload.get("sections", [])]
    questions = [
        Question(
            id=str(row["id"]),
            section_id=str(row["section_id"]),
            priority=int(row["priority"]),
            question=str(row["question"]),
            intent=str(row.get("intent") or ""),
            extraction_hints=tuple(str(hint) for hint in row.get("extraction_hints", [])),
        )
        for row in payload.get("questions", [])
    ]
    return QuestionBank(questions, sections or DEFAULT_SECTIONS)


def question_bank_from_env() -> QuestionBank:
    path = (os.getenv("HEARING_QUESTION_BANK_PATH") or "").strip()
    if path:
        return load_question_bank(path)
    return QuestionBank()
