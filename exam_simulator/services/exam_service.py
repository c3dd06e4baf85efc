"""
services/exam_service.py

Exam scoring and result analysis.
Pure Python functions, no UI code and no session mutation.
"""

import logging
import math
import re
from enum import Enum
from typing import Dict, Iterable, List, Optional

from exam_simulator.models.exam_info import ExamMetadata
from exam_simulator.models.question_model import Question
from exam_simulator.models.results import OverallResults, SectionSummary
from exam_simulator.models.session_state import ExamData, UserAnswer

logger = logging.getLogger(__name__)

# Fraction of a question's marks removed from a correct answer per hint level taken.
HINT_PENALTIES = {
    1: 0.10,
    2: 0.15,  # 25% in total with level 1
    3: 0.15,  # 40% in total with levels 1 and 2
}

_NO_PENALTY_RE = re.compile(r"\b(none|no|nil|n/a)\b", re.IGNORECASE)


class NegativeMarking(str, Enum):
    NONE = "none"
    QUARTER = "quarter"
    THIRD = "third"

    @property
    def factor(self) -> float:
        return _NEGATIVE_FACTORS[self]


_NEGATIVE_FACTORS = {
    NegativeMarking.NONE: 0.0,
    NegativeMarking.QUARTER: 0.25,
    NegativeMarking.THIRD: 1 / 3,
}


def parse_negative_marking(text: Optional[str]) -> NegativeMarking:
    """
    Best-effort reading of a free-form negative marking policy.

    Only the common "1/4" and "1/3" penalties are recognized. Anything else,
    including policies like "-0.5 per wrong answer", yields no penalty.

    Args:
        text: Policy text as extracted, e.g. "0.25 marks deducted per wrong answer".

    Returns:
        NegativeMarking.QUARTER, NegativeMarking.THIRD or NegativeMarking.NONE.
    """
    if not text or not text.strip():
        return NegativeMarking.NONE

    lowered = text.strip().lower()
    if "1/4" in lowered or "0.25" in lowered:
        return NegativeMarking.QUARTER
    if "1/3" in lowered or "0.33" in lowered:
        return NegativeMarking.THIRD
    if not _NO_PENALTY_RE.search(lowered):
        logger.warning(f"Unrecognized negative marking policy {text!r}, applying no penalty")
    return NegativeMarking.NONE


def marks_per_question(exam_info: Optional[ExamMetadata]) -> float:
    """Marks for one question: explicit value, else total/count, else 1."""
    if exam_info is None:
        return 1.0
    if exam_info.marks_per_question:
        return float(exam_info.marks_per_question)
    if exam_info.total_marks and exam_info.total_questions:
        return exam_info.total_marks / exam_info.total_questions
    return 1.0


def question_marks(
    question: Question,
    answer: Optional[UserAnswer],
    mark: float,
    negative_factor: float = 0.0,
) -> float:
    """
    Marks earned on a single question.

    Skipped: 0. Wrong: -mark * negative_factor. Correct: mark minus the hint
    penalties, never below 0.
    """
    if answer is None or answer.selected_option is None:
        return 0.0

    if answer.selected_option != question.correct_answer:
        return -mark * negative_factor

    levels = {h.level for h in answer.hints_taken}
    penalty = sum(HINT_PENALTIES.get(level, 0.0) for level in levels)
    return max(0.0, mark - mark * penalty)


def calculate_section_summaries(
    questions: List[Question],
    answers_by_id: Dict[str, UserAnswer],
    sections: Iterable[str],
    mark: float,
    negative_factor: float = 0.0,
) -> List[SectionSummary]:
    """
    Per-section tallies and scores.

    Declared sections come first in their declared order (including sections
    with no loaded questions), followed by any other section names found on
    the questions.

    Returns:
        SectionSummary list. Score is a percentage clamped at 0, 2 decimals.
    """
    order = list(sections)
    for q in questions:
        if q.section not in order:
            order.append(q.section)

    summaries: List[SectionSummary] = []
    for name in order:
        group = [q for q in questions if q.section == name]
        correct = wrong = skipped = 0
        raw = 0.0
        for q in group:
            answer = answers_by_id.get(q.id)
            if answer is None or answer.selected_option is None:
                skipped += 1
            elif answer.selected_option == q.correct_answer:
                correct += 1
            else:
                wrong += 1
            raw += question_marks(q, answer, mark, negative_factor)

        max_score = len(group) * mark
        score = round(max(0.0, raw / max_score * 100), 2) if max_score > 0 else 0.0
        summaries.append(SectionSummary(
            name=name,
            total_questions=len(group),
            correct_answers=correct,
            wrong_answers=wrong,
            skipped_answers=skipped,
            score=score,
            raw_score=round(raw, 4),
            max_score=round(max_score, 4),
        ))
    return summaries


def compute_results(data: ExamData) -> OverallResults:
    """
    Score a finished (or in-progress) exam.

    Overall score is achieved marks over `total_marks` when the exam declares
    a positive total, otherwise the plain percentage of correct answers.

    Args:
        data: Session snapshot holding metadata, questions, answers and timestamps.

    Returns:
        OverallResults. All counts are zero and the section list is empty when
        no questions were loaded.
    """
    questions = data.questions
    if not questions:
        return OverallResults()

    info = data.exam_info
    answers_by_id = {a.question_id: a for a in data.user_answers}
    mark = marks_per_question(info)
    negative_factor = parse_negative_marking(info.negative_marking if info else None).factor

    summaries = calculate_section_summaries(
        questions, answers_by_id, info.sections if info else [], mark, negative_factor,
    )

    correct = sum(s.correct_answers for s in summaries)
    wrong = sum(s.wrong_answers for s in summaries)
    skipped = sum(s.skipped_answers for s in summaries)
    raw = sum(question_marks(q, answers_by_id.get(q.id), mark, negative_factor) for q in questions)
    total = len(questions)

    if info is not None and info.total_marks and info.total_marks > 0:
        max_score = float(info.total_marks)
        percentage = raw / max_score * 100
    else:
        max_score = total * mark
        percentage = correct / total * 100

    time_taken = 0
    if data.start_time is not None and data.end_time is not None:
        time_taken = max(0, math.floor(data.end_time - data.start_time))

    return OverallResults(
        total_questions=total,
        correct_answers=correct,
        wrong_answers=wrong,
        skipped_answers=skipped,
        final_score=round(max(0.0, percentage), 2),
        total_time_taken=time_taken,
        section_summaries=summaries,
        overall_raw_score=round(raw, 4),
        overall_max_score=round(max_score, 4),
    )


def get_review_questions(
    questions: List[Question],
    user_answers: Iterable[UserAnswer],
) -> List[Question]:
    """
    Wrong and skipped questions, in exam order (for the answer review list).
    """
    answers_by_id = {a.question_id: a for a in user_answers}
    review: List[Question] = []
    for q in questions:
        answer = answers_by_id.get(q.id)
        if answer is None or answer.selected_option != q.correct_answer:
            review.append(q)
    return review
