"""
services/question_bank.py

Loaded questions of an exam, kept in one deterministic global order.

Order: section order as declared in the exam metadata, then the printed
question number (numbered before unnumbered), then the raw number string.
The order does not depend on which section was loaded first.
"""

import logging
import random
import re
import uuid
from typing import Iterable, List, Optional, Sequence, Tuple

from exam_simulator.models.question_model import ExtractedQuestion, Question

logger = logging.getLogger(__name__)


def question_sort_key(question: Question, sections: Sequence[str]) -> Tuple[int, int, int, str]:
    try:
        section_idx = sections.index(question.section)
    except ValueError:
        section_idx = len(sections)
    number = question.number
    raw = question.original_pdf_question_number or ""
    if number is None:
        return (section_idx, 1, 0, raw)
    return (section_idx, 0, number, raw)


def build_questions(
    records: Iterable[ExtractedQuestion],
    section: str,
    rng: Optional[random.Random] = None,
    shuffle_options: bool = True,
) -> List[Question]:
    """
    Turn extracted records of one section into exam questions.

    Each question gets a fresh id and, unless disabled, independently
    shuffled options. Records for other sections are dropped.
    """
    rng = rng or random.Random()
    slug = re.sub(r"\s+", "-", section.strip()) or "section"
    batch = uuid.uuid4().hex[:8]

    questions: List[Question] = []
    for idx, record in enumerate(records):
        if record.section != section:
            logger.warning(f"Dropping question for section {record.section!r} while loading {section!r}")
            continue
        options = list(record.options)
        if shuffle_options:
            rng.shuffle(options)
        questions.append(Question(
            id=f"q-{slug}-{batch}-{idx}",
            question_text=record.question_text,
            options=options,
            correct_answer=record.correct_answer_text,
            section=section,
            original_pdf_question_number=record.original_question_number,
        ))
    return questions


class QuestionBank:
    """Questions loaded so far and the set of loaded sections."""

    def __init__(self, sections: Sequence[str] = ()):
        self._sections: List[str] = list(sections)
        self._questions: List[Question] = []
        self._loaded: List[str] = []

    # ── Read access ──────────────────────────────────────────────────────────

    @property
    def sections(self) -> List[str]:
        return list(self._sections)

    @property
    def questions(self) -> List[Question]:
        return list(self._questions)

    @property
    def loaded_sections(self) -> List[str]:
        return list(self._loaded)

    def __len__(self) -> int:
        return len(self._questions)

    def is_loaded(self, section: str) -> bool:
        return section in self._loaded

    def at(self, index: int) -> Question:
        return self._questions[index]

    def get(self, question_id: str) -> Optional[Question]:
        for q in self._questions:
            if q.id == question_id:
                return q
        return None

    def index_of(self, question_id: str) -> int:
        for idx, q in enumerate(self._questions):
            if q.id == question_id:
                return idx
        return -1

    def first_index(self, section: str) -> int:
        for idx, q in enumerate(self._questions):
            if q.section == section:
                return idx
        return -1

    def questions_in(self, section: str) -> List[Question]:
        return [q for q in self._questions if q.section == section]

    # ── Mutation ─────────────────────────────────────────────────────────────

    def add_section(self, section: str, questions: Sequence[Question]) -> bool:
        """
        Commit the questions of one section and re-sort the whole set.

        No await happens between the loaded check and the insert, so two
        completions for the same section cannot both commit.

        Returns:
            False if the section was already loaded (nothing changes), else True.
        """
        if section in self._loaded:
            logger.info(f"Section {section!r} already loaded, ignoring {len(questions)} question(s)")
            return False
        if section not in self._sections:
            raise ValueError(f"Unknown section {section!r}")

        fresh = [q for q in questions if q.section == section]
        if len(fresh) != len(questions):
            logger.warning(f"Section {section!r}: dropped {len(questions) - len(fresh)} question(s) of other sections")

        kept = [q for q in self._questions if q.section != section]
        self._questions = kept + fresh
        self._loaded.append(section)
        self._sort()
        logger.info(f"Section {section!r} committed with {len(fresh)} question(s), {len(self._questions)} in total")
        return True

    def defer(self, index: int) -> bool:
        """
        Move the question at `index` to just after the last other question of
        its section, or to the very end when it is alone in its section.

        Returns:
            False if `index` is out of bounds.
        """
        if not 0 <= index < len(self._questions):
            return False
        moved = self._questions.pop(index)

        insertion = -1
        for idx in range(len(self._questions) - 1, -1, -1):
            if self._questions[idx].section == moved.section:
                insertion = idx + 1
                break

        if insertion == -1:
            self._questions.append(moved)
        else:
            self._questions.insert(insertion, moved)
        return True

    def restore(self, questions: Sequence[Question], loaded: Iterable[str]) -> None:
        """Reload state from a snapshot, keeping the stored order as is."""
        self._loaded = [s for s in dict.fromkeys(loaded) if s in self._sections]
        self._questions = [q for q in questions if q.section in self._sections]

    def clear(self, sections: Optional[Sequence[str]] = None) -> None:
        if sections is not None:
            self._sections = list(sections)
        self._questions = []
        self._loaded = []

    def _sort(self) -> None:
        self._questions.sort(key=lambda q: question_sort_key(q, self._sections))
