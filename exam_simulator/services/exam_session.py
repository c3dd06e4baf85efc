"""
services/exam_session.py

Exam session state machine.

States: empty -> metadata_set -> running <-> paused -> finished.

All mutation goes through the methods of ExamSession. Each mutating method
ends with a save of the session snapshot to the configured store. Mutating a
finished session, or answering while paused, is silently ignored and the
method returns False.
"""

import logging
import math
import random
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

from pydantic import BaseModel, ValidationError

from config import HINT_CONTEXT_CHARS, MAX_HINT_LEVEL
from exam_simulator.models.exam_info import ExamMetadata
from exam_simulator.models.question_model import Question
from exam_simulator.models.results import OverallResults
from exam_simulator.models.session_state import ExamData, ExamStatus, HintRecord, UserAnswer
from exam_simulator.services.exam_service import compute_results
from exam_simulator.services.extraction import (
    ExamValidationError,
    ExtractionError,
    HintGenerator,
    SectionLoader,
)
from exam_simulator.services.persistence import PersistenceAdapter
from exam_simulator.services.question_bank import QuestionBank, build_questions

logger = logging.getLogger(__name__)

# Assumed size of a section that has not been loaded yet (progress estimate only).
_UNLOADED_SECTION_ESTIMATE = 10


class LoadStatus(str, Enum):
    LOADED = "loaded"
    ALREADY_LOADED = "already_loaded"
    IN_PROGRESS = "in_progress"
    EMPTY = "empty"
    FAILED = "failed"
    DISCARDED = "discarded"
    IGNORED = "ignored"


_OK_STATUSES = {
    LoadStatus.LOADED,
    LoadStatus.ALREADY_LOADED,
    LoadStatus.IN_PROGRESS,
    LoadStatus.EMPTY,
}


class LoadResult(BaseModel):
    """
    Outcome of loading or navigating to a section.

    Attributes:
        section:        Target section name.
        status:         What happened (see LoadStatus).
        question_count: Questions available in the section afterwards.
        error:          Extraction error message for status "failed".
    """

    section: str
    status: LoadStatus
    question_count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in _OK_STATUSES


class ExamSession:
    """
    One user's exam, from PDF upload to results.

    Args:
        loader:          Extracts the questions of one section.
        store:           Where snapshots are saved after each mutation.
        hint_generator:  Produces hints for request_hint().
        clock:           Returns the current time in seconds.
        rng:             Random source for option shuffling.
        shuffle_options: Shuffle the display order of options on load.
    """

    def __init__(
        self,
        loader: Optional[SectionLoader] = None,
        store: Optional[PersistenceAdapter] = None,
        hint_generator: Optional[HintGenerator] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        shuffle_options: bool = True,
    ):
        self.loader = loader
        self.store = store
        self.hint_generator = hint_generator
        self._clock = clock
        self._rng = rng or random.Random()
        self._shuffle_options = shuffle_options
        self._generation = 0
        self._hint_pending: Set[str] = set()
        self._clear_state()

    def _clear_state(self) -> None:
        self.pdf_text: Optional[str] = None
        self.exam_info: Optional[ExamMetadata] = None
        self.bank = QuestionBank()
        self._answers: Dict[str, UserAnswer] = {}
        self.current_section: Optional[str] = None
        self.current_question_index = -1
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self.is_paused = False
        self._entered_at: Optional[float] = None
        # section -> generation of the call that is loading it
        self._loading: Dict[str, int] = {}
        self._generation += 1

    # ══════════════════════════════════════════════════════════════════════════
    # Read access
    # ══════════════════════════════════════════════════════════════════════════

    @property
    def status(self) -> ExamStatus:
        if self.end_time is not None:
            return ExamStatus.FINISHED
        if self.start_time is not None:
            return ExamStatus.PAUSED if self.is_paused else ExamStatus.RUNNING
        if self.exam_info is not None:
            return ExamStatus.METADATA_SET
        return ExamStatus.EMPTY

    @property
    def is_started(self) -> bool:
        return self.start_time is not None

    @property
    def is_finished(self) -> bool:
        return self.end_time is not None

    @property
    def questions(self) -> List[Question]:
        return self.bank.questions

    @property
    def user_answers(self) -> List[UserAnswer]:
        """Answers in question order."""
        return [self._answers[q.id] for q in self.bank.questions if q.id in self._answers]

    @property
    def sections_loaded(self) -> List[str]:
        return self.bank.loaded_sections

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_question_index < len(self.bank):
            return self.bank.at(self.current_question_index)
        return None

    @property
    def current_answer(self) -> Optional[UserAnswer]:
        question = self.current_question
        return self._answers.get(question.id) if question else None

    def answer_for(self, question_id: str) -> Optional[UserAnswer]:
        return self._answers.get(question_id)

    def is_loading(self, section: str) -> bool:
        return section in self._loading

    def unattempted_count(self) -> int:
        return sum(1 for a in self._answers.values() if a.selected_option is None)

    def estimated_total_questions(self) -> int:
        """
        Question count for progress display.

        The declared total when known, otherwise loaded counts per section
        with a fixed guess for sections not loaded yet.
        """
        info = self.exam_info
        if info is None:
            return len(self.bank)
        if info.total_questions:
            return info.total_questions
        if not info.sections:
            return len(self.bank)
        total = 0
        for section in info.sections:
            count = len(self.bank.questions_in(section))
            if count:
                total += count
            elif not self.bank.is_loaded(section):
                total += _UNLOADED_SECTION_ESTIMATE
        return total

    def elapsed_seconds(self) -> int:
        if self.start_time is None:
            return 0
        end = self.end_time if self.end_time is not None else self._clock()
        return max(0, math.floor(end - self.start_time))

    def remaining_seconds(self) -> Optional[int]:
        """Seconds left against the exam duration, None if the duration is unknown."""
        if self.exam_info is None:
            return None
        duration = self.exam_info.duration_seconds()
        if duration is None:
            return None
        return max(0, duration - self.elapsed_seconds())

    def results(self) -> OverallResults:
        return compute_results(self.to_snapshot())

    # ══════════════════════════════════════════════════════════════════════════
    # Setup
    # ══════════════════════════════════════════════════════════════════════════

    def set_pdf_text(self, text: str) -> None:
        """Start over with a new exam text. Everything else is dropped."""
        self._clear_state()
        self.pdf_text = text
        logger.info(f"New exam text set ({len(text)} chars), session reset")
        self._persist()

    def set_metadata(self, info: Union[ExamMetadata, Dict[str, Any]]) -> bool:
        """
        Set (or replace) the exam metadata before the exam starts.

        Clears loaded questions and answers, since they were extracted
        against the previous metadata.

        Returns:
            False if the exam has already started (nothing changes).
        """
        if self.is_started:
            logger.warning("Exam already started, metadata change ignored")
            return False
        if not isinstance(info, ExamMetadata):
            try:
                info = ExamMetadata.model_validate(info)
            except ValidationError as e:
                raise ExamValidationError(f"Invalid exam metadata: {e}") from e

        self._generation += 1
        self._loading = {}
        self.exam_info = info
        self.bank.clear(info.sections)
        self._answers = {}
        self.current_section = info.sections[0] if info.sections else None
        self.current_question_index = -1
        logger.info(f"Metadata set: {info.exam_name!r}, {len(info.sections)} section(s)")
        self._persist()
        return True

    async def load_section(self, section: str) -> LoadResult:
        """
        Extract and commit the questions of one section.

        Loading a section that is loaded or being loaded is a success and does
        not call the loader again. Extraction errors are returned as a
        "failed" result and leave the session unchanged.

        Raises:
            ExamValidationError: unknown section, or no loader/exam text.
        """
        self._require_section(section)
        if self.bank.is_loaded(section):
            return LoadResult(
                section=section,
                status=LoadStatus.ALREADY_LOADED,
                question_count=len(self.bank.questions_in(section)),
            )
        if section in self._loading:
            return LoadResult(section=section, status=LoadStatus.IN_PROGRESS)
        if self.is_finished:
            return LoadResult(section=section, status=LoadStatus.IGNORED)
        if self.loader is None:
            raise ExamValidationError("No section loader configured.")
        if not self.pdf_text:
            raise ExamValidationError("No exam text to extract questions from.")

        generation = self._generation
        self._loading[section] = generation
        logger.info(f"Loading section {section!r}")
        try:
            records = await self.loader.extract_questions(
                self.pdf_text, list(self.exam_info.sections), section,
            )
        except ExtractionError as e:
            logger.error(f"Section {section!r} extraction failed: {e}")
            return LoadResult(section=section, status=LoadStatus.FAILED, error=str(e))
        except Exception as e:
            logger.exception(f"Section {section!r} loader raised unexpectedly")
            return LoadResult(
                section=section,
                status=LoadStatus.FAILED,
                error=f"{type(e).__name__}: {e}",
            )
        finally:
            if self._loading.get(section) == generation:
                del self._loading[section]

        if generation != self._generation:
            logger.warning(f"Section {section!r} result discarded, session changed during extraction")
            return LoadResult(section=section, status=LoadStatus.DISCARDED)
        if self.is_finished:
            return LoadResult(section=section, status=LoadStatus.IGNORED)

        questions = build_questions(records, section, self._rng, self._shuffle_options)
        current_id = self.current_question.id if self.current_question else None
        if not self.bank.add_section(section, questions):
            return LoadResult(
                section=section,
                status=LoadStatus.ALREADY_LOADED,
                question_count=len(self.bank.questions_in(section)),
            )

        for q in questions:
            self._answers[q.id] = UserAnswer(question_id=q.id)

        if current_id is not None:
            self.current_question_index = self.bank.index_of(current_id)
        elif self.current_section == section and questions:
            self.current_question_index = self.bank.first_index(section)

        self._persist()
        status = LoadStatus.LOADED if questions else LoadStatus.EMPTY
        return LoadResult(section=section, status=status, question_count=len(questions))

    def start(self) -> bool:
        """
        Start the exam at the first loaded question.

        Raises:
            ExamValidationError: no sections, first section not loaded, or no questions.

        Returns:
            False if the exam was already started.
        """
        if self.is_started:
            logger.warning("Exam already started")
            return False
        info = self.exam_info
        if info is None or not info.sections:
            raise ExamValidationError("The exam has no sections.")
        if not self.bank.is_loaded(info.sections[0]):
            raise ExamValidationError(f"Questions for {info.sections[0]!r} are not loaded yet.")
        if len(self.bank) == 0:
            raise ExamValidationError("No questions loaded.")

        now = self._clock()
        self.start_time = now
        self.end_time = None
        self.is_paused = False
        self.current_question_index = 0
        self.current_section = self.bank.at(0).section
        self._answers = {q.id: UserAnswer(question_id=q.id) for q in self.bank.questions}
        self._entered_at = now
        logger.info(f"Exam started with {len(self.bank)} question(s)")
        self._persist()
        return True

    # ══════════════════════════════════════════════════════════════════════════
    # Taking the exam
    # ══════════════════════════════════════════════════════════════════════════

    def answer(self, question_id: str, selected_option: Optional[str]) -> bool:
        """Record a selection (None = skip). Only while running."""
        if self.status is not ExamStatus.RUNNING:
            return False
        question = self.bank.get(question_id)
        if question is None:
            logger.warning(f"Answer for unknown question {question_id!r} ignored")
            return False
        if selected_option is not None and selected_option not in question.options:
            raise ExamValidationError(f"{selected_option!r} is not an option of question {question_id!r}.")

        slot = self._answers.setdefault(question_id, UserAnswer(question_id=question_id))
        slot.selected_option = selected_option
        slot.is_correct = None if selected_option is None else selected_option == question.correct_answer
        self._persist()
        return True

    def skip(self, question_id: str) -> bool:
        return self.answer(question_id, None)

    def navigate_to_question(self, index: int) -> bool:
        if self.is_paused or self.is_finished:
            return False
        if not 0 <= index < len(self.bank):
            return False
        self._move_to(index)
        self._persist()
        return True

    def next_question(self) -> bool:
        return self.navigate_to_question(self.current_question_index + 1)

    def previous_question(self) -> bool:
        if self.current_question_index <= 0:
            return False
        return self.navigate_to_question(self.current_question_index - 1)

    async def navigate_to_section(self, section: str) -> LoadResult:
        """
        Jump to the first question of a section, loading it first if needed.

        A section still being loaded by another caller is reported as
        "in_progress" and nothing happens. A loaded section without questions
        becomes the current section with no current question ("empty").

        Raises:
            ExamValidationError: unknown section.
        """
        self._require_section(section)
        if self.is_finished:
            return LoadResult(section=section, status=LoadStatus.IGNORED)
        if section in self._loading:
            logger.info(f"Section {section!r} is still loading")
            return LoadResult(section=section, status=LoadStatus.IN_PROGRESS)

        if self.bank.is_loaded(section):
            result = LoadResult(
                section=section,
                status=LoadStatus.ALREADY_LOADED,
                question_count=len(self.bank.questions_in(section)),
            )
        else:
            result = await self.load_section(section)
            if not result.ok:
                return result

        if self.is_paused or self.is_finished:
            return result.model_copy(update={"status": LoadStatus.IGNORED})

        idx = self.bank.first_index(section)
        if idx == -1:
            self._charge_time()
            self.current_section = section
            self.current_question_index = -1
            logger.info(f"Section {section!r} has no questions")
            self._persist()
            return LoadResult(section=section, status=LoadStatus.EMPTY)

        self._move_to(idx)
        self._persist()
        return result

    def pause(self) -> bool:
        """
        Pause the exam.

        An unattempted current question is moved behind the remaining
        questions of its section, so the user meets it again only after the
        rest of that section.
        """
        if self.is_finished or not self.is_started or self.is_paused:
            return False

        self._charge_time()
        idx = self.current_question_index
        if 0 <= idx < len(self.bank):
            question = self.bank.at(idx)
            answer = self._answers.get(question.id)
            if answer is None or answer.selected_option is None:
                self.bank.defer(idx)
                logger.info(f"Deferred unattempted question {question.id!r}")
                if self.current_question_index >= len(self.bank):
                    self.current_question_index = len(self.bank) - 1
                self.current_section = self.bank.at(self.current_question_index).section

        self.is_paused = True
        self._entered_at = None
        self._persist()
        return True

    def resume(self) -> bool:
        if self.is_finished or not self.is_started or not self.is_paused:
            return False
        self.is_paused = False
        self._entered_at = self._clock()
        self._persist()
        return True

    def submit(self) -> bool:
        """Finish the exam. Only the first call has an effect."""
        if self.is_finished or not self.is_started:
            return False
        self._charge_time()
        self.end_time = self._clock()
        self.is_paused = False
        self._entered_at = None
        logger.info(f"Exam submitted after {self.elapsed_seconds()}s")
        self._persist()
        return True

    def reset(self) -> None:
        """Back to empty, and drop the saved snapshot."""
        self._clear_state()
        if self.store is not None:
            self.store.clear()
        logger.info("Session reset")

    async def request_hint(self, question_id: str) -> Optional[str]:
        """
        Ask for the next hint level on a question (at most 3 per question).

        Returns:
            The hint text, or None when no hint can be given right now.
        """
        if self.status is not ExamStatus.RUNNING:
            return None
        if self.hint_generator is None:
            raise ExamValidationError("No hint generator configured.")
        question = self.bank.get(question_id)
        if question is None:
            raise ExamValidationError(f"Unknown question {question_id!r}.")

        slot = self._answers[question_id]
        level = slot.hint_level + 1
        if level > MAX_HINT_LEVEL or question_id in self._hint_pending:
            return None

        generation = self._generation
        context = self.pdf_text[:HINT_CONTEXT_CHARS] if self.pdf_text else None
        self._hint_pending.add(question_id)
        try:
            text = await self.hint_generator.generate_hint(
                question.question_text, question.options, level, context,
            )
        except ExtractionError as e:
            logger.error(f"Hint for {question_id!r} failed: {e}")
            return None
        finally:
            self._hint_pending.discard(question_id)

        if generation != self._generation or self.is_finished:
            return None
        slot = self._answers.get(question_id)
        if slot is None or slot.hint_level >= level:
            return None
        slot.hints_taken.append(HintRecord(level=level, timestamp=self._clock(), text=text))
        self._persist()
        return text

    def next_unloaded_section(self) -> Optional[str]:
        """The section after the current one, if it is neither loaded nor loading."""
        if self.exam_info is None or self.current_section not in self.exam_info.sections:
            return None
        sections = self.exam_info.sections
        idx = sections.index(self.current_section)
        if idx >= len(sections) - 1:
            return None
        candidate = sections[idx + 1]
        if self.bank.is_loaded(candidate) or candidate in self._loading:
            return None
        return candidate

    async def prefetch_next_section(self) -> Optional[LoadResult]:
        """Load the next section ahead of time while the user works on the current one."""
        if self.is_finished or self.is_paused:
            return None
        candidate = self.next_unloaded_section()
        if candidate is None:
            return None
        return await self.load_section(candidate)

    # ══════════════════════════════════════════════════════════════════════════
    # Snapshot
    # ══════════════════════════════════════════════════════════════════════════

    def to_snapshot(self) -> ExamData:
        return ExamData(
            pdf_text=self.pdf_text,
            exam_info=self.exam_info,
            questions=self.bank.questions,
            user_answers=self.user_answers,
            sections_loaded=self.bank.loaded_sections,
            current_section=self.current_section,
            current_question_index=self.current_question_index,
            start_time=self.start_time,
            end_time=self.end_time,
            is_paused=self.is_paused,
        )

    def restore(self, snapshot: Union[ExamData, Dict[str, Any]]) -> bool:
        """
        Rebuild the session from a snapshot.

        A running exam resumes at its stored question when that is still
        valid, otherwise navigation goes back to the first question.

        Returns:
            False if the snapshot was unusable (the stored copy is then cleared).
        """
        try:
            data = snapshot if isinstance(snapshot, ExamData) else ExamData.model_validate(snapshot)
        except ValidationError as e:
            logger.error(f"Snapshot invalid, discarding: {e}")
            self._discard_stored()
            return False
        if not data.pdf_text:
            logger.info("Snapshot has no exam text, discarding")
            self._discard_stored()
            return False

        self._clear_state()
        self.pdf_text = data.pdf_text
        self.exam_info = data.exam_info
        sections = data.exam_info.sections if data.exam_info else []
        self.bank.clear(sections)
        self.bank.restore(data.questions, data.sections_loaded)

        stored = {a.question_id: a for a in data.user_answers}
        self._answers = {
            q.id: stored.get(q.id) or UserAnswer(question_id=q.id)
            for q in self.bank.questions
        }
        self.start_time = data.start_time
        self.end_time = data.end_time
        self.is_paused = data.is_paused and self.is_started and not self.is_finished

        resumable = self.is_started and not self.is_finished
        if not (resumable and self._restore_navigation(data)):
            self._reset_navigation()
        if self.status is ExamStatus.RUNNING:
            self._entered_at = self._clock()

        logger.info(f"Session restored: {self.status.value}, {len(self.bank)} question(s)")
        return True

    def load_from_store(self) -> bool:
        if self.store is None:
            return False
        data = self.store.load()
        if data is None:
            return False
        return self.restore(data)

    # ══════════════════════════════════════════════════════════════════════════
    # Internal
    # ══════════════════════════════════════════════════════════════════════════

    def _require_section(self, section: str) -> None:
        if self.exam_info is None or section not in self.exam_info.sections:
            raise ExamValidationError(f"Unknown section {section!r}.")

    def _move_to(self, index: int) -> None:
        self._charge_time()
        self.current_question_index = index
        self.current_section = self.bank.at(index).section

    def _charge_time(self) -> None:
        """Add the time spent on the current question to its answer."""
        if self.status is not ExamStatus.RUNNING or self._entered_at is None:
            return
        now = self._clock()
        answer = self.current_answer
        if answer is not None:
            answer.time_taken += max(0.0, now - self._entered_at)
        self._entered_at = now

    def _restore_navigation(self, data: ExamData) -> bool:
        sections = self.exam_info.sections if self.exam_info else []
        idx = data.current_question_index
        if 0 <= idx < len(self.bank) and (data.current_section is None or data.current_section in sections):
            self.current_question_index = idx
            self.current_section = self.bank.at(idx).section
            return True
        section = data.current_section
        if idx == -1 and section in sections and self.bank.is_loaded(section) and not self.bank.questions_in(section):
            self.current_question_index = -1
            self.current_section = section
            return True
        return False

    def _reset_navigation(self) -> None:
        if len(self.bank):
            self.current_question_index = 0
            self.current_section = self.bank.at(0).section
        else:
            self.current_question_index = -1
            sections = self.exam_info.sections if self.exam_info else []
            self.current_section = sections[0] if sections else None

    def _discard_stored(self) -> None:
        if self.store is not None:
            self.store.clear()

    def _persist(self) -> None:
        if self.store is None or not self.pdf_text:
            return
        try:
            self.store.save(self.to_snapshot().model_dump(mode="json"))
        except Exception as e:
            logger.error(f"Snapshot save failed: {e}")
