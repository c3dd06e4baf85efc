"""
models/session_state.py

Answer sheet and serializable snapshot of an exam session.
Pydantic BaseModel based, no UI code.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from exam_simulator.models.exam_info import ExamMetadata
from exam_simulator.models.question_model import Question

SNAPSHOT_VERSION = 1


class ExamStatus(str, Enum):
    EMPTY = "empty"
    METADATA_SET = "metadata_set"
    RUNNING = "running"
    PAUSED = "paused"
    FINISHED = "finished"


class HintRecord(BaseModel):
    level: int = Field(..., ge=1, le=3)
    timestamp: float
    text: Optional[str] = None


class UserAnswer(BaseModel):
    """
    One answer slot per loaded question.

    Attributes:
        question_id:     Id of the paired Question.
        selected_option: Selected option text, None when skipped or not yet answered.
        is_correct:      None when skipped, otherwise whether the selection is correct.
        time_taken:      Seconds spent on the question while the exam was running.
        hints_taken:     Hints requested for the question, in increasing level.
    """

    question_id: str
    selected_option: Optional[str] = None
    is_correct: Optional[bool] = None
    time_taken: float = Field(default=0.0, ge=0)
    hints_taken: List[HintRecord] = Field(default_factory=list)

    @property
    def hint_level(self) -> int:
        return max((h.level for h in self.hints_taken), default=0)


class ExamData(BaseModel):
    """
    JSON-serializable projection of an ExamSession.

    Sufficient to rebuild the session after a reload.
    """

    version: int = SNAPSHOT_VERSION
    pdf_text: Optional[str] = None
    exam_info: Optional[ExamMetadata] = None
    questions: List[Question] = Field(default_factory=list)
    user_answers: List[UserAnswer] = Field(default_factory=list)
    sections_loaded: List[str] = Field(default_factory=list)
    current_section: Optional[str] = None
    current_question_index: int = Field(default=-1, ge=-1)
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    is_paused: bool = False
