"""
models/exam_info.py

Exam metadata extracted from the PDF (or entered by hand before the exam starts).
"""

import re
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

_HOURS_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:hours?|hrs?|h\b)", re.IGNORECASE)
_MINUTES_RE = re.compile(r"(\d+)\s*(?:minutes?|mins?|m\b)", re.IGNORECASE)


class SectionDetail(BaseModel):
    section_name_or_type: str = Field(..., min_length=1)
    number_of_questions: Optional[int] = Field(None, ge=0)
    marks_per_question: Optional[float] = Field(None, ge=0)
    total_marks_for_section: Optional[float] = Field(None, ge=0)


class SubjectDetail(BaseModel):
    subject_name: str = Field(..., min_length=1)
    subject_sections: List[SectionDetail] = Field(default_factory=list)
    subject_duration: Optional[str] = None
    total_marks_for_subject: Optional[float] = Field(None, ge=0)
    number_of_questions_in_subject: Optional[int] = Field(None, ge=0)


class ExamMetadata(BaseModel):
    """
    Exam-level information.

    Attributes:
        exam_name:          Name of the exam.
        duration:           Free-form duration string, e.g. "2 hours" or "90 minutes".
        sections:           Ordered, unique section names. Question order follows this list.
        total_marks:        Total marks for the whole exam, if known.
        total_questions:    Total number of questions, if known.
        marks_per_question: Uniform marks per question, if known.
        negative_marking:   Free-form negative marking policy, e.g. "1/4" or "none".
        subjects:           Optional subject/section breakdown from extraction.
        question_breakdown: Optional textual summary of the question distribution.
    """

    exam_name: str = Field(..., min_length=1)
    duration: str = Field(..., min_length=1)
    sections: List[str] = Field(default_factory=list)
    total_marks: Optional[float] = Field(None, ge=0)
    total_questions: Optional[int] = Field(None, ge=0)
    marks_per_question: Optional[float] = Field(None, gt=0)
    negative_marking: Optional[str] = None
    subjects: List[SubjectDetail] = Field(default_factory=list)
    question_breakdown: Optional[str] = None

    @field_validator("exam_name", "duration", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("sections")
    @classmethod
    def unique_sections(cls, v: List[str]) -> List[str]:
        seen: List[str] = []
        for name in v:
            name = str(name).strip()
            if name and name not in seen:
                seen.append(name)
        return seen

    def duration_seconds(self) -> Optional[int]:
        """
        Parse `duration` into seconds.

        "2 hours 30 minutes" -> 9000, "90 min" -> 5400, a bare number is read
        as minutes. Returns None when nothing can be parsed.
        """
        total = 0.0
        hours = _HOURS_RE.search(self.duration)
        minutes = _MINUTES_RE.search(self.duration)
        if hours:
            total += float(hours.group(1)) * 3600
        if minutes:
            total += int(minutes.group(1)) * 60
        if total == 0 and self.duration.strip().isdigit():
            total = int(self.duration.strip()) * 60
        return int(total) if total > 0 else None
