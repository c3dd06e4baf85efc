import re
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_NUMBER_RE = re.compile(r"\d+")


def _clean_options(v: List[str]) -> List[str]:
    cleaned = [str(opt).strip() for opt in v]
    if len(cleaned) < 2:
        raise ValueError("options must contain at least 2 entries.")
    if any(not opt for opt in cleaned):
        raise ValueError("options must not contain blank entries.")
    if len(set(cleaned)) != len(cleaned):
        raise ValueError(f"options must be unique: {cleaned}")
    return cleaned


class ExtractedQuestion(BaseModel):
    """
    A question record as returned by the extraction service.

    Records that fail validation are dropped before they reach the session.
    """
    question_text: str = Field(
        ...,
        min_length=1,
        description="Full question text"
    )
    options: List[str] = Field(
        ...,
        description="Option texts without labels such as 'A.' or '1)'"
    )
    correct_answer_text: str = Field(
        ...,
        description="Exact text of the correct option"
    )
    section: str = Field(
        ...,
        min_length=1,
        description="Section the question belongs to"
    )
    original_question_number: Optional[str] = Field(
        None,
        description="Question number as printed in the PDF, e.g. 'Q.12'"
    )

    @field_validator("question_text", "correct_answer_text", "section", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("original_question_number", mode="before")
    @classmethod
    def coerce_number(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("options")
    @classmethod
    def validate_options(cls, v: List[str]) -> List[str]:
        return _clean_options(v)

    @model_validator(mode="after")
    def validate_answer_in_options(self) -> "ExtractedQuestion":
        if self.correct_answer_text not in self.options:
            raise ValueError(
                f"correct answer ({self.correct_answer_text!r}) is not one of the options ({self.options})."
            )
        return self


class Question(BaseModel):
    """
    A question as presented during the exam.

    `options` holds the display order, which may differ from the extraction
    order. Instances are frozen once created.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    question_text: str = Field(..., min_length=1)
    options: List[str]
    correct_answer: str
    section: str = Field(..., min_length=1)
    original_pdf_question_number: Optional[str] = None

    @field_validator("options")
    @classmethod
    def validate_options(cls, v: List[str]) -> List[str]:
        return _clean_options(v)

    @model_validator(mode="after")
    def validate_answer_in_options(self) -> "Question":
        if self.correct_answer not in self.options:
            raise ValueError(
                f"correct answer ({self.correct_answer!r}) is not one of the options ({self.options})."
            )
        return self

    @property
    def number(self) -> Optional[int]:
        """First integer in the printed question number, if any."""
        if not self.original_pdf_question_number:
            return None
        match = _NUMBER_RE.search(self.original_pdf_question_number)
        return int(match.group(0)) if match else None
