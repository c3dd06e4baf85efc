from typing import List

from pydantic import BaseModel, Field


class SectionSummary(BaseModel):
    name: str
    total_questions: int = 0
    correct_answers: int = 0
    wrong_answers: int = 0
    skipped_answers: int = 0
    score: float = 0.0      # percentage
    raw_score: float = 0.0  # marks obtained
    max_score: float = 0.0  # marks available


class OverallResults(BaseModel):
    total_questions: int = 0
    correct_answers: int = 0
    wrong_answers: int = 0
    skipped_answers: int = 0
    final_score: float = 0.0  # percentage, 2 decimals
    total_time_taken: int = 0  # seconds
    section_summaries: List[SectionSummary] = Field(default_factory=list)
    overall_raw_score: float = 0.0
    overall_max_score: float = 0.0
