"""
services/extraction.py

Contracts for the AI-backed collaborators of the exam session, and the
errors shared by the session and its collaborators.

The session only depends on these protocols. The OpenAI implementation lives
in services/ai_extractor.py.
"""

from typing import List, Optional, Protocol, Sequence, runtime_checkable

from exam_simulator.models.exam_info import ExamMetadata
from exam_simulator.models.question_model import ExtractedQuestion


class ExamValidationError(ValueError):
    """Invalid request against the current session state. Nothing was changed."""


class ExtractionError(RuntimeError):
    """The extraction service failed for the whole call. No partial results."""


@runtime_checkable
class SectionLoader(Protocol):
    async def extract_questions(
        self,
        exam_text: str,
        all_sections: Sequence[str],
        target_section: str,
    ) -> List[ExtractedQuestion]:
        """
        Extract the questions of `target_section`.

        Returns only records that passed validation, possibly none.
        Raises ExtractionError when the service call fails.
        """
        ...


@runtime_checkable
class MetadataExtractor(Protocol):
    async def extract_exam_info(self, exam_text: str) -> ExamMetadata:
        ...


@runtime_checkable
class HintGenerator(Protocol):
    async def generate_hint(
        self,
        question_text: str,
        options: Sequence[str],
        level: int,
        exam_context: Optional[str] = None,
    ) -> str:
        ...
