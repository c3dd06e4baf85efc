import asyncio
import random

import pytest

from exam_simulator.models.exam_info import ExamMetadata
from exam_simulator.models.question_model import ExtractedQuestion, Question
from exam_simulator.services.exam_session import ExamSession
from exam_simulator.services.extraction import ExtractionError


def record(text, section, number=None, options=("Alpha", "Beta", "Gamma"), answer="Alpha"):
    return ExtractedQuestion(
        question_text=text,
        options=list(options),
        correct_answer_text=answer,
        section=section,
        original_question_number=number,
    )


def question(qid, section, number=None, options=("Alpha", "Beta"), answer="Alpha"):
    return Question(
        id=qid,
        question_text=f"Question {qid}",
        options=list(options),
        correct_answer=answer,
        section=section,
        original_pdf_question_number=number,
    )


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeSectionLoader:
    """
    Returns canned records per section.

    Set `gate` (an asyncio.Event, created inside the running loop) to hold
    every call until the event is set. Set `error` to make calls fail.
    """

    def __init__(self, records_by_section):
        self.records_by_section = records_by_section
        self.calls = []
        self.gate = None
        self.error = None

    async def extract_questions(self, exam_text, all_sections, target_section):
        self.calls.append(target_section)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.records_by_section.get(target_section, []))


class FakeHintGenerator:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    async def generate_hint(self, question_text, options, level, exam_context=None):
        self.calls.append((question_text, level, exam_context))
        if self.fail:
            raise ExtractionError("hint service down")
        return f"hint level {level}"


@pytest.fixture
def exam_info():
    return ExamMetadata(
        exam_name="Sample Exam",
        duration="1 hour",
        sections=["A", "B"],
        marks_per_question=1,
        negative_marking="none",
    )


@pytest.fixture
def records():
    return {
        "A": [record("A two", "A", "2"), record("A one", "A", "1")],
        "B": [record("B one", "B", "1", answer="Beta")],
    }


@pytest.fixture
def loader(records):
    return FakeSectionLoader(records)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_session(loader, clock, exam_info):
    """Session with exam text and metadata set, options left in extraction order."""
    def _make(store=None, hint_generator=None, info=None):
        session = ExamSession(
            loader=loader,
            store=store,
            hint_generator=hint_generator,
            clock=clock,
            rng=random.Random(7),
            shuffle_options=False,
        )
        session.set_pdf_text("--- Page 1 ---\nSample exam text")
        session.set_metadata(info or exam_info)
        return session
    return _make


def run(coro):
    return asyncio.run(coro)
