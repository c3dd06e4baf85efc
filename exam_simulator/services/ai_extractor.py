"""
services/ai_extractor.py

OpenAI-backed extraction for the exam session.

Public API:
  - OpenAIExamExtractor.extract_exam_info(text)                    -> ExamMetadata
  - OpenAIExamExtractor.extract_questions(text, sections, target)  -> List[ExtractedQuestion]
  - OpenAIExamExtractor.generate_hint(question, options, level)    -> str

Design:
- Chat Completions in JSON mode, one call per request
- Exponential backoff on rate limits and transient API errors
- The blocking client runs in a worker thread (asyncio.to_thread)
- Invalid question records are dropped, never surfaced
"""

import asyncio
import json
import logging
import re
import time
from typing import Any, Dict, List, Optional, Sequence

from openai import OpenAI, RateLimitError, APIError
from pydantic import ValidationError

from config import MAX_EXAM_TEXT_CHARS, MODEL_NAME
from exam_simulator.models.exam_info import ExamMetadata
from exam_simulator.models.question_model import ExtractedQuestion
from exam_simulator.services.extraction import ExtractionError

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────
_MAX_API_RETRIES = 3
_BACKOFF_BASE = 1.0
_RATE_LIMIT_MAX_RETRIES = 5
_RATE_LIMIT_BACKOFF_BASE = 2.0

_GENERIC_SUBJECT_WORDS = ("general", "main")

_FALLBACK_HINTS = {
    1: "Consider the main subject or topic this question might belong to.",
    2: "Is there a particular formula or common approach used for questions like this?",
    3: "Look closely at the wording of the question and each option. Is there a key detail you may have missed?",
}


class OpenAIExamExtractor:
    """
    Implements the SectionLoader, MetadataExtractor and HintGenerator contracts.

    Args:
        api_key: OpenAI API key. Ignored when `client` is given.
        model:   Chat model name.
        client:  Pre-built OpenAI client (mainly for tests).
    """

    def __init__(self, api_key: str = "", model: str = MODEL_NAME, client: Optional[OpenAI] = None):
        self.model = model
        self.client = client if client is not None else _make_client(api_key)

    # ══════════════════════════════════════════════════════════════════════════
    # Public API
    # ══════════════════════════════════════════════════════════════════════════

    async def extract_exam_info(self, exam_text: str) -> ExamMetadata:
        if not exam_text or not exam_text.strip():
            raise ExtractionError("The exam text is empty.")
        raw = await self._call(_build_exam_info_prompt(), _clip(exam_text))
        data = _load_json_object(raw)
        if data is None:
            raise ExtractionError("The AI service returned no usable exam information.")

        data = normalize_exam_info(data)
        try:
            return ExamMetadata.model_validate(data)
        except ValidationError as e:
            logger.error(f"extract_exam_info: invalid metadata - {e}")
            raise ExtractionError(f"The extracted exam information is incomplete: {e}") from e

    async def extract_questions(
        self,
        exam_text: str,
        all_sections: Sequence[str],
        target_section: str,
    ) -> List[ExtractedQuestion]:
        if not exam_text or not exam_text.strip():
            raise ExtractionError("The exam text is empty.")
        if target_section not in all_sections:
            raise ExtractionError(f"Section {target_section!r} is not one of {list(all_sections)}.")

        user_input = (
            f"All sections: {json.dumps(list(all_sections), ensure_ascii=False)}\n"
            f"Target section: {target_section}\n\n"
            f"Exam text:\n{_clip(exam_text)}"
        )
        raw = await self._call(_build_questions_prompt(target_section), user_input)
        data = _load_json_object(raw)
        if data is None:
            logger.warning(f"extract_questions: unparseable reply for {target_section!r}, treating as empty")
            return []

        items = data.get("questions", data.get("items", []))
        questions = parse_question_records(items, target_section)
        logger.info(f"extract_questions: {len(questions)} valid question(s) for {target_section!r}")
        return questions

    async def generate_hint(
        self,
        question_text: str,
        options: Sequence[str],
        level: int,
        exam_context: Optional[str] = None,
    ) -> str:
        if not 1 <= level <= 3:
            raise ValueError(f"Hint level must be between 1 and 3, got {level}.")
        user_input = f"Question: {question_text}\nOptions:\n" + "\n".join(f"- {o}" for o in options)
        user_input += f"\n\nHint level: {level}"
        if exam_context:
            user_input += f"\n\nExam context (excerpt):\n{exam_context}"

        raw = await self._call(_build_hint_prompt(), user_input)
        data = _load_json_object(raw)
        hint = str(data.get("hint", "")).strip() if data else ""
        if not hint:
            logger.warning(f"generate_hint: empty reply, using fallback for level {level}")
            return _FALLBACK_HINTS[level]
        return hint

    # ── Internal ─────────────────────────────────────────────────────────────

    async def _call(self, system_prompt: str, user_content: str) -> str:
        if self.client is None:
            raise ExtractionError("The OpenAI client is not configured (missing API key?).")
        raw = await asyncio.to_thread(_call_openai, system_prompt, user_content, self.client, self.model)
        if raw is None:
            raise ExtractionError("The AI service did not respond. Please try again later.")
        return raw


# ══════════════════════════════════════════════════════════════════════════════
# Post-processing
# ══════════════════════════════════════════════════════════════════════════════

def parse_question_records(items: Any, target_section: str) -> List[ExtractedQuestion]:
    """
    Raw JSON items -> validated records of the target section.

    Items failing validation (missing text, fewer than 2 options, answer not
    among the options) or belonging to another section are dropped.
    """
    if not isinstance(items, list):
        return []

    records: List[ExtractedQuestion] = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        item = dict(item)
        item.setdefault("section", target_section)
        try:
            record = ExtractedQuestion(**item)
        except (ValidationError, TypeError) as e:
            logger.warning(f"item[{idx}]: dropped - {e}")
            continue
        if record.section != target_section:
            logger.warning(f"item[{idx}]: dropped, section {record.section!r} is not {target_section!r}")
            continue
        records.append(record)
    return records


def normalize_exam_info(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fill gaps in extracted exam information.

    - subject totals summed from their sections when missing
    - flat `sections` list derived from subjects when missing or inconsistent
      ("Subject - Section", no prefix for a single general subject)
    - overall totals summed from subjects when missing
    """
    data = dict(data)
    subjects = data.get("subjects") or []
    if not isinstance(subjects, list):
        subjects = []
    subjects = [dict(s) for s in subjects if isinstance(s, dict)]

    for subject in subjects:
        sections = [s for s in subject.get("subject_sections") or [] if isinstance(s, dict)]
        subject["subject_sections"] = sections
        if subject.get("number_of_questions_in_subject") is None:
            count = sum(s.get("number_of_questions") or 0 for s in sections)
            subject["number_of_questions_in_subject"] = count or None
        if subject.get("total_marks_for_subject") is None:
            marks = sum(
                s.get("total_marks_for_section")
                or (s.get("number_of_questions") or 0) * (s.get("marks_per_question") or 0)
                for s in sections
            )
            subject["total_marks_for_subject"] = marks or None

    derived: List[str] = []
    for subject in subjects:
        name = str(subject.get("subject_name") or "").strip()
        generic = len(subjects) == 1 and any(w in name.lower() for w in _GENERIC_SUBJECT_WORDS)
        for section in subject["subject_sections"]:
            section_name = str(section.get("section_name_or_type") or "").strip()
            if not section_name:
                continue
            flat = section_name if generic or not name else f"{name} - {section_name}"
            if flat not in derived:
                derived.append(flat)

    current = data.get("sections") or []
    if derived and (not current or len(current) != len(derived)):
        logger.info(f"normalize_exam_info: sections derived from subjects: {derived}")
        data["sections"] = derived

    if subjects:
        if data.get("total_marks") is None:
            total = sum(s.get("total_marks_for_subject") or 0 for s in subjects)
            data["total_marks"] = total or None
        if data.get("total_questions") is None:
            count = sum(s.get("number_of_questions_in_subject") or 0 for s in subjects)
            data["total_questions"] = count or None
    data["subjects"] = subjects

    if not data.get("sections"):
        logger.warning("normalize_exam_info: no sections found in the exam text")
    return data


def _clip(text: str) -> str:
    if len(text) <= MAX_EXAM_TEXT_CHARS:
        return text
    logger.warning(f"Exam text clipped from {len(text)} to {MAX_EXAM_TEXT_CHARS} chars")
    return text[:MAX_EXAM_TEXT_CHARS]


_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_PAYLOAD_RE = re.compile(r"[{[].*[}\]]", re.DOTALL)


def _load_json_object(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Model reply -> JSON object, or None when it holds none.

    Code fences and surrounding prose are ignored. A bare list is read as
    the "questions" array.
    """
    match = _PAYLOAD_RE.search(_FENCE_RE.sub("", raw or ""))
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if isinstance(data, list):
        return {"questions": data}
    return data if isinstance(data, dict) else None


# ══════════════════════════════════════════════════════════════════════════════
# Prompts
# ══════════════════════════════════════════════════════════════════════════════

def _build_exam_info_prompt() -> str:
    return (
        "You extract the structure and metadata of an exam from the text of its PDF.\n"
        "\n"
        "[Output format]\n"
        "Reply with a single JSON object only. No markdown, no commentary.\n"
        "\n"
        "[Fields]\n"
        "{\n"
        '  "exam_name": (str) full name of the exam,\n'
        '  "duration": (str) total duration, e.g. "2 hours" or "90 minutes",\n'
        '  "total_marks": (number, optional) total marks of the whole exam,\n'
        '  "total_questions": (int, optional) total number of questions,\n'
        '  "marks_per_question": (number, optional) marks per question if uniform,\n'
        '  "negative_marking": (str, optional) negative marking rule, e.g. "1/4 mark deducted per wrong answer" or "none",\n'
        '  "subjects": [\n'
        '    {"subject_name": (str), "subject_duration": (str, optional),\n'
        '     "total_marks_for_subject": (number, optional), "number_of_questions_in_subject": (int, optional),\n'
        '     "subject_sections": [{"section_name_or_type": (str), "number_of_questions": (int, optional),\n'
        '                           "marks_per_question": (number, optional), "total_marks_for_section": (number, optional)}]}\n'
        "  ],\n"
        '  "sections": (list[str]) flat list of unique section identifiers, "Subject Name - Section Name"\n'
        '              (e.g. ["Physics - Section A", "Chemistry - Section A"]); just the section names\n'
        '              when the exam has no subjects (e.g. ["Section 1", "Section 2"]),\n'
        '  "question_breakdown": (str, optional) short summary of the question and mark distribution\n'
        "}\n"
        "\n"
        "[Rules]\n"
        '1. An exam without subjects is modelled as one subject named "General" holding all sections.\n'
        "2. Every part of the exam that contains questions must appear in `sections`.\n"
        "3. Omit fields whose value is not stated or cannot be derived."
    )


def _build_questions_prompt(target_section: str) -> str:
    return (
        "You extract multiple-choice questions of one section from the text of an exam PDF.\n"
        "\n"
        "[Task]\n"
        f"Extract every question of the section '{target_section}' and of no other section.\n"
        "\n"
        "[Output format]\n"
        'Reply with {"questions": [...]} only. No markdown, no commentary.\n'
        "\n"
        "[Fields of each question]\n"
        "{\n"
        '  "question_text": (str) full question text,\n'
        '  "options": (list[str]) option texts without labels such as "A." or "1)",\n'
        '  "correct_answer_text": (str) exact text of the correct option, copied from options,\n'
        f'  "section": (str) always "{target_section}",\n'
        '  "original_question_number": (str, optional) number as printed, e.g. "Q.12"\n'
        "}\n"
        "\n"
        "[Rules]\n"
        '1. If the section has no questions, return {"questions": []}.\n'
        "2. The correct answer must be marked in the source (answer key, tick, bold). "
        "Omit questions whose correct answer cannot be determined.\n"
        "3. correct_answer_text must be one of the strings in options.\n"
        "4. Omit incomplete questions rather than guessing."
    )


def _build_hint_prompt() -> str:
    return (
        "You give hints for exam questions without revealing the answer.\n"
        "\n"
        "[Levels]\n"
        "1: name the general topic or concept the question is about.\n"
        "2: suggest a method, formula or principle to approach it.\n"
        "3: give a specific clue or first step, or point at a key detail in the question or options.\n"
        "\n"
        "[Output format]\n"
        'Reply with {"hint": "..."} only. Never state or single out the correct option.'
    )


# ══════════════════════════════════════════════════════════════════════════════
# OpenAI API calls
# ══════════════════════════════════════════════════════════════════════════════

def _make_client(api_key: str) -> Optional[OpenAI]:
    if not api_key:
        logger.warning("No OpenAI API key provided.")
        return None
    return OpenAI(api_key=api_key)


def _retry_delay(error: Exception, attempt: int) -> Optional[float]:
    """Seconds to wait before the next attempt, None when the error is final."""
    if isinstance(error, RateLimitError):
        if attempt < _RATE_LIMIT_MAX_RETRIES:
            return _RATE_LIMIT_BACKOFF_BASE * 2 ** (attempt - 1)
        return None
    if isinstance(error, APIError) and attempt < _MAX_API_RETRIES:
        transient = getattr(error, "status_code", None) in (500, 502, 503, 504) or any(
            k in str(error).lower() for k in ("timeout", "connection", "unavailable")
        )
        if transient:
            return _BACKOFF_BASE * 2 ** (attempt - 1)
    return None


def _call_openai(system_prompt: str, user_content: str, client: OpenAI, model: str = MODEL_NAME) -> Optional[str]:
    """
    One JSON-mode Chat Completions call.

    Rate limits and transient API errors are retried with exponential
    backoff. Returns None once retries are exhausted or on any other error.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            response = client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_content},
                ],
                temperature=0.1,
                response_format={"type": "json_object"},
            )
            return response.choices[0].message.content
        except Exception as e:
            wait = _retry_delay(e, attempt)
            if wait is None:
                logger.error(f"OpenAI call failed after {attempt} attempt(s): {type(e).__name__}: {e}")
                return None
            logger.warning(f"{type(e).__name__}, retrying in {wait:.1f}s (attempt {attempt})")
            time.sleep(wait)
