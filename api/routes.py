"""
api/routes.py — FastAPI endpoints
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from pydantic import BaseModel

import api.session as session
from config import MAX_PDF_SIZE
from exam_simulator.models.exam_info import ExamMetadata
from exam_simulator.models.question_model import Question
from exam_simulator.models.session_state import ExamStatus, UserAnswer
from exam_simulator.services.exam_service import get_review_questions
from exam_simulator.services.exam_session import ExamSession, LoadResult
from exam_simulator.services.extraction import ExamValidationError, ExtractionError
from exam_simulator.services.pdf_text import extract_text

logger = logging.getLogger(__name__)

router = APIRouter()

_background_tasks: set = set()

# ── Pydantic request bodies ──────────────────────────────────────────────────

class ApiKeyBody(BaseModel):
    api_key: str

class SectionBody(BaseModel):
    section: str

class AnswerBody(BaseModel):
    question_id: str
    answer: Optional[str] = None

class QuestionIdBody(BaseModel):
    question_id: str

class NavigateBody(BaseModel):
    index: int = 0


# ── Helpers ──────────────────────────────────────────────────────────────────

def _session(request: Request) -> ExamSession:
    exam = session.get_session(request.state.session_id)
    if exam is None:
        raise HTTPException(status_code=404, detail="No exam session.")
    return exam


def _question_to_dict(q: Question, reveal: bool) -> dict:
    d = {
        "id": q.id,
        "section": q.section,
        "question_text": q.question_text,
        "options": q.options,
        "original_pdf_question_number": q.original_pdf_question_number,
    }
    if reveal:
        d["correct_answer"] = q.correct_answer
    return d


def _answer_to_dict(answer: UserAnswer, reveal: bool) -> dict:
    # is_correct stays hidden until the exam is finished
    return answer.model_dump(mode="json", exclude=None if reveal else {"is_correct"})


def _load_result_to_dict(result: LoadResult) -> dict:
    d = result.model_dump(mode="json")
    d["ok"] = result.ok
    return d


def _state_to_dict(exam: ExamSession) -> dict:
    finished = exam.is_finished
    return {
        "status": exam.status.value,
        "exam_info": exam.exam_info.model_dump(mode="json") if exam.exam_info else None,
        "sections_loaded": exam.sections_loaded,
        "sections_loading": [s for s in (exam.exam_info.sections if exam.exam_info else []) if exam.is_loading(s)],
        "current_section": exam.current_section,
        "current_question_index": exam.current_question_index,
        "question_ids": [q.id for q in exam.questions],
        "question_sections": [q.section for q in exam.questions],
        "user_answers": [_answer_to_dict(a, reveal=finished) for a in exam.user_answers],
        "start_time": exam.start_time,
        "end_time": exam.end_time,
        "is_paused": exam.is_paused,
        "elapsed_seconds": exam.elapsed_seconds(),
        "remaining_seconds": exam.remaining_seconds(),
        "unattempted_count": exam.unattempted_count(),
        "estimated_total_questions": exam.estimated_total_questions(),
        "current_question": (
            _question_to_dict(exam.current_question, reveal=finished)
            if exam.current_question else None
        ),
    }


def _prefetch(exam: ExamSession) -> None:
    """Load the next section in the background."""
    if exam.next_unloaded_section() is None:
        return
    task = asyncio.create_task(exam.prefetch_next_section())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


# ── Endpoints ────────────────────────────────────────────────────────────────

@router.post("/api/set-api-key")
async def set_api_key(body: ApiKeyBody, request: Request):
    key = body.api_key.strip()
    if not key:
        raise HTTPException(status_code=400, detail="The API key is empty.")
    if not key.startswith("sk-"):
        raise HTTPException(status_code=400, detail="This does not look like an OpenAI API key (sk-...).")
    session.set_api_key(request.state.session_id, key)
    return {"ok": True}


@router.post("/api/upload-pdf")
async def upload_pdf(request: Request, file: UploadFile = File(...)):
    exam = _session(request)
    if not session.has_api_key(request.state.session_id):
        raise HTTPException(status_code=400, detail="No API key set.")

    file_bytes = await file.read()
    if len(file_bytes) > MAX_PDF_SIZE:
        raise HTTPException(status_code=413, detail="The PDF is too large (max 50MB).")
    try:
        text = await asyncio.to_thread(extract_text, file_bytes)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        info = await exam.loader.extract_exam_info(text)
    except ExtractionError as e:
        logger.error(f"upload_pdf: metadata extraction failed - {e}")
        raise HTTPException(
            status_code=503,
            detail="The AI service could not read the exam details. Please try again.",
        )
    exam.set_pdf_text(text)
    exam.set_metadata(info)
    return {"ok": True, "exam_info": info.model_dump(mode="json")}


@router.get("/api/exam-info")
async def get_exam_info(request: Request):
    exam = _session(request)
    if exam.exam_info is None:
        raise HTTPException(status_code=404, detail="No exam details yet.")
    return exam.exam_info.model_dump(mode="json")


@router.put("/api/exam-info")
async def put_exam_info(info: ExamMetadata, request: Request):
    exam = _session(request)
    if not exam.set_metadata(info):
        raise HTTPException(status_code=400, detail="The exam has already started.")
    return {"ok": True, "exam_info": info.model_dump(mode="json")}


@router.post("/api/load-section")
async def load_section(body: SectionBody, request: Request):
    exam = _session(request)
    try:
        result = await exam.load_section(body.section)
    except ExamValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _load_result_to_dict(result)


@router.post("/api/start")
async def start_exam(request: Request):
    exam = _session(request)
    try:
        started = exam.start()
    except ExamValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not started:
        raise HTTPException(status_code=400, detail="The exam has already started.")
    _prefetch(exam)
    return {"ok": True, "total": len(exam.questions)}


@router.get("/api/exam-state")
async def get_exam_state(request: Request):
    return _state_to_dict(_session(request))


@router.get("/api/question/{index}")
async def get_question(index: int, request: Request):
    exam = _session(request)
    questions = exam.questions
    if not (0 <= index < len(questions)):
        raise HTTPException(status_code=404, detail="Question not found.")

    q = questions[index]
    answer = exam.answer_for(q.id)
    d = _question_to_dict(q, reveal=exam.is_finished)
    d.update({
        "index": index,
        "total": len(questions),
        "saved_answer": answer.selected_option if answer else None,
        "hints_taken": [h.model_dump(mode="json") for h in answer.hints_taken] if answer else [],
    })
    return d


@router.post("/api/answer")
async def save_answer(body: AnswerBody, request: Request):
    exam = _session(request)
    try:
        changed = exam.answer(body.question_id, body.answer)
    except ExamValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": changed, "unattempted_count": exam.unattempted_count()}


@router.post("/api/skip")
async def skip_question(body: QuestionIdBody, request: Request):
    exam = _session(request)
    changed = exam.skip(body.question_id)
    if changed:
        exam.next_question()
    return {"ok": changed, "current_question_index": exam.current_question_index}


@router.post("/api/navigate")
async def navigate(body: NavigateBody, request: Request):
    exam = _session(request)
    moved = exam.navigate_to_question(body.index)
    if moved:
        _prefetch(exam)
    return {
        "ok": moved,
        "index": exam.current_question_index,
        "section": exam.current_section,
    }


@router.post("/api/navigate-section")
async def navigate_section(body: SectionBody, request: Request):
    exam = _session(request)
    try:
        result = await exam.navigate_to_section(body.section)
    except ExamValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    d = _load_result_to_dict(result)
    d.update({"index": exam.current_question_index, "current_section": exam.current_section})
    return d


@router.post("/api/pause")
async def pause_exam(request: Request):
    exam = _session(request)
    return {"ok": exam.pause(), "index": exam.current_question_index}


@router.post("/api/resume")
async def resume_exam(request: Request):
    exam = _session(request)
    return {"ok": exam.resume()}


@router.post("/api/hint")
async def request_hint(body: QuestionIdBody, request: Request):
    exam = _session(request)
    try:
        hint = await exam.request_hint(body.question_id)
    except ExamValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    answer = exam.answer_for(body.question_id)
    return {
        "ok": hint is not None,
        "hint": hint,
        "hints_used": answer.hint_level if answer else 0,
    }


@router.post("/api/submit")
async def submit_exam(request: Request):
    exam = _session(request)
    if exam.status not in (ExamStatus.RUNNING, ExamStatus.PAUSED):
        raise HTTPException(status_code=400, detail="No exam in progress.")
    exam.submit()
    return {"ok": True, "final_score": exam.results().final_score}


@router.get("/api/results")
async def get_results(request: Request):
    exam = _session(request)
    if not exam.is_finished:
        raise HTTPException(status_code=400, detail="The exam has not been submitted yet.")

    results = exam.results()
    review = []
    for q in get_review_questions(exam.questions, exam.user_answers):
        d = _question_to_dict(q, reveal=True)
        answer = exam.answer_for(q.id)
        d["user_answer"] = answer.selected_option if answer else None
        review.append(d)

    d = results.model_dump(mode="json")
    d["review_questions"] = review
    return d


@router.post("/api/reset")
async def reset_session(request: Request):
    session.reset(request.state.session_id)
    return {"ok": True}
