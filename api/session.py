"""
api/session.py — per-browser exam sessions (cookie based)

Each browser gets a UUID session id and its own ExamSession. Sessions expire
after SESSION_TTL seconds without access. A session's snapshot is written to
DATA_DIR/sessions/<id>.json, so an exam survives a page reload or a restart
of the app.
"""

import os
import re
import threading
import time
import uuid
from typing import Callable, Dict, Optional

from config import DATA_DIR, SESSION_TTL
from exam_simulator.services.ai_extractor import OpenAIExamExtractor
from exam_simulator.services.exam_session import ExamSession
from exam_simulator.services.persistence import JsonFileStore

_SID_RE = re.compile(r"^[0-9a-f]{32}$")

_lock = threading.Lock()
_sessions: Dict[str, ExamSession] = {}
_api_keys: Dict[str, str] = {}
_timestamps: Dict[str, float] = {}

ExtractorFactory = Callable[[str], object]


def _default_extractor(api_key: str) -> OpenAIExamExtractor:
    return OpenAIExamExtractor(api_key=api_key)


_extractor_factory: ExtractorFactory = _default_extractor


def set_extractor_factory(factory: ExtractorFactory) -> None:
    """Replace how extractors are built from an API key (used by tests)."""
    global _extractor_factory
    _extractor_factory = factory


def _snapshot_path(sid: str) -> str:
    return os.path.join(DATA_DIR, "sessions", f"{sid}.json")


def _new_session(sid: str, api_key: str = "") -> ExamSession:
    extractor = _extractor_factory(api_key or os.getenv("OPENAI_API_KEY", ""))
    return ExamSession(
        loader=extractor,
        hint_generator=extractor,
        store=JsonFileStore(_snapshot_path(sid), background=True),
    )


def create_session() -> str:
    """Create a new session and return its id."""
    sid = uuid.uuid4().hex
    with _lock:
        _sessions[sid] = _new_session(sid)
        _timestamps[sid] = time.time()
    return sid


def get_session(sid: str) -> Optional[ExamSession]:
    """
    Session for an id, or None if unknown or expired.

    A session not in memory is restored from its snapshot file when present.
    """
    if not sid or not _SID_RE.match(sid):
        return None
    with _lock:
        now = time.time()
        if sid in _sessions:
            if now - _timestamps[sid] > SESSION_TTL:
                _drop(sid)
                return None
            _timestamps[sid] = now
            return _sessions[sid]

        path = _snapshot_path(sid)
        if not os.path.exists(path):
            return None
        if now - os.path.getmtime(path) > SESSION_TTL:
            JsonFileStore(path).clear()
            return None
        session = _new_session(sid)
        if not session.load_from_store():
            session.store.close()
            return None
        _sessions[sid] = session
        _timestamps[sid] = now
        return session


def set_api_key(sid: str, api_key: str) -> None:
    """Rebuild the session's extractor with a new key. Exam state is kept."""
    with _lock:
        session = _sessions.get(sid)
        if session is None:
            return
        extractor = _extractor_factory(api_key)
        session.loader = extractor
        session.hint_generator = extractor
        _api_keys[sid] = api_key
        _timestamps[sid] = time.time()


def has_api_key(sid: str) -> bool:
    return bool(_api_keys.get(sid) or os.getenv("OPENAI_API_KEY"))


def reset(sid: str) -> None:
    """Reset the exam (the API key is kept)."""
    session = get_session(sid)
    if session is not None:
        session.reset()


def cleanup_expired() -> int:
    """Drop expired sessions from memory. Returns how many were removed."""
    now = time.time()
    with _lock:
        expired = [sid for sid, ts in _timestamps.items() if now - ts > SESSION_TTL]
        for sid in expired:
            _drop(sid)
    return len(expired)


def _drop(sid: str) -> None:
    session = _sessions.pop(sid, None)
    if session is not None and session.store is not None:
        session.store.clear()
        session.store.close()
    _api_keys.pop(sid, None)
    _timestamps.pop(sid, None)
