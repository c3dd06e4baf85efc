"""
api/app.py — FastAPI app instance and session middleware
"""

import logging
import threading
import time

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from config import SESSION_TTL
from api.routes import router
import api.session as session

logger = logging.getLogger(__name__)

SESSION_COOKIE = "exam_session"
CLEANUP_INTERVAL = 300  # seconds


def create_app(run_cleanup: bool = True) -> FastAPI:
    app = FastAPI(title="Exam Simulator", docs_url=None, redoc_url=None)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Read the session id from the cookie, issue a new one when missing or expired
    @app.middleware("http")
    async def session_middleware(request: Request, call_next):
        sid = request.cookies.get(SESSION_COOKIE)
        if not sid or session.get_session(sid) is None:
            sid = session.create_session()

        request.state.session_id = sid
        response: Response = await call_next(request)
        response.set_cookie(
            key=SESSION_COOKIE,
            value=sid,
            httponly=True,
            samesite="lax",
            max_age=SESSION_TTL,
        )
        return response

    app.include_router(router)

    if run_cleanup:
        def _cleanup_loop():
            while True:
                time.sleep(CLEANUP_INTERVAL)
                removed = session.cleanup_expired()
                if removed:
                    logger.info(f"Removed {removed} expired session(s)")

        threading.Thread(target=_cleanup_loop, daemon=True).start()

    return app
