from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel

from checkin_api.permissions import can_manage_sessions, can_view_attendance
from checkin_api.qr import MAX_ID
from checkin_api.responses import error_response
from checkin_api.security import require_caller
from checkin_api.services.identity import Caller
from checkin_api.services.sessions import (
    KeywordConflictError,
    create_session,
    delete_session,
    list_sessions,
)
from checkin_db.db import get_course

router = APIRouter()

IdPath = Annotated[int, Path(ge=1, le=MAX_ID)]


class SessionCreate(BaseModel):
    keyword: str | None = None
    name: str | None = None
    date: str | None = None
    startTime: datetime | None = None
    endTime: datetime | None = None
    expiresInMinutes: int | None = None


def _course_or_404(course_id: int) -> dict:
    course = get_course(course_id)
    if not course:
        raise HTTPException(status_code=404, detail="Course not found.")
    return course


@router.post("/courses/{course_id}/sessions")
def open_session(course_id: IdPath, payload: SessionCreate, caller: Caller = Depends(require_caller)):
    keyword = (payload.keyword or "").strip()
    if not keyword:
        return error_response(400, "BAD_REQUEST", "keyword is required")

    course = _course_or_404(course_id)
    if not can_manage_sessions(caller["id"], course["owner_id"], course_id, caller["grants"]):
        return error_response(403, "FORBIDDEN", "Course not found or you are not authorized")

    try:
        session_id = create_session(
            course_id,
            keyword,
            name=payload.name,
            date=payload.date,
            start_time=payload.startTime,
            end_time=payload.endTime,
            expires_in_minutes=payload.expiresInMinutes,
        )
    except KeywordConflictError as exc:
        return error_response(400, "CONFLICT", str(exc))
    except ValueError as exc:
        return error_response(400, "BAD_REQUEST", str(exc))

    return {"ok": True, "id": session_id}


@router.get("/courses/{course_id}/sessions")
def course_sessions(course_id: IdPath, caller: Caller = Depends(require_caller)):
    course = _course_or_404(course_id)
    if not can_view_attendance(caller["id"], course["owner_id"], course_id, caller["grants"]):
        raise HTTPException(status_code=403, detail="Access denied.")
    return {"course": course, "sessions": list_sessions(course_id)}


@router.delete("/courses/{course_id}/sessions/{session_id}")
def remove_session(course_id: IdPath, session_id: IdPath, caller: Caller = Depends(require_caller)):
    course = _course_or_404(course_id)
    if not can_manage_sessions(caller["id"], course["owner_id"], course_id, caller["grants"]):
        raise HTTPException(status_code=403, detail="Access denied.")

    if not delete_session(course_id, session_id):
        raise HTTPException(status_code=404, detail="Session not found.")
    return {"ok": True}
