from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Request

from checkin_api.permissions import can_view_attendance
from checkin_api.qr import MAX_ID
from checkin_api.responses import error_response
from checkin_api.security import optional_caller, require_caller
from checkin_api.services.checkin import CheckinResult, process_checkin
from checkin_api.services.identity import Caller
from checkin_api.services.sessions import find_by_id, serialize_session
from checkin_db.db import get_course, list_session_attendance

router = APIRouter()

IdPath = Annotated[int, Path(ge=1, le=MAX_ID)]

STATUS_HTTP_CODES: dict[str, int] = {
    "PRESENT": 200,
    "DUPLICATE": 200,
    "UNAUTHORIZED": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "EXPIRED": 400,
    "INVALID": 400,
    "BAD_REQUEST": 400,
}


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",", 1)[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def _checkin_response(result: CheckinResult):
    if not result["ok"]:
        return error_response(STATUS_HTTP_CODES[result["status"]], result["status"], result["message"])
    return {
        "ok": True,
        "status": result["status"],
        "message": result["message"],
        "data": {
            "studentCode": result["student_code"],
            "studentName": result["student_name"] or result["student_code"],
            "section": result["section"],
            "courseId": result["course_id"],
            "sessionId": result["session_id"],
            "session": result["session_name"],
            "checkedAt": result["checked_at"],
        },
    }


@router.post("/checkin")
def checkin(
    request: Request,
    scan: dict[str, Any] = Body(...),
    caller: Caller | None = Depends(optional_caller),
):
    result = process_checkin(
        scanner=caller,
        scan=scan,
        ip=_client_ip(request),
        device_info=request.headers.get("user-agent") or "unknown",
    )
    return _checkin_response(result)


@router.post("/courses/{course_id}/sessions/{session_id}/checkin")
def checkin_for_session(
    course_id: IdPath,
    session_id: IdPath,
    request: Request,
    scan: dict[str, Any] = Body(...),
    caller: Caller | None = Depends(optional_caller),
):
    result = process_checkin(
        scanner=caller,
        scan=scan,
        ip=_client_ip(request),
        device_info=request.headers.get("user-agent") or "unknown",
        route_course_id=course_id,
        route_session_id=session_id,
    )
    return _checkin_response(result)


@router.get("/courses/{course_id}/sessions/{session_id}/attendance")
def session_attendance(course_id: IdPath, session_id: IdPath, caller: Caller = Depends(require_caller)):
    course = get_course(course_id)
    if not course:
        raise HTTPException(status_code=404, detail="Course not found.")
    if not can_view_attendance(caller["id"], course["owner_id"], course_id, caller["grants"]):
        raise HTTPException(status_code=403, detail="Access denied.")

    session = find_by_id(course_id, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found.")

    rows = list_session_attendance(session_id)
    return {
        "session": serialize_session(session),
        "total": len(rows),
        "rows": rows,
    }
