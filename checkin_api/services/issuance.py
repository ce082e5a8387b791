import logging
from datetime import datetime
from typing import Any, Literal, TypedDict

from checkin_api.credentials import build_qr_payload, build_token
from checkin_api.qr import coerce_id
from checkin_api.services.identity import Caller
from checkin_api.services.sessions import find_active_by_keyword, serialize_session
from checkin_db.db import find_enrollment_for_student, get_course, utcnow

logger = logging.getLogger(__name__)

IssueStatus = Literal["OK", "BAD_REQUEST", "FORBIDDEN", "NOT_FOUND"]


class TokenIssueResult(TypedDict):
    ok: bool
    status: IssueStatus
    message: str
    qr_token: str | None
    qr_payload: str | None
    session: dict[str, Any] | None
    course: dict[str, Any] | None
    student_code: str | None


def _fail(status: IssueStatus, message: str) -> TokenIssueResult:
    return {
        "ok": False,
        "status": status,
        "message": message,
        "qr_token": None,
        "qr_payload": None,
        "session": None,
        "course": None,
        "student_code": None,
    }


def issue_student_token(
    student: Caller,
    course_id: Any,
    keyword: Any,
    *,
    now: datetime | None = None,
) -> TokenIssueResult:
    """Credential for the calling student in the course's active `keyword` session."""
    now = now or utcnow()
    cid = coerce_id(course_id)
    clean_keyword = keyword.strip() if isinstance(keyword, str) else ""
    if cid is None or not clean_keyword:
        return _fail("BAD_REQUEST", "Missing courseId or keyword")

    enrollment = find_enrollment_for_student(cid, student["id"])
    if enrollment is None:
        logger.warning("Token refused: user %s not enrolled in course %s", student["id"], cid)
        return _fail("FORBIDDEN", "You are not enrolled in this course")

    session = find_active_by_keyword(cid, clean_keyword, now)
    if session is None:
        return _fail("NOT_FOUND", "No session found with this keyword")

    student_code = enrollment["student_code"]
    course = get_course(cid) or {}
    logger.info("Token issued: course=%s session=%s student=%s", cid, session["id"], student_code)
    return {
        "ok": True,
        "status": "OK",
        "message": "",
        "qr_token": build_token(student_code, cid, session["keyword"], session["id"]),
        "qr_payload": build_qr_payload(student_code, cid, session["keyword"], session["id"]),
        "session": serialize_session(session, now),
        "course": {"id": cid, "code": course.get("code"), "name": course.get("name")},
        "student_code": student_code,
    }
