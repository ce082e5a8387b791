"""
Check-in processor: turns one scanner request into exactly one outcome.

Steps, in order (each may end the request):
  1. resolve the scanner                      -> UNAUTHORIZED
  2. parse the QR body                        -> BAD_REQUEST
  3. require numeric course/session ids       -> BAD_REQUEST
  4. load the session, check its deadline     -> NOT_FOUND / EXPIRED
  5. scanner must be staff of the course      -> FORBIDDEN
  6. require a student code                   -> BAD_REQUEST
  7. student must be enrolled                 -> FORBIDDEN
  8. recompute and compare the token          -> INVALID
  9. insert-or-noop into the attendance table -> PRESENT / DUPLICATE

Authorization runs before enrollment and token checks so that a non-staff
caller learns nothing about either.
"""
import json
import logging
from datetime import datetime
from typing import Any, Literal, TypedDict

from checkin_api.credentials import verify_token
from checkin_api.permissions import can_redeem
from checkin_api.qr import coerce_id, parse_qr
from checkin_api.services.identity import Caller, resolve_caller_from_payload
from checkin_api.services.sessions import find_by_id, is_expired
from checkin_db.db import (
    find_enrollment,
    format_ts,
    get_attendance,
    get_course,
    record_presence,
    utcnow,
)

logger = logging.getLogger(__name__)

CheckinStatus = Literal[
    "PRESENT",
    "DUPLICATE",
    "UNAUTHORIZED",
    "FORBIDDEN",
    "NOT_FOUND",
    "EXPIRED",
    "INVALID",
    "BAD_REQUEST",
]

SUCCESS_STATUSES: frozenset[str] = frozenset({"PRESENT", "DUPLICATE"})


class CheckinResult(TypedDict):
    ok: bool
    status: CheckinStatus
    message: str
    course_id: int | None
    session_id: int | None
    session_name: str | None
    student_code: str | None
    student_id: int | None
    student_name: str | None
    section: str | None
    scanner_id: int | None
    checked_at: str | None


def _build_result(
    *,
    status: CheckinStatus,
    message: str,
    course_id: int | None = None,
    session_id: int | None = None,
    session_name: str | None = None,
    student_code: str | None = None,
    student_id: int | None = None,
    student_name: str | None = None,
    section: str | None = None,
    scanner_id: int | None = None,
    checked_at: str | None = None,
) -> CheckinResult:
    return {
        "ok": status in SUCCESS_STATUSES,
        "status": status,
        "message": message,
        "course_id": course_id,
        "session_id": session_id,
        "session_name": session_name,
        "student_code": student_code,
        "student_id": student_id,
        "student_name": student_name,
        "section": section,
        "scanner_id": scanner_id,
        "checked_at": checked_at,
    }


def _reject(status: CheckinStatus, message: str, **context: Any) -> CheckinResult:
    logger.warning(
        "Check-in rejected: %s (%s) course=%s session=%s student=%s scanner=%s",
        status,
        message,
        context.get("course_id"),
        context.get("session_id"),
        context.get("student_code"),
        context.get("scanner_id"),
    )
    return _build_result(status=status, message=message, **context)


def _pick_id(from_scan: Any, from_route: int | None) -> tuple[int | None, bool]:
    """Returns (id, conflict). A route id wins; a differing scan id is a conflict."""
    scan_id = coerce_id(from_scan)
    if from_route is None:
        return scan_id, False
    if from_scan not in (None, "") and scan_id != from_route:
        return from_route, True
    return from_route, False


def process_checkin(
    *,
    scanner: Caller | None,
    scan: dict[str, Any],
    ip: str | None = None,
    device_info: str | None = None,
    now: datetime | None = None,
    route_course_id: int | None = None,
    route_session_id: int | None = None,
) -> CheckinResult:
    """
    Redeem one scanned credential.

    `scanner` is the authenticated caller, or None to resolve it from the
    account fields of `scan`. `route_course_id`/`route_session_id` pin the
    check-in to one session (path-scoped endpoint); ids inside the QR must
    then agree with them.
    """
    now = now or utcnow()

    # 1. scanner
    if scanner is None:
        scanner, error = resolve_caller_from_payload(scan)
        if scanner is None:
            return _reject("UNAUTHORIZED", error)
    scanner_id = scanner["id"]

    # 2. QR body
    parsed = parse_qr(scan)
    if parsed["error"]:
        return _reject("BAD_REQUEST", parsed["error"], scanner_id=scanner_id)

    # 3. ids
    course_id, course_conflict = _pick_id(parsed["course_id"], route_course_id)
    session_id, session_conflict = _pick_id(parsed["session_id"], route_session_id)
    if course_conflict or session_conflict:
        return _reject(
            "BAD_REQUEST",
            "QR code belongs to a different session",
            course_id=course_id,
            session_id=session_id,
            scanner_id=scanner_id,
        )
    if course_id is None or session_id is None:
        return _reject(
            "BAD_REQUEST",
            "QR code must contain numeric courseId and sessionId",
            scanner_id=scanner_id,
        )
    context: dict[str, Any] = {"course_id": course_id, "session_id": session_id, "scanner_id": scanner_id}

    # 4. session + deadline
    session = find_by_id(course_id, session_id)
    if session is None:
        return _reject("NOT_FOUND", "Session not found", **context)
    context["session_name"] = session["name"]
    if is_expired(session, now):
        return _reject("EXPIRED", "Session expired", **context)

    # 5. scanner must be staff of this course
    course = get_course(course_id)
    owner_id = course["owner_id"] if course else None
    if not can_redeem(scanner_id, owner_id, course_id, scanner["grants"]):
        return _reject(
            "FORBIDDEN",
            "Unauthorized: Only TA, Teacher, or Co-Teacher of this course can scan students",
            **context,
        )

    # 6. student code
    student_code = parsed["student_code"]
    if not student_code:
        return _reject("BAD_REQUEST", "Missing student_id in QR", **context)
    context["student_code"] = student_code

    # 7. enrollment
    enrollment = find_enrollment(course_id, student_code)
    if enrollment is None:
        return _reject("FORBIDDEN", f"Student {student_code} not enrolled", **context)
    context.update(
        student_id=enrollment["student_id"],
        student_name=enrollment["display_name"],
        section=enrollment["section"],
    )

    # 8. token
    if not verify_token(parsed["token"], student_code, course_id, session["keyword"], session_id):
        return _reject("INVALID", "Invalid payload/hash mismatch", **context)

    # 9. ledger
    inserted = record_presence(
        class_session_id=session_id,
        student_id=enrollment["student_id"],
        scanner_id=scanner_id,
        checked_at=now,
        payload_raw=json.dumps(scan, ensure_ascii=False, default=str),
        ip=ip,
        device_info=device_info,
    )
    if not inserted:
        existing = get_attendance(session_id, enrollment["student_id"])
        logger.info(
            "Check-in duplicate: course=%s session=%s student=%s scanner=%s",
            course_id,
            session_id,
            student_code,
            scanner_id,
        )
        return _build_result(
            status="DUPLICATE",
            message=f"Student {student_code} already checked in",
            checked_at=existing["checked_at"] if existing else None,
            **context,
        )

    logger.info(
        "Check-in recorded: course=%s session=%s student=%s scanner=%s",
        course_id,
        session_id,
        student_code,
        scanner_id,
    )
    return _build_result(
        status="PRESENT",
        message=f"Student {student_code} checked in",
        checked_at=format_ts(now),
        **context,
    )
