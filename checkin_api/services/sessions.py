"""
Class session registry.

A session is active from creation until `expires_at`; expiry is evaluated
against the clock on every call, nothing is swept in the background.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from checkin_api.config import SESSION_DEFAULT_LENGTH_MINUTES, SESSION_GRACE_MINUTES
from checkin_db.db import (
    ClassSessionRow,
    KeywordConflictError,
    create_class_session,
    delete_class_session,
    find_latest_session_by_keyword,
    format_ts,
    get_class_session,
    list_class_sessions,
    utcnow,
)

logger = logging.getLogger(__name__)

__all__ = [
    "KeywordConflictError",
    "create_session",
    "delete_session",
    "find_active_by_keyword",
    "find_by_id",
    "is_expired",
    "list_sessions",
    "serialize_session",
]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def create_session(
    course_id: int,
    keyword: str,
    *,
    name: str | None = None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    date: str | None = None,
    expires_in_minutes: int | None = None,
    now: datetime | None = None,
) -> int:
    """
    Open a session for `keyword`. Raises KeywordConflictError while another
    unexpired session of the course uses the same keyword, and ValueError
    for an empty keyword, a negative grace, an end before the start or a
    window past the datetime range.
    """
    now = _as_utc(now) or utcnow()
    clean_keyword = (keyword or "").strip()
    if not clean_keyword:
        raise ValueError("keyword is required")

    grace = SESSION_GRACE_MINUTES if expires_in_minutes is None else int(expires_in_minutes)
    if grace < 0:
        raise ValueError("expiresInMinutes must not be negative")

    start = _as_utc(start_time) or now
    try:
        end = _as_utc(end_time) or (start + timedelta(minutes=SESSION_DEFAULT_LENGTH_MINUTES))
        if end < start:
            raise ValueError("endTime must not be before startTime")
        expires_at = end + timedelta(minutes=grace)
    except OverflowError as exc:
        raise ValueError("Session window is out of the supported date range") from exc

    session_id = create_class_session(
        course_id=course_id,
        keyword=clean_keyword,
        name=(name or "").strip() or "Class",
        date=date or start.date().isoformat(),
        start_time=start,
        end_time=end,
        expires_at=expires_at,
        now=now,
    )
    logger.info(
        "Session %s opened for course %s (expires %s)",
        session_id,
        course_id,
        format_ts(expires_at),
    )
    return session_id


def find_active_by_keyword(
    course_id: int,
    keyword: str,
    now: datetime | None = None,
) -> ClassSessionRow | None:
    """Newest session of the course carrying `keyword`, or None if it has expired."""
    clean_keyword = (keyword or "").strip()
    if not clean_keyword:
        return None
    session = find_latest_session_by_keyword(course_id, clean_keyword)
    if session is None or is_expired(session, now):
        return None
    return session


def find_by_id(course_id: int, session_id: int) -> ClassSessionRow | None:
    return get_class_session(course_id, session_id)


def is_expired(session: ClassSessionRow, now: datetime | None = None) -> bool:
    return (now or utcnow()) > session["expires_at"]


def delete_session(course_id: int, session_id: int) -> bool:
    deleted = delete_class_session(course_id, session_id)
    if deleted:
        logger.info("Session %s of course %s deleted", session_id, course_id)
    return deleted


def serialize_session(session: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
    out = {
        "id": session["id"],
        "courseId": session["course_id"],
        "name": session["name"],
        "date": session["date"],
        "startTime": format_ts(session["start_time"]),
        "endTime": format_ts(session["end_time"]),
        "expiresAt": format_ts(session["expires_at"]),
        "expired": (now or utcnow()) > session["expires_at"],
    }
    if "present_count" in session:
        out["presentCount"] = session["present_count"]
    return out


def list_sessions(course_id: int, now: datetime | None = None) -> list[dict[str, Any]]:
    now = now or utcnow()
    out = []
    for session in list_class_sessions(course_id):
        item = serialize_session(session, now)
        item["keyword"] = session["keyword"]
        out.append(item)
    return out
