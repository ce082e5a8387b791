"""
Check-in credential codec.

A credential binds one student to one class session:

    token = hex(HMAC-SHA256(PAYLOAD_SECRET, "studentCode|courseId|keyword|sessionId"))

Tokens are never stored. Verification recomputes the expected value, so the
same inputs always produce the same token and a student device can redisplay
it until the session expires.
"""
import hashlib
import hmac
import json

from checkin_api.config import PAYLOAD_SECRET


def _canonical_id(value: int | str, field: str) -> str:
    if isinstance(value, bool):
        raise ValueError(f"{field} must be a positive integer.")
    if isinstance(value, int):
        number = value
    else:
        text = str(value).strip()
        if not (text.isascii() and text.isdigit()):
            raise ValueError(f"{field} must be a positive integer.")
        number = int(text)
    if number <= 0:
        raise ValueError(f"{field} must be a positive integer.")
    return str(number)


def _canonical_text(value: str, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field} is required.")
    return value


def canonical_token_input(
    student_code: str,
    course_id: int | str,
    keyword: str,
    session_id: int | str,
) -> str:
    return "|".join(
        (
            _canonical_text(student_code, "studentCode"),
            _canonical_id(course_id, "courseId"),
            _canonical_text(keyword, "keyword"),
            _canonical_id(session_id, "sessionId"),
        )
    )


def build_token(
    student_code: str,
    course_id: int | str,
    keyword: str,
    session_id: int | str,
    *,
    secret: str | None = None,
) -> str:
    message = canonical_token_input(student_code, course_id, keyword, session_id)
    key = (secret if secret is not None else PAYLOAD_SECRET).encode("utf-8")
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_token(
    token: str | None,
    student_code: str,
    course_id: int | str,
    keyword: str,
    session_id: int | str,
    *,
    secret: str | None = None,
) -> bool:
    if not isinstance(token, str) or not token:
        return False
    try:
        expected = build_token(student_code, course_id, keyword, session_id, secret=secret)
    except ValueError:
        return False
    return hmac.compare_digest(token.encode("utf-8"), expected.encode("ascii"))


def build_qr_payload(student_code: str, course_id: int, keyword: str, session_id: int) -> str:
    """JSON string a student's QR code carries."""
    token = build_token(student_code, course_id, keyword, session_id)
    return json.dumps(
        {
            "courseId": int(course_id),
            "sessionId": int(session_id),
            "code": student_code,
            "hash": token,
        },
        separators=(",", ":"),
    )
