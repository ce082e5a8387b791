import io
import json
import re
from typing import Any, TypedDict

import qrcode

MISSING_QR_MESSAGE = "Missing qr payload"
# Largest value sqlite3 binds as INTEGER.
MAX_ID = 2**63 - 1

# Scanner apps may prepend "<prefix tokens...> <url>" before the JSON object.
_JSON_SUFFIX_RE = re.compile(r"(?:^|\s)(\{.*)\Z", re.DOTALL)


class ParsedScan(TypedDict):
    course_id: Any
    session_id: Any
    student_code: str | None
    token: str | None
    from_json: bool
    error: str | None


def _first_text(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _present(value: Any) -> bool:
    return value is not None and value != ""


def extract_json_part(qr_raw: str) -> str | None:
    text = qr_raw.strip()
    if text.startswith("{"):
        return text
    match = _JSON_SUFFIX_RE.search(text)
    if not match:
        return None
    return match.group(1)


def parse_qr(scan: dict[str, Any]) -> ParsedScan:
    """
    Split a raw scanner body into course/session/student/token fields.

    When `qr` carries a JSON object, ids, code and hash come from it alone.
    Top-level body fields are only read for a bare-token QR.
    """
    course_id = scan.get("courseId")
    session_id = scan.get("sessionId")
    student_code = _first_text(scan.get("student_id"), scan.get("studentId"), scan.get("code"))
    token = _first_text(scan.get("hash"), scan.get("token"))

    qr_raw = scan.get("qr")
    if not isinstance(qr_raw, str) or not qr_raw.strip():
        return ParsedScan(
            course_id=course_id,
            session_id=session_id,
            student_code=student_code,
            token=token,
            from_json=False,
            error=MISSING_QR_MESSAGE,
        )

    json_part = extract_json_part(qr_raw)
    if json_part is None:
        # Bare token in the QR; ids must come from the body or the route.
        return ParsedScan(
            course_id=course_id,
            session_id=session_id,
            student_code=student_code,
            token=token or qr_raw.strip(),
            from_json=False,
            error=None,
        )

    try:
        parsed = json.loads(json_part)
    except ValueError:
        parsed = None
    if not isinstance(parsed, dict):
        return ParsedScan(
            course_id=course_id,
            session_id=session_id,
            student_code=student_code,
            token=token,
            from_json=False,
            error=MISSING_QR_MESSAGE,
        )

    # The QR JSON is the whole credential; body fields no longer apply.
    return ParsedScan(
        course_id=parsed.get("courseId") if _present(parsed.get("courseId")) else None,
        session_id=parsed.get("sessionId") if _present(parsed.get("sessionId")) else None,
        student_code=_first_text(parsed.get("code")),
        token=_first_text(parsed.get("hash")),
        from_json=True,
        error=None,
    )


def coerce_id(value: Any) -> int | None:
    """Positive integer that fits an SQLite INTEGER, from an int or a digit string, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and value.strip().isascii() and value.strip().isdigit():
        number = int(value.strip())
    else:
        return None
    return number if 0 < number <= MAX_ID else None


def render_qr_png(data: str) -> bytes:
    img = qrcode.make(data)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
