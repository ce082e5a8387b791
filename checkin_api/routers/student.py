from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi.responses import Response

from checkin_api.qr import render_qr_png
from checkin_api.responses import error_response
from checkin_api.security import require_caller
from checkin_api.services.identity import Caller
from checkin_api.services.issuance import TokenIssueResult, issue_student_token

router = APIRouter()

ISSUE_HTTP_CODES: dict[str, int] = {
    "BAD_REQUEST": 400,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
}


def _issue(caller: Caller, body: dict[str, Any]) -> TokenIssueResult:
    return issue_student_token(caller, body.get("courseId"), body.get("keyword"))


@router.post("/student/generate-qr")
def generate_qr(body: dict[str, Any] = Body(...), caller: Caller = Depends(require_caller)):
    result = _issue(caller, body)
    if not result["ok"]:
        return error_response(ISSUE_HTTP_CODES[result["status"]], result["status"], result["message"])
    return {
        "ok": True,
        "qrToken": result["qr_token"],
        "qrPayload": result["qr_payload"],
        "session": result["session"],
        "course": result["course"],
        "studentCode": result["student_code"],
    }


@router.post("/student/generate-qr/image")
def generate_qr_image(body: dict[str, Any] = Body(...), caller: Caller = Depends(require_caller)):
    result = _issue(caller, body)
    if not result["ok"]:
        return error_response(ISSUE_HTTP_CODES[result["status"]], result["status"], result["message"])
    return Response(
        content=render_qr_png(result["qr_payload"] or ""),
        media_type="image/png",
        headers={"Cache-Control": "no-store"},
    )
