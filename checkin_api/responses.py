from fastapi.responses import JSONResponse


def error_response(status_code: int, status: str, message: str) -> JSONResponse:
    """Machine-readable failure body used by the check-in protocol routes."""
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "status": status, "error": message},
    )
