import sqlite3
import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from checkin_api.security import issue_session_token, require_caller
from checkin_api.services.identity import Caller
from checkin_db.db import create_tables, verify_user_credentials

router = APIRouter()


class LoginRequest(BaseModel):
    account: str
    password: str


@router.post("/auth/login")
def login(payload: LoginRequest):
    account = payload.account.strip()
    password = payload.password.strip()

    if not account:
        raise HTTPException(status_code=400, detail="Account is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        user = verify_user_credentials(account, password)
    except sqlite3.OperationalError:
        # Self-heal when the schema is missing (e.g. lifespan skipped).
        try:
            create_tables()
            user = verify_user_credentials(account, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    token, claims = issue_session_token(user["id"], user["account"])
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "user_id": user["id"],
        "account": user["account"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.get("/auth/me")
def auth_me(caller: Caller = Depends(require_caller)):
    return {
        "id": caller["id"],
        "account": caller["account"],
        "display_name": caller["display_name"],
        "roles": [
            {"role": grant.role, "course_id": grant.course_id}
            for grant in caller["grants"]
        ],
    }
