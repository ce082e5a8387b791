"""
Bearer sessions for staff and students.

A session token is `<b64url(claims json)>.<b64url(HMAC-SHA256(SIGNING_KEY, first part))>`.
The token only proves who the caller is; grants are re-read from the
database on every request, so a revoked role takes effect immediately.
"""
import base64
import hashlib
import hmac
import json
import time
from typing import TypedDict

from fastapi import Depends, Header, HTTPException

from checkin_api.config import AUTH_TOKEN_TTL_SECONDS, SIGNING_KEY
from checkin_api.services.identity import Caller, load_caller


class SessionClaims(TypedDict):
    sub: str
    account: str
    iat: int
    exp: int


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _unb64url(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _signature(body: str) -> str:
    mac = hmac.new(SIGNING_KEY.encode("utf-8"), body.encode("ascii"), hashlib.sha256)
    return _b64url(mac.digest())


def issue_session_token(user_id: int, account: str, *, now: int | None = None) -> tuple[str, SessionClaims]:
    issued_at = int(time.time()) if now is None else now
    claims: SessionClaims = {
        "sub": str(user_id),
        "account": account,
        "iat": issued_at,
        "exp": issued_at + AUTH_TOKEN_TTL_SECONDS,
    }
    body = _b64url(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    return f"{body}.{_signature(body)}", claims


def decode_session_token(token: str, *, now: int | None = None) -> SessionClaims | None:
    body, dot, signature = (token or "").partition(".")
    if not dot or not body.isascii():
        return None
    if not hmac.compare_digest(signature.encode("utf-8"), _signature(body).encode("ascii")):
        return None

    try:
        claims = json.loads(_unb64url(body).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(claims, dict):
        return None

    sub, exp = claims.get("sub"), claims.get("exp")
    if not (isinstance(sub, str) and sub.isascii() and sub.isdigit()):
        return None
    if not isinstance(exp, int) or isinstance(exp, bool):
        return None
    if exp < (int(time.time()) if now is None else now):
        return None
    return claims  # type: ignore[return-value]


def _bearer_token(authorization: str) -> str:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")
    return token.strip()


def require_session(authorization: str | None = Header(default=None)) -> SessionClaims:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")
    claims = decode_session_token(_bearer_token(authorization))
    if claims is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")
    return claims


def optional_session(authorization: str | None = Header(default=None)) -> SessionClaims | None:
    """Scanner webhooks may omit the header and identify themselves in the body."""
    if not authorization:
        return None
    return require_session(authorization)


def require_caller(claims: SessionClaims = Depends(require_session)) -> Caller:
    caller = load_caller(int(claims["sub"]))
    if caller is None:
        raise HTTPException(status_code=401, detail="Session user no longer exists.")
    return caller


def optional_caller(claims: SessionClaims | None = Depends(optional_session)) -> Caller | None:
    if claims is None:
        return None
    return require_caller(claims)
