import logging
from typing import Any, TypedDict

from checkin_api.config import SCANNER_EMAIL_DOMAIN
from checkin_api.permissions import RoleGrant, coerce_role
from checkin_db.db import find_user_by_account, get_user_by_id, get_user_grants

logger = logging.getLogger(__name__)


class Caller(TypedDict):
    id: int
    account: str
    display_name: str | None
    grants: list[RoleGrant]


def _caller_from_user(user: dict[str, Any]) -> Caller:
    grants = [RoleGrant(coerce_role(role), course_id) for role, course_id in get_user_grants(user["id"])]
    return {
        "id": user["id"],
        "account": user["account"],
        "display_name": user["display_name"],
        "grants": grants,
    }


def load_caller(user_id: int) -> Caller | None:
    user = get_user_by_id(user_id)
    if not user:
        return None
    return _caller_from_user(user)


def scanner_account_from_payload(scan: dict[str, Any]) -> str | None:
    """Account hint sent by scanner apps: it_account, cmuAccount, or email's local part."""
    for key in ("it_account", "cmuAccount"):
        value = scan.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    email = scan.get("email")
    if isinstance(email, str) and email.strip():
        return email.strip().split("@", 1)[0] or None
    return None


def resolve_caller_from_payload(scan: dict[str, Any]) -> tuple[Caller | None, str]:
    """
    Returns (caller, error). `error` is empty on success and a user-facing
    message otherwise.
    """
    account = scanner_account_from_payload(scan)
    if not account:
        return None, "Unauthorized: Please login or provide scanner info"

    user = find_user_by_account(account, email_domain=SCANNER_EMAIL_DOMAIN)
    if not user:
        logger.warning("Scanner account %r not found", account)
        return None, f"Scanner account '{account}' not found in system"
    return _caller_from_user(user), ""
