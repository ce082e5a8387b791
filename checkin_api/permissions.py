from typing import Iterable, Literal, NamedTuple, cast

Role = Literal["OWNER", "TEACHER", "CO_TEACHER", "TA", "ADMIN", "STUDENT"]

ALL_ROLES: frozenset[str] = frozenset({"OWNER", "TEACHER", "CO_TEACHER", "TA", "ADMIN", "STUDENT"})
# OWNER is derived from courses.owner_id and is never stored as a grant.
GRANTABLE_ROLES: frozenset[str] = ALL_ROLES - {"OWNER"}
SCANNER_ROLES: frozenset[str] = frozenset({"TEACHER", "CO_TEACHER", "TA", "ADMIN"})
SESSION_MANAGER_ROLES: frozenset[str] = frozenset({"TEACHER", "CO_TEACHER"})


class RoleGrant(NamedTuple):
    role: Role
    course_id: int | None  # None = global grant


def coerce_role(value: str) -> Role:
    normalized = (value or "").strip().upper()
    if normalized not in ALL_ROLES:
        raise ValueError(f"Unknown role: {value!r}")
    return cast(Role, normalized)


def is_global_admin(grants: Iterable[RoleGrant]) -> bool:
    return any(g.role == "ADMIN" and g.course_id is None for g in grants)


def has_course_role(grants: Iterable[RoleGrant], course_id: int, roles: frozenset[str]) -> bool:
    return any(g.course_id == course_id and g.role in roles for g in grants)


def can_redeem(user_id: int, course_owner_id: int | None, course_id: int, grants: Iterable[RoleGrant]) -> bool:
    """
    Scanner rule: course owner, course-scoped TEACHER/CO_TEACHER/TA/ADMIN,
    or a global ADMIN. Global staff roles other than ADMIN grant nothing.
    """
    grants = list(grants)
    if course_owner_id is not None and course_owner_id == user_id:
        return True
    if has_course_role(grants, course_id, SCANNER_ROLES):
        return True
    return is_global_admin(grants)


def can_manage_sessions(
    user_id: int,
    course_owner_id: int | None,
    course_id: int,
    grants: Iterable[RoleGrant],
) -> bool:
    grants = list(grants)
    if course_owner_id is not None and course_owner_id == user_id:
        return True
    if has_course_role(grants, course_id, SESSION_MANAGER_ROLES):
        return True
    return is_global_admin(grants)


def can_view_attendance(
    user_id: int,
    course_owner_id: int | None,
    course_id: int,
    grants: Iterable[RoleGrant],
) -> bool:
    return can_redeem(user_id, course_owner_id, course_id, grants)
