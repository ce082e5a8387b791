import hashlib
import hmac
import secrets
import sqlite3
from datetime import datetime, timezone
from typing import Any, TypedDict

from checkin_api.config import (
    ADMIN_ACCOUNT,
    ADMIN_PASSWORD,
    DB_PATH,
    DB_TIMEOUT_SECONDS,
)


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class KeywordConflictError(Exception):
    """An unexpired session with the same (course, keyword) already exists."""

    def __init__(self, course_id: int, keyword: str, existing_session_id: int) -> None:
        self.course_id = course_id
        self.keyword = keyword
        self.existing_session_id = existing_session_id
        super().__init__(
            f'Keyword "{keyword}" is currently active in another session. '
            "Please wait for it to expire or use a different keyword."
        )


class ClassSessionRow(TypedDict):
    id: int
    course_id: int
    name: str
    keyword: str
    date: str
    start_time: datetime
    end_time: datetime
    expires_at: datetime
    created_at: datetime


class EnrollmentRecord(TypedDict):
    id: int
    course_id: int
    student_id: int
    student_code: str
    section: str | None
    display_name: str | None


# -----------------------------
# Time helpers
# -----------------------------
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


# -----------------------------
# Passwords
# -----------------------------
def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError, AttributeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


# -----------------------------
# Schema
# -----------------------------
def connect_db():
    conn = sqlite3.connect(str(DB_PATH), timeout=DB_TIMEOUT_SECONDS, check_same_thread=False)
    # cascades (session -> attendance) depend on this
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    account = (ADMIN_ACCOUNT or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not account or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM users
        WHERE account = ? COLLATE NOCASE
        """,
        (account,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO users (account, display_name, password_hash)
        VALUES (?, ?, ?)
        """,
        (account, "Administrator", _hash_password(password)),
    )
    cursor.execute(
        """
        INSERT INTO user_roles (user_id, role, course_id)
        VALUES (?, 'ADMIN', NULL)
        """,
        (cursor.lastrowid,),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account TEXT NOT NULL UNIQUE COLLATE NOCASE,
        email TEXT COLLATE NOCASE,
        display_name TEXT,
        password_hash TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS courses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_id INTEGER NOT NULL,
        code TEXT NOT NULL,
        name TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (owner_id) REFERENCES users(id)
    )
    """)

    # course_id NULL = global grant
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS user_roles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('TEACHER', 'CO_TEACHER', 'TA', 'ADMIN', 'STUDENT')),
        course_id INTEGER,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
        FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE
    )
    """)
    cursor.execute("""
    CREATE UNIQUE INDEX IF NOT EXISTS ux_user_roles_scope
    ON user_roles (user_id, role, IFNULL(course_id, 0))
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS enrollments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        course_id INTEGER NOT NULL,
        student_id INTEGER NOT NULL,
        student_code TEXT NOT NULL,
        section TEXT,
        FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE,
        FOREIGN KEY (student_id) REFERENCES users(id) ON DELETE CASCADE,
        UNIQUE(course_id, student_id),
        UNIQUE(course_id, student_code)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS class_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        course_id INTEGER NOT NULL,
        name TEXT NOT NULL DEFAULT 'Class',
        keyword TEXT NOT NULL,
        date TEXT NOT NULL,              -- YYYY-MM-DD
        start_time TEXT NOT NULL,        -- UTC, TIMESTAMP_FORMAT
        end_time TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE,
        CHECK (expires_at >= end_time)
    )
    """)
    cursor.execute("""
    CREATE INDEX IF NOT EXISTS ix_class_sessions_keyword
    ON class_sessions (course_id, keyword, expires_at)
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        class_session_id INTEGER NOT NULL,
        student_id INTEGER NOT NULL,
        scanner_id INTEGER,
        status TEXT NOT NULL DEFAULT 'PRESENT'
            CHECK (status IN ('PRESENT', 'LATE', 'ABSENT', 'LEAVE')),
        checked_at TEXT NOT NULL,
        payload_raw TEXT,
        ip TEXT,
        device_info TEXT,
        FOREIGN KEY (class_session_id) REFERENCES class_sessions(id) ON DELETE CASCADE,
        FOREIGN KEY (student_id) REFERENCES users(id) ON DELETE CASCADE,
        FOREIGN KEY (scanner_id) REFERENCES users(id) ON DELETE SET NULL,
        UNIQUE(class_session_id, student_id)
    )
    """)

    _ensure_default_admin(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Users + roles
# -----------------------------
def _user_from_row(row) -> dict[str, Any]:
    return {
        "id": int(row[0]),
        "account": row[1],
        "email": row[2],
        "display_name": row[3],
    }


def create_user(
    account: str,
    *,
    password: str | None = None,
    email: str | None = None,
    display_name: str | None = None,
) -> int:
    clean_account = account.strip()
    if not clean_account:
        raise ValueError("Account is required.")

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO users (account, email, display_name, password_hash)
        VALUES (?, ?, ?, ?)
        """,
        (
            clean_account,
            (email or "").strip() or None,
            display_name,
            _hash_password(password.strip()) if password and password.strip() else None,
        ),
    )
    user_id = int(cur.lastrowid)
    conn.commit()
    conn.close()
    return user_id


def get_user_by_id(user_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, account, email, display_name
        FROM users
        WHERE id = ?
        """,
        (user_id,),
    )
    row = cur.fetchone()
    conn.close()
    return _user_from_row(row) if row else None


def find_user_by_account(account: str, *, email_domain: str = "") -> dict[str, Any] | None:
    """
    Resolve a scanner account identifier: matches `users.account`, a full
    `users.email`, or `<account>@<email_domain>` when a domain is configured.
    """
    clean = (account or "").strip()
    if not clean:
        return None

    candidates = [clean]
    if email_domain and "@" not in clean:
        candidates.append(f"{clean}@{email_domain}")

    conn = connect_db()
    cur = conn.cursor()
    placeholders = ", ".join("?" for _ in candidates)
    cur.execute(
        f"""
        SELECT id, account, email, display_name
        FROM users
        WHERE account = ? COLLATE NOCASE
           OR email COLLATE NOCASE IN ({placeholders})
        ORDER BY id
        LIMIT 1
        """,
        (clean, *candidates),
    )
    row = cur.fetchone()
    conn.close()
    return _user_from_row(row) if row else None


def verify_user_credentials(account: str, password: str) -> dict[str, Any] | None:
    clean_account = account.strip()
    clean_password = password.strip()
    if not clean_account or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, account, email, display_name, password_hash
        FROM users
        WHERE account = ? COLLATE NOCASE
        """,
        (clean_account,),
    )
    row = cur.fetchone()
    conn.close()

    if not row or not row[4]:
        return None
    if not _verify_password(clean_password, row[4]):
        return None
    return _user_from_row(row)


def grant_role(user_id: int, role: str, course_id: int | None = None) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO user_roles (user_id, role, course_id)
        VALUES (?, ?, ?)
        """,
        (user_id, role, course_id),
    )
    grant_id = int(cur.lastrowid)
    conn.commit()
    conn.close()
    return grant_id


def get_user_grants(user_id: int) -> list[tuple[str, int | None]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT role, course_id
        FROM user_roles
        WHERE user_id = ?
        ORDER BY id
        """,
        (user_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [(str(r[0]), int(r[1]) if r[1] is not None else None) for r in rows]


# -----------------------------
# Courses + enrollments
# -----------------------------
def create_course(owner_id: int, code: str, name: str | None = None) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO courses (owner_id, code, name)
        VALUES (?, ?, ?)
        """,
        (owner_id, code.strip(), name),
    )
    course_id = int(cur.lastrowid)
    conn.commit()
    conn.close()
    return course_id


def get_course(course_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, owner_id, code, name
        FROM courses
        WHERE id = ?
        """,
        (course_id,),
    )
    row = cur.fetchone()
    conn.close()
    if not row:
        return None
    return {"id": int(row[0]), "owner_id": int(row[1]), "code": row[2], "name": row[3]}


def add_enrollment(course_id: int, student_id: int, student_code: str, section: str | None = None) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO enrollments (course_id, student_id, student_code, section)
        VALUES (?, ?, ?, ?)
        """,
        (course_id, student_id, student_code.strip(), section),
    )
    enrollment_id = int(cur.lastrowid)
    conn.commit()
    conn.close()
    return enrollment_id


def _enrollment_from_row(row) -> EnrollmentRecord:
    return {
        "id": int(row[0]),
        "course_id": int(row[1]),
        "student_id": int(row[2]),
        "student_code": row[3],
        "section": row[4],
        "display_name": row[5],
    }


def find_enrollment(course_id: int, student_code: str) -> EnrollmentRecord | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT e.id, e.course_id, e.student_id, e.student_code, e.section, u.display_name
        FROM enrollments e
        JOIN users u ON u.id = e.student_id
        WHERE e.course_id = ? AND e.student_code = ?
        """,
        (course_id, student_code.strip()),
    )
    row = cur.fetchone()
    conn.close()
    return _enrollment_from_row(row) if row else None


def find_enrollment_for_student(course_id: int, student_id: int) -> EnrollmentRecord | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT e.id, e.course_id, e.student_id, e.student_code, e.section, u.display_name
        FROM enrollments e
        JOIN users u ON u.id = e.student_id
        WHERE e.course_id = ? AND e.student_id = ?
        """,
        (course_id, student_id),
    )
    row = cur.fetchone()
    conn.close()
    return _enrollment_from_row(row) if row else None


# -----------------------------
# Class sessions
# -----------------------------
_SESSION_COLUMNS = """
    id, course_id, name, keyword, date, start_time, end_time, expires_at, created_at
"""


def _session_from_row(row) -> ClassSessionRow:
    return {
        "id": int(row[0]),
        "course_id": int(row[1]),
        "name": row[2],
        "keyword": row[3],
        "date": row[4],
        "start_time": parse_ts(row[5]),
        "end_time": parse_ts(row[6]),
        "expires_at": parse_ts(row[7]),
        "created_at": parse_ts(row[8]),
    }


def create_class_session(
    *,
    course_id: int,
    keyword: str,
    name: str,
    date: str,
    start_time: datetime,
    end_time: datetime,
    expires_at: datetime,
    now: datetime,
) -> int:
    """
    Insert a session unless an unexpired one with the same keyword exists.

    The lookup and the insert share one BEGIN IMMEDIATE transaction, so
    concurrent creators for the same (course, keyword) are serialized on the
    database write lock and all but one raise KeywordConflictError.
    """
    conn = connect_db()
    conn.isolation_level = None
    cur = conn.cursor()
    try:
        cur.execute("BEGIN IMMEDIATE")
        cur.execute(
            """
            SELECT id
            FROM class_sessions
            WHERE course_id = ?
              AND keyword = ?
              AND expires_at >= ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (course_id, keyword, format_ts(now)),
        )
        existing = cur.fetchone()
        if existing:
            raise KeywordConflictError(course_id, keyword, int(existing[0]))

        cur.execute(
            """
            INSERT INTO class_sessions (
                course_id,
                name,
                keyword,
                date,
                start_time,
                end_time,
                expires_at,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                course_id,
                name,
                keyword,
                date,
                format_ts(start_time),
                format_ts(end_time),
                format_ts(expires_at),
                format_ts(now),
            ),
        )
        session_id = int(cur.lastrowid)
        cur.execute("COMMIT")
        return session_id
    except BaseException:
        if conn.in_transaction:
            cur.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def get_class_session(course_id: int, session_id: int) -> ClassSessionRow | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_SESSION_COLUMNS}
        FROM class_sessions
        WHERE id = ? AND course_id = ?
        """,
        (session_id, course_id),
    )
    row = cur.fetchone()
    conn.close()
    return _session_from_row(row) if row else None


def find_latest_session_by_keyword(course_id: int, keyword: str) -> ClassSessionRow | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_SESSION_COLUMNS}
        FROM class_sessions
        WHERE course_id = ? AND keyword = ?
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        (course_id, keyword),
    )
    row = cur.fetchone()
    conn.close()
    return _session_from_row(row) if row else None


def list_class_sessions(course_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT
            s.id, s.course_id, s.name, s.keyword, s.date,
            s.start_time, s.end_time, s.expires_at, s.created_at,
            COUNT(a.id)
        FROM class_sessions s
        LEFT JOIN attendance a
               ON a.class_session_id = s.id AND a.status = 'PRESENT'
        WHERE s.course_id = ?
        GROUP BY s.id
        ORDER BY s.created_at DESC, s.id DESC
        """,
        (course_id,),
    )
    rows = cur.fetchall()
    conn.close()

    out: list[dict[str, Any]] = []
    for row in rows:
        session = dict(_session_from_row(row[:9]))
        session["present_count"] = int(row[9] or 0)
        out.append(session)
    return out


def delete_class_session(course_id: int, session_id: int) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        DELETE FROM class_sessions
        WHERE id = ? AND course_id = ?
        """,
        (session_id, course_id),
    )
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return deleted


# -----------------------------
# Attendance ledger
# -----------------------------
def record_presence(
    *,
    class_session_id: int,
    student_id: int,
    scanner_id: int,
    checked_at: datetime,
    payload_raw: str | None,
    ip: str | None,
    device_info: str | None,
) -> bool:
    """
    Insert a PRESENT row unless one already exists for (session, student).

    Single statement keyed on the composite UNIQUE constraint; returns True
    only for the call that created the row.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        before = conn.total_changes
        cur.execute(
            """
            INSERT INTO attendance (
                class_session_id,
                student_id,
                scanner_id,
                status,
                checked_at,
                payload_raw,
                ip,
                device_info
            )
            VALUES (?, ?, ?, 'PRESENT', ?, ?, ?, ?)
            ON CONFLICT(class_session_id, student_id) DO NOTHING
            """,
            (
                class_session_id,
                student_id,
                scanner_id,
                format_ts(checked_at),
                payload_raw,
                ip,
                device_info,
            ),
        )
        inserted = conn.total_changes - before == 1
        conn.commit()
        return inserted
    finally:
        conn.close()


def _attendance_from_row(row) -> dict[str, Any]:
    return {
        "id": int(row[0]),
        "class_session_id": int(row[1]),
        "student_id": int(row[2]),
        "scanner_id": int(row[3]) if row[3] is not None else None,
        "status": row[4],
        "checked_at": row[5],
        "payload_raw": row[6],
        "ip": row[7],
        "device_info": row[8],
    }


def get_attendance(class_session_id: int, student_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, class_session_id, student_id, scanner_id, status,
               checked_at, payload_raw, ip, device_info
        FROM attendance
        WHERE class_session_id = ? AND student_id = ?
        """,
        (class_session_id, student_id),
    )
    row = cur.fetchone()
    conn.close()
    return _attendance_from_row(row) if row else None


def count_attendance(class_session_id: int, student_id: int | None = None) -> int:
    conn = connect_db()
    cur = conn.cursor()
    if student_id is None:
        cur.execute(
            "SELECT COUNT(1) FROM attendance WHERE class_session_id = ?",
            (class_session_id,),
        )
    else:
        cur.execute(
            "SELECT COUNT(1) FROM attendance WHERE class_session_id = ? AND student_id = ?",
            (class_session_id, student_id),
        )
    row = cur.fetchone()
    conn.close()
    return int(row[0] or 0) if row else 0


def list_session_attendance(class_session_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT
            a.id,
            a.student_id,
            e.student_code,
            u.display_name,
            a.status,
            a.checked_at,
            a.scanner_id,
            sc.account
        FROM attendance a
        JOIN class_sessions s ON s.id = a.class_session_id
        JOIN users u ON u.id = a.student_id
        LEFT JOIN enrollments e
               ON e.course_id = s.course_id AND e.student_id = a.student_id
        LEFT JOIN users sc ON sc.id = a.scanner_id
        WHERE a.class_session_id = ?
        ORDER BY a.checked_at, a.id
        """,
        (class_session_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [
        {
            "id": r[0],
            "student_id": r[1],
            "student_code": r[2],
            "display_name": r[3],
            "status": r[4],
            "checked_at": r[5],
            "scanner_id": r[6],
            "scanner_account": r[7],
        }
        for r in rows
    ]
