import threading
from datetime import datetime, timedelta, timezone

import pytest

import checkin_db.db as db
from checkin_api.services.sessions import (
    KeywordConflictError,
    create_session,
    delete_session,
    find_active_by_keyword,
    find_by_id,
    is_expired,
    list_sessions,
)

NOW = datetime(2025, 1, 1, 9, 0, 0, tzinfo=timezone.utc)


def test_defaults_window_is_length_plus_grace(world):
    session_id = create_session(world["course"], "CHECKIN", now=NOW)
    session = find_by_id(world["course"], session_id)

    assert session["name"] == "Class"
    assert session["date"] == "2025-01-01"
    assert session["start_time"] == NOW
    assert session["end_time"] == NOW + timedelta(minutes=60)
    assert session["expires_at"] == NOW + timedelta(minutes=180)


def test_explicit_times_and_grace(world):
    start = datetime(2025, 1, 1, 13, 0)
    end = datetime(2025, 1, 1, 14, 30)
    session_id = create_session(
        world["course"],
        "  LAB3  ",
        name="Lab 3",
        start_time=start,
        end_time=end,
        expires_in_minutes=15,
        now=NOW,
    )
    session = find_by_id(world["course"], session_id)

    assert session["keyword"] == "LAB3"
    assert session["name"] == "Lab 3"
    assert session["end_time"] == end.replace(tzinfo=timezone.utc)
    assert session["expires_at"] == datetime(2025, 1, 1, 14, 45, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"keyword": "   "},
        {"keyword": "K", "expires_in_minutes": -1},
        {"keyword": "K", "start_time": NOW, "end_time": NOW - timedelta(minutes=1)},
    ],
)
def test_invalid_sessions_are_refused(world, kwargs):
    keyword = kwargs.pop("keyword")
    with pytest.raises(ValueError):
        create_session(world["course"], keyword, now=NOW, **kwargs)
    assert list_sessions(world["course"], NOW) == []


def test_keyword_conflict_while_active(world):
    first = create_session(world["course"], "CHECKIN", now=NOW)

    with pytest.raises(KeywordConflictError) as excinfo:
        create_session(world["course"], "CHECKIN", now=NOW + timedelta(minutes=5))
    assert excinfo.value.existing_session_id == first
    assert "currently active in another session" in str(excinfo.value)

    # other keyword and other course are independent
    create_session(world["course"], "OTHER", now=NOW)
    other_course = db.create_course(world["owner"], "261201", "Data Structures")
    create_session(other_course, "CHECKIN", now=NOW)


def test_keyword_reusable_after_expiry(world):
    first = create_session(world["course"], "CHECKIN", expires_in_minutes=0, now=NOW)
    expires_at = find_by_id(world["course"], first)["expires_at"]

    # still active at the exact deadline
    with pytest.raises(KeywordConflictError):
        create_session(world["course"], "CHECKIN", now=expires_at)

    second = create_session(world["course"], "CHECKIN", now=expires_at + timedelta(seconds=1))
    assert second != first


def test_concurrent_creators_yield_one_session(world):
    workers = 8
    barrier = threading.Barrier(workers)
    created: list[int] = []
    conflicts: list[KeywordConflictError] = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            session_id = create_session(world["course"], "RACE", now=NOW)
        except KeywordConflictError as exc:
            with lock:
                conflicts.append(exc)
        else:
            with lock:
                created.append(session_id)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(created) == 1
    assert len(conflicts) == workers - 1
    assert all(exc.existing_session_id == created[0] for exc in conflicts)


def test_find_active_by_keyword(world):
    session_id = create_session(world["course"], "CHECKIN", expires_in_minutes=0, now=NOW)
    expires_at = find_by_id(world["course"], session_id)["expires_at"]

    assert find_active_by_keyword(world["course"], "CHECKIN", NOW)["id"] == session_id
    assert find_active_by_keyword(world["course"], " CHECKIN ", expires_at)["id"] == session_id
    assert find_active_by_keyword(world["course"], "CHECKIN", expires_at + timedelta(seconds=1)) is None
    assert find_active_by_keyword(world["course"], "checkin", NOW) is None
    assert find_active_by_keyword(world["course"], "", NOW) is None


def test_find_active_returns_newest_reuse(world):
    create_session(world["course"], "CHECKIN", expires_in_minutes=0, now=NOW)
    later = NOW + timedelta(hours=2)
    newest = create_session(world["course"], "CHECKIN", now=later)

    assert find_active_by_keyword(world["course"], "CHECKIN", later)["id"] == newest


def test_find_by_id_is_scoped_to_course(world):
    session_id = create_session(world["course"], "CHECKIN", now=NOW)
    other_course = db.create_course(world["owner"], "261201")
    assert find_by_id(other_course, session_id) is None


def test_is_expired_boundary(world):
    session_id = create_session(world["course"], "CHECKIN", now=NOW)
    session = find_by_id(world["course"], session_id)
    assert is_expired(session, session["expires_at"]) is False
    assert is_expired(session, session["expires_at"] + timedelta(seconds=1)) is True


def test_delete_cascades_attendance(world):
    session_id = create_session(world["course"], "CHECKIN", now=NOW)
    assert db.record_presence(
        class_session_id=session_id,
        student_id=world["student"],
        scanner_id=world["ta"],
        checked_at=NOW,
        payload_raw="{}",
        ip=None,
        device_info=None,
    )
    assert db.count_attendance(session_id) == 1

    assert delete_session(world["course"], session_id) is True
    assert find_by_id(world["course"], session_id) is None
    assert db.count_attendance(session_id) == 0
    assert delete_session(world["course"], session_id) is False


def test_list_sessions_counts_present(world):
    first = create_session(world["course"], "A", now=NOW)
    create_session(world["course"], "B", now=NOW + timedelta(minutes=1))
    db.record_presence(
        class_session_id=first,
        student_id=world["student"],
        scanner_id=world["ta"],
        checked_at=NOW,
        payload_raw=None,
        ip=None,
        device_info=None,
    )

    rows = list_sessions(world["course"], NOW + timedelta(minutes=2))
    assert [row["keyword"] for row in rows] == ["B", "A"]
    assert rows[1]["presentCount"] == 1
    assert rows[0]["presentCount"] == 0
    assert rows[0]["expired"] is False
    assert rows[0]["expiresAt"].endswith("Z")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"expires_in_minutes": 10**10},
        {"expires_in_minutes": 10**30},
        {"start_time": datetime(9999, 12, 31, 23, 30, tzinfo=timezone.utc)},
        {
            "start_time": datetime(9999, 12, 31, 20, 0, tzinfo=timezone.utc),
            "end_time": datetime(9999, 12, 31, 23, 0, tzinfo=timezone.utc),
        },
    ],
)
def test_window_past_datetime_range_is_refused(world, kwargs):
    with pytest.raises(ValueError, match="out of the supported date range"):
        create_session(world["course"], "FAR", now=NOW, **kwargs)
    assert list_sessions(world["course"], NOW) == []
