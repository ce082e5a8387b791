import pytest
from fastapi.testclient import TestClient

import checkin_api.config as config
import checkin_api.main as main
import checkin_db.db as db


@pytest.fixture()
def test_db(tmp_path, monkeypatch):
    path = tmp_path / "checkin_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", path)
    monkeypatch.setattr(db, "DB_PATH", path)

    db.create_tables()
    return path


@pytest.fixture()
def client(test_db):
    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def world(test_db):
    """
    One course owned by `owner`, with a course-scoped TA, a course-scoped
    CO_TEACHER, an unrelated user, and one enrolled student (code 650610123).
    """
    owner = db.create_user("owner01", password="owner-pass", display_name="Course Owner")
    ta = db.create_user("ta01", password="ta-pass", email="ta01@example.edu")
    co_teacher = db.create_user("coteach01", password="co-pass")
    outsider = db.create_user("outsider01", password="outsider-pass")
    student = db.create_user("student01", password="student-pass", display_name="Somchai S.")
    course = db.create_course(owner, "261200", "Object-Oriented Programming")
    db.grant_role(ta, "TA", course)
    db.grant_role(co_teacher, "CO_TEACHER", course)
    db.grant_role(student, "STUDENT")
    db.add_enrollment(course, student, "650610123", section="001")
    return {
        "owner": owner,
        "ta": ta,
        "co_teacher": co_teacher,
        "outsider": outsider,
        "student": student,
        "course": course,
        "student_code": "650610123",
    }


@pytest.fixture()
def login_as(client):
    def _login(account: str, password: str) -> dict[str, str]:
        res = client.post("/auth/login", json={"account": account, "password": password})
        assert res.status_code == 200, res.text
        return {"Authorization": f"Bearer {res.json()['access_token']}"}

    return _login
