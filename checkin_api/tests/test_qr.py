import json

from checkin_api.qr import MISSING_QR_MESSAGE, coerce_id, parse_qr, render_qr_png

QR_JSON = json.dumps({"courseId": 42, "sessionId": 7, "code": "650610123", "hash": "abc123"})


def test_bare_json_qr():
    parsed = parse_qr({"qr": QR_JSON})
    assert parsed["error"] is None
    assert parsed["from_json"] is True
    assert parsed["course_id"] == 42
    assert parsed["session_id"] == 7
    assert parsed["student_code"] == "650610123"
    assert parsed["token"] == "abc123"


def test_composite_qr_extracts_json_after_url():
    raw = f"reference *reference https://mobile.example.edu/scan?x=1 {QR_JSON}"
    parsed = parse_qr({"qr": raw})
    assert parsed["error"] is None
    assert parsed["course_id"] == 42
    assert parsed["token"] == "abc123"


def test_json_in_qr_wins_over_top_level_fields():
    parsed = parse_qr(
        {
            "qr": QR_JSON,
            "student_id": "999999999",
            "hash": "top-level-hash",
            "courseId": 1,
            "sessionId": 2,
        }
    )
    assert parsed["student_code"] == "650610123"
    assert parsed["token"] == "abc123"
    assert (parsed["course_id"], parsed["session_id"]) == (42, 7)


def test_body_fields_do_not_fill_gaps_in_qr_json():
    parsed = parse_qr(
        {
            "qr": json.dumps({"courseId": 42, "sessionId": 7}),
            "code": "650610123",
            "hash": "body-hash",
            "courseId": 1,
        }
    )
    assert parsed["error"] is None
    assert parsed["student_code"] is None
    assert parsed["token"] is None
    assert (parsed["course_id"], parsed["session_id"]) == (42, 7)

    ids_missing = parse_qr({"qr": json.dumps({"code": "650610123", "hash": "h"}), "courseId": 42, "sessionId": 7})
    assert ids_missing["course_id"] is None
    assert ids_missing["session_id"] is None


def test_missing_or_unparseable_qr():
    assert parse_qr({})["error"] == MISSING_QR_MESSAGE
    assert parse_qr({"qr": "   "})["error"] == MISSING_QR_MESSAGE
    assert parse_qr({"qr": 123})["error"] == MISSING_QR_MESSAGE
    assert parse_qr({"qr": "{not json"})["error"] == MISSING_QR_MESSAGE
    assert parse_qr({"qr": "prefix https://x.y {broken"})["error"] == MISSING_QR_MESSAGE


def test_bare_token_qr_uses_body_fields():
    parsed = parse_qr({"qr": "deadbeef", "student_id": "650610123"})
    assert parsed["error"] is None
    assert parsed["from_json"] is False
    assert parsed["token"] == "deadbeef"
    assert parsed["student_code"] == "650610123"
    assert parsed["course_id"] is None


def test_coerce_id():
    assert coerce_id(7) == 7
    assert coerce_id("7") == 7
    assert coerce_id(" 042 ") == 42
    assert coerce_id("7a") is None
    assert coerce_id(0) is None
    assert coerce_id(True) is None
    assert coerce_id(7.5) is None
    assert coerce_id(None) is None
    assert coerce_id(2**63 - 1) == 2**63 - 1
    assert coerce_id(2**63) is None
    assert coerce_id(10**30) is None
    assert coerce_id("9" * 30) is None


def test_render_qr_png_returns_png_bytes():
    data = render_qr_png(QR_JSON)
    assert data.startswith(b"\x89PNG\r\n\x1a\n")
