import hashlib
import hmac
import json

import pytest

import checkin_api.config as config
from checkin_api.credentials import (
    build_qr_payload,
    build_token,
    canonical_token_input,
    verify_token,
)

BASE = ("650610123", 42, "CHECKIN", 7)


def test_token_matches_hmac_of_pipe_joined_fields():
    expected = hmac.new(
        config.PAYLOAD_SECRET.encode("utf-8"),
        b"650610123|42|CHECKIN|7",
        hashlib.sha256,
    ).hexdigest()
    assert build_token(*BASE) == expected
    assert len(expected) == 64
    assert expected == expected.lower()


def test_token_is_deterministic():
    assert build_token(*BASE) == build_token(*BASE)


@pytest.mark.parametrize(
    "changed",
    [
        ("650610124", 42, "CHECKIN", 7),
        ("650610123", 43, "CHECKIN", 7),
        ("650610123", 42, "CHECKIn", 7),
        ("650610123", 42, "CHECKIN", 8),
    ],
)
def test_each_field_changes_the_token(changed):
    assert build_token(*changed) != build_token(*BASE)


def test_verify_rejects_other_keyword_or_session():
    token = build_token(*BASE)
    assert verify_token(token, *BASE) is True
    assert verify_token(token, "650610123", 42, "OTHER", 7) is False
    assert verify_token(token, "650610123", 42, "CHECKIN", 8) is False


def test_same_keyword_in_two_sessions_gives_distinct_tokens():
    assert build_token("650610123", 42, "CHECKIN", 7) != build_token("650610123", 42, "CHECKIN", 9)


def test_ids_are_canonicalized_as_plain_decimals():
    assert canonical_token_input("650610123", "042", "CHECKIN", " 7 ") == "650610123|42|CHECKIN|7"
    assert build_token("650610123", "0042", "CHECKIN", "7") == build_token(*BASE)


@pytest.mark.parametrize(
    "args",
    [
        ("", 42, "CHECKIN", 7),
        ("   ", 42, "CHECKIN", 7),
        ("650610123", 42, "", 7),
        ("650610123", 0, "CHECKIN", 7),
        ("650610123", -1, "CHECKIN", 7),
        ("650610123", "4x", "CHECKIN", 7),
        ("650610123", 42, "CHECKIN", True),
    ],
)
def test_invalid_inputs_raise_and_never_verify(args):
    with pytest.raises(ValueError):
        build_token(*args)
    assert verify_token("0" * 64, *args) is False


def test_verify_handles_garbage_tokens():
    assert verify_token(None, *BASE) is False
    assert verify_token("", *BASE) is False
    assert verify_token("zzé", *BASE) is False
    assert verify_token(build_token(*BASE).upper(), *BASE) is False


def test_secret_is_part_of_the_key():
    assert build_token(*BASE, secret="another-secret") != build_token(*BASE)
    assert verify_token(build_token(*BASE, secret="k"), *BASE, secret="k") is True


def test_qr_payload_carries_ids_code_and_hash():
    payload = json.loads(build_qr_payload(*BASE))
    assert payload == {
        "courseId": 42,
        "sessionId": 7,
        "code": "650610123",
        "hash": build_token(*BASE),
    }
