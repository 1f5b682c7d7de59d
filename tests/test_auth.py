from __future__ import annotations

import base64
import json
from pathlib import Path

from cursor_usage.enrichment.auth import build_session_cookie, decode_jwt_payload


def _jwt(payload: dict) -> str:
    def segment(data: dict) -> str:
        raw = json.dumps(data).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    return f"{segment({'alg': 'HS256'})}.{segment(payload)}.signature"


def test_decode_jwt_payload() -> None:
    token = _jwt({"sub": "auth0|user_123", "exp": 1})

    assert decode_jwt_payload(token) == {"sub": "auth0|user_123", "exp": 1}
    assert decode_jwt_payload("not-a-token") is None
    assert decode_jwt_payload("a.!!!.c") is None


def test_build_session_cookie_from_stored_token(state_db) -> None:
    token = _jwt({"sub": "auth0|user_123"})
    state_db.set_item("cursorAuth/accessToken", token)

    cookie = build_session_cookie(state_db.path)

    assert cookie == f"WorkosCursorSessionToken=auth0|user_123%3A%3A{token}"


def test_build_session_cookie_accepts_json_quoted_token(state_db) -> None:
    token = _jwt({"sub": "user_9"})
    state_db.set_item("cursorAuth/accessToken", json.dumps(token))

    assert build_session_cookie(state_db.path) == f"WorkosCursorSessionToken=user_9%3A%3A{token}"


def test_build_session_cookie_without_usable_token(state_db, tmp_path: Path) -> None:
    assert build_session_cookie(state_db.path) is None

    state_db.set_item("cursorAuth/accessToken", _jwt({"email": "no-subject@example.com"}))
    assert build_session_cookie(state_db.path) is None

    assert build_session_cookie(tmp_path / "missing.vscdb") is None
