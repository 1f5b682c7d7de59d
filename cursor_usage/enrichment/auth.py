from __future__ import annotations

import base64
import binascii
import json
from pathlib import Path
from typing import Any

from ..store import open_record_store

ACCESS_TOKEN_KEY = "cursorAuth/accessToken"
SESSION_COOKIE_NAME = "WorkosCursorSessionToken"


def decode_jwt_payload(token: str) -> dict[str, Any] | None:
    # Claims only; the token is our own locally stored credential.
    parts = token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1]
    segment += "=" * (-len(segment) % 4)
    try:
        raw = base64.urlsafe_b64decode(segment.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def build_session_cookie(db_path: Path | str) -> str | None:
    with open_record_store(db_path) as store:
        if store is None:
            return None
        access_token = store.get_item(ACCESS_TOKEN_KEY)
    if not access_token:
        return None
    access_token = access_token.strip().strip('"')
    payload = decode_jwt_payload(access_token)
    if payload is None or not isinstance(payload.get("sub"), str):
        return None
    return f"{SESSION_COOKIE_NAME}={payload['sub']}%3A%3A{access_token}"
