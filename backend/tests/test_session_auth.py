from starlette.requests import Request

from tripchat.session_auth import (
    SESSION_COOKIE_NAME,
    create_session_token,
    decode_session_token,
    resolve_user,
)


def _request_with_cookie(cookie_value: str | None = None) -> Request:
    headers = []
    if cookie_value:
        headers.append((b"cookie", f"{SESSION_COOKIE_NAME}={cookie_value}".encode("utf-8")))
    scope = {"type": "http", "method": "GET", "path": "/", "headers": headers}
    return Request(scope)


def test_create_and_decode_session_token():
    token = create_session_token("guest:abc123")
    assert decode_session_token(token) == "guest:abc123"


def test_decode_rejects_tampered_token():
    token = create_session_token("guest:abc123")
    assert decode_session_token(token + "x") is None
    assert decode_session_token("not-a-jwt") is None


def test_resolve_user_without_cookie_creates_guest():
    user_id, new_token = resolve_user(_request_with_cookie())
    assert user_id.startswith("guest:")
    assert new_token is not None
    assert decode_session_token(new_token) == user_id


def test_resolve_user_with_cookie_reuses_identity():
    token = create_session_token("guest:xyz")
    user_id, new_token = resolve_user(_request_with_cookie(token))
    assert user_id == "guest:xyz"
    assert new_token is None
