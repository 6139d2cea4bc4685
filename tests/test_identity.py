import io
import json
from urllib.error import HTTPError

import pytest

import identity
from csrf import generate_csrf_token, validate_csrf_token
from identity import (
    AuthSession,
    GoTrueIdentityProvider,
    Identity,
    IdentityError,
    decode_session,
    encode_session,
)


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def make_provider() -> GoTrueIdentityProvider:
    return GoTrueIdentityProvider(
        "https://auth.example.com/auth/v1/",
        "anon-key",
        timeout=5,
        site_url="https://budget.example.com",
    )


def test_session_cookie_round_trip() -> None:
    session = AuthSession(Identity("user-1", "a@example.com"), "token-abc")

    decoded = decode_session(encode_session(session))

    assert decoded == session


def test_tampered_or_missing_cookie_is_rejected() -> None:
    cookie = encode_session(AuthSession(Identity("user-1", "a@example.com"), "t"))

    assert decode_session(cookie[:-2] + "xx") is None
    assert decode_session("") is None
    assert decode_session(None) is None


def test_csrf_token_is_bound_to_user() -> None:
    token = generate_csrf_token("user-1")

    assert validate_csrf_token(token, "user-1")
    assert not validate_csrf_token(token, "user-2")
    assert not validate_csrf_token(token)
    assert not validate_csrf_token("garbage", "user-1")


def test_expired_csrf_token_is_rejected() -> None:
    token = generate_csrf_token("user-1")

    assert not validate_csrf_token(token, "user-1", max_age_hours=-1)


def test_sign_in_posts_password_grant(monkeypatch) -> None:
    seen = {}

    def fake_urlopen(req, timeout):
        seen["url"] = req.full_url
        seen["method"] = req.get_method()
        seen["apikey"] = req.get_header("Apikey")
        seen["body"] = json.loads(req.data)
        payload = {
            "access_token": "jwt-token",
            "user": {"id": "uuid-1", "email": "a@example.com"},
        }
        return FakeResponse(json.dumps(payload).encode())

    monkeypatch.setattr(identity, "urlopen", fake_urlopen)

    session = make_provider().sign_in("a@example.com", "Secret123")

    assert session == AuthSession(Identity("uuid-1", "a@example.com"), "jwt-token")
    assert seen["url"] == "https://auth.example.com/auth/v1/token?grant_type=password"
    assert seen["method"] == "POST"
    assert seen["apikey"] == "anon-key"
    assert seen["body"] == {"email": "a@example.com", "password": "Secret123"}


def test_provider_error_message_is_surfaced(monkeypatch) -> None:
    def fake_urlopen(req, timeout):
        body = io.BytesIO(json.dumps({"error_description": "Invalid login credentials"}).encode())
        raise HTTPError(req.full_url, 400, "Bad Request", {}, body)

    monkeypatch.setattr(identity, "urlopen", fake_urlopen)

    with pytest.raises(IdentityError, match="Invalid login credentials"):
        make_provider().sign_in("a@example.com", "wrong")


def test_get_user_returns_none_for_rejected_token(monkeypatch) -> None:
    def fake_urlopen(req, timeout):
        raise HTTPError(req.full_url, 401, "Unauthorized", {}, io.BytesIO(b""))

    monkeypatch.setattr(identity, "urlopen", fake_urlopen)

    assert make_provider().get_user("stale") is None


def test_password_reset_redirects_to_site(monkeypatch) -> None:
    seen = {}

    def fake_urlopen(req, timeout):
        seen["url"] = req.full_url
        return FakeResponse(b"{}")

    monkeypatch.setattr(identity, "urlopen", fake_urlopen)

    make_provider().request_password_reset("a@example.com")

    assert seen["url"] == (
        "https://auth.example.com/auth/v1/recover?redirect_to="
        "https%3A%2F%2Fbudget.example.com%2Freset-password"
    )


def test_verify_recovery_exchanges_token_hash(monkeypatch) -> None:
    seen = {}

    def fake_urlopen(req, timeout):
        seen["url"] = req.full_url
        seen["body"] = json.loads(req.data)
        payload = {
            "access_token": "recovery-jwt",
            "user": {"id": "uuid-1", "email": "a@example.com"},
        }
        return FakeResponse(json.dumps(payload).encode())

    monkeypatch.setattr(identity, "urlopen", fake_urlopen)

    session = make_provider().verify_recovery("hash-123")

    assert session == AuthSession(Identity("uuid-1", "a@example.com"), "recovery-jwt")
    assert seen["url"] == "https://auth.example.com/auth/v1/verify"
    assert seen["body"] == {"type": "recovery", "token_hash": "hash-123"}
