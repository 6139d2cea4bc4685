from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

logger = logging.getLogger(__name__)

SESSION_COOKIE = "budget_session"


@dataclass(frozen=True)
class Identity:
    id: str
    email: str


@dataclass(frozen=True)
class AuthSession:
    identity: Identity
    access_token: str


class IdentityError(RuntimeError):
    """The identity provider rejected a request or could not be reached."""


class IdentityProvider:
    """Everything the app needs from the external authentication service."""

    def sign_up(self, email: str, password: str) -> Identity:
        raise NotImplementedError

    def sign_in(self, email: str, password: str) -> AuthSession:
        raise NotImplementedError

    def sign_out(self, access_token: str) -> None:
        raise NotImplementedError

    def get_user(self, access_token: str) -> Optional[Identity]:
        raise NotImplementedError

    def request_password_reset(self, email: str) -> None:
        raise NotImplementedError

    def update_password(self, access_token: str, new_password: str) -> None:
        raise NotImplementedError

    def verify_recovery(self, token_hash: str) -> AuthSession:
        raise NotImplementedError


class GoTrueIdentityProvider(IdentityProvider):
    """Client for a GoTrue-compatible auth REST API (e.g. Supabase Auth)."""

    def __init__(
        self, base_url: str, api_key: str, *, timeout: float, site_url: str
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.site_url = site_url

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, object]] = None,
        *,
        token: Optional[str] = None,
    ) -> dict:
        headers = {"Accept": "application/json", "apikey": self.api_key}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        data = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = Request(
            f"{self.base_url}{path}", data=data, headers=headers, method=method
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8")
        except HTTPError as exc:
            raise IdentityError(_error_message(exc)) from exc
        except (URLError, TimeoutError) as exc:
            raise IdentityError("Authentication service is unavailable") from exc
        if not body:
            return {}
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise IdentityError("Unexpected authentication service response") from exc

    @staticmethod
    def _identity(user: dict) -> Identity:
        try:
            return Identity(id=str(user["id"]), email=str(user["email"]))
        except KeyError as exc:
            raise IdentityError("Unexpected authentication service response") from exc

    def _session(self, payload: dict) -> AuthSession:
        token = payload.get("access_token")
        if not token:
            raise IdentityError("Unexpected authentication service response")
        identity = self._identity(payload.get("user") or {})
        return AuthSession(identity=identity, access_token=str(token))

    def sign_up(self, email: str, password: str) -> Identity:
        payload = self._request("POST", "/signup", {"email": email, "password": password})
        identity = self._identity(payload.get("user") or payload)
        logger.info("identity_sign_up: user_id=%s", identity.id)
        return identity

    def sign_in(self, email: str, password: str) -> AuthSession:
        payload = self._request(
            "POST",
            "/token?grant_type=password",
            {"email": email, "password": password},
        )
        session = self._session(payload)
        logger.info("identity_sign_in: user_id=%s", session.identity.id)
        return session

    def sign_out(self, access_token: str) -> None:
        self._request("POST", "/logout", {}, token=access_token)

    def get_user(self, access_token: str) -> Optional[Identity]:
        try:
            payload = self._request("GET", "/user", token=access_token)
        except IdentityError:
            return None
        return self._identity(payload)

    def request_password_reset(self, email: str) -> None:
        query = urlencode({"redirect_to": f"{self.site_url}/reset-password"})
        self._request("POST", f"/recover?{query}", {"email": email})
        logger.info("identity_password_reset_requested")

    def update_password(self, access_token: str, new_password: str) -> None:
        self._request("PUT", "/user", {"password": new_password}, token=access_token)

    def verify_recovery(self, token_hash: str) -> AuthSession:
        """Exchange the token from an emailed reset link for a session."""
        payload = self._request(
            "POST", "/verify", {"type": "recovery", "token_hash": token_hash}
        )
        session = self._session(payload)
        logger.info("identity_recovery_verified: user_id=%s", session.identity.id)
        return session


def _error_message(exc: HTTPError) -> str:
    try:
        payload = json.loads(exc.read().decode("utf-8"))
    except (ValueError, OSError):
        payload = {}
    for key in ("msg", "error_description", "message", "error"):
        value = payload.get(key) if isinstance(payload, dict) else None
        if value:
            return str(value)
    return f"Authentication failed ({exc.code})"


@lru_cache(maxsize=1)
def get_identity_provider() -> IdentityProvider:
    settings = get_settings()
    return GoTrueIdentityProvider(
        settings.auth_url,
        settings.auth_api_key,
        timeout=settings.auth_timeout_secs,
        site_url=settings.site_url,
    )


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="session")


def encode_session(session: AuthSession) -> str:
    return _serializer().dumps(
        {
            "uid": session.identity.id,
            "email": session.identity.email,
            "at": session.access_token,
        }
    )


def decode_session(token: Optional[str]) -> Optional[AuthSession]:
    if not token:
        return None
    settings = get_settings()
    try:
        data = _serializer().loads(
            token, max_age=settings.session_max_age_hours * 3600
        )
    except BadSignature:
        return None
    try:
        return AuthSession(
            identity=Identity(id=str(data["uid"]), email=str(data["email"])),
            access_token=str(data["at"]),
        )
    except (KeyError, TypeError):
        return None
