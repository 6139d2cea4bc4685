"""Form tokens that tie a POST to the signed-in user."""

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

TOKEN_MAX_AGE_HOURS = 2


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(get_settings().secret_key, salt="csrf-token")


def generate_csrf_token(user_id: str = "") -> str:
    return _serializer().dumps({"u": user_id})


def validate_csrf_token(
    token: str, user_id: str = "", *, max_age_hours: float = TOKEN_MAX_AGE_HOURS
) -> bool:
    if not token:
        return False
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except BadSignature:
        return False
    return isinstance(data, dict) and data.get("u") == user_id
