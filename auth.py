from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


SESSION_COOKIE = "finansync_session"


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="finansync-session")


def issue_session_token(
    user_id: str, email: Optional[str] = None, name: Optional[str] = None
) -> str:
    serializer = _serializer()
    return serializer.dumps({"u": user_id, "email": email, "name": name})


def read_session_token(token: str) -> Optional[dict]:
    settings = get_settings()
    serializer = _serializer()
    try:
        data = serializer.loads(token, max_age=settings.session_max_age_hours * 3600)
    except BadSignature:
        return None

    if not isinstance(data, dict) or not data.get("u"):
        return None
    return data


def token_from_headers(
    authorization: Optional[str], cookie_token: Optional[str]
) -> Optional[str]:
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return cookie_token or None
