import time
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import AuthError


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="ledger-user")


def issue_token(user_id: int) -> str:
    return _serializer().dumps({"u": user_id, "ts": int(time.time())})


def resolve_user_id(token: Optional[str], max_age_hours: Optional[int] = None) -> int:
    """Return the user id carried by a signed token or raise ``AuthError``."""
    if not token:
        raise AuthError("User not authenticated")
    if max_age_hours is None:
        max_age_hours = get_settings().token_max_age_hours
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except SignatureExpired as exc:
        raise AuthError("Session expired") from exc
    except BadSignature as exc:
        raise AuthError("Invalid session token") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise AuthError("Invalid session token")
    return user_id


def user_from_header(authorization: Optional[str]) -> Optional[int]:
    """Parse ``Authorization: Bearer <token>``; None when the header is absent."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Unsupported authorization scheme")
    return resolve_user_id(token.strip())
