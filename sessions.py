from itsdangerous import BadSignature, URLSafeSerializer
from sqlalchemy.orm import Session

from config import get_settings
from errors import LedgerError
from models import User


class InvalidSession(LedgerError, PermissionError):
    pass


def _serializer() -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.session_secret, salt="ledger-session")


def create_session(session: Session) -> str:
    """Create a fresh user and return the session token that identifies it."""
    user = User()
    session.add(user)
    session.commit()
    return _serializer().dumps({"u": user.id})


def resolve_session(session: Session, token: str) -> int:
    if not token:
        raise InvalidSession("Missing session id")
    try:
        data = _serializer().loads(token)
    except BadSignature as exc:
        raise InvalidSession("Invalid session id") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int) or session.get(User, user_id) is None:
        raise InvalidSession("Invalid session id")
    return user_id
