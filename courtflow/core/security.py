import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from courtflow.core.config import settings

ALGO = "HS256"


def new_flow_session_id() -> str:
    return str(uuid.uuid4())


def create_session_token(session_id: str, expires_hours: int | None = None) -> str:
    if expires_hours is None:
        expires_hours = settings.SESSION_TOKEN_EXPIRE_HOURS
    exp = datetime.now(timezone.utc) + timedelta(hours=expires_hours)
    payload = {"sub": session_id, "type": "flow", "exp": exp}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGO)


def decode_session_token(token: str) -> str:
    """Return the flow session id carried by a session cookie; raises JWTError on a bad token."""
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGO])
    if payload.get("type") != "flow" or not payload.get("sub"):
        raise JWTError("not a flow session token")
    return str(payload["sub"])
