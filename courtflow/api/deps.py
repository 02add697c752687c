from fastapi import Depends, Request, Response
from jose import JWTError
from sqlalchemy.orm import Session

from courtflow.core.config import settings
from courtflow.core.security import create_session_token, decode_session_token, new_flow_session_id
from courtflow.db.session import SessionLocal, get_db
from courtflow.services.backend_client import BackendClient, default_backend_client
from courtflow.services.payment_dispatcher import build_providers
from courtflow.services.providers import PaymentProvider
from courtflow.services.reservation_flow import ReservationFlow


def get_flow_session_id(request: Request, response: Response) -> str:
    """Flow session id from the signed cookie; a missing or invalid cookie starts a new session."""
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if token:
        try:
            return decode_session_token(token)
        except JWTError:
            pass
    session_id = new_flow_session_id()
    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        create_session_token(session_id),
        max_age=settings.SESSION_TOKEN_EXPIRE_HOURS * 3600,
        httponly=True,
        samesite="lax",
        secure=settings.ENV != "local",
    )
    return session_id


def get_backend() -> BackendClient:
    return default_backend_client()


def get_providers() -> dict[str, PaymentProvider]:
    return build_providers()


def get_session_factory():
    return SessionLocal


def get_flow(
    session_id: str = Depends(get_flow_session_id),
    db: Session = Depends(get_db),
    backend: BackendClient = Depends(get_backend),
    providers: dict[str, PaymentProvider] = Depends(get_providers),
    session_factory=Depends(get_session_factory),
) -> ReservationFlow:
    return ReservationFlow(db, session_id, backend, providers=providers, session_factory=session_factory)
