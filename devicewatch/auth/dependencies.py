"""FastAPI dependencies for bearer authentication."""
from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from ..config import settings
from ..database import get_session
from ..errors import TokenInvalid, TokenMissing
from .security import CredentialData, verify_access_token
from .service import refresh_credential

bearer_scheme = HTTPBearer(auto_error=False, description="Token issued by POST /login")


def get_current_credential(
    request: Request,
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: Session = Depends(get_session),
) -> CredentialData:
    """Return the verified credential or raise ``401``/``403``."""

    if bearer is None or not bearer.credentials:
        raise TokenMissing()

    credential = verify_access_token(bearer.credentials)
    if credential is None:
        raise TokenInvalid()

    if settings.RESOLVE_DEVICES_PER_REQUEST:
        credential = refresh_credential(session, credential)

    request.state.credential = credential
    return credential


__all__ = ["bearer_scheme", "get_current_credential"]
