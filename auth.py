"""
Caller identity for the record pages and the HTTP API.

Nothing here is global: an ``AuthContext`` is created by whoever owns the
caller (the API per request, an application shell once at start-up) and is
handed to every page that needs it.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, status

import config

logger = logging.getLogger(__name__)


class NotAuthenticatedError(Exception):
    """Raised when a page is used without a signed-in session"""


@dataclass
class AuthSession:
    access_token: str
    user_email: Optional[str] = None


class MemorySessionStore:
    """Keeps the persisted session in memory"""

    def __init__(self, session: Optional[AuthSession] = None):
        self._session = session

    def load(self) -> Optional[AuthSession]:
        return self._session

    def save(self, session: AuthSession) -> None:
        self._session = session

    def clear(self) -> None:
        self._session = None


class AuthContext:
    def __init__(self, store=None):
        self.store = store if store is not None else MemorySessionStore()
        self.session: Optional[AuthSession] = None

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None

    def init(self) -> Optional[AuthSession]:
        """Restore the stored session, if any."""
        self.session = self.store.load()
        logger.info(f"Session restored: {self.is_authenticated}")
        return self.session

    def sign_in(self, session: AuthSession) -> None:
        self.store.save(session)
        self.session = session
        logger.info(f"Signed in: {session.user_email or 'token session'}")

    def sign_out(self) -> None:
        self.store.clear()
        self.session = None
        logger.info("Signed out")

    def require(self) -> AuthSession:
        if self.session is None:
            raise NotAuthenticatedError("Sign in to manage records")
        return self.session


def require_api_session(authorization: Optional[str] = Header(None)) -> AuthContext:
    """FastAPI dependency checking the bearer token against ``config.API_TOKENS``."""
    context = AuthContext()
    if not config.API_TOKENS:
        context.session = AuthSession(access_token="anonymous")
        return context

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or token not in config.API_TOKENS:
        logger.warning("Rejected request with missing or unknown bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    context.session = AuthSession(access_token=token)
    return context
