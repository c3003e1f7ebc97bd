"""
Owner Registry

Issues anonymous sessions and resolves client handles (session token or
registered user id) to an Owner usable as a ledger key.
"""

import secrets
from typing import Optional
import structlog

from persistence.database import Database
from persistence.models import AnonymousSession
from persistence.repository import SessionRepository
from .errors import NotFoundError, ValidationError
from .owner import Owner, RegisteredUser

logger = structlog.get_logger()

# Column limits of the sessions table
MAX_USER_AGENT_LENGTH = 500
MAX_IP_ADDRESS_LENGTH = 45

TOKEN_BYTES = 32


class OwnerRegistry:
    """
    Anonymous session lifecycle plus owner resolution.

    Sessions are never deleted: deactivation hides them from token lookups
    while their account, invoices and usage stay reachable by internal id.
    """

    def __init__(self, db: Optional[Database] = None):
        self.sessions = SessionRepository(db)

    @staticmethod
    def generate_token() -> str:
        """Unguessable client-visible session handle."""
        return secrets.token_urlsafe(TOKEN_BYTES)

    def create_anonymous_session(
        self,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AnonymousSession:
        """Mint a fresh active session."""
        session = self.sessions.create(
            token=self.generate_token(),
            user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
            ip_address=ip_address[:MAX_IP_ADDRESS_LENGTH] if ip_address else None,
        )
        logger.info("anonymous_session_created", session_id=session.id)
        return session

    def find_active_session(self, token: str) -> AnonymousSession:
        """Look up an active session by token; inactive ones are not found."""
        if not token:
            raise NotFoundError("anonymous session not found")
        session = self.sessions.get_active_by_token(token)
        if session is None:
            raise NotFoundError("anonymous session not found")
        return session

    def get_session(self, session_id: int) -> AnonymousSession:
        """Look up a session by internal id regardless of its active flag."""
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"anonymous session {session_id} not found")
        return session

    def touch(self, session: AnonymousSession) -> None:
        """Record activity on the session."""
        session.last_active_at = self.sessions.touch(session.id)

    def deactivate(self, session: AnonymousSession) -> None:
        """Soft-disable the session."""
        changed = self.sessions.deactivate(session.id)
        session.active = False
        if changed:
            logger.info("anonymous_session_deactivated", session_id=session.id)

    def resolve_owner(
        self,
        user_id: Optional[int] = None,
        token: Optional[str] = None,
    ) -> Owner:
        """
        Build an Owner from exactly one client handle.

        A registered user id is trusted as issued by the auth layer; a
        token must name an active session.
        """
        if user_id is not None and token:
            raise ValidationError("provide a user id or a session token, not both")
        if user_id is not None:
            return RegisteredUser(user_id)
        if token:
            return self.find_active_session(token)
        raise ValidationError("an owner requires a user id or a session token")
