"""
Owner Identity

An owner is either a registered user or an anonymous session. Every ledger
key, usage row and invoice row is derived from an Owner through
owner_columns(), which handles both variants and rejects anything else.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

from persistence.models import AnonymousSession
from .errors import ValidationError


@dataclass(frozen=True)
class RegisteredUser:
    """Registered account, identified by the user id issued by the auth layer."""
    id: int

    def __post_init__(self):
        if isinstance(self.id, bool) or not isinstance(self.id, int) or self.id <= 0:
            raise ValidationError(f"user id must be a positive integer, got {self.id!r}")


Owner = Union[RegisteredUser, AnonymousSession]


def owner_columns(owner: Owner) -> Tuple[Optional[int], Optional[int]]:
    """Return the (user_id, anonymous_session_id) column pair for an owner."""
    if isinstance(owner, RegisteredUser):
        return owner.id, None
    if isinstance(owner, AnonymousSession):
        if owner.id is None:
            raise ValidationError("anonymous session has not been persisted")
        return None, owner.id
    raise ValidationError(f"not an owner: {type(owner).__name__}")


def owner_label(owner: Owner) -> str:
    """Short log-friendly description, never the session token."""
    user_id, session_id = owner_columns(owner)
    if user_id is not None:
        return f"user:{user_id}"
    return f"session:{session_id}"


def owner_from_columns(
    user_id: Optional[int],
    session_id: Optional[int],
    load_session: Callable[[int], AnonymousSession],
) -> Optional[Owner]:
    """
    Rebuild the Owner referenced by a stored row.

    Returns None for rows whose owner reference was cleared.
    """
    if user_id is not None and session_id is not None:
        raise ValidationError("row references both a user and a session")
    if user_id is not None:
        return RegisteredUser(user_id)
    if session_id is not None:
        return load_session(session_id)
    return None
