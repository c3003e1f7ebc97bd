"""
Data Models for Persistence Layer

Rows of the four credit tables as dataclasses. Owner references are stored
as two nullable columns (user_id, anonymous_session_id); at most one is set
on usage and invoice rows and exactly one on credit accounts.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from core.errors import ValidationError


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ts(value: Any) -> Optional[str]:
    """Normalize a timestamp column (str on SQLite, datetime on PostgreSQL)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _check_owner_columns(user_id: Optional[int], session_id: Optional[int], required: bool) -> None:
    if user_id is not None and session_id is not None:
        raise ValidationError("owner reference must name a user or a session, not both")
    if required and user_id is None and session_id is None:
        raise ValidationError("owner reference must name a user or a session")


class InvoiceStatus(Enum):
    """Lifecycle of a top-up invoice. Only PENDING is non-terminal."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not InvoiceStatus.PENDING


@dataclass
class AnonymousSession:
    """Self-issued owner identified by an unguessable token."""
    id: int
    token: str
    created_at: str
    last_active_at: str
    active: bool = True
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "token": self.token,
            "created_at": self.created_at,
            "last_active_at": self.last_active_at,
            "active": self.active,
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AnonymousSession":
        return cls(
            id=row["id"],
            token=row["token"],
            created_at=_ts(row["created_at"]),
            last_active_at=_ts(row["last_active_at"]),
            active=bool(row.get("active", 1)),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
        )


@dataclass
class CreditAccount:
    """Balance record, one per owner."""
    id: Optional[int]
    user_id: Optional[int]
    anonymous_session_id: Optional[int]
    balance: int = 0
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def __post_init__(self):
        _check_owner_columns(self.user_id, self.anonymous_session_id, required=True)
        if self.balance < 0:
            raise ValidationError(f"balance cannot be negative: {self.balance}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "anonymous_session_id": self.anonymous_session_id,
            "balance": self.balance,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CreditAccount":
        return cls(
            id=row["id"],
            user_id=row.get("user_id"),
            anonymous_session_id=row.get("anonymous_session_id"),
            balance=int(row["balance"]),
            created_at=_ts(row["created_at"]),
            updated_at=_ts(row["updated_at"]),
        )


@dataclass(frozen=True)
class UsageRecord:
    """Immutable audit entry for one successful deduction."""
    id: int
    user_id: Optional[int]
    anonymous_session_id: Optional[int]
    resource_id: Optional[int]
    amount: int
    action: str
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "anonymous_session_id": self.anonymous_session_id,
            "resource_id": self.resource_id,
            "amount": self.amount,
            "action": self.action,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageRecord":
        return cls(
            id=row["id"],
            user_id=row.get("user_id"),
            anonymous_session_id=row.get("anonymous_session_id"),
            resource_id=row.get("resource_id"),
            amount=int(row["amount"]),
            action=row["action"],
            created_at=_ts(row["created_at"]),
        )


@dataclass
class PaymentInvoice:
    """Locally tracked Lightning invoice."""
    id: int
    user_id: Optional[int]
    anonymous_session_id: Optional[int]
    external_invoice_id: str
    amount: int
    status: InvoiceStatus = InvoiceStatus.PENDING
    payment_request: Optional[str] = None
    description: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    paid_at: Optional[str] = None

    def __post_init__(self):
        _check_owner_columns(self.user_id, self.anonymous_session_id, required=False)
        if (self.status is InvoiceStatus.PAID) != (self.paid_at is not None):
            raise ValidationError("paid_at must be set exactly when the invoice is paid")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "anonymous_session_id": self.anonymous_session_id,
            "external_invoice_id": self.external_invoice_id,
            "amount": self.amount,
            "status": self.status.value,
            "payment_request": self.payment_request,
            "description": self.description,
            "created_at": self.created_at,
            "paid_at": self.paid_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PaymentInvoice":
        return cls(
            id=row["id"],
            user_id=row.get("user_id"),
            anonymous_session_id=row.get("anonymous_session_id"),
            external_invoice_id=row["external_invoice_id"],
            amount=int(row["amount"]),
            status=InvoiceStatus(row["status"]),
            payment_request=row.get("payment_request"),
            description=row.get("description"),
            created_at=_ts(row["created_at"]),
            paid_at=_ts(row.get("paid_at")),
        )
