"""
Repository Layer for the Credit Store

Raw SQL access to sessions, credit accounts, usage rows and invoices.
Balance and status changes are single conditional statements whose affected
row count tells the caller whether the change applied.
"""

from typing import Any, List, Optional, Tuple
import structlog

from .database import Database, get_database
from .models import (
    AnonymousSession,
    CreditAccount,
    InvoiceStatus,
    PaymentInvoice,
    UsageRecord,
    utc_now,
)

logger = structlog.get_logger()


def _owner_clause(user_id: Optional[int], session_id: Optional[int]) -> Tuple[str, int]:
    """WHERE fragment selecting rows of exactly one owner."""
    if user_id is not None:
        return "user_id = ?", user_id
    return "anonymous_session_id = ?", session_id


class SessionRepository:
    """Repository for anonymous sessions."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(
        self,
        token: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AnonymousSession:
        """Insert a new active session."""
        now = utc_now()
        session_id = self.db.insert(
            """INSERT INTO anonymous_sessions
               (token, created_at, last_active_at, active, user_agent, ip_address)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (token, now, now, True, user_agent, ip_address)
        )
        return AnonymousSession(
            id=session_id,
            token=token,
            created_at=now,
            last_active_at=now,
            active=True,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def get(self, session_id: int) -> Optional[AnonymousSession]:
        """Get a session by internal id, active or not."""
        results = self.db.execute(
            "SELECT * FROM anonymous_sessions WHERE id = ?",
            (session_id,)
        )
        return AnonymousSession.from_row(results[0]) if results else None

    def get_active_by_token(self, token: str) -> Optional[AnonymousSession]:
        """Get an active session by its client-visible token."""
        results = self.db.execute(
            "SELECT * FROM anonymous_sessions WHERE token = ? AND active = ?",
            (token, True)
        )
        return AnonymousSession.from_row(results[0]) if results else None

    def touch(self, session_id: int) -> str:
        """Set last_active_at to now and return the new value."""
        now = utc_now()
        self.db.execute_write(
            "UPDATE anonymous_sessions SET last_active_at = ? WHERE id = ?",
            (now, session_id)
        )
        return now

    def deactivate(self, session_id: int) -> int:
        """Flip the active flag off. Returns rows changed."""
        return self.db.execute_write(
            "UPDATE anonymous_sessions SET active = ? WHERE id = ? AND active = ?",
            (False, session_id, True)
        )


class CreditAccountRepository:
    """Repository for credit accounts."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def get(self, account_id: int) -> Optional[CreditAccount]:
        """Get an account by internal id."""
        results = self.db.execute(
            "SELECT * FROM credit_accounts WHERE id = ?",
            (account_id,)
        )
        return CreditAccount.from_row(results[0]) if results else None

    def find(
        self,
        user_id: Optional[int],
        session_id: Optional[int],
        conn: Any = None,
    ) -> Optional[CreditAccount]:
        """Get the account of one owner."""
        clause, value = _owner_clause(user_id, session_id)
        results = self.db.execute(
            f"SELECT * FROM credit_accounts WHERE {clause}",
            (value,),
            conn=conn,
        )
        return CreditAccount.from_row(results[0]) if results else None

    def ensure(self, user_id: Optional[int], session_id: Optional[int], conn: Any = None) -> bool:
        """
        Create the owner's account with a zero balance unless it exists.

        Concurrent callers converge on one row through the UNIQUE owner
        columns. Returns True only for the caller whose insert applied.
        """
        now = utc_now()
        inserted = self.db.execute_write(
            """INSERT INTO credit_accounts
               (user_id, anonymous_session_id, balance, created_at, updated_at)
               VALUES (?, ?, 0, ?, ?)
               ON CONFLICT DO NOTHING""",
            (user_id, session_id, now, now),
            conn=conn,
        )
        return inserted == 1

    def increment(
        self,
        user_id: Optional[int],
        session_id: Optional[int],
        amount: int,
        conn: Any = None,
    ) -> int:
        """Atomically add to the balance. Returns rows changed."""
        clause, value = _owner_clause(user_id, session_id)
        return self.db.execute_write(
            f"UPDATE credit_accounts SET balance = balance + ?, updated_at = ? WHERE {clause}",
            (amount, utc_now(), value),
            conn=conn,
        )

    def decrement_if_sufficient(
        self,
        user_id: Optional[int],
        session_id: Optional[int],
        amount: int,
        conn: Any = None,
    ) -> int:
        """
        Atomically subtract from the balance only if it covers ``amount``.

        Returns 1 when the debit applied and 0 when the balance was short.
        """
        clause, value = _owner_clause(user_id, session_id)
        return self.db.execute_write(
            f"""UPDATE credit_accounts SET balance = balance - ?, updated_at = ?
                WHERE {clause} AND balance >= ?""",
            (amount, utc_now(), value, amount),
            conn=conn,
        )


class UsageRepository:
    """Repository for the append-only usage log."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(
        self,
        user_id: Optional[int],
        session_id: Optional[int],
        resource_id: Optional[int],
        amount: int,
        action: str,
    ) -> UsageRecord:
        """Append a usage row."""
        now = utc_now()
        record_id = self.db.insert(
            """INSERT INTO credit_usage
               (user_id, anonymous_session_id, resource_id, amount, action, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (user_id, session_id, resource_id, amount, action, now)
        )
        return UsageRecord(
            id=record_id,
            user_id=user_id,
            anonymous_session_id=session_id,
            resource_id=resource_id,
            amount=amount,
            action=action,
            created_at=now,
        )

    def get_history(
        self,
        user_id: Optional[int],
        session_id: Optional[int],
        limit: int = 50,
    ) -> List[UsageRecord]:
        """Usage rows of one owner, newest first."""
        clause, value = _owner_clause(user_id, session_id)
        results = self.db.execute(
            f"SELECT * FROM credit_usage WHERE {clause} ORDER BY created_at DESC, id DESC LIMIT ?",
            (value, limit)
        )
        return [UsageRecord.from_row(r) for r in results]

    def get_total(self, user_id: Optional[int], session_id: Optional[int]) -> int:
        """Sum of all amounts spent by one owner."""
        clause, value = _owner_clause(user_id, session_id)
        results = self.db.execute(
            f"SELECT COALESCE(SUM(amount), 0) as total FROM credit_usage WHERE {clause}",
            (value,)
        )
        return int(results[0]["total"]) if results else 0


class InvoiceRepository:
    """Repository for payment invoices."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(
        self,
        user_id: Optional[int],
        session_id: Optional[int],
        external_invoice_id: str,
        amount: int,
        payment_request: Optional[str] = None,
        description: Optional[str] = None,
    ) -> PaymentInvoice:
        """Insert a pending invoice."""
        now = utc_now()
        invoice_id = self.db.insert(
            """INSERT INTO payment_invoices
               (user_id, anonymous_session_id, external_invoice_id, amount, status,
                payment_request, description, created_at, paid_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL)""",
            (user_id, session_id, external_invoice_id, amount,
             InvoiceStatus.PENDING.value, payment_request, description, now)
        )
        return PaymentInvoice(
            id=invoice_id,
            user_id=user_id,
            anonymous_session_id=session_id,
            external_invoice_id=external_invoice_id,
            amount=amount,
            status=InvoiceStatus.PENDING,
            payment_request=payment_request,
            description=description,
            created_at=now,
        )

    def get(self, invoice_id: int, conn: Any = None) -> Optional[PaymentInvoice]:
        """Get an invoice by internal id."""
        results = self.db.execute(
            "SELECT * FROM payment_invoices WHERE id = ?",
            (invoice_id,),
            conn=conn,
        )
        return PaymentInvoice.from_row(results[0]) if results else None

    def get_by_external_id(self, external_invoice_id: str) -> Optional[PaymentInvoice]:
        """Get an invoice by the provider-assigned id."""
        results = self.db.execute(
            "SELECT * FROM payment_invoices WHERE external_invoice_id = ?",
            (external_invoice_id,)
        )
        return PaymentInvoice.from_row(results[0]) if results else None

    def transition(
        self,
        invoice_id: int,
        to_status: InvoiceStatus,
        paid_at: Optional[str] = None,
        conn: Any = None,
    ) -> int:
        """
        Move a pending invoice to ``to_status``.

        Returns 1 if this call performed the transition, 0 if the invoice
        had already left the pending state.
        """
        return self.db.execute_write(
            "UPDATE payment_invoices SET status = ?, paid_at = ? WHERE id = ? AND status = ?",
            (to_status.value, paid_at, invoice_id, InvoiceStatus.PENDING.value),
            conn=conn,
        )

    def list_by_status(self, status: InvoiceStatus, limit: int = 500) -> List[PaymentInvoice]:
        """Invoices in one status, oldest first."""
        results = self.db.execute(
            "SELECT * FROM payment_invoices WHERE status = ? ORDER BY created_at ASC, id ASC LIMIT ?",
            (status.value, limit)
        )
        return [PaymentInvoice.from_row(r) for r in results]

    def list_for_owner(
        self,
        user_id: Optional[int],
        session_id: Optional[int],
        limit: int = 50,
    ) -> List[PaymentInvoice]:
        """Invoices of one owner, newest first."""
        clause, value = _owner_clause(user_id, session_id)
        results = self.db.execute(
            f"SELECT * FROM payment_invoices WHERE {clause} ORDER BY created_at DESC, id DESC LIMIT ?",
            (value, limit)
        )
        return [PaymentInvoice.from_row(r) for r in results]
