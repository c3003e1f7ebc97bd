"""
Credit Service

Single entry point for the surrounding layers (web handlers, the monitor
engine, the reconciliation scheduler). Wires the owner registry, ledger,
usage log and settlement onto one database.
"""

from typing import Any, Dict, List, Optional, Union
import structlog

from core.owner import Owner, owner_label
from core.registry import OwnerRegistry
from persistence.database import Database, get_database
from persistence.models import AnonymousSession, PaymentInvoice, UsageRecord
from .gateway import NakaPayClient
from .ledger import CreditLedger
from .settlement import DEFAULT_DESCRIPTION, PaymentSettlement, ReconciliationReport
from .usage import UsageLog

logger = structlog.get_logger()


class CreditService:
    """Facade over sessions, balances, spends and top-ups."""

    def __init__(
        self,
        db: Optional[Database] = None,
        gateway: Optional[NakaPayClient] = None,
        webhook_secret: Optional[str] = None,
        callback_url: Optional[str] = None,
        invoice_ttl_minutes: Optional[int] = None,
    ):
        self.db = db or get_database()
        self.registry = OwnerRegistry(self.db)
        self.ledger = CreditLedger(self.db)
        self.usage = UsageLog(self.db)
        self.settlement = PaymentSettlement(
            gateway=gateway,
            ledger=self.ledger,
            registry=self.registry,
            db=self.db,
            callback_url=callback_url,
            webhook_secret=webhook_secret,
            invoice_ttl_minutes=invoice_ttl_minutes,
        )

    def create_anonymous_session(
        self,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AnonymousSession:
        """New anonymous session with a zero-balance account."""
        session = self.registry.create_anonymous_session(user_agent, ip_address)
        self.ledger.get_or_create_account(session)
        return session

    def resolve_owner(self, user_id: Optional[int] = None, token: Optional[str] = None) -> Owner:
        """Owner for a request; active sessions are touched."""
        owner = self.registry.resolve_owner(user_id=user_id, token=token)
        if isinstance(owner, AnonymousSession):
            self.registry.touch(owner)
        return owner

    def get_balance(self, owner: Owner) -> int:
        return self.ledger.get_balance(owner)

    def deduct_credits(self, owner: Owner, amount: int) -> bool:
        return self.ledger.deduct_credits(owner, amount)

    def log_usage(
        self,
        owner: Owner,
        resource_id: Optional[int],
        amount: int,
        action: str,
    ) -> UsageRecord:
        return self.usage.log_usage(owner, resource_id, amount, action)

    def spend(
        self,
        owner: Owner,
        amount: int,
        action: str,
        resource_id: Optional[int] = None,
    ) -> Optional[UsageRecord]:
        """
        Deduct and then log one metered action.

        Returns None when the balance does not cover ``amount``; nothing is
        logged in that case. Invalid fields are rejected before the debit.
        """
        resource_id, amount, action = self.usage.validate(resource_id, amount, action)
        if not self.ledger.deduct_credits(owner, amount):
            return None
        return self.usage.log_usage(owner, resource_id, amount, action)

    def usage_summary(self, owner: Owner, limit: int = 50) -> Dict[str, Any]:
        history: List[UsageRecord] = self.usage.history(owner, limit)
        return {
            "owner": owner_label(owner),
            "total": self.usage.total_usage(owner),
            "history": [r.to_dict() for r in history],
        }

    def create_top_up_invoice(
        self,
        owner: Owner,
        amount: int,
        description: str = DEFAULT_DESCRIPTION,
    ) -> PaymentInvoice:
        return self.settlement.create_invoice(owner, amount, description)

    def handle_gateway_webhook(self, raw_payload: Union[bytes, str], signature: Optional[str]) -> Dict[str, Any]:
        return self.settlement.handle_webhook(raw_payload, signature)

    def reconcile_pending_invoices(self) -> ReconciliationReport:
        return self.settlement.reconcile_pending()
