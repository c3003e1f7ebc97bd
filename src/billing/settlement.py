"""
Payment Settlement

Owns the lifecycle of a top-up invoice:

    pending -> paid     (terminal, credits the ledger once)
    pending -> failed   (terminal)
    pending -> expired  (terminal)

Every transition is a conditional update on ``status = 'pending'``. The paid
transition and the ledger credit share one transaction, and the credit is
issued only when the conditional update changed a row. A webhook racing a
poll, or a provider redelivering the same webhook, therefore credits the
ledger exactly once; the external invoice id is the idempotency key.
"""

import json
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union
import structlog

from core.amounts import validate_amount
from core.errors import ConfigurationError, GatewayError, NotFoundError, ValidationError, WebhookSignatureError
from core.owner import Owner, owner_columns, owner_from_columns, owner_label
from core.registry import OwnerRegistry
from persistence.database import Database, get_database
from persistence.models import InvoiceStatus, PaymentInvoice, utc_now
from persistence.repository import InvoiceRepository
from .gateway import NakaPayClient
from .ledger import CreditLedger

logger = structlog.get_logger()

DEFAULT_INVOICE_TTL_MINUTES = 60
DEFAULT_DESCRIPTION = "Credit top-up"

# Provider status vocabulary -> local terminal state
GATEWAY_STATUS_MAP = {
    "paid": InvoiceStatus.PAID,
    "settled": InvoiceStatus.PAID,
    "completed": InvoiceStatus.PAID,
    "confirmed": InvoiceStatus.PAID,
    "failed": InvoiceStatus.FAILED,
    "cancelled": InvoiceStatus.FAILED,
    "canceled": InvoiceStatus.FAILED,
    "rejected": InvoiceStatus.FAILED,
    "expired": InvoiceStatus.EXPIRED,
}

WEBHOOK_EVENT_STATUS = {
    "invoice.paid": "paid",
    "invoice.settled": "paid",
    "invoice.failed": "failed",
    "invoice.expired": "expired",
}


def map_gateway_status(status: str) -> InvoiceStatus:
    """Translate a provider status; anything unrecognized counts as pending."""
    return GATEWAY_STATUS_MAP.get(str(status).strip().lower(), InvoiceStatus.PENDING)


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation pass."""
    checked: int = 0
    paid: int = 0
    failed: int = 0
    expired: int = 0
    pending: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class PaymentSettlement:
    """
    Bridges the NakaPay gateway to the credit ledger.

    Configuration falls back to NAKAPAY_CALLBACK_URL, NAKAPAY_WEBHOOK_SECRET
    and INVOICE_TTL_MINUTES.
    """

    def __init__(
        self,
        gateway: Optional[NakaPayClient] = None,
        ledger: Optional[CreditLedger] = None,
        registry: Optional[OwnerRegistry] = None,
        db: Optional[Database] = None,
        callback_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        invoice_ttl_minutes: Optional[int] = None,
    ):
        self.db = db or get_database()
        self.gateway = gateway or NakaPayClient()
        self.ledger = ledger or CreditLedger(self.db)
        self.registry = registry or OwnerRegistry(self.db)
        self.invoices = InvoiceRepository(self.db)
        self.callback_url = callback_url or os.environ.get("NAKAPAY_CALLBACK_URL")
        self.webhook_secret = webhook_secret or os.environ.get("NAKAPAY_WEBHOOK_SECRET")
        self.invoice_ttl = timedelta(minutes=invoice_ttl_minutes or int(
            os.environ.get("INVOICE_TTL_MINUTES", DEFAULT_INVOICE_TTL_MINUTES)
        ))

    def create_invoice(
        self,
        owner: Owner,
        amount: int,
        description: str = DEFAULT_DESCRIPTION,
    ) -> PaymentInvoice:
        """
        Open a top-up invoice.

        The gateway is called first; if it fails nothing is stored and the
        error propagates.
        """
        amount = validate_amount(amount)
        user_id, session_id = owner_columns(owner)

        external = self.gateway.create_invoice(amount, description, callback_url=self.callback_url)

        invoice = self.invoices.create(
            user_id=user_id,
            session_id=session_id,
            external_invoice_id=external.id,
            amount=amount,
            payment_request=external.payment_request,
            description=description,
        )

        logger.info(
            "invoice_created",
            invoice_id=invoice.id,
            external_invoice_id=invoice.external_invoice_id,
            owner=owner_label(owner),
            amount=amount,
        )
        return invoice

    def find_by_external_id(self, external_invoice_id: str) -> PaymentInvoice:
        """Look up an invoice by the provider-assigned id."""
        invoice = self.invoices.get_by_external_id(external_invoice_id)
        if invoice is None:
            raise NotFoundError(f"invoice {external_invoice_id} not found")
        return invoice

    def find_by_id(self, invoice_id: int) -> PaymentInvoice:
        """Look up an invoice by internal id."""
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            raise NotFoundError(f"invoice {invoice_id} not found")
        return invoice

    def list_pending(self, limit: int = 500) -> List[PaymentInvoice]:
        """Pending invoices, oldest first."""
        return self.invoices.list_by_status(InvoiceStatus.PENDING, limit=limit)

    def list_for_owner(self, owner: Owner, limit: int = 50) -> List[PaymentInvoice]:
        user_id, session_id = owner_columns(owner)
        return self.invoices.list_for_owner(user_id, session_id, limit=limit)

    def _owner_of(self, invoice: PaymentInvoice) -> Optional[Owner]:
        return owner_from_columns(
            invoice.user_id,
            invoice.anonymous_session_id,
            self.registry.get_session,
        )

    def _refresh(self, invoice: PaymentInvoice) -> None:
        """Copy the persisted status onto the caller's object."""
        current = self.invoices.get(invoice.id)
        if current is None:
            raise NotFoundError(f"invoice {invoice.id} not found")
        invoice.status = current.status
        invoice.paid_at = current.paid_at

    def mark_as_paid(self, invoice: PaymentInvoice) -> bool:
        """
        Settle a pending invoice and credit its owner exactly once.

        Returns True if this call performed the settlement. Repeated or
        concurrent calls for an already paid invoice return False without
        touching the ledger. Failed and expired invoices stay as they are.

        Amount and owner come from the stored row, never from the caller's
        copy; those columns are written once at creation.
        """
        stored = self.find_by_id(invoice.id)
        applied = 0

        if not stored.status.is_terminal:
            owner = self._owner_of(stored)
            with self.db.connection() as conn:
                applied = self.invoices.transition(
                    stored.id,
                    InvoiceStatus.PAID,
                    paid_at=utc_now(),
                    conn=conn,
                )
                if applied and owner is not None:
                    self.ledger.add_credits(owner, stored.amount, conn=conn)

        self._refresh(invoice)

        if applied:
            if owner is None:
                logger.error("invoice_paid_without_owner", invoice_id=stored.id, amount=stored.amount)
            else:
                logger.info(
                    "invoice_paid",
                    invoice_id=stored.id,
                    external_invoice_id=stored.external_invoice_id,
                    owner=owner_label(owner),
                    amount=stored.amount,
                )
            return True

        if invoice.status is InvoiceStatus.PAID:
            logger.info("invoice_already_paid", invoice_id=invoice.id)
        else:
            logger.warning("payment_for_closed_invoice", invoice_id=invoice.id, status=invoice.status.value)
        return False

    def _close(self, invoice: PaymentInvoice, status: InvoiceStatus) -> bool:
        applied = self.invoices.transition(invoice.id, status)
        self._refresh(invoice)
        if applied:
            logger.info("invoice_closed", invoice_id=invoice.id, status=status.value)
        else:
            logger.info("invoice_close_skipped", invoice_id=invoice.id, status=invoice.status.value)
        return applied == 1

    def mark_as_failed(self, invoice: PaymentInvoice) -> bool:
        """pending -> failed. Returns True if this call made the transition."""
        return self._close(invoice, InvoiceStatus.FAILED)

    def mark_as_expired(self, invoice: PaymentInvoice) -> bool:
        """pending -> expired. Returns True if this call made the transition."""
        return self._close(invoice, InvoiceStatus.EXPIRED)

    def apply_gateway_status(self, invoice: PaymentInvoice, status: str) -> bool:
        """Drive the state machine from a provider status string."""
        target = map_gateway_status(status)
        if target is InvoiceStatus.PAID:
            return self.mark_as_paid(invoice)
        if target is InvoiceStatus.FAILED:
            return self.mark_as_failed(invoice)
        if target is InvoiceStatus.EXPIRED:
            return self.mark_as_expired(invoice)
        return False

    def _is_stale(self, invoice: PaymentInvoice, now: datetime) -> bool:
        created = datetime.fromisoformat(invoice.created_at)
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return now - created >= self.invoice_ttl

    def reconcile_pending(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """
        Poll the gateway once for every pending invoice.

        A gateway or storage failure on one invoice is counted and skipped.
        Invoices the gateway still reports as unpaid are expired once older
        than the TTL. A missing credential aborts the pass.
        """
        now = now or datetime.now(timezone.utc)
        report = ReconciliationReport()

        for invoice in self.list_pending():
            report.checked += 1
            try:
                remote = self.gateway.get_invoice_status(invoice.external_invoice_id)
            except GatewayError as e:
                report.errors += 1
                logger.warning(
                    "reconcile_status_failed",
                    invoice_id=invoice.id,
                    external_invoice_id=invoice.external_invoice_id,
                    error=str(e),
                )
                continue

            target = map_gateway_status(remote.status)
            try:
                if target is InvoiceStatus.PENDING:
                    applied = self._is_stale(invoice, now) and self.mark_as_expired(invoice)
                    target = InvoiceStatus.EXPIRED if applied else InvoiceStatus.PENDING
                else:
                    applied = self.apply_gateway_status(invoice, remote.status)
            except ConfigurationError:
                raise
            except Exception as e:
                report.errors += 1
                logger.exception(
                    "reconcile_invoice_failed",
                    invoice_id=invoice.id,
                    external_invoice_id=invoice.external_invoice_id,
                    error=str(e),
                )
                continue

            if target is InvoiceStatus.PENDING:
                report.pending += 1
            elif applied:
                if target is InvoiceStatus.PAID:
                    report.paid += 1
                elif target is InvoiceStatus.FAILED:
                    report.failed += 1
                else:
                    report.expired += 1

        logger.info("reconciliation_complete", **report.to_dict())
        return report

    def handle_webhook(self, raw_payload: Union[bytes, str], signature: Optional[str]) -> Dict[str, Any]:
        """
        Validate and apply an inbound gateway callback.

        Unknown invoices are acknowledged and ignored so the provider stops
        redelivering them.
        """
        if not self.webhook_secret:
            raise ConfigurationError("NakaPay webhook secret not configured")

        if not NakaPayClient.validate_webhook_signature(raw_payload, signature, self.webhook_secret):
            logger.warning("webhook_signature_invalid")
            raise WebhookSignatureError("invalid webhook signature")

        try:
            payload = json.loads(raw_payload)
        except ValueError as e:
            raise ValidationError("webhook payload is not valid JSON") from e
        if not isinstance(payload, dict):
            raise ValidationError("webhook payload must be an object")

        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        external_id = data.get("invoice_id") or data.get("id")
        status = data.get("status") or WEBHOOK_EVENT_STATUS.get(str(payload.get("event", "")))
        if not external_id or not status:
            raise ValidationError("webhook payload is missing invoice id or status")

        invoice = self.invoices.get_by_external_id(str(external_id))
        if invoice is None:
            logger.warning("webhook_unknown_invoice", external_invoice_id=str(external_id))
            return {"processed": False, "reason": "unknown_invoice"}

        applied = self.apply_gateway_status(invoice, status)
        logger.info(
            "webhook_processed",
            invoice_id=invoice.id,
            reported_status=str(status),
            status=invoice.status.value,
            applied=applied,
        )
        return {
            "processed": True,
            "applied": applied,
            "invoice_id": invoice.external_invoice_id,
            "status": invoice.status.value,
        }
