"""
Tests for Payment Settlement

Invoice lifecycle, exactly-once crediting, reconciliation and webhooks.
"""

import dataclasses
import hashlib
import hmac
import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from billing.gateway import ExternalInvoiceStatus
from billing.settlement import PaymentSettlement, map_gateway_status
from core.errors import ConfigurationError, GatewayError, NotFoundError, ValidationError, WebhookSignatureError
from core.owner import RegisteredUser
from persistence.models import InvoiceStatus

from conftest import WEBHOOK_SECRET


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def webhook_body(invoice_id: str, status: str) -> bytes:
    return json.dumps({"invoice_id": invoice_id, "status": status}).encode()


class TestCreateInvoice:
    """Opening top-up invoices."""

    def test_create_invoice_is_pending(self, settlement, session, gateway):
        invoice = settlement.create_invoice(session, 1000, "top-up")

        assert invoice.status is InvoiceStatus.PENDING
        assert invoice.paid_at is None
        assert invoice.amount == 1000
        assert invoice.anonymous_session_id == session.id
        assert invoice.external_invoice_id == "inv_0001"
        assert invoice.payment_request.startswith("lnbc1000")
        gateway.create_invoice.assert_called_once_with(1000, "top-up", callback_url=None)

    def test_find_by_external_id(self, settlement, session):
        invoice = settlement.create_invoice(session, 500, "top-up")

        found = settlement.find_by_external_id(invoice.external_invoice_id)

        assert found.id == invoice.id
        assert settlement.find_by_id(invoice.id).external_invoice_id == invoice.external_invoice_id

    def test_unknown_external_id(self, settlement):
        with pytest.raises(NotFoundError):
            settlement.find_by_external_id("inv_missing")

    def test_gateway_failure_stores_nothing(self, settlement, session, gateway):
        """A failed gateway call leaves no local invoice."""
        gateway.create_invoice.side_effect = GatewayError("timed out")

        with pytest.raises(GatewayError):
            settlement.create_invoice(session, 1000, "top-up")

        assert settlement.list_pending() == []
        assert settlement.list_for_owner(session) == []

    def test_missing_credential_stores_nothing(self, settlement, session, gateway):
        gateway.create_invoice.side_effect = ConfigurationError("no key")

        with pytest.raises(ConfigurationError):
            settlement.create_invoice(session, 1000, "top-up")

        assert settlement.list_pending() == []

    @pytest.mark.parametrize("amount", [0, -10, 9.5])
    def test_invalid_amount(self, settlement, session, gateway, amount):
        with pytest.raises(ValidationError):
            settlement.create_invoice(session, amount, "top-up")
        gateway.create_invoice.assert_not_called()

    def test_callback_url_forwarded(self, db, gateway, ledger, registry, session):
        settlement = PaymentSettlement(
            gateway=gateway,
            ledger=ledger,
            registry=registry,
            db=db,
            callback_url="https://credits.example/webhooks/nakapay",
        )

        settlement.create_invoice(session, 10, "top-up")

        assert gateway.create_invoice.call_args.kwargs["callback_url"] == "https://credits.example/webhooks/nakapay"


class TestMarkAsPaid:
    """Exactly-once settlement."""

    def test_paid_twice_credits_once(self, settlement, ledger, session):
        """Scenario: two settlements of the same invoice add 1000, not 2000."""
        invoice = settlement.create_invoice(session, 1000, "top-up")

        assert settlement.mark_as_paid(invoice) is True
        first_paid_at = invoice.paid_at
        assert settlement.mark_as_paid(invoice) is False

        assert ledger.get_balance(session) == 1000
        stored = settlement.find_by_id(invoice.id)
        assert stored.status is InvoiceStatus.PAID
        assert stored.paid_at == first_paid_at

    def test_stale_copy_does_not_recredit(self, settlement, ledger, session):
        """A copy loaded before settlement still cannot credit again."""
        invoice = settlement.create_invoice(session, 300, "top-up")
        stale = settlement.find_by_id(invoice.id)

        settlement.mark_as_paid(invoice)
        assert settlement.mark_as_paid(stale) is False

        assert stale.status is InvoiceStatus.PAID
        assert ledger.get_balance(session) == 300

    def test_credit_uses_stored_amount_and_owner(self, settlement, ledger, session):
        """An altered in-memory copy cannot change what gets credited."""
        invoice = settlement.create_invoice(session, 100, "top-up")
        altered = dataclasses.replace(invoice, amount=999999, anonymous_session_id=None, user_id=77)

        assert settlement.mark_as_paid(altered) is True

        assert ledger.get_balance(session) == 100
        assert ledger.find_account(RegisteredUser(77)) is None
        assert altered.status is InvoiceStatus.PAID

    def test_concurrent_settlement_credits_once(self, settlement, ledger, session):
        invoice = settlement.create_invoice(session, 1000, "top-up")
        copies = [settlement.find_by_id(invoice.id) for _ in range(10)]
        barrier = threading.Barrier(len(copies))
        results = []
        lock = threading.Lock()

        def settle(copy):
            barrier.wait()
            applied = settlement.mark_as_paid(copy)
            with lock:
                results.append(applied)

        threads = [threading.Thread(target=settle, args=(c,)) for c in copies]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert ledger.get_balance(session) == 1000

    def test_registered_user_is_credited(self, settlement, ledger):
        user = RegisteredUser(11)
        invoice = settlement.create_invoice(user, 250, "top-up")

        settlement.mark_as_paid(invoice)

        assert ledger.get_balance(user) == 250

    def test_deactivated_session_still_credited(self, settlement, ledger, registry, session):
        """A payment that lands after deactivation is not lost."""
        invoice = settlement.create_invoice(session, 80, "top-up")
        registry.deactivate(session)

        assert settlement.mark_as_paid(invoice) is True
        assert ledger.get_balance(registry.get_session(session.id)) == 80

    def test_credit_failure_rolls_back_transition(self, settlement, ledger, session, monkeypatch):
        """Transition and credit commit together or not at all."""
        invoice = settlement.create_invoice(session, 100, "top-up")

        def broken_credit(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(settlement.ledger, "add_credits", broken_credit)
        with pytest.raises(RuntimeError):
            settlement.mark_as_paid(invoice)

        assert settlement.find_by_id(invoice.id).status is InvoiceStatus.PENDING
        monkeypatch.undo()

        assert settlement.mark_as_paid(invoice) is True
        assert ledger.get_balance(session) == 100


class TestTerminalStates:
    """Failed and expired invoices."""

    def test_mark_as_failed(self, settlement, ledger, session):
        invoice = settlement.create_invoice(session, 100, "top-up")

        assert settlement.mark_as_failed(invoice) is True
        assert invoice.status is InvoiceStatus.FAILED
        assert invoice.paid_at is None
        assert ledger.get_balance(session) == 0

    def test_mark_as_expired(self, settlement, session):
        invoice = settlement.create_invoice(session, 100, "top-up")

        assert settlement.mark_as_expired(invoice) is True
        assert settlement.find_by_id(invoice.id).status is InvoiceStatus.EXPIRED

    def test_no_payment_after_expiry(self, settlement, ledger, session):
        invoice = settlement.create_invoice(session, 100, "top-up")
        settlement.mark_as_expired(invoice)

        assert settlement.mark_as_paid(invoice) is False
        assert invoice.status is InvoiceStatus.EXPIRED
        assert ledger.get_balance(session) == 0

    def test_paid_invoice_cannot_fail(self, settlement, ledger, session):
        invoice = settlement.create_invoice(session, 100, "top-up")
        settlement.mark_as_paid(invoice)

        assert settlement.mark_as_failed(invoice) is False
        assert settlement.mark_as_expired(invoice) is False
        assert invoice.status is InvoiceStatus.PAID
        assert ledger.get_balance(session) == 100

    def test_list_pending_excludes_terminal(self, settlement, session):
        open_invoice = settlement.create_invoice(session, 1, "a")
        paid = settlement.create_invoice(session, 2, "b")
        failed = settlement.create_invoice(session, 3, "c")
        settlement.mark_as_paid(paid)
        settlement.mark_as_failed(failed)

        assert [i.id for i in settlement.list_pending()] == [open_invoice.id]


class TestGatewayStatusMapping:

    @pytest.mark.parametrize("raw,expected", [
        ("paid", InvoiceStatus.PAID),
        ("SETTLED", InvoiceStatus.PAID),
        ("completed", InvoiceStatus.PAID),
        ("failed", InvoiceStatus.FAILED),
        ("cancelled", InvoiceStatus.FAILED),
        ("expired", InvoiceStatus.EXPIRED),
        ("pending", InvoiceStatus.PENDING),
        ("processing", InvoiceStatus.PENDING),
    ])
    def test_map_gateway_status(self, raw, expected):
        assert map_gateway_status(raw) is expected


class TestReconciliation:
    """Polling pending invoices."""

    def status_by_id(self, gateway, statuses):
        def lookup(external_id):
            result = statuses[external_id]
            if isinstance(result, Exception):
                raise result
            return ExternalInvoiceStatus(id=external_id, status=result)

        gateway.get_invoice_status.side_effect = lookup

    def test_reconcile_applies_gateway_statuses(self, settlement, gateway, ledger, session):
        paid = settlement.create_invoice(session, 100, "a")
        failed = settlement.create_invoice(session, 200, "b")
        waiting = settlement.create_invoice(session, 300, "c")
        broken = settlement.create_invoice(session, 400, "d")
        self.status_by_id(gateway, {
            paid.external_invoice_id: "paid",
            failed.external_invoice_id: "failed",
            waiting.external_invoice_id: "pending",
            broken.external_invoice_id: GatewayError("timeout"),
        })

        report = settlement.reconcile_pending()

        assert report.to_dict() == {
            "checked": 4, "paid": 1, "failed": 1, "expired": 0, "pending": 1, "errors": 1,
        }
        assert ledger.get_balance(session) == 100
        assert [i.id for i in settlement.list_pending()] == [waiting.id, broken.id]

    def test_reconcile_twice_credits_once(self, settlement, gateway, ledger, session):
        invoice = settlement.create_invoice(session, 100, "a")
        self.status_by_id(gateway, {invoice.external_invoice_id: "paid"})

        settlement.reconcile_pending()
        second = settlement.reconcile_pending()

        assert second.checked == 0
        assert ledger.get_balance(session) == 100

    def test_stale_pending_invoice_expires(self, settlement, gateway, session):
        invoice = settlement.create_invoice(session, 100, "a")
        self.status_by_id(gateway, {invoice.external_invoice_id: "pending"})
        later = datetime.now(timezone.utc) + timedelta(minutes=61)

        report = settlement.reconcile_pending(now=later)

        assert report.expired == 1
        assert settlement.find_by_id(invoice.id).status is InvoiceStatus.EXPIRED

    def test_stale_invoice_not_expired_on_gateway_error(self, settlement, gateway, session):
        """Only an explicit unpaid answer expires an invoice."""
        invoice = settlement.create_invoice(session, 100, "a")
        self.status_by_id(gateway, {invoice.external_invoice_id: GatewayError("down")})
        later = datetime.now(timezone.utc) + timedelta(days=2)

        report = settlement.reconcile_pending(now=later)

        assert report.errors == 1
        assert settlement.find_by_id(invoice.id).status is InvoiceStatus.PENDING

    def test_missing_credential_aborts(self, settlement, gateway, session):
        settlement.create_invoice(session, 100, "a")
        gateway.get_invoice_status.side_effect = ConfigurationError("no key")

        with pytest.raises(ConfigurationError):
            settlement.reconcile_pending()

    def test_storage_failure_does_not_stop_pass(self, settlement, gateway, ledger, session, monkeypatch):
        """A failure while settling one invoice is counted; the rest still settle."""
        broken = settlement.create_invoice(session, 100, "a")
        healthy = settlement.create_invoice(session, 200, "b")
        self.status_by_id(gateway, {
            broken.external_invoice_id: "paid",
            healthy.external_invoice_id: "paid",
        })
        original = settlement.mark_as_paid

        def flaky_mark_as_paid(invoice):
            if invoice.id == broken.id:
                raise NotFoundError("session vanished")
            return original(invoice)

        monkeypatch.setattr(settlement, "mark_as_paid", flaky_mark_as_paid)

        report = settlement.reconcile_pending()

        assert report.errors == 1
        assert report.paid == 1
        assert ledger.get_balance(session) == 200
        assert [i.id for i in settlement.list_pending()] == [broken.id]


class TestWebhook:
    """Inbound gateway callbacks."""

    def test_webhook_settles_invoice(self, settlement, ledger, session):
        invoice = settlement.create_invoice(session, 1000, "top-up")
        body = webhook_body(invoice.external_invoice_id, "paid")

        result = settlement.handle_webhook(body, sign(body))

        assert result == {
            "processed": True,
            "applied": True,
            "invoice_id": invoice.external_invoice_id,
            "status": "paid",
        }
        assert ledger.get_balance(session) == 1000

    def test_redelivered_webhook_credits_once(self, settlement, ledger, session):
        invoice = settlement.create_invoice(session, 1000, "top-up")
        body = webhook_body(invoice.external_invoice_id, "paid")

        settlement.handle_webhook(body, sign(body))
        result = settlement.handle_webhook(body, sign(body))

        assert result["applied"] is False
        assert result["status"] == "paid"
        assert ledger.get_balance(session) == 1000

    def test_webhook_then_poll_credits_once(self, settlement, gateway, ledger, session):
        invoice = settlement.create_invoice(session, 700, "top-up")
        body = webhook_body(invoice.external_invoice_id, "paid")
        settlement.handle_webhook(body, sign(body))
        gateway.get_invoice_status.return_value = ExternalInvoiceStatus(
            id=invoice.external_invoice_id, status="paid",
        )

        settlement.apply_gateway_status(settlement.find_by_id(invoice.id), "paid")

        assert ledger.get_balance(session) == 700

    def test_nested_event_payload(self, settlement, ledger, session):
        invoice = settlement.create_invoice(session, 50, "top-up")
        body = json.dumps({"event": "invoice.paid", "data": {"id": invoice.external_invoice_id}}).encode()

        result = settlement.handle_webhook(body, sign(body))

        assert result["applied"] is True
        assert ledger.get_balance(session) == 50

    def test_bad_signature_rejected(self, settlement, ledger, session):
        invoice = settlement.create_invoice(session, 1000, "top-up")
        body = webhook_body(invoice.external_invoice_id, "paid")

        with pytest.raises(WebhookSignatureError):
            settlement.handle_webhook(body, sign(body, secret="forged"))

        assert settlement.find_by_id(invoice.id).status is InvoiceStatus.PENDING
        assert ledger.get_balance(session) == 0

    def test_unknown_invoice_ignored(self, settlement):
        body = webhook_body("inv_elsewhere", "paid")

        assert settlement.handle_webhook(body, sign(body)) == {"processed": False, "reason": "unknown_invoice"}

    def test_failed_status_via_webhook(self, settlement, session):
        invoice = settlement.create_invoice(session, 10, "top-up")
        body = webhook_body(invoice.external_invoice_id, "expired")

        result = settlement.handle_webhook(body, sign(body))

        assert result["status"] == "expired"

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b'{"status": "paid"}', b'{"invoice_id": "x"}'])
    def test_malformed_payload(self, settlement, body):
        with pytest.raises(ValidationError):
            settlement.handle_webhook(body, sign(body))

    def test_missing_secret(self, db, gateway, ledger, registry, monkeypatch):
        monkeypatch.delenv("NAKAPAY_WEBHOOK_SECRET", raising=False)
        settlement = PaymentSettlement(gateway=gateway, ledger=ledger, registry=registry, db=db)
        body = webhook_body("inv_1", "paid")

        with pytest.raises(ConfigurationError):
            settlement.handle_webhook(body, sign(body))
