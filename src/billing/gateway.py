"""
NakaPay Lightning Gateway Client

Stateless wrapper over the NakaPay invoice API:
- Invoice creation and status lookup
- Webhook signature validation (HMAC-SHA256)
- Exchange rate and payment method passthroughs

Every call makes exactly one attempt bounded by a fixed timeout. Retries
belong to the reconciliation driver, and no local state is touched here.
"""

import hashlib
import hmac
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote
import structlog
import requests

from core.amounts import validate_amount
from core.errors import ConfigurationError, GatewayError

logger = structlog.get_logger()

DEFAULT_BASE_URL = "https://api.nakapay.app"
DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass
class ExternalInvoice:
    """Invoice as created by the provider."""
    id: str
    payment_request: str
    amount: int
    status: str = "pending"
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExternalInvoiceStatus:
    """Provider-side view of an invoice."""
    id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


class NakaPayClient:
    """
    HTTP client for the NakaPay API.

    Configuration falls back to NAKAPAY_API_KEY, NAKAPAY_BASE_URL and
    NAKAPAY_TIMEOUT_SECONDS. A missing key makes every credentialed call
    raise ConfigurationError.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key or os.environ.get("NAKAPAY_API_KEY")
        self.base_url = (base_url or os.environ.get("NAKAPAY_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.timeout = timeout or float(os.environ.get("NAKAPAY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS))
        self.session = session or requests.Session()

        if not self.api_key:
            logger.warning("nakapay_not_configured", base_url=self.base_url)

    @property
    def is_configured(self) -> bool:
        """Check if a credential is available."""
        return bool(self.api_key)

    def _auth_headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ConfigurationError("NakaPay API key not configured")
        return {"Authorization": f"Bearer {self.api_key}"}

    def _request(
        self,
        method: str,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> Any:
        """Single bounded HTTP attempt, decoded as JSON."""
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                headers=headers,
                timeout=self.timeout,
                **kwargs,
            )
        except requests.Timeout as e:
            logger.error("nakapay_timeout", method=method, path=path, timeout=self.timeout)
            raise GatewayError(f"NakaPay request timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            logger.error("nakapay_request_failed", method=method, path=path, error=str(e))
            raise GatewayError(f"NakaPay request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            logger.error("nakapay_bad_status", method=method, path=path, status_code=response.status_code)
            raise GatewayError(
                f"NakaPay returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            logger.error("nakapay_invalid_json", method=method, path=path)
            raise GatewayError("NakaPay returned a non-JSON response") from e

    def create_invoice(
        self,
        amount: int,
        description: str,
        callback_url: Optional[str] = None,
    ) -> ExternalInvoice:
        """Create a Lightning invoice for ``amount`` sats."""
        amount = validate_amount(amount)
        headers = self._auth_headers()

        payload: Dict[str, Any] = {
            "amount": amount,
            "description": description,
            "currency": "sats",
        }
        if callback_url:
            payload["callback_url"] = callback_url

        data = self._request("POST", "/api/v1/invoices", headers=headers, json=payload)
        if not isinstance(data, dict):
            raise GatewayError("NakaPay invoice response is not an object")

        invoice_id = data.get("id") or data.get("invoice_id")
        payment_request = data.get("payment_request") or data.get("paymentRequest") or data.get("bolt11")
        if not invoice_id or not payment_request:
            logger.error("nakapay_invoice_malformed", keys=sorted(data.keys()))
            raise GatewayError("NakaPay invoice response is missing id or payment request")

        logger.info("nakapay_invoice_created", invoice_id=invoice_id, amount=amount)

        return ExternalInvoice(
            id=str(invoice_id),
            payment_request=payment_request,
            amount=amount,
            status=str(data.get("status", "pending")).lower(),
            raw=data,
        )

    def get_invoice_status(self, external_invoice_id: str) -> ExternalInvoiceStatus:
        """Fetch the provider's current status for an invoice."""
        headers = self._auth_headers()
        data = self._request(
            "GET",
            f"/api/v1/invoices/{quote(external_invoice_id, safe='')}",
            headers=headers,
        )
        if not isinstance(data, dict) or "status" not in data:
            raise GatewayError("NakaPay status response has no status")

        return ExternalInvoiceStatus(
            id=str(data.get("id", external_invoice_id)),
            status=str(data["status"]).lower(),
            raw=data,
        )

    def get_payment_methods(self) -> List[Any]:
        """Payment methods supported by the provider."""
        headers = self._auth_headers()
        data = self._request("GET", "/api/v1/payment-methods", headers=headers)
        if isinstance(data, dict):
            return data.get("payment_methods") or data.get("data") or []
        return data

    def get_exchange_rate(self, from_currency: str = "USD", to_currency: str = "BTC") -> float:
        """Public exchange rate lookup; needs no credential."""
        data = self._request(
            "GET",
            "/api/v1/exchange-rates",
            params={"from": from_currency, "to": to_currency},
        )
        try:
            return float(data["rate"])
        except (KeyError, TypeError, ValueError) as e:
            raise GatewayError("NakaPay exchange rate response has no rate") from e

    @staticmethod
    def validate_webhook_signature(
        raw_payload: Union[bytes, str],
        signature: Optional[str],
        secret: Optional[str],
    ) -> bool:
        """
        Check a webhook signature.

        The expected value is the hex HMAC-SHA256 of the raw body keyed
        with the shared secret; an optional ``sha256=`` prefix is accepted.
        Comparison is constant-time.
        """
        if not signature or not secret:
            return False
        if isinstance(raw_payload, str):
            raw_payload = raw_payload.encode("utf-8")

        expected = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()
        supplied = signature.strip()
        if supplied.lower().startswith("sha256="):
            supplied = supplied[7:]

        return hmac.compare_digest(expected.encode("ascii"), supplied.lower().encode("utf-8"))
