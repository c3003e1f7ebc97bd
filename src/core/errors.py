"""
Error Taxonomy

Every failure raised by the ledger, the usage log, the owner registry and
the payment layer derives from CreditError. Insufficient balance is not an
error: deduct_credits reports it by returning False.
"""

from typing import Optional


class CreditError(Exception):
    """Base class for credit system failures."""
    pass


class ValidationError(CreditError):
    """Invalid input to a local operation (amount, owner reference, action)."""
    pass


class NotFoundError(CreditError):
    """A session, account or invoice the caller expected does not exist."""
    pass


class ConfigurationError(CreditError):
    """Gateway credential missing. Not retryable until configuration changes."""
    pass


class GatewayError(CreditError):
    """Network failure, timeout or non-success response from the payment provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class WebhookSignatureError(ValidationError):
    """Inbound webhook body does not match its signature."""
    pass
