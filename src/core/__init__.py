"""
Credit Core

Error taxonomy and sat amount validation shared by every layer. The owner
union (core.owner) and the session registry (core.registry) sit on top of
the persistence layer and are imported from their modules directly.
"""

from .errors import (
    CreditError,
    ValidationError,
    NotFoundError,
    ConfigurationError,
    GatewayError,
    WebhookSignatureError,
)
from .amounts import validate_amount, validate_action, MAX_SATS

__all__ = [
    "CreditError",
    "ValidationError",
    "NotFoundError",
    "ConfigurationError",
    "GatewayError",
    "WebhookSignatureError",
    "validate_amount",
    "validate_action",
    "MAX_SATS",
]
