"""
Credits Billing Module

Prepaid sat balances spent on metered actions and topped up over Lightning:
- Credit ledger with atomic credit / conditional debit
- Append-only usage log
- NakaPay gateway client
- Exactly-once payment settlement (poll or webhook)
"""

from .ledger import CreditLedger
from .usage import UsageLog
from .gateway import NakaPayClient, ExternalInvoice, ExternalInvoiceStatus
from .settlement import PaymentSettlement, ReconciliationReport, map_gateway_status
from .service import CreditService

__all__ = [
    "CreditLedger",
    "UsageLog",
    "NakaPayClient",
    "ExternalInvoice",
    "ExternalInvoiceStatus",
    "PaymentSettlement",
    "ReconciliationReport",
    "map_gateway_status",
    "CreditService",
]
