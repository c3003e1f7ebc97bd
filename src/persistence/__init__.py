"""
Persistence Layer for the Credit Store

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, get_database
from .models import AnonymousSession, CreditAccount, UsageRecord, PaymentInvoice, InvoiceStatus
from .repository import SessionRepository, CreditAccountRepository, UsageRepository, InvoiceRepository

__all__ = [
    "Database",
    "get_database",
    "AnonymousSession",
    "CreditAccount",
    "UsageRecord",
    "PaymentInvoice",
    "InvoiceStatus",
    "SessionRepository",
    "CreditAccountRepository",
    "UsageRepository",
    "InvoiceRepository",
]
