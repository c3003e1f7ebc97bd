"""
Usage Log

Append-only audit trail of spends. Callers log only after deduct_credits
has returned True; the two calls are separate and this log never touches
balances.
"""

from typing import List, Optional, Tuple
import structlog

from core.amounts import validate_action, validate_amount
from core.errors import ValidationError
from core.owner import Owner, owner_columns, owner_label
from persistence.database import Database
from persistence.models import UsageRecord
from persistence.repository import UsageRepository

logger = structlog.get_logger()

MAX_HISTORY_LIMIT = 1000


class UsageLog:
    """Records and summarizes credit spends per owner."""

    def __init__(self, db: Optional[Database] = None):
        self.records = UsageRepository(db)

    @staticmethod
    def validate(
        resource_id: Optional[int],
        amount: int,
        action: str,
    ) -> Tuple[Optional[int], int, str]:
        """
        Check the fields of a usage record before anything is written.

        Spenders call this ahead of the debit so a bad action or resource
        cannot leave a deduction without its record.
        """
        amount = validate_amount(amount)
        action = validate_action(action)
        if resource_id is not None and (isinstance(resource_id, bool) or not isinstance(resource_id, int)):
            raise ValidationError("resource id must be an integer")
        return resource_id, amount, action

    def log_usage(
        self,
        owner: Owner,
        resource_id: Optional[int],
        amount: int,
        action: str,
    ) -> UsageRecord:
        """Append one usage record."""
        resource_id, amount, action = self.validate(resource_id, amount, action)
        user_id, session_id = owner_columns(owner)

        record = self.records.create(user_id, session_id, resource_id, amount, action)

        logger.info(
            "credit_usage_logged",
            record_id=record.id,
            owner=owner_label(owner),
            resource_id=resource_id,
            amount=amount,
            action=action,
        )
        return record

    def history(self, owner: Owner, limit: int = 50) -> List[UsageRecord]:
        """Usage records of the owner, newest first."""
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise ValidationError("limit must be a positive integer")
        user_id, session_id = owner_columns(owner)
        return self.records.get_history(user_id, session_id, min(limit, MAX_HISTORY_LIMIT))

    def total_usage(self, owner: Owner) -> int:
        """Total sats spent by the owner; 0 when nothing was logged."""
        user_id, session_id = owner_columns(owner)
        return self.records.get_total(user_id, session_id)
