"""
Credit Ledger

One balance per owner, mutated only through single conditional statements:

    credit:  UPDATE ... SET balance = balance + :amt
    debit:   UPDATE ... SET balance = balance - :amt WHERE balance >= :amt

A debit that touches no row means the balance was short. There is no
read-then-write path, so concurrent spends can never overdraw an account
and no in-process lock is needed.
"""

from typing import Any, Optional
import structlog

from core.amounts import validate_amount
from core.errors import NotFoundError
from core.owner import Owner, owner_columns, owner_label
from persistence.database import Database, get_database
from persistence.models import CreditAccount
from persistence.repository import CreditAccountRepository

logger = structlog.get_logger()


class CreditLedger:
    """Balance operations keyed by Owner."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.accounts = CreditAccountRepository(self.db)

    def get_or_create_account(self, owner: Owner, conn: Any = None) -> CreditAccount:
        """
        Return the owner's account, creating it with a zero balance.

        Safe under concurrent first access: the insert is a no-op for every
        caller but the first, and all of them read back the same row.
        """
        user_id, session_id = owner_columns(owner)

        if conn is None:
            with self.db.connection() as own_conn:
                return self.get_or_create_account(owner, conn=own_conn)

        if self.accounts.ensure(user_id, session_id, conn=conn):
            logger.info("credit_account_created", owner=owner_label(owner))
        return self.accounts.find(user_id, session_id, conn=conn)

    def find_account(self, owner: Owner) -> Optional[CreditAccount]:
        """Return the owner's account without creating one."""
        user_id, session_id = owner_columns(owner)
        return self.accounts.find(user_id, session_id)

    def get_account(self, account_id: int) -> CreditAccount:
        """Look up an account by internal id (audit access)."""
        account = self.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"credit account {account_id} not found")
        return account

    def get_balance(self, owner: Owner) -> int:
        """Latest committed balance in sats."""
        return self.get_or_create_account(owner).balance

    def add_credits(self, owner: Owner, amount: int, conn: Any = None) -> None:
        """
        Atomically increase the balance.

        With ``conn`` the credit joins the caller's transaction, which is
        how settlement commits the invoice transition and the credit
        together.
        """
        amount = validate_amount(amount)
        user_id, session_id = owner_columns(owner)

        if conn is None:
            with self.db.connection() as own_conn:
                self.add_credits(owner, amount, conn=own_conn)
            return

        self.accounts.ensure(user_id, session_id, conn=conn)
        self.accounts.increment(user_id, session_id, amount, conn=conn)

        logger.info("credits_added", owner=owner_label(owner), amount=amount)

    def deduct_credits(self, owner: Owner, amount: int) -> bool:
        """
        Atomically spend ``amount`` if the balance covers it.

        Returns False, with nothing changed, when it does not.
        """
        amount = validate_amount(amount)
        user_id, session_id = owner_columns(owner)

        with self.db.connection() as conn:
            self.accounts.ensure(user_id, session_id, conn=conn)
            applied = self.accounts.decrement_if_sufficient(user_id, session_id, amount, conn=conn)

        if applied:
            logger.info("credits_deducted", owner=owner_label(owner), amount=amount)
            return True

        logger.info("insufficient_credits", owner=owner_label(owner), amount=amount)
        return False

    def has_credits(self, owner: Owner, amount: int) -> bool:
        """
        Advisory balance check.

        The answer may be stale as soon as it returns; use deduct_credits
        when the spend has to be guaranteed.
        """
        amount = validate_amount(amount)
        account = self.find_account(owner)
        return account is not None and account.balance >= amount
