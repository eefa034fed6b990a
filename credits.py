"""
Credit ledger consumed by job admission.

The pipeline only ever debits. Purchases and refunds are handled by the
billing side of the product, which writes to the same `credit_accounts` table.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models import CreditAccount, UsageRecord


@dataclass(frozen=True)
class DebitResult:
    ok: bool
    new_balance: int


class CreditLedger:
    def debit(self, user_id: str, amount: int) -> DebitResult:
        raise NotImplementedError


class SqlCreditLedger(CreditLedger):
    """Debits `credit_accounts.balance` with a single conditional UPDATE."""

    def __init__(self, db: Session, feature: str = "video_gen"):
        self.db = db
        self.feature = feature

    def balance(self, user_id: str) -> int:
        value = self.db.execute(
            select(CreditAccount.balance).where(CreditAccount.user_id == user_id)
        ).scalar_one_or_none()
        return value or 0

    def debit(self, user_id: str, amount: int) -> DebitResult:
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive, got {amount}")

        # The balance check and the decrement happen in one statement, so two
        # concurrent admissions can never both spend the same credits.
        result = self.db.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id, CreditAccount.balance >= amount)
            .values(balance=CreditAccount.balance - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            current = self.balance(user_id)
            logging.warning(f"Debit of {amount} refused for user {user_id}: balance {current}")
            return DebitResult(ok=False, new_balance=current)

        self.db.add(UsageRecord(user_id=user_id, feature=self.feature, credits_used=amount))
        self.db.commit()

        new_balance = self.balance(user_id)
        logging.info(f"Debited {amount} credits from user {user_id}, {new_balance} remaining")
        return DebitResult(ok=True, new_balance=new_balance)
