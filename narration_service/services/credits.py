from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import List, Optional

from narration_service.errors import ValidationError
from narration_service.models.domain import CreditTransaction, TransactionType
from narration_service.storage.repository import CreditTransactionRepository

LOCK_STRIPES = 64


@dataclass(frozen=True)
class LedgerResult:
    success: bool
    new_balance: int
    error: str | None = None
    entry: CreditTransaction | None = None
    replayed: bool = False


class CreditLedger:
    """Append-only credit ledger.

    The balance of an identity is always the signed sum of its entries. Every
    mutation happens under a per-identity lock, and a mutation that carries an
    ``idempotency_key`` already present in the log is answered from the log
    instead of being applied twice.
    """

    def __init__(
        self,
        transactions: CreditTransactionRepository,
        new_user_credits: int = 30,
        logger: Optional[logging.Logger] = None,
        lock_stripes: int = LOCK_STRIPES,
    ) -> None:
        self.transactions = transactions
        self.new_user_credits = new_user_credits
        self.log = logger or logging.getLogger(__name__)
        self._locks: List[Lock] = [Lock() for _ in range(max(1, lock_stripes))]

    def get_balance(self, identity: str) -> int:
        return self.transactions.sum_for(identity)

    def history(self, identity: str, limit: int = 50) -> List[CreditTransaction]:
        entries = self.transactions.list_for(identity)
        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return entries[:limit]

    def deduct(
        self,
        identity: str,
        amount: int,
        reason: TransactionType,
        note: str,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerResult:
        self._require_positive(amount)
        with self._identity_lock(identity):
            replay = self._replay(identity, idempotency_key)
            if replay is not None:
                return replay
            balance = self.get_balance(identity)
            if amount > balance:
                return LedgerResult(
                    success=False,
                    new_balance=balance,
                    error=f"Insufficient credits. You have {balance} credits but need {amount}.",
                )
            entry = self._append(identity, -amount, reason, note, correlation_id, idempotency_key)
            new_balance = balance - amount
        self.log.info(
            "credits deducted",
            extra={"user_id": identity, "amount": amount, "reason": reason.value, "balance": new_balance},
        )
        return LedgerResult(success=True, new_balance=new_balance, entry=entry)

    def refund(
        self,
        identity: str,
        amount: int,
        note: str,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerResult:
        return self._credit(identity, amount, TransactionType.REFUND, note, correlation_id, idempotency_key)

    def grant(
        self,
        identity: str,
        amount: int,
        reason: TransactionType,
        note: str,
        idempotency_key: str | None = None,
    ) -> LedgerResult:
        return self._credit(identity, amount, reason, note, None, idempotency_key)

    def initialize(self, identity: str) -> LedgerResult:
        key = f"free_signup:{identity}"
        existing = self.transactions.find_by_idempotency_key(identity, key)
        if existing is not None:
            return LedgerResult(
                success=True,
                new_balance=self.get_balance(identity),
                entry=existing,
                replayed=True,
            )
        return self.grant(
            identity,
            self.new_user_credits,
            TransactionType.FREE_SIGNUP,
            "Welcome bonus - free credits for new users",
            idempotency_key=key,
        )

    def _credit(
        self,
        identity: str,
        amount: int,
        reason: TransactionType,
        note: str,
        correlation_id: str | None,
        idempotency_key: str | None,
    ) -> LedgerResult:
        self._require_positive(amount)
        with self._identity_lock(identity):
            replay = self._replay(identity, idempotency_key)
            if replay is not None:
                return replay
            entry = self._append(identity, amount, reason, note, correlation_id, idempotency_key)
            new_balance = self.get_balance(identity)
        self.log.info(
            "credits added",
            extra={"user_id": identity, "amount": amount, "reason": reason.value, "balance": new_balance},
        )
        return LedgerResult(success=True, new_balance=new_balance, entry=entry)

    def _append(
        self,
        identity: str,
        amount: int,
        reason: TransactionType,
        note: str,
        correlation_id: str | None,
        idempotency_key: str | None,
    ) -> CreditTransaction:
        entry = CreditTransaction(
            user_id=identity,
            amount=amount,
            type=reason,
            description=note,
            story_id=correlation_id,
            idempotency_key=idempotency_key,
        )
        return self.transactions.append(entry)

    def _replay(self, identity: str, idempotency_key: str | None) -> LedgerResult | None:
        if not idempotency_key:
            return None
        existing = self.transactions.find_by_idempotency_key(identity, idempotency_key)
        if existing is None:
            return None
        self.log.info(
            "ledger replay ignored",
            extra={"user_id": identity, "idempotency_key": idempotency_key},
        )
        return LedgerResult(
            success=True,
            new_balance=self.get_balance(identity),
            entry=existing,
            replayed=True,
        )

    def _require_positive(self, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("credit amount must be a positive integer")

    def _identity_lock(self, identity: str) -> Lock:
        return self._locks[hash(identity) % len(self._locks)]
