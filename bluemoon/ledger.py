"""
Transaction ledger and balance aggregation.

Transactions are append-only. The money fields on a user record
(``total_earnings``, ``available_balance``, ``paid_out``) are caches of the
ledger and are only changed here, inside the same atomic unit as the ledger
write that justifies them. Payout reservations and rejection refunds are the
one exception: they move ``available_balance`` without a transaction, and
``reconcile`` accounts for them through the open payment requests.
"""

from typing import Optional

import structlog

from .errors import DuplicateKeyError, InsufficientBalanceError, NotFoundError, ValidationError
from .models import BalanceReport, LedgerHistoryResponse, PaymentStatus, Transaction, TransactionType
from .store import PAYMENT_REQUESTS, TRANSACTIONS, USERS, DocumentStore, utcnow

logger = structlog.get_logger(__name__)


def referred_bonus_key(user_id: str) -> str:
    return f"referred_bonus:{user_id}"


def milestone_bonus_key(user_id: str, threshold: int) -> str:
    return f"milestone_bonus:{user_id}:{threshold}"


def referral_reward_key(referral_id: str) -> str:
    return f"referral_reward:{referral_id}"


def payment_key(payment_request_id: str) -> str:
    return f"payment:{payment_request_id}"


class TransactionLedger:
    def __init__(self, store: DocumentStore):
        self.store = store

    def append(
        self,
        user_id: str,
        type: TransactionType,
        amount: int,
        description: str,
        referral_id: Optional[str] = None,
        payment_request_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        if amount <= 0:
            raise ValidationError(f"Transaction amount must be positive, got {amount}")

        transaction_id = self.store.append_transaction(
            user_id,
            type.value,
            amount,
            description,
            metadata={
                "referral_id": referral_id,
                "payment_request_id": payment_request_id,
            },
            idempotency_key=idempotency_key,
        )
        transaction = Transaction(**self.store.get(TRANSACTIONS, transaction_id))
        logger.info(
            "transaction_appended",
            transaction_id=transaction.id,
            user_id=user_id,
            type=type.value,
            amount=amount,
        )
        return transaction

    def issue_once(
        self,
        user_id: str,
        type: TransactionType,
        amount: int,
        description: str,
        idempotency_key: str,
        referral_id: Optional[str] = None,
        payment_request_id: Optional[str] = None,
    ) -> Optional[Transaction]:
        """Append unless a transaction with ``idempotency_key`` exists; ``None`` means it did."""
        try:
            return self.append(
                user_id,
                type,
                amount,
                description,
                referral_id=referral_id,
                payment_request_id=payment_request_id,
                idempotency_key=idempotency_key,
            )
        except DuplicateKeyError:
            logger.info("transaction_already_issued", user_id=user_id, idempotency_key=idempotency_key)
            return None

    def query(self, user_id: str, type: Optional[TransactionType] = None) -> list[Transaction]:
        rows = self.store.query_transactions(user_id, type.value if type else None)
        return [Transaction(**row) for row in rows]

    def history(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")

        entries = self.query(user_id)
        entries.reverse()
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            available_balance=user.get("available_balance", 0),
        )

    def totals(self, user_id: str) -> tuple[int, int]:
        credits = debits = 0
        for transaction in self.query(user_id):
            if transaction.type.is_credit:
                credits += transaction.amount
            else:
                debits += transaction.amount
        return credits, debits


class BalanceAggregator:
    def __init__(self, store: DocumentStore, ledger: Optional[TransactionLedger] = None):
        self.store = store
        self.ledger = ledger or TransactionLedger(store)

    def apply_credit(self, user_id: str, amount: int) -> dict:
        with self.store.atomic():
            user = self._load(user_id)
            return self._write(user, {
                "total_earnings": user.get("total_earnings", 0) + amount,
                "available_balance": user.get("available_balance", 0) + amount,
            })

    def apply_payment(self, user_id: str, amount: int) -> dict:
        # The amount already left available_balance when the payout was requested.
        with self.store.atomic():
            user = self._load(user_id)
            return self._write(user, {"paid_out": user.get("paid_out", 0) + amount})

    def reserve(self, user_id: str, amount: int) -> dict:
        with self.store.atomic():
            user = self._load(user_id)
            available = user.get("available_balance", 0)
            if amount > available:
                raise InsufficientBalanceError(
                    f"Insufficient balance. Available: {available}, Requested: {amount}"
                )
            return self._write(user, {"available_balance": available - amount})

    def release(self, user_id: str, amount: int) -> dict:
        with self.store.atomic():
            user = self._load(user_id)
            return self._write(user, {"available_balance": user.get("available_balance", 0) + amount})

    def reconcile(self, user_id: str) -> BalanceReport:
        user = self._load(user_id)
        credits, debits = self.ledger.totals(user_id)
        reserved = sum(
            request["amount"]
            for request in self.store.find(
                PAYMENT_REQUESTS,
                {"user_id": user_id, "status": PaymentStatus.PENDING.value},
            )
        )
        report = BalanceReport(
            user_id=user_id,
            total_earnings=user.get("total_earnings", 0),
            available_balance=user.get("available_balance", 0),
            paid_out=user.get("paid_out", 0),
            ledger_credits=credits,
            ledger_debits=debits,
            reserved=reserved,
            expected_available_balance=credits - debits - reserved,
        )
        if not report.in_sync:
            logger.warning("balance_drift_detected", **report.model_dump())
        return report

    def _load(self, user_id: str) -> dict:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def _write(self, user: dict, fields: dict) -> dict:
        # Compare-and-set on the fields being replaced.
        expected = {key: user[key] for key in fields if key in user}
        return self.store.update(USERS, user["id"], dict(fields, updated_at=utcnow()), expected)
