"""
BlueMoon Referral Rewards

This package provides:
- Reward policy: per-referral tiers and the one-time milestone bonus
- Referral lifecycle: pending → qualified → credited
- Append-only transaction ledger with idempotent bonus issuance
- Balance aggregation and reconciliation against the ledger
- Payout workflow: pending → completed / rejected
"""

from .models import (
    TransactionType,
    ReferralStatus,
    PaymentStatus,
    UserAccount,
    Referral,
    Transaction,
    PaymentRequest,
)
from .session import Session
from .store import DocumentStore, InMemoryDocumentStore
from .accounts import AccountService
from .referrals import ReferralService
from .payouts import PayoutService
from .ledger import TransactionLedger, BalanceAggregator

__all__ = [
    "TransactionType",
    "ReferralStatus",
    "PaymentStatus",
    "UserAccount",
    "Referral",
    "Transaction",
    "PaymentRequest",
    "Session",
    "DocumentStore",
    "InMemoryDocumentStore",
    "AccountService",
    "ReferralService",
    "PayoutService",
    "TransactionLedger",
    "BalanceAggregator",
]
