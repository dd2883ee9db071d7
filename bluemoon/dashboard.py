"""
Live dashboard and admin projections.

Both views hold explicit store subscriptions. Nothing is applied until
``refresh()`` drains them; a snapshot whose revision is not newer than the
one already applied is dropped, so duplicate or late notifications of the
same change are harmless. ``close()`` tears every subscription down.
"""

from typing import Optional

import structlog

from . import policy
from .accounts import AccountService
from .models import (
    AdminStats,
    DashboardSummary,
    Notification,
    PaymentRequest,
    PaymentStatus,
    Referral,
    ReferralStatus,
    Transaction,
    UserAccount,
)
from .session import Session
from .store import (
    NOTIFICATIONS,
    PAYMENT_REQUESTS,
    REFERRALS,
    TRANSACTIONS,
    USERS,
    Snapshot,
    Subscription,
)

logger = structlog.get_logger(__name__)


class LiveView:
    def __init__(self, session: Session):
        self.session = session
        self._subscriptions: dict[str, Subscription] = {}
        self._snapshots: dict[str, Snapshot] = {}

    def _watch(self, name: str, collection: str, where: Optional[dict] = None) -> None:
        self._subscriptions[name] = self.session.store.subscribe(
            collection, where, order_by="created_at", descending=True
        )

    def refresh(self) -> bool:
        changed = False
        for name, subscription in self._subscriptions.items():
            for snapshot in subscription.drain():
                current = self._snapshots.get(name)
                if current is not None and snapshot.revision <= current.revision:
                    continue
                self._snapshots[name] = snapshot
                changed = True
        return changed

    def documents(self, name: str) -> list[dict]:
        snapshot = self._snapshots.get(name)
        return snapshot.documents if snapshot else []

    def close(self) -> None:
        for subscription in self._subscriptions.values():
            subscription.close()
        logger.debug("live_view_closed", view=type(self).__name__, subscriptions=len(self._subscriptions))
        self._subscriptions.clear()

    def __enter__(self):
        self.refresh()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class UserDashboard(LiveView):
    """What a signed-in user sees: balances, referrals, ledger, payouts, notifications."""

    def __init__(self, session: Session):
        super().__init__(session)
        self.user_id = session.require_user()
        self._watch("user", USERS, {"id": self.user_id})
        self._watch("referrals", REFERRALS, {"referrer_id": self.user_id})
        self._watch("transactions", TRANSACTIONS, {"user_id": self.user_id})
        self._watch("payment_requests", PAYMENT_REQUESTS, {"user_id": self.user_id})
        self._watch("notifications", NOTIFICATIONS, {"user_id": self.user_id})

    @property
    def user(self) -> Optional[UserAccount]:
        rows = self.documents("user")
        return UserAccount(**rows[0]) if rows else None

    @property
    def referrals(self) -> list[Referral]:
        return [Referral(**row) for row in self.documents("referrals")]

    @property
    def transactions(self) -> list[Transaction]:
        return [Transaction(**row) for row in self.documents("transactions")]

    @property
    def payment_requests(self) -> list[PaymentRequest]:
        return [PaymentRequest(**row) for row in self.documents("payment_requests")]

    @property
    def notifications(self) -> list[Notification]:
        return [Notification(**row) for row in self.documents("notifications")]

    def summary(self) -> DashboardSummary:
        user = self.user
        if user is None:
            user = AccountService(self.session).get(self.user_id)
        return DashboardSummary(
            user=user,
            referral_link=AccountService(self.session).referral_link(user.referral_code),
            tier=policy.tier_progress(user.qualified_referrals, self.session.settings),
            referrals=self.referrals,
            transactions=self.transactions,
            payment_requests=self.payment_requests,
            notifications=self.notifications,
        )


class AdminConsole(LiveView):
    def __init__(self, session: Session):
        super().__init__(session)
        session.require_admin()
        self._watch("users", USERS)
        self._watch("referrals", REFERRALS)
        self._watch("payment_requests", PAYMENT_REQUESTS)

    def stats(self) -> AdminStats:
        referrals = self.documents("referrals")
        return AdminStats(
            total_users=len(self.documents("users")),
            total_referrals=len(referrals),
            qualified_referrals=sum(
                1 for row in referrals if row["status"] != ReferralStatus.PENDING.value
            ),
            pending_payments=sum(
                1 for row in self.documents("payment_requests")
                if row["status"] == PaymentStatus.PENDING.value
            ),
        )

    @property
    def pending_referrals(self) -> list[Referral]:
        return [
            Referral(**row) for row in self.documents("referrals")
            if row["status"] != ReferralStatus.CREDITED.value
        ]

    @property
    def open_payment_requests(self) -> list[PaymentRequest]:
        return [
            PaymentRequest(**row) for row in self.documents("payment_requests")
            if row["status"] == PaymentStatus.PENDING.value
        ]
