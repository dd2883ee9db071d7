"""
Referral lifecycle: pending -> qualified -> credited.

Qualifying and crediting are admin actions. Each runs as one atomic unit of
work; the status change is a compare-and-set on the expected current status,
so a retried or concurrent call loses cleanly instead of paying twice.
"""

from typing import Optional

import structlog

from . import policy
from .errors import InvalidStateTransitionError, NotFoundError, StaleWriteError, ValidationError
from .ledger import (
    BalanceAggregator,
    TransactionLedger,
    milestone_bonus_key,
    referral_reward_key,
    referred_bonus_key,
)
from .models import CreditResponse, QualifyResponse, Referral, ReferralStatus, TransactionType
from .notifications import (
    NotificationService,
    referral_credited_message,
    referral_qualified_message,
    welcome_bonus_message,
)
from .session import Session
from .store import REFERRALS, utcnow

logger = structlog.get_logger(__name__)


class ReferralService:
    def __init__(self, session: Session):
        self.session = session
        self.store = session.store
        self.settings = session.settings
        self.ledger = TransactionLedger(self.store)
        self.balances = BalanceAggregator(self.store, self.ledger)
        self.notifications = NotificationService(session)

    def get(self, referral_id: str) -> Referral:
        row = self.store.get_referral(referral_id)
        if not row:
            raise NotFoundError(f"Referral {referral_id} not found")
        return Referral(**row)

    def list_for_referrer(self, referrer_id: Optional[str] = None) -> list[Referral]:
        referrer_id = referrer_id or self.session.require_user()
        rows = self.store.find(REFERRALS, {"referrer_id": referrer_id}, order_by="created_at", descending=True)
        return [Referral(**row) for row in rows]

    def list_all(self, status: Optional[ReferralStatus] = None) -> list[Referral]:
        self.session.require_admin()
        where = {"status": status.value} if status else None
        rows = self.store.find(REFERRALS, where, order_by="created_at", descending=True)
        return [Referral(**row) for row in rows]

    def qualify(self, referral_id: str, service_name: str) -> QualifyResponse:
        admin_id = self.session.require_admin()
        service_name = (service_name or "").strip()
        if not service_name:
            raise ValidationError("Service name is required to qualify a referral")

        with self.store.atomic():
            referral = self.get(referral_id)
            if not referral.can_qualify():
                raise InvalidStateTransitionError(
                    f"Cannot qualify referral in {referral.status.value} state"
                )
            referrer = self.store.get_user(referral.referrer_id)
            if not referrer:
                raise NotFoundError(f"Referrer {referral.referrer_id} not found")
            referred = self.store.get_user(referral.referred_user_id)
            if not referred:
                raise NotFoundError(f"Referred user {referral.referred_user_id} not found")

            updated = self._transition(
                referral,
                ReferralStatus.QUALIFIED,
                {
                    "service_used": True,
                    "service_name": service_name,
                    "qualified_at": utcnow(),
                },
            )

            self.store.put_user(referral.referrer_id, {
                "qualified_referrals": referrer.get("qualified_referrals", 0) + 1,
                "updated_at": utcnow(),
            })

            bonus = None
            if referred.get("referred_by"):
                bonus = self._issue_welcome_bonus(referral, service_name)

            self.notifications.notify(referral.referrer_id, referral_qualified_message(service_name))

        logger.info(
            "referral_qualified",
            referral_id=referral_id,
            service_name=service_name,
            welcome_bonus_issued=bonus is not None,
            admin_id=admin_id,
        )
        return QualifyResponse(
            referral=updated,
            welcome_bonus=bonus,
            message="Referral qualified! You can now award credit.",
        )

    def award_credit(self, referral_id: str) -> CreditResponse:
        admin_id = self.session.require_admin()

        with self.store.atomic():
            referral = self.get(referral_id)
            if not referral.can_credit():
                raise InvalidStateTransitionError(
                    f"Cannot credit referral in {referral.status.value} state"
                )
            referrer = self.store.get_user(referral.referrer_id)
            if not referrer:
                raise NotFoundError(f"Referrer {referral.referrer_id} not found")

            qualified_count = referrer.get("qualified_referrals", 0)
            reward_amount = policy.reward_amount(qualified_count, self.settings)
            milestone_amount = policy.milestone_bonus(qualified_count, self.settings)

            reward = self.ledger.issue_once(
                referral.referrer_id,
                TransactionType.REFERRAL_REWARD,
                reward_amount,
                f"Referral reward (referral #{qualified_count})",
                idempotency_key=referral_reward_key(referral.id),
                referral_id=referral.id,
            )
            if reward is None:
                raise InvalidStateTransitionError(f"Referral {referral_id} has already been rewarded")

            milestone = None
            if milestone_amount > 0:
                milestone = self.ledger.issue_once(
                    referral.referrer_id,
                    TransactionType.MILESTONE_BONUS,
                    milestone_amount,
                    f"Milestone bonus for reaching {qualified_count} referrals!",
                    idempotency_key=milestone_bonus_key(referral.referrer_id, self.settings.milestone_threshold),
                    referral_id=referral.id,
                )

            total_awarded = reward.amount + (milestone.amount if milestone else 0)
            self.balances.apply_credit(referral.referrer_id, total_awarded)

            updated = self._transition(
                referral,
                ReferralStatus.CREDITED,
                {"referrer_reward": reward.amount, "credited_at": utcnow()},
            )

            self.notifications.notify(
                referral.referrer_id,
                referral_credited_message(
                    reward.amount, qualified_count, milestone.amount if milestone else 0
                ),
            )

        logger.info(
            "referral_credited",
            referral_id=referral_id,
            referrer_id=referral.referrer_id,
            reward=reward.amount,
            milestone_bonus=milestone.amount if milestone else 0,
            admin_id=admin_id,
        )
        return CreditResponse(
            referral=updated,
            reward=reward,
            milestone_bonus=milestone,
            total_awarded=total_awarded,
            message=f"Credited {policy.format_naira(total_awarded)} to referrer!",
        )

    def _issue_welcome_bonus(self, referral: Referral, service_name: str):
        amount = policy.welcome_bonus(self.settings)
        if amount <= 0:
            return None

        bonus = self.ledger.issue_once(
            referral.referred_user_id,
            TransactionType.REFERRED_BONUS,
            amount,
            f"Welcome bonus for first service ({service_name})",
            idempotency_key=referred_bonus_key(referral.referred_user_id),
            referral_id=referral.id,
        )
        if bonus is None:
            logger.info("welcome_bonus_skipped", referred_id=referral.referred_user_id)
            return None

        self.balances.apply_credit(referral.referred_user_id, bonus.amount)
        self.notifications.notify(referral.referred_user_id, welcome_bonus_message(bonus.amount, service_name))
        return bonus

    def _transition(self, referral: Referral, status: ReferralStatus, fields: dict) -> Referral:
        try:
            row = self.store.update_referral_status(
                referral.id, status.value, fields, expected_status=referral.status.value
            )
        except StaleWriteError as exc:
            raise InvalidStateTransitionError(str(exc)) from exc
        return Referral(**row)
