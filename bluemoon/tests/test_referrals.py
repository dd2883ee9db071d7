"""
Unit Tests for the Referral Lifecycle

Tests cover:
1. Referral creation at registration
2. Qualifying (pending -> qualified) and the welcome bonus
3. Awarding credit (qualified -> credited) and the milestone bonus
4. Idempotency and all-or-nothing writes
"""

import pytest

from bluemoon.errors import (
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StoreError,
    ValidationError,
)
from bluemoon.ledger import BalanceAggregator, TransactionLedger, milestone_bonus_key, referred_bonus_key
from bluemoon.models import ReferralStatus, TransactionType
from bluemoon.notifications import NotificationService
from bluemoon.referrals import ReferralService
from bluemoon.session import Session
from bluemoon.store import NOTIFICATIONS, TRANSACTIONS, referral_id_for


class TestReferralCreation:
    """Tests for referral records created at sign-up."""

    def test_signup_with_code_creates_pending_referral(self, referral_pair, admin):
        """A valid code records a pending referral with no reward."""
        referrer_id, referred_id, referral_id = referral_pair

        referral = ReferralService(admin).get(referral_id)

        assert referral.status == ReferralStatus.PENDING
        assert referral.referrer_id == referrer_id
        assert referral.referred_user_id == referred_id
        assert referral.referrer_name == "Tola Referrer"
        assert referral.referrer_reward == 0
        assert referral.service_used is False

    def test_signup_counts_towards_total_referrals(self, referral_pair, store):
        """The referrer's total_referrals goes up; qualified does not."""
        referrer = store.get_user("tola")
        assert referrer["total_referrals"] == 1
        assert referrer["qualified_referrals"] == 0

    def test_unknown_code_still_registers(self, register, store):
        """An unresolvable code creates no referral but the account exists."""
        register("ngozi", referral_code="BM-NOPE99")

        assert store.get_user("ngozi") is not None
        assert store.find("referrals") == []


class TestQualifyReferral:
    """Tests for the pending -> qualified transition."""

    def test_qualify_pending_referral(self, referral_pair, admin, store):
        """Qualifying sets the service, bumps the counter and pays the welcome bonus once."""
        referrer_id, referred_id, referral_id = referral_pair

        response = ReferralService(admin).qualify(referral_id, "Laundry")

        assert response.referral.status == ReferralStatus.QUALIFIED
        assert response.referral.service_name == "Laundry"
        assert response.referral.service_used is True
        assert response.referral.qualified_at is not None
        assert store.get_user(referrer_id)["qualified_referrals"] == 1

        bonuses = TransactionLedger(store).query(referred_id, TransactionType.REFERRED_BONUS)
        assert len(bonuses) == 1
        assert bonuses[0].amount == 500
        assert response.welcome_bonus.id == bonuses[0].id

        referred = store.get_user(referred_id)
        assert referred["total_earnings"] == 500
        assert referred["available_balance"] == 500

    def test_qualify_twice_is_rejected(self, referral_pair, admin, store):
        """A second qualify fails and issues no second bonus."""
        referrer_id, referred_id, referral_id = referral_pair
        service = ReferralService(admin)
        service.qualify(referral_id, "Laundry")

        with pytest.raises(InvalidStateTransitionError):
            service.qualify(referral_id, "Laundry")

        assert len(TransactionLedger(store).query(referred_id, TransactionType.REFERRED_BONUS)) == 1
        assert store.get_user(referrer_id)["qualified_referrals"] == 1

    def test_existing_welcome_bonus_is_not_reissued(self, referral_pair, admin, store):
        """A referred user who already got a welcome bonus gets nothing more."""
        _, referred_id, referral_id = referral_pair
        ledger = TransactionLedger(store)
        with store.atomic():
            ledger.append(
                referred_id, TransactionType.REFERRED_BONUS, 500, "Earlier bonus",
                idempotency_key=referred_bonus_key(referred_id),
            )
            BalanceAggregator(store, ledger).apply_credit(referred_id, 500)

        response = ReferralService(admin).qualify(referral_id, "Dry Cleaning")

        assert response.welcome_bonus is None
        assert response.referral.status == ReferralStatus.QUALIFIED
        assert len(ledger.query(referred_id, TransactionType.REFERRED_BONUS)) == 1
        assert store.get_user(referred_id)["total_earnings"] == 500

    def test_second_referral_of_same_user_pays_one_bonus(self, referral_pair, register, admin, store):
        """Two referrals pointing at one user still yield a single welcome bonus."""
        _, referred_id, referral_id = referral_pair
        register("bisi")
        store.create_referral("bisi", referred_id, {
            "referral_code": store.get_user("bisi")["referral_code"],
            "status": ReferralStatus.PENDING.value,
        })
        service = ReferralService(admin)

        service.qualify(referral_id, "Laundry")
        second = service.qualify(referral_id_for("bisi", referred_id), "Ironing")

        assert second.welcome_bonus is None
        assert len(TransactionLedger(store).query(referred_id, TransactionType.REFERRED_BONUS)) == 1

    def test_qualify_notifies_both_parties(self, referral_pair, admin, store):
        """The referrer hears the referral qualified; the referred user hears about the bonus."""
        referrer_id, referred_id, referral_id = referral_pair

        ReferralService(admin).qualify(referral_id, "Laundry")

        referrer_messages = [n.message for n in NotificationService(admin).list_for_user(referrer_id)]
        referred_messages = [n.message for n in NotificationService(admin).list_for_user(referred_id)]
        assert any("now qualified for credit" in m for m in referrer_messages)
        assert any("₦500 welcome bonus" in m for m in referred_messages)

    def test_blank_service_name_is_rejected(self, referral_pair, admin, store):
        """Qualifying needs a service name."""
        _, _, referral_id = referral_pair

        with pytest.raises(ValidationError):
            ReferralService(admin).qualify(referral_id, "   ")

        assert store.get_referral(referral_id)["status"] == ReferralStatus.PENDING.value

    def test_non_admin_cannot_qualify(self, referral_pair, store, settings):
        """Only admins may qualify referrals."""
        referrer_id, _, referral_id = referral_pair

        with pytest.raises(PermissionDeniedError):
            ReferralService(Session(store, referrer_id, settings)).qualify(referral_id, "Laundry")

    def test_unknown_referral(self, admin):
        """Qualifying a missing referral is a not-found error."""
        with pytest.raises(NotFoundError):
            ReferralService(admin).qualify("nobody_nowhere", "Laundry")


class TestAwardCredit:
    """Tests for the qualified -> credited transition."""

    def test_credit_first_referral(self, referral_pair, admin, store):
        """The first credited referral pays the base tier."""
        referrer_id, _, referral_id = referral_pair
        service = ReferralService(admin)
        service.qualify(referral_id, "Laundry")

        response = service.award_credit(referral_id)

        assert response.referral.status == ReferralStatus.CREDITED
        assert response.referral.referrer_reward == 2000
        assert response.referral.credited_at is not None
        assert response.reward.type == TransactionType.REFERRAL_REWARD
        assert response.reward.amount == 2000
        assert response.reward.referral_id == referral_id
        assert response.milestone_bonus is None
        assert response.total_awarded == 2000

        referrer = store.get_user(referrer_id)
        assert referrer["total_earnings"] == 2000
        assert referrer["available_balance"] == 2000

    def test_credit_at_milestone_pays_both(self, referral_pair, admin, store):
        """At exactly 10 qualified referrals the reward and milestone are both paid."""
        referrer_id, _, referral_id = referral_pair
        store.put_user(referrer_id, {"qualified_referrals": 9})
        service = ReferralService(admin)
        service.qualify(referral_id, "Laundry")

        response = service.award_credit(referral_id)

        assert response.reward.amount == 3000
        assert response.milestone_bonus is not None
        assert response.milestone_bonus.amount == 10000
        assert response.total_awarded == 13000

        referrer = store.get_user(referrer_id)
        assert referrer["total_earnings"] == 13000
        assert referrer["available_balance"] == 13000
        assert response.referral.referrer_reward == 3000

    def test_credit_twice_is_rejected(self, referral_pair, admin, store):
        """A credited referral cannot be credited again and no transactions are added."""
        referrer_id, _, referral_id = referral_pair
        store.put_user(referrer_id, {"qualified_referrals": 9})
        service = ReferralService(admin)
        service.qualify(referral_id, "Laundry")
        service.award_credit(referral_id)
        before = len(store.find(TRANSACTIONS, {"user_id": referrer_id}))

        with pytest.raises(InvalidStateTransitionError):
            service.award_credit(referral_id)

        assert len(store.find(TRANSACTIONS, {"user_id": referrer_id})) == before
        assert store.get_user(referrer_id)["total_earnings"] == 13000

    def test_pending_referral_cannot_be_credited(self, referral_pair, admin):
        """Crediting skips no states."""
        _, _, referral_id = referral_pair

        with pytest.raises(InvalidStateTransitionError):
            ReferralService(admin).award_credit(referral_id)

    def test_milestone_is_paid_only_once(self, referral_pair, admin, store):
        """An already-issued milestone bonus is not paid again."""
        referrer_id, _, referral_id = referral_pair
        ledger = TransactionLedger(store)
        with store.atomic():
            ledger.append(
                referrer_id, TransactionType.MILESTONE_BONUS, 10000, "Earlier milestone",
                idempotency_key=milestone_bonus_key(referrer_id, 10),
            )
            BalanceAggregator(store, ledger).apply_credit(referrer_id, 10000)
        store.put_user(referrer_id, {"qualified_referrals": 9})
        service = ReferralService(admin)
        service.qualify(referral_id, "Laundry")

        response = service.award_credit(referral_id)

        assert response.milestone_bonus is None
        assert response.total_awarded == 3000
        assert len(ledger.query(referrer_id, TransactionType.MILESTONE_BONUS)) == 1
        assert store.get_user(referrer_id)["total_earnings"] == 13000

    def test_failed_credit_leaves_no_partial_writes(self, referral_pair, admin, store, monkeypatch):
        """If any step fails, the reward, balance and status all stay as they were."""
        referrer_id, _, referral_id = referral_pair
        service = ReferralService(admin)
        service.qualify(referral_id, "Laundry")
        notifications_before = len(store.find(NOTIFICATIONS))

        def broken_notify(user_id, message):
            raise StoreError("notifications unavailable")

        monkeypatch.setattr(service.notifications, "notify", broken_notify)

        with pytest.raises(StoreError):
            service.award_credit(referral_id)

        assert store.get_referral(referral_id)["status"] == ReferralStatus.QUALIFIED.value
        assert TransactionLedger(store).query(referrer_id, TransactionType.REFERRAL_REWARD) == []
        assert store.get_user(referrer_id)["total_earnings"] == 0
        assert len(store.find(NOTIFICATIONS)) == notifications_before

        # A retry after the outage succeeds exactly once.
        monkeypatch.undo()
        response = service.award_credit(referral_id)
        assert response.total_awarded == 2000

    def test_credit_notifies_referrer(self, referral_pair, admin):
        """The referrer is told how much they earned."""
        referrer_id, _, referral_id = referral_pair
        service = ReferralService(admin)
        service.qualify(referral_id, "Laundry")
        service.award_credit(referral_id)

        messages = [n.message for n in NotificationService(admin).list_for_user(referrer_id)]
        assert messages[0] == "You earned ₦2,000 for referral #1!"


class TestEarningsInvariant:
    """total_earnings always equals the sum of credit transactions."""

    def test_earnings_match_ledger_across_referrals(self, register, admin, store):
        """Crediting several referrals keeps every account reconciled."""
        register("kemi", name="Kemi")
        code = store.get_user("kemi")["referral_code"]
        service = ReferralService(admin)
        for index in range(6):
            uid = f"friend-{index}"
            register(uid, referral_code=code)
            referral_id = referral_id_for("kemi", uid)
            service.qualify(referral_id, "Laundry")
            service.award_credit(referral_id)

        credits = sum(t.amount for t in TransactionLedger(store).query("kemi"))
        assert credits == 4 * 2000 + 2 * 3000
        assert store.get_user("kemi")["total_earnings"] == credits

        aggregator = BalanceAggregator(store)
        assert aggregator.reconcile("kemi").in_sync
        for index in range(6):
            assert aggregator.reconcile(f"friend-{index}").in_sync
