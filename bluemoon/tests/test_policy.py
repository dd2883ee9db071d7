"""
Unit Tests for the Reward Policy

Tests cover:
1. Per-referral reward tiers
2. Exact-count milestone bonus
3. Tier progress shown on the dashboard
"""

import pytest

from bluemoon import policy
from bluemoon.config import Settings


class TestRewardAmount:
    """Tests for the two reward tiers."""

    @pytest.mark.parametrize("count", [0, 1, 4])
    def test_base_tier_below_five(self, count):
        """Below 5 qualified referrals pays the base tier."""
        assert policy.reward_amount(count) == 2000

    @pytest.mark.parametrize("count", [5, 6, 10, 50])
    def test_boosted_tier_from_five(self, count):
        """5 or more qualified referrals pays the higher tier."""
        assert policy.reward_amount(count) == 3000

    def test_tiers_follow_settings(self):
        """Tier amounts and threshold come from settings."""
        settings = Settings(base_reward=100, boosted_reward=250, boosted_tier_threshold=2)
        assert policy.reward_amount(1, settings) == 100
        assert policy.reward_amount(2, settings) == 250


class TestMilestoneBonus:
    """Tests for the one-time milestone bonus."""

    def test_exactly_ten_pays_bonus(self):
        """Reaching exactly 10 qualified referrals pays 10000."""
        assert policy.milestone_bonus(10) == 10000

    @pytest.mark.parametrize("count", [0, 9, 11, 20])
    def test_other_counts_pay_nothing(self, count):
        """The milestone is an exact match, not a threshold."""
        assert policy.milestone_bonus(count) == 0


class TestTierProgress:
    """Tests for dashboard tier progress."""

    def test_new_user_progress(self):
        """A user with no qualified referrals is at step zero."""
        progress = policy.tier_progress(0)
        assert progress.progress_percent == 0
        assert progress.steps_completed == 0
        assert progress.current_reward == 2000
        assert progress.next_milestone == 1

    def test_mid_ladder_progress(self):
        """Seven referrals completes the first two steps."""
        progress = policy.tier_progress(7)
        assert progress.progress_percent == pytest.approx(70.0)
        assert progress.steps_completed == 2
        assert progress.current_reward == 3000
        assert progress.next_milestone == 10

    def test_progress_is_capped(self):
        """Progress never exceeds 100 percent."""
        progress = policy.tier_progress(15)
        assert progress.progress_percent == 100.0
        assert progress.steps_completed == 3
        assert progress.next_milestone is None


def test_format_naira():
    """Amounts render with the Naira sign and thousands separators."""
    assert policy.format_naira(2000) == "₦2,000"
    assert policy.format_naira(0) == "₦0"
