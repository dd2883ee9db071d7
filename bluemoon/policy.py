"""
Reward policy.

Pure functions of a referrer's qualified-referral count. The count passed in
is the referrer's ``qualified_referrals`` after the referral being credited
was qualified, so referral number N is paid at the tier for N.
"""

from typing import Optional

from .config import Settings, get_settings
from .models import TierProgress


def reward_amount(qualified_count: int, settings: Optional[Settings] = None) -> int:
    settings = settings or get_settings()
    if qualified_count >= settings.boosted_tier_threshold:
        return settings.boosted_reward
    return settings.base_reward


def milestone_bonus(qualified_count: int, settings: Optional[Settings] = None) -> int:
    # Exact match only: reaching 11 later must not pay again.
    settings = settings or get_settings()
    if qualified_count == settings.milestone_threshold:
        return settings.milestone_bonus
    return 0


def welcome_bonus(settings: Optional[Settings] = None) -> int:
    settings = settings or get_settings()
    return settings.welcome_bonus


def tier_progress(qualified_count: int, settings: Optional[Settings] = None) -> TierProgress:
    settings = settings or get_settings()
    steps = (1, settings.boosted_tier_threshold, settings.milestone_threshold)
    percent = min(qualified_count / settings.milestone_threshold * 100, 100.0)
    upcoming = [step for step in steps if step > qualified_count]
    return TierProgress(
        qualified_referrals=qualified_count,
        progress_percent=percent,
        steps_completed=sum(1 for step in steps if qualified_count >= step),
        current_reward=reward_amount(qualified_count, settings),
        next_milestone=upcoming[0] if upcoming else None,
    )


def format_naira(amount: int) -> str:
    return f"₦{amount:,}"
