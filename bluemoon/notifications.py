from typing import Optional

import structlog

from .errors import NotFoundError, PermissionDeniedError
from .models import Notification
from .policy import format_naira
from .session import Session
from .store import NOTIFICATIONS

logger = structlog.get_logger(__name__)


def welcome_bonus_message(amount: int, service_name: str) -> str:
    return (
        f"You earned {format_naira(amount)} welcome bonus for your first service "
        f"({service_name}). Thank you for choosing BlueMoon!"
    )


def referral_qualified_message(service_name: str) -> str:
    return (
        f"Your referral used BlueMoon services ({service_name}). "
        "The referral is now qualified for credit!"
    )


def referral_credited_message(reward: int, referral_number: int, milestone: int = 0) -> str:
    message = f"You earned {format_naira(reward)} for referral #{referral_number}!"
    if milestone > 0:
        message += (
            f" Plus a {format_naira(milestone)} milestone bonus for reaching "
            f"{referral_number} referrals!"
        )
    return message


def payout_completed_message(amount: int) -> str:
    return f"Your payment of {format_naira(amount)} has been processed and sent to your bank account."


def payout_rejected_message(amount: int, note: str = "") -> str:
    reason = f" Reason: {note}" if note else ""
    return (
        f"Your payment request of {format_naira(amount)} was declined.{reason} "
        "Your balance has been restored."
    )


class NotificationService:
    def __init__(self, session: Session):
        self.session = session
        self.store = session.store

    def notify(self, user_id: str, message: str) -> Notification:
        notification_id = self.store.add_notification(user_id, message)
        logger.debug("notification_queued", user_id=user_id, notification_id=notification_id)
        return Notification(**self.store.get(NOTIFICATIONS, notification_id))

    def list_for_user(self, user_id: Optional[str] = None, unread_only: bool = False) -> list[Notification]:
        user_id = user_id or self.session.require_user()
        where = {"user_id": user_id}
        if unread_only:
            where["read"] = False
        rows = self.store.find(NOTIFICATIONS, where, order_by="created_at", descending=True)
        return [Notification(**row) for row in rows]

    def mark_read(self, notification_id: str) -> Notification:
        user_id = self.session.require_user()
        row = self.store.get(NOTIFICATIONS, notification_id)
        if not row:
            raise NotFoundError(f"Notification {notification_id} not found")
        if row["user_id"] != user_id:
            raise PermissionDeniedError("Cannot modify another user's notification")
        return Notification(**self.store.update(NOTIFICATIONS, notification_id, {"read": True}))
