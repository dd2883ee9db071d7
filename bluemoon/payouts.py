from typing import Optional

import structlog

from .errors import (
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
    StaleWriteError,
    ValidationError,
)
from .ledger import BalanceAggregator, TransactionLedger, payment_key
from .models import BankDetails, PaymentRequest, PaymentStatus, PayoutResponse, TransactionType
from .notifications import NotificationService, payout_completed_message, payout_rejected_message
from .policy import format_naira
from .session import Session
from .store import PAYMENT_REQUESTS, utcnow

logger = structlog.get_logger(__name__)


def _saved_bank_details(user: dict) -> BankDetails:
    # The bank list is only enforced when details are saved.
    saved = user.get("bank_details") or {}
    fields = {name: (saved.get(name) or "").strip() for name in BankDetails.model_fields}
    if not all(fields.values()):
        raise ValidationError("Please save your bank details first.")
    return BankDetails(**fields)


class PayoutService:
    """
    Withdrawal requests: pending -> completed | rejected.

    The requested amount is reserved out of ``available_balance`` when the
    request is made. Approval writes the ``payment`` transaction and bumps
    ``paid_out``; rejection hands the reservation back.
    """

    def __init__(self, session: Session):
        self.session = session
        self.store = session.store
        self.settings = session.settings
        self.ledger = TransactionLedger(self.store)
        self.balances = BalanceAggregator(self.store, self.ledger)
        self.notifications = NotificationService(session)

    def get(self, request_id: str) -> PaymentRequest:
        row = self.store.get_payment_request(request_id)
        if not row:
            raise NotFoundError(f"Payment request {request_id} not found")
        return PaymentRequest(**row)

    def list_for_user(self, user_id: Optional[str] = None) -> list[PaymentRequest]:
        user_id = user_id or self.session.require_user()
        rows = self.store.find(PAYMENT_REQUESTS, {"user_id": user_id}, order_by="created_at", descending=True)
        return [PaymentRequest(**row) for row in rows]

    def list_all(self, status: Optional[PaymentStatus] = None) -> list[PaymentRequest]:
        self.session.require_admin()
        where = {"status": status.value} if status else None
        rows = self.store.find(PAYMENT_REQUESTS, where, order_by="created_at", descending=True)
        return [PaymentRequest(**row) for row in rows]

    def request(self, amount: int) -> PayoutResponse:
        user_id = self.session.require_user()
        minimum = self.settings.minimum_payout
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < minimum:
            raise ValidationError(f"Minimum withdrawal is {format_naira(minimum)}.")

        with self.store.atomic():
            user = self.store.get_user(user_id)
            if not user:
                raise NotFoundError(f"User {user_id} not found")
            available = user.get("available_balance", 0)
            if amount > available:
                raise InsufficientBalanceError("Insufficient balance.")
            details = _saved_bank_details(user)

            self.balances.reserve(user_id, amount)
            request_id = self.store.create_payment_request(
                user_id,
                amount,
                details.model_dump(),
                {"user_name": user.get("display_name", ""), "created_at": utcnow()},
            )

        logger.info("payout_requested", user_id=user_id, payment_request_id=request_id, amount=amount)
        return PayoutResponse(
            payment_request=self.get(request_id),
            message="Payment request submitted! You will be credited shortly.",
        )

    def approve(self, request_id: str) -> PayoutResponse:
        admin_id = self.session.require_admin()

        with self.store.atomic():
            payment_request = self._open(request_id)
            updated = self._transition(payment_request, PaymentStatus.COMPLETED, "")
            transaction = self.ledger.append(
                payment_request.user_id,
                TransactionType.PAYMENT,
                payment_request.amount,
                "Withdrawal to bank account",
                payment_request_id=payment_request.id,
                idempotency_key=payment_key(payment_request.id),
            )
            self.balances.apply_payment(payment_request.user_id, payment_request.amount)
            self.notifications.notify(payment_request.user_id, payout_completed_message(payment_request.amount))

        logger.info(
            "payout_approved",
            payment_request_id=request_id,
            user_id=payment_request.user_id,
            amount=payment_request.amount,
            admin_id=admin_id,
        )
        return PayoutResponse(
            payment_request=updated,
            transaction=transaction,
            message="Payment approved and processed!",
        )

    def reject(self, request_id: str, note: str = "") -> PayoutResponse:
        admin_id = self.session.require_admin()
        note = (note or "").strip()

        with self.store.atomic():
            payment_request = self._open(request_id)
            updated = self._transition(payment_request, PaymentStatus.REJECTED, note)
            # Refund is a direct balance update; rejections are not ledgered.
            self.balances.release(payment_request.user_id, payment_request.amount)
            self.notifications.notify(
                payment_request.user_id, payout_rejected_message(payment_request.amount, note)
            )

        logger.info(
            "payout_rejected",
            payment_request_id=request_id,
            user_id=payment_request.user_id,
            amount=payment_request.amount,
            note=note or None,
            admin_id=admin_id,
        )
        return PayoutResponse(payment_request=updated, message="Payment rejected. Balance restored.")

    def _open(self, request_id: str) -> PaymentRequest:
        payment_request = self.get(request_id)
        if not payment_request.is_open():
            raise InvalidStateTransitionError(
                f"Payment request {request_id} is already {payment_request.status.value}"
            )
        return payment_request

    def _transition(self, payment_request: PaymentRequest, status: PaymentStatus, note: str) -> PaymentRequest:
        try:
            row = self.store.update_payment_request(
                payment_request.id,
                status.value,
                note,
                expected_status=PaymentStatus.PENDING.value,
                fields={"processed_at": utcnow()},
            )
        except StaleWriteError as exc:
            raise InvalidStateTransitionError(str(exc)) from exc
        return PaymentRequest(**row)
