from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict


class TransactionType(str, Enum):
    REFERRAL_REWARD = "referral_reward"
    REFERRED_BONUS = "referred_bonus"
    MILESTONE_BONUS = "milestone_bonus"
    PAYMENT = "payment"

    @property
    def is_credit(self) -> bool:
        return self is not TransactionType.PAYMENT

    @property
    def label(self) -> str:
        return _TRANSACTION_LABELS[self]


_TRANSACTION_LABELS = {
    TransactionType.REFERRAL_REWARD: "Referral Reward",
    TransactionType.REFERRED_BONUS: "Welcome Bonus",
    TransactionType.MILESTONE_BONUS: "Milestone Bonus",
    TransactionType.PAYMENT: "Payment",
}


class ReferralStatus(str, Enum):
    PENDING = "pending"
    QUALIFIED = "qualified"
    CREDITED = "credited"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class BankDetails(BaseModel):
    bank_name: str
    account_number: str
    account_name: str


class UserAccount(BaseModel):
    id: str
    display_name: str = ""
    email: str = ""
    phone: str = ""
    referral_code: str
    referred_by: str = ""
    total_referrals: int = 0
    qualified_referrals: int = 0
    total_earnings: int = 0
    available_balance: int = 0
    paid_out: int = 0
    bank_details: Optional[BankDetails] = None
    is_admin: bool = False
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Referral(BaseModel):
    id: str
    referrer_id: str
    referrer_name: str = ""
    referred_user_id: str
    referred_name: str = ""
    referred_email: str = ""
    referred_phone: str = ""
    referral_code: str
    status: ReferralStatus
    service_used: bool = False
    service_name: str = ""
    referrer_reward: int = 0
    created_at: datetime
    qualified_at: Optional[datetime] = None
    credited_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_qualify(self) -> bool:
        return self.status == ReferralStatus.PENDING

    def can_credit(self) -> bool:
        return self.status == ReferralStatus.QUALIFIED


class Transaction(BaseModel):
    id: str
    user_id: str
    type: TransactionType
    amount: int
    description: str
    referral_id: Optional[str] = None
    payment_request_id: Optional[str] = None
    status: str = "completed"
    idempotency_key: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def signed_amount(self) -> int:
        return self.amount if self.type.is_credit else -self.amount


class PaymentRequest(BaseModel):
    id: str
    user_id: str
    user_name: str = ""
    amount: int
    bank_details: BankDetails
    status: PaymentStatus
    admin_note: str = ""
    processed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_open(self) -> bool:
        return self.status == PaymentStatus.PENDING


class Notification(BaseModel):
    id: str
    user_id: str
    message: str
    read: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Requests

class RegisterRequest(BaseModel):
    display_name: str = ""
    email: str = ""
    phone: str = ""
    referral_code: Optional[str] = Field(default=None, description="Code of the user who referred this one")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "display_name": "Ada Obi",
            "email": "ada@example.com",
            "phone": "+2348012345678",
            "referral_code": "BM-7KQ2XZ",
        }
    })


class ProfileUpdateRequest(BaseModel):
    display_name: str
    phone: str = ""


class BankDetailsRequest(BaseModel):
    bank_name: str
    account_number: str
    account_name: str


class QualifyReferralRequest(BaseModel):
    service_name: str = Field(..., description="Service the referred user paid for, e.g. Laundry")


class PayoutRequest(BaseModel):
    amount: int


class RejectPaymentRequest(BaseModel):
    note: str = ""


# Responses

class QualifyResponse(BaseModel):
    referral: Referral
    welcome_bonus: Optional[Transaction] = None
    message: str


class CreditResponse(BaseModel):
    referral: Referral
    reward: Transaction
    milestone_bonus: Optional[Transaction] = None
    total_awarded: int
    message: str


class PayoutResponse(BaseModel):
    payment_request: PaymentRequest
    transaction: Optional[Transaction] = None
    message: str


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: list[Transaction]
    total_count: int
    available_balance: int


class BalanceReport(BaseModel):
    user_id: str
    total_earnings: int
    available_balance: int
    paid_out: int
    ledger_credits: int
    ledger_debits: int
    reserved: int
    expected_available_balance: int

    @property
    def in_sync(self) -> bool:
        return (
            self.total_earnings == self.ledger_credits
            and self.paid_out == self.ledger_debits
            and self.available_balance == self.expected_available_balance
        )


class TierProgress(BaseModel):
    qualified_referrals: int
    progress_percent: float
    steps_completed: int
    current_reward: int
    next_milestone: Optional[int] = None


class AdminStats(BaseModel):
    total_users: int = 0
    total_referrals: int = 0
    qualified_referrals: int = 0
    pending_payments: int = 0


class DashboardSummary(BaseModel):
    user: UserAccount
    referral_link: str
    tier: TierProgress
    referrals: list[Referral]
    transactions: list[Transaction]
    payment_requests: list[PaymentRequest]
    notifications: list[Notification]
