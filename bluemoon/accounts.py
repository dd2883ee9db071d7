import random
import re
import time
from typing import Optional

import structlog

from .errors import DuplicateKeyError, NotFoundError, ValidationError
from .models import BankDetails, ReferralStatus, UserAccount
from .session import Session
from .store import USERS, utcnow

logger = structlog.get_logger(__name__)

CODE_CHARSET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_ATTEMPTS = 10
ACCOUNT_NUMBER_PATTERN = re.compile(r"^\d{10}$")

NIGERIAN_BANKS = (
    "Access Bank", "Citibank Nigeria", "Ecobank Nigeria", "Fidelity Bank",
    "First Bank of Nigeria", "First City Monument Bank (FCMB)", "Globus Bank",
    "Guaranty Trust Bank (GTBank)", "Heritage Bank", "Jaiz Bank", "Keystone Bank",
    "Kuda Bank", "OPay", "PalmPay", "Polaris Bank", "Providus Bank",
    "Stanbic IBTC Bank", "Standard Chartered Bank", "Sterling Bank",
    "Titan Trust Bank", "Union Bank of Nigeria", "United Bank for Africa (UBA)",
    "Unity Bank", "VFD Microfinance Bank", "Wema Bank", "Zenith Bank",
)


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while number:
        number, remainder = divmod(number, 36)
        out = digits[remainder] + out
    return out or "0"


def validate_bank_details(bank_name: str, account_number: str, account_name: str) -> BankDetails:
    bank_name = (bank_name or "").strip()
    account_number = (account_number or "").strip()
    account_name = (account_name or "").strip()

    if not bank_name or not account_number or not account_name:
        raise ValidationError("Please fill in all bank details.")
    if bank_name not in NIGERIAN_BANKS:
        raise ValidationError(f"Unsupported bank: {bank_name}")
    if not ACCOUNT_NUMBER_PATTERN.match(account_number):
        raise ValidationError("Account number must be 10 digits.")
    return BankDetails(bank_name=bank_name, account_number=account_number, account_name=account_name)


class AccountService:
    """Registration, profile and payout-details management for BlueMoon users."""

    def __init__(self, session: Session):
        self.session = session
        self.store = session.store
        self.settings = session.settings

    def generate_referral_code(self) -> str:
        suffix = "".join(random.choices(CODE_CHARSET, k=self.settings.referral_code_length))
        return f"{self.settings.referral_code_prefix}{suffix}"

    def register(
        self,
        uid: str,
        display_name: str = "",
        email: str = "",
        phone: str = "",
        referral_code: Optional[str] = None,
    ) -> UserAccount:
        """
        Create the account for a freshly authenticated user.

        A referral is recorded when ``referral_code`` resolves to another
        user. An unknown code, or the user's own code, is ignored and
        registration still succeeds.
        """
        referral_code = (referral_code or "").strip().upper()
        now = utcnow()

        with self.store.atomic():
            if self.store.get_user(uid):
                raise ValidationError(f"User {uid} is already registered")

            own_code = self._claim_referral_code(uid, display_name)
            self.store.put_user(uid, {
                "display_name": display_name,
                "email": email.lower().strip(),
                "phone": phone,
                "referral_code": own_code,
                "referred_by": referral_code,
                "total_referrals": 0,
                "qualified_referrals": 0,
                "total_earnings": 0,
                "available_balance": 0,
                "paid_out": 0,
                "bank_details": None,
                "is_admin": uid in self.settings.bootstrap_admins,
                "created_at": now,
                "updated_at": now,
            })

            if referral_code:
                self._record_referral(uid, display_name, email, phone, referral_code)

        logger.info("user_registered", user_id=uid, referral_code=own_code, referred_by=referral_code or None)
        return self.get(uid)

    def get(self, user_id: Optional[str] = None) -> UserAccount:
        user_id = user_id or self.session.require_user()
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return UserAccount(**user)

    def update_profile(self, display_name: str, phone: str = "") -> UserAccount:
        user_id = self.session.require_user()
        display_name = (display_name or "").strip()
        if not display_name:
            raise ValidationError("Name cannot be empty.")
        self.get(user_id)
        self.store.put_user(user_id, {
            "display_name": display_name,
            "phone": (phone or "").strip(),
            "updated_at": utcnow(),
        })
        return self.get(user_id)

    def save_bank_details(self, bank_name: str, account_number: str, account_name: str) -> UserAccount:
        user_id = self.session.require_user()
        details = validate_bank_details(bank_name, account_number, account_name)
        self.get(user_id)
        self.store.put_user(user_id, {"bank_details": details.model_dump(), "updated_at": utcnow()})
        logger.info("bank_details_saved", user_id=user_id, bank_name=details.bank_name)
        return self.get(user_id)

    def promote_to_admin(self, user_id: str) -> UserAccount:
        admin_id = self.session.require_admin()
        self.get(user_id)
        self.store.put_user(user_id, {"is_admin": True, "updated_at": utcnow()})
        logger.info("user_promoted_to_admin", user_id=user_id, promoted_by=admin_id)
        return self.get(user_id)

    def list_all(self) -> list[UserAccount]:
        self.session.require_admin()
        rows = self.store.find(USERS, order_by="created_at", descending=True)
        return [UserAccount(**row) for row in rows]

    def referral_link(self, code: str) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/register.html?ref={code}"

    def _claim_referral_code(self, uid: str, display_name: str) -> str:
        for _ in range(CODE_ATTEMPTS):
            code = self.generate_referral_code()
            try:
                self.store.register_referral_code(code, uid, display_name)
                return code
            except DuplicateKeyError:
                continue

        code = self.generate_referral_code() + _base36(int(time.time() * 1000))[-3:].upper()
        self.store.register_referral_code(code, uid, display_name)
        return code

    def _record_referral(self, uid: str, display_name: str, email: str, phone: str, code: str) -> None:
        owner = self.store.resolve_referral_code(code)
        if not owner:
            logger.info("referral_code_unresolved", user_id=uid, referral_code=code)
            return
        referrer_id = owner["uid"]
        if referrer_id == uid:
            return

        self.store.create_referral(referrer_id, uid, {
            "referrer_name": owner.get("display_name", ""),
            "referred_name": display_name,
            "referred_email": email.lower().strip(),
            "referred_phone": phone,
            "referral_code": code,
            "status": ReferralStatus.PENDING.value,
            "service_used": False,
            "service_name": "",
            "referrer_reward": 0,
            "created_at": utcnow(),
            "qualified_at": None,
            "credited_at": None,
        })

        referrer = self.store.get_user(referrer_id)
        if referrer:
            self.store.put_user(referrer_id, {
                "total_referrals": referrer.get("total_referrals", 0) + 1,
                "updated_at": utcnow(),
            })
        logger.info("referral_created", referrer_id=referrer_id, referred_id=uid)
