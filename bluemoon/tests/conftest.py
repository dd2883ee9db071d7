import pytest

from bluemoon.accounts import AccountService
from bluemoon.config import Settings
from bluemoon.ledger import BalanceAggregator, TransactionLedger
from bluemoon.models import TransactionType
from bluemoon.session import Session
from bluemoon.store import InMemoryDocumentStore, referral_id_for

ADMIN_ID = "admin-001"


@pytest.fixture
def settings() -> Settings:
    return Settings(bootstrap_admins=[ADMIN_ID], log_json=False)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def admin(store, settings) -> Session:
    session = Session(store, ADMIN_ID, settings)
    AccountService(session).register(ADMIN_ID, display_name="BlueMoon Admin", email="admin@bluemoon.ng")
    return session


@pytest.fixture
def register(store, settings):
    """Register a user and return their session."""

    def _register(uid: str, name: str = "", referral_code: str = None, email: str = "") -> Session:
        session = Session(store, uid, settings)
        AccountService(session).register(
            uid,
            display_name=name or uid.title(),
            email=email or f"{uid}@example.com",
            referral_code=referral_code,
        )
        return session

    return _register


@pytest.fixture
def referral_pair(register, store):
    """A referrer and a user who signed up with the referrer's code; returns (referrer_id, referred_id, referral_id)."""
    register("tola", name="Tola Referrer")
    code = store.get_user("tola")["referral_code"]
    register("chidi", name="Chidi Referred", referral_code=code)
    return "tola", "chidi", referral_id_for("tola", "chidi")


@pytest.fixture
def fund(store):
    """Credit a user through the ledger so balances stay reconciled."""

    def _fund(user_id: str, amount: int) -> None:
        ledger = TransactionLedger(store)
        with store.atomic():
            ledger.append(user_id, TransactionType.REFERRAL_REWARD, amount, "Seed credit")
            BalanceAggregator(store, ledger).apply_credit(user_id, amount)

    return _fund
