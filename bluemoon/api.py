from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .accounts import AccountService
from .config import get_settings
from .dashboard import AdminConsole, UserDashboard
from .errors import (
    BlueMoonError,
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .ledger import BalanceAggregator, TransactionLedger
from .logging import bind_actor, clear_actor, configure_logging
from .models import (
    AdminStats,
    BalanceReport,
    BankDetailsRequest,
    CreditResponse,
    DashboardSummary,
    LedgerHistoryResponse,
    PaymentRequest,
    PaymentStatus,
    PayoutRequest,
    PayoutResponse,
    ProfileUpdateRequest,
    QualifyReferralRequest,
    QualifyResponse,
    Referral,
    ReferralStatus,
    RegisterRequest,
    RejectPaymentRequest,
    UserAccount,
)
from .payouts import PayoutService
from .referrals import ReferralService
from .session import Session
from .store import DocumentStore, InMemoryDocumentStore

settings = get_settings()
configure_logging(settings)

app = FastAPI(
    title="BlueMoon Rewards API",
    description="Referral rewards ledger for BlueMoon Laundry: referrals, credits and payouts",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

document_store = InMemoryDocumentStore()


def get_store() -> DocumentStore:
    return document_store


def get_session(
    x_user_id: Optional[str] = Header(default=None),
    store: DocumentStore = Depends(get_store),
) -> Session:
    return Session(store, x_user_id or None, settings)


def _http_error(exc: BlueMoonError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, InvalidStateTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


@app.middleware("http")
async def bind_request_actor(request: Request, call_next):
    bind_actor(request.headers.get("x-user-id") or "anonymous")
    try:
        return await call_next(request)
    finally:
        clear_actor()


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "bluemoon-rewards"}


# Users

@app.post("/users", response_model=UserAccount, status_code=status.HTTP_201_CREATED, tags=["Users"])
def register_user(request: RegisterRequest, session: Session = Depends(get_session)) -> UserAccount:
    try:
        uid = session.require_user()
        return AccountService(session).register(
            uid,
            display_name=request.display_name,
            email=request.email,
            phone=request.phone,
            referral_code=request.referral_code,
        )
    except BlueMoonError as e:
        raise _http_error(e)


@app.get("/users/me", response_model=UserAccount, tags=["Users"])
def get_me(session: Session = Depends(get_session)) -> UserAccount:
    try:
        return AccountService(session).get()
    except BlueMoonError as e:
        raise _http_error(e)


@app.patch("/users/me", response_model=UserAccount, tags=["Users"])
def update_me(request: ProfileUpdateRequest, session: Session = Depends(get_session)) -> UserAccount:
    try:
        return AccountService(session).update_profile(request.display_name, request.phone)
    except BlueMoonError as e:
        raise _http_error(e)


@app.put("/users/me/bank-details", response_model=UserAccount, tags=["Users"])
def save_bank_details(request: BankDetailsRequest, session: Session = Depends(get_session)) -> UserAccount:
    try:
        return AccountService(session).save_bank_details(
            request.bank_name, request.account_number, request.account_name
        )
    except BlueMoonError as e:
        raise _http_error(e)


@app.get("/users/me/dashboard", response_model=DashboardSummary, tags=["Users"])
def get_dashboard(session: Session = Depends(get_session)) -> DashboardSummary:
    try:
        with UserDashboard(session) as dashboard:
            return dashboard.summary()
    except BlueMoonError as e:
        raise _http_error(e)


@app.get("/users/me/transactions", response_model=LedgerHistoryResponse, tags=["Users"])
def get_transactions(limit: int = 50, offset: int = 0, session: Session = Depends(get_session)) -> LedgerHistoryResponse:
    try:
        return TransactionLedger(session.store).history(session.require_user(), limit, offset)
    except BlueMoonError as e:
        raise _http_error(e)


@app.get("/users/me/balance", response_model=BalanceReport, tags=["Users"])
def get_balance(session: Session = Depends(get_session)) -> BalanceReport:
    try:
        return BalanceAggregator(session.store).reconcile(session.require_user())
    except BlueMoonError as e:
        raise _http_error(e)


# Payouts

@app.post("/payment-requests", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED, tags=["Payouts"])
def request_payout(request: PayoutRequest, session: Session = Depends(get_session)) -> PayoutResponse:
    try:
        return PayoutService(session).request(request.amount)
    except BlueMoonError as e:
        raise _http_error(e)


@app.post("/payment-requests/{request_id}/approve", response_model=PayoutResponse, tags=["Payouts"])
def approve_payout(request_id: str, session: Session = Depends(get_session)) -> PayoutResponse:
    try:
        return PayoutService(session).approve(request_id)
    except BlueMoonError as e:
        raise _http_error(e)


@app.post("/payment-requests/{request_id}/reject", response_model=PayoutResponse, tags=["Payouts"])
def reject_payout(request_id: str, request: RejectPaymentRequest, session: Session = Depends(get_session)) -> PayoutResponse:
    try:
        return PayoutService(session).reject(request_id, request.note)
    except BlueMoonError as e:
        raise _http_error(e)


# Referrals

@app.post("/referrals/{referral_id}/qualify", response_model=QualifyResponse, tags=["Referrals"])
def qualify_referral(referral_id: str, request: QualifyReferralRequest, session: Session = Depends(get_session)) -> QualifyResponse:
    try:
        return ReferralService(session).qualify(referral_id, request.service_name)
    except BlueMoonError as e:
        raise _http_error(e)


@app.post("/referrals/{referral_id}/credit", response_model=CreditResponse, tags=["Referrals"])
def credit_referral(referral_id: str, session: Session = Depends(get_session)) -> CreditResponse:
    try:
        return ReferralService(session).award_credit(referral_id)
    except BlueMoonError as e:
        raise _http_error(e)


# Admin

@app.get("/admin/stats", response_model=AdminStats, tags=["Admin"])
def admin_stats(session: Session = Depends(get_session)) -> AdminStats:
    try:
        with AdminConsole(session) as console:
            return console.stats()
    except BlueMoonError as e:
        raise _http_error(e)


@app.get("/admin/users", response_model=list[UserAccount], tags=["Admin"])
def admin_users(session: Session = Depends(get_session)) -> list[UserAccount]:
    try:
        return AccountService(session).list_all()
    except BlueMoonError as e:
        raise _http_error(e)


@app.get("/admin/referrals", response_model=list[Referral], tags=["Admin"])
def admin_referrals(referral_status: Optional[ReferralStatus] = None, session: Session = Depends(get_session)) -> list[Referral]:
    try:
        return ReferralService(session).list_all(referral_status)
    except BlueMoonError as e:
        raise _http_error(e)


@app.get("/admin/payment-requests", response_model=list[PaymentRequest], tags=["Admin"])
def admin_payment_requests(payment_status: Optional[PaymentStatus] = None, session: Session = Depends(get_session)) -> list[PaymentRequest]:
    try:
        return PayoutService(session).list_all(payment_status)
    except BlueMoonError as e:
        raise _http_error(e)


@app.post("/admin/users/{user_id}/promote", response_model=UserAccount, tags=["Admin"])
def promote_user(user_id: str, session: Session = Depends(get_session)) -> UserAccount:
    try:
        return AccountService(session).promote_to_admin(user_id)
    except BlueMoonError as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
