import logging
import os

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from db.deps import get_market_db
from models.market_models import UserRole
from schemas.rentals import CreateRentalDto, PaymentReceiptDecision, PaymentReceiptUpload, RentalStatusUpdate
from schemas.sponsorships import CreateSponsorshipDto, ExtendSponsorshipDto, SponsorshipStatusUpdate
from schemas.wallet import CreateWalletDto, CreateWalletTransactionDto, ProxyPayDepositDto, ProxyPayWithdrawalDto
from services import scheduled_jobs
from services.errors import MarketplaceError
from services.notification_service import RentalNotifier, serialize_notification
from services.proxypay_client import ProxyPayClient
from services.rental_service import RentalLifecycle, serialize_rental
from services.session_service import get_session
from services.sponsorship_service import SponsorshipLifecycle, serialize_sponsorship
from services.wallet_service import WalletLedger, serialize_transaction, serialize_wallet
from settings import load_settings

API_LOGGER = logging.getLogger("rental_market.api")

settings = load_settings()
gateway = ProxyPayClient(settings)
ledger = WalletLedger(settings, gateway)
rentals = RentalLifecycle(ledger, settings)
sponsorships = SponsorshipLifecycle(ledger)
notifier = RentalNotifier()

app = FastAPI()


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

MODERATOR_ROLES = {UserRole.MODERATOR.value, UserRole.ADMIN.value}


def _to_http_error(exc: MarketplaceError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _require_session_or_401(session_token: str | None) -> dict:
    session = get_session(session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return session


def _require_role_or_403(session_token: str | None, roles: set[str]) -> dict:
    session = _require_session_or_401(session_token)
    if str(session.get("role") or "").strip().upper() not in roles:
        raise HTTPException(status_code=403, detail="Insufficient role.")
    return session


def _session_user_id(session_token: str | None) -> int:
    return int(_require_session_or_401(session_token)["userID"])


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_market_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


# -- wallet -------------------------------------------------------------------


@app.get("/api/wallet")
def get_my_wallet(
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        return ledger.get_wallet_summary(db, user_id)
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


@app.post("/api/wallet")
def create_my_wallet(
    payload: CreateWalletDto,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        wallet = ledger.create_wallet(db, user_id, payload.initialBalance)
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc
    return serialize_wallet(wallet)


@app.get("/api/wallet/transactions")
def get_my_wallet_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        wallet = ledger.get_or_create(db, user_id)
        return ledger.list_transactions(db, wallet.WalletID, page, limit)
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


@app.post("/api/wallet/deposit/proxypay")
def deposit_via_proxypay(
    payload: ProxyPayDepositDto,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        return ledger.deposit_via_gateway(db, user_id, payload.amount, payload.paymentMethod, payload.phoneNumber)
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


@app.post("/api/wallet/withdraw/proxypay")
def withdraw_via_proxypay(
    payload: ProxyPayWithdrawalDto,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        return ledger.withdraw_via_gateway(
            db,
            user_id,
            payload.amount,
            payload.withdrawalMethod,
            payload.accountNumber,
            payload.bankName,
        )
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


@app.post("/api/wallet/transaction")
def create_wallet_transaction(
    payload: CreateWalletTransactionDto,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_role_or_403(x_session_token, {UserRole.ADMIN.value})
    try:
        tx = ledger.apply_transaction(
            db,
            payload.walletID,
            payload.type,
            payload.amount,
            payload.description,
            payload.reference,
            payload.metadata,
        )
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc
    return serialize_transaction(tx)


@app.get("/api/wallet/user/{user_id}")
def get_user_wallet(
    user_id: int,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_role_or_403(x_session_token, {UserRole.ADMIN.value})
    try:
        return ledger.get_wallet_summary(db, user_id)
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


@app.get("/api/wallet/user/{user_id}/transactions")
def get_user_wallet_transactions(
    user_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_role_or_403(x_session_token, {UserRole.ADMIN.value})
    try:
        wallet = ledger.get_or_create(db, user_id)
        return ledger.list_transactions(db, wallet.WalletID, page, limit)
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


@app.post("/api/wallet/webhook/proxypay")
async def proxypay_webhook(
    request: Request,
    db: Session = Depends(get_market_db),
    x_proxypay_signature: str | None = Header(None, alias="X-ProxyPay-Signature"),
):
    raw_body = await request.body()
    try:
        ledger.verify_webhook_signature(raw_body, x_proxypay_signature)
    except MarketplaceError as exc:
        API_LOGGER.warning("Rejected ProxyPay webhook: %s", exc)
        raise _to_http_error(exc) from exc
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Webhook body must be JSON.") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object.")

    API_LOGGER.info("Received ProxyPay webhook %s for %s", payload.get("event_type"), payload.get("transaction_id"))
    try:
        tx = ledger.handle_gateway_event(db, payload)
    except MarketplaceError as exc:
        API_LOGGER.error("ProxyPay webhook processing failed: %s", exc)
        raise _to_http_error(exc) from exc
    return {
        "success": True,
        "message": "Webhook processed successfully",
        "transaction": serialize_transaction(tx) if tx else None,
    }


# -- rentals ------------------------------------------------------------------


@app.post("/api/rentals")
def create_rental(
    payload: CreateRentalDto,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        rental = rentals.create(db, user_id, payload)
        return serialize_rental(rentals.get_rental(db, rental.RentalID))
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


@app.get("/api/rentals")
def list_rentals(
    status: str | None = Query(None),
    equipment_id: int | None = Query(None, alias="equipmentId"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        return rentals.list_rentals(db, status=status, user_id=user_id, equipment_id=equipment_id, page=page, limit=limit)
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


@app.get("/api/rentals/mine")
def get_my_rentals(
    role: str | None = Query(None, pattern="^(renter|owner)$"),
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    return [serialize_rental(rental) for rental in rentals.get_user_rentals(db, user_id, role)]


@app.get("/api/rentals/history")
def get_my_rental_history(
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    return [serialize_rental(rental) for rental in rentals.get_rental_history(db, user_id)]


@app.get("/api/rentals/payment-receipts/pending")
def get_pending_payment_receipts(
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_role_or_403(x_session_token, MODERATOR_ROLES)
    return [serialize_rental(rental) for rental in rentals.get_pending_payment_receipts(db)]


@app.get("/api/rentals/{rental_id}")
def get_rental(
    rental_id: int,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        return serialize_rental(rentals.get_rental(db, rental_id, user_id))
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


@app.patch("/api/rentals/{rental_id}/status")
def update_rental_status(
    rental_id: int,
    payload: RentalStatusUpdate,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        rental = rentals.update_status(db, rental_id, payload.status, user_id)
        if rental.DeletedAt is not None:
            return serialize_rental(rental)
        return serialize_rental(rentals.get_rental(db, rental_id))
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


@app.post("/api/rentals/{rental_id}/cancel")
def cancel_rental(
    rental_id: int,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        rentals.cancel_rental(db, rental_id, user_id)
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc
    return {"message": "Rental cancelled"}


@app.post("/api/rentals/{rental_id}/pay-with-wallet")
def pay_rental_with_wallet(
    rental_id: int,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        rentals.pay_with_wallet(db, rental_id, user_id)
        return serialize_rental(rentals.get_rental(db, rental_id))
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


@app.post("/api/rentals/{rental_id}/payment-receipt")
def upload_payment_receipt(
    rental_id: int,
    payload: PaymentReceiptUpload,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        rentals.upload_payment_receipt(db, rental_id, payload.receiptUrl, user_id)
        return serialize_rental(rentals.get_rental(db, rental_id))
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


@app.post("/api/rentals/{rental_id}/payment-receipt/validate")
def validate_payment_receipt(
    rental_id: int,
    payload: PaymentReceiptDecision,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_role_or_403(x_session_token, MODERATOR_ROLES)
    try:
        rentals.validate_payment_receipt(db, rental_id, payload.isApproved, int(session["userID"]), payload.rejectionReason)
        return serialize_rental(rentals.get_rental(db, rental_id))
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


# -- sponsorships -------------------------------------------------------------


@app.post("/api/sponsorships")
def create_sponsorship(
    payload: CreateSponsorshipDto,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        sponsorship = sponsorships.create(db, user_id, payload)
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc
    return serialize_sponsorship(sponsorship)


@app.get("/api/sponsorships")
def list_sponsorships(
    sponsor_id: int | None = Query(None, alias="sponsorId"),
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_session_or_401(x_session_token)
    try:
        return sponsorships.list_sponsorships(db, sponsor_id=sponsor_id, status=status, page=page, limit=limit)
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


@app.get("/api/sponsorships/mine")
def list_my_sponsorships(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    return sponsorships.list_sponsorships(db, sponsor_id=user_id, page=page, limit=limit)


@app.get("/api/sponsorships/can-create")
def can_create_sponsorship(
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    return sponsorships.can_create_new_sponsorship(db, user_id)


@app.get("/api/sponsorships/ads")
def get_sponsored_ads(
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = get_session(x_session_token)
    user_id = int(session["userID"]) if session else None
    return sponsorships.get_sponsored_ads_for_user(db, user_id)


@app.get("/api/sponsorships/sponsored-equipments")
def get_sponsored_equipments(
    limit: int = Query(10, ge=1, le=50),
    db: Session = Depends(get_market_db),
):
    return sponsorships.get_sponsored_equipments(db, limit)


@app.get("/api/sponsorships/equipment/{equipment_id}/is-sponsored")
def is_equipment_sponsored(equipment_id: int, db: Session = Depends(get_market_db)):
    return {"equipmentID": equipment_id, "isSponsored": sponsorships.is_equipment_sponsored(db, equipment_id)}


@app.get("/api/sponsorships/{sponsorship_id}")
def get_sponsorship(
    sponsorship_id: int,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_session_or_401(x_session_token)
    try:
        return serialize_sponsorship(sponsorships.get_sponsorship(db, sponsorship_id))
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc


@app.patch("/api/sponsorships/{sponsorship_id}/status")
def update_sponsorship_status(
    sponsorship_id: int,
    payload: SponsorshipStatusUpdate,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        sponsorship = sponsorships.update_status(db, user_id, sponsorship_id, payload.status)
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc
    return serialize_sponsorship(sponsorship)


@app.post("/api/sponsorships/{sponsorship_id}/impression")
def record_sponsorship_impression(sponsorship_id: int, db: Session = Depends(get_market_db)):
    try:
        sponsorships.increment_impression(db, sponsorship_id)
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc
    return {"success": True}


@app.post("/api/sponsorships/{sponsorship_id}/click")
def record_sponsorship_click(sponsorship_id: int, db: Session = Depends(get_market_db)):
    try:
        sponsorships.increment_click(db, sponsorship_id)
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc
    return {"success": True}


@app.post("/api/sponsorships/{sponsorship_id}/extend")
def extend_sponsorship(
    sponsorship_id: int,
    payload: ExtendSponsorshipDto,
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id = _session_user_id(x_session_token)
    try:
        sponsorship = sponsorships.extend(db, user_id, sponsorship_id, payload.additionalDays, payload.additionalAmount)
    except MarketplaceError as exc:
        raise _to_http_error(exc) from exc
    return serialize_sponsorship(sponsorship)


# -- scheduled jobs & notifications --------------------------------------------


@app.post("/api/jobs/run")
def run_jobs(
    job: str = Query("all", pattern="^(hourly|daily|all)$"),
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_role_or_403(x_session_token, {UserRole.ADMIN.value})
    result = {}
    if job in {"hourly", "all"}:
        result["hourly"] = scheduled_jobs.run_hourly(db, rentals, sponsorships, notifier)
    if job in {"daily", "all"}:
        result["daily"] = scheduled_jobs.run_daily(db, rentals, notifier)
    return result


@app.get("/api/notifications/pending")
def get_pending_notifications(
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_role_or_403(x_session_token, {UserRole.ADMIN.value})
    return [serialize_notification(n) for n in notifier.list_pending(db)]


@app.post("/api/notifications/mark-sent")
def mark_notifications_sent(
    notification_ids: list[int],
    db: Session = Depends(get_market_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_role_or_403(x_session_token, {UserRole.ADMIN.value})
    return {"updated": notifier.mark_sent(db, notification_ids)}
