from __future__ import annotations

import hashlib
import hmac
import logging
import math
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import event, func, inspect, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.market_models import TransactionStatus, TransactionType, User, Wallet, WalletTransaction
from services.audit_service import log_audit
from services.errors import (
    ForbiddenError,
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    PaymentGatewayError,
    ValidationError,
)
from services.proxypay_client import ProxyPayClient
from settings import Settings


logger = logging.getLogger("rental_market.wallet")

ZERO = Decimal("0.00")
MONEY_QUANTUM = Decimal("0.01")
RECENT_TRANSACTIONS_LIMIT = 10
MAX_PAGE_SIZE = 100

# event type -> (transaction type it settles, resulting status)
GATEWAY_EVENTS = {
    "payment.completed": (TransactionType.DEPOSIT, TransactionStatus.COMPLETED),
    "payment.failed": (TransactionType.DEPOSIT, TransactionStatus.FAILED),
    "withdrawal.completed": (TransactionType.WITHDRAWAL, TransactionStatus.COMPLETED),
    "withdrawal.failed": (TransactionType.WITHDRAWAL, TransactionStatus.FAILED),
}

_IMMUTABLE_TRANSACTION_FIELDS = ("WalletID", "Type", "Amount", "Description")
_SETTLED_OUTCOMES = {TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.CANCELLED}


@event.listens_for(WalletTransaction, "before_update")
def _reject_transaction_rewrite(mapper, connection, target) -> None:
    state = inspect(target)
    changed = [name for name in _IMMUTABLE_TRANSACTION_FIELDS if state.attrs[name].history.has_changes()]
    if changed:
        raise InvalidStateError(
            f"Wallet transaction {target.TransactionID} is immutable; attempted to change {', '.join(changed)}."
        )


def to_money(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return amount.quantize(MONEY_QUANTUM)


def normalize_metadata(metadata: dict[str, Any] | None) -> dict[str, str | int | float | bool | None] | None:
    """Flatten a metadata mapping to string keys and primitive values.

    Decimals and dates are stored as strings; nested containers are rejected so
    the column never turns into an untyped blob.
    """
    if metadata is None:
        return None
    if not isinstance(metadata, dict):
        raise ValidationError("Transaction metadata must be an object.")
    normalized: dict[str, str | int | float | bool | None] = {}
    for key, value in metadata.items():
        if isinstance(value, Decimal):
            normalized[str(key)] = str(value)
        elif isinstance(value, (datetime, date)):
            normalized[str(key)] = value.isoformat()
        elif value is None or isinstance(value, (str, int, float, bool)):
            normalized[str(key)] = value
        else:
            raise ValidationError(f"Metadata value for {key!r} must be a primitive, got {type(value).__name__}.")
    return normalized


def _value(raw: Any) -> Any:
    return getattr(raw, "value", raw)


def serialize_transaction(tx: WalletTransaction) -> dict:
    return {
        "transactionID": tx.TransactionID,
        "walletID": tx.WalletID,
        "type": _value(tx.Type),
        "amount": tx.Amount,
        "description": tx.Description,
        "status": _value(tx.Status),
        "reference": tx.Reference,
        "gatewayReference": tx.GatewayReference,
        "gatewayTransactionID": tx.GatewayTransactionID,
        "metadata": tx.Metadata or {},
        "createdAt": tx.CreatedAt,
        "updatedAt": tx.UpdatedAt,
    }


def serialize_wallet(wallet: Wallet, transactions: list[WalletTransaction] | None = None) -> dict:
    balance = Decimal(wallet.Balance or 0)
    held = Decimal(wallet.HeldAmount or 0)
    payload = {
        "walletID": wallet.WalletID,
        "userID": wallet.UserID,
        "balance": balance,
        "heldAmount": held,
        "availableBalance": balance - held,
        "isActive": bool(wallet.IsActive),
        "createdAt": wallet.CreatedAt,
        "updatedAt": wallet.UpdatedAt,
    }
    if transactions is not None:
        payload["transactions"] = [serialize_transaction(tx) for tx in transactions]
    return payload


class WalletLedger:
    """Wallet balances and their append-only transaction history.

    The balance column only moves when a transaction is COMPLETED. A PENDING
    debit reserves funds in HeldAmount instead, and a PENDING credit is not
    visible until the gateway confirms it, so Balance always equals the sum of
    COMPLETED amounts and Balance - HeldAmount never goes negative.
    """

    def __init__(self, settings: Settings, gateway: ProxyPayClient | None = None):
        self.settings = settings
        self.gateway = gateway

    def find_wallet(self, db: Session, user_id: int) -> Wallet | None:
        return db.execute(select(Wallet).where(Wallet.UserID == user_id)).scalars().first()

    def get_or_create(self, db: Session, user_id: int) -> Wallet:
        wallet = self.find_wallet(db, user_id)
        if wallet:
            return wallet
        if not db.get(User, user_id):
            raise NotFoundError("User not found.")

        now = datetime.now()
        wallet = Wallet(UserID=user_id, Balance=ZERO, HeldAmount=ZERO, IsActive=True, CreatedAt=now, UpdatedAt=now)
        db.add(wallet)
        try:
            db.commit()
        except IntegrityError:
            # Lost a creation race against another request for the same user.
            db.rollback()
            wallet = self.find_wallet(db, user_id)
            if wallet is None:
                raise
            return wallet
        logger.info("Created wallet %s for user %s", wallet.WalletID, user_id)
        return wallet

    def create_wallet(self, db: Session, user_id: int, initial_balance: Any = 0) -> Wallet:
        if self.find_wallet(db, user_id):
            raise InvalidStateError("User already has a wallet.")
        if not db.get(User, user_id):
            raise NotFoundError("User not found.")
        initial = to_money(initial_balance)
        if initial < 0:
            raise ValidationError("Initial balance cannot be negative.")

        now = datetime.now()
        wallet = Wallet(UserID=user_id, Balance=ZERO, HeldAmount=ZERO, IsActive=True, CreatedAt=now, UpdatedAt=now)
        try:
            db.add(wallet)
            db.flush()
            if initial > 0:
                self.post_transaction(
                    db,
                    wallet.WalletID,
                    TransactionType.DEPOSIT,
                    initial,
                    "Saldo inicial da carteira",
                    reference=f"INITIAL_{wallet.WalletID}",
                )
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise InvalidStateError("User already has a wallet.") from exc
        except Exception:
            db.rollback()
            raise
        db.refresh(wallet)
        return wallet

    def _lock_wallet(self, db: Session, wallet_id: int) -> Wallet:
        wallet = db.execute(
            select(Wallet)
            .where(Wallet.WalletID == wallet_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().first()
        if not wallet:
            raise NotFoundError("Wallet not found.")
        if not wallet.IsActive:
            raise InvalidStateError("Wallet is inactive.")
        return wallet

    def _shift(self, db: Session, wallet_id: int, balance_delta: Decimal, hold_delta: Decimal = ZERO) -> None:
        """Move Balance/HeldAmount in one conditional UPDATE.

        Whenever the spendable amount shrinks the row is only touched if the
        stored values still cover it, so a stale read can never authorise a
        debit.
        """
        stmt = update(Wallet).where(Wallet.WalletID == wallet_id)
        spendable_delta = balance_delta - hold_delta
        if spendable_delta < 0:
            stmt = stmt.where(Wallet.Balance - Wallet.HeldAmount + spendable_delta >= 0)

        values: dict[str, Any] = {"UpdatedAt": datetime.now()}
        if balance_delta:
            values["Balance"] = Wallet.Balance + balance_delta
        if hold_delta:
            values["HeldAmount"] = Wallet.HeldAmount + hold_delta
        result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        if result.rowcount == 0:
            raise InsufficientBalanceError("Insufficient wallet balance.")

    def _record(
        self,
        db: Session,
        wallet_id: int,
        tx_type: TransactionType,
        amount: Decimal,
        description: str,
        status: TransactionStatus,
        reference: str | None = None,
        metadata: dict[str, Any] | None = None,
        gateway_reference: str | None = None,
        gateway_transaction_id: str | None = None,
    ) -> WalletTransaction:
        now = datetime.now()
        tx = WalletTransaction(
            WalletID=wallet_id,
            Type=tx_type,
            Amount=amount,
            Description=description,
            Status=status,
            Reference=reference,
            GatewayReference=gateway_reference,
            GatewayTransactionID=gateway_transaction_id,
            Metadata=normalize_metadata(metadata),
            CreatedAt=now,
            UpdatedAt=now,
        )
        db.add(tx)
        db.flush()
        return tx

    def post_transaction(
        self,
        db: Session,
        wallet_id: int,
        tx_type: TransactionType | str,
        amount: Any,
        description: str,
        reference: str | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        status: TransactionStatus | str = TransactionStatus.COMPLETED,
        gateway_reference: str | None = None,
        gateway_transaction_id: str | None = None,
    ) -> WalletTransaction:
        """Append one transaction and adjust the wallet, without committing.

        Callers that need the debit to land together with their own row
        changes use this and commit once; everyone else uses
        ``apply_transaction``.
        """
        value = to_money(amount)
        if value == 0:
            raise ValidationError("Transaction amount must be non-zero.")
        if not (description or "").strip():
            raise ValidationError("Transaction description is required.")
        try:
            tx_type = TransactionType(tx_type)
            status = TransactionStatus(status)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if status not in (TransactionStatus.COMPLETED, TransactionStatus.PENDING):
            raise ValidationError("New transactions must be COMPLETED or PENDING.")

        wallet = self._lock_wallet(db, wallet_id)
        if status == TransactionStatus.COMPLETED:
            self._shift(db, wallet_id, value)
        elif value < 0:
            self._shift(db, wallet_id, ZERO, -value)

        tx = self._record(
            db,
            wallet_id,
            tx_type,
            value,
            description.strip(),
            status,
            reference=reference,
            metadata=metadata,
            gateway_reference=gateway_reference,
            gateway_transaction_id=gateway_transaction_id,
        )
        db.refresh(wallet)
        return tx

    def apply_transaction(
        self,
        db: Session,
        wallet_id: int,
        tx_type: TransactionType | str,
        amount: Any,
        description: str,
        reference: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WalletTransaction:
        try:
            tx = self.post_transaction(db, wallet_id, tx_type, amount, description, reference, metadata)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("Wallet %s: %s %s (%s)", wallet_id, _value(tx.Type), tx.Amount, tx.TransactionID)
        return tx

    def recompute_balance(self, db: Session, wallet_id: int) -> Decimal:
        total = db.execute(
            select(func.coalesce(func.sum(WalletTransaction.Amount), 0)).where(
                WalletTransaction.WalletID == wallet_id,
                WalletTransaction.Status == TransactionStatus.COMPLETED,
            )
        ).scalar_one()
        return to_money(total)

    def get_wallet_summary(self, db: Session, user_id: int) -> dict:
        wallet = self.get_or_create(db, user_id)
        recent = db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.WalletID == wallet.WalletID)
            .order_by(WalletTransaction.CreatedAt.desc(), WalletTransaction.TransactionID.desc())
            .limit(RECENT_TRANSACTIONS_LIMIT)
        ).scalars().all()
        return serialize_wallet(wallet, list(recent))

    def list_transactions(self, db: Session, wallet_id: int, page: int = 1, limit: int = 20) -> dict:
        wallet = db.get(Wallet, wallet_id)
        if not wallet:
            raise NotFoundError("Wallet not found.")
        page = max(1, int(page or 1))
        limit = min(max(1, int(limit or 20)), MAX_PAGE_SIZE)

        total = db.execute(
            select(func.count()).select_from(WalletTransaction).where(WalletTransaction.WalletID == wallet_id)
        ).scalar_one()
        rows = db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.WalletID == wallet_id)
            .order_by(WalletTransaction.CreatedAt.desc(), WalletTransaction.TransactionID.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        return {
            "transactions": [serialize_transaction(tx) for tx in rows],
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit) if total else 0,
            "wallet": {
                "walletID": wallet.WalletID,
                "balance": wallet.Balance,
                "isActive": bool(wallet.IsActive),
            },
        }

    def _require_gateway(self) -> ProxyPayClient:
        if self.gateway is None:
            raise PaymentGatewayError("Payment gateway is not configured.")
        return self.gateway

    def deposit_via_gateway(
        self,
        db: Session,
        user_id: int,
        amount: Any,
        payment_method: str,
        phone_number: str | None = None,
    ) -> dict:
        value = to_money(amount)
        if value <= 0:
            raise ValidationError("Deposit amount must be positive.")
        gateway = self._require_gateway()
        wallet = self.get_or_create(db, user_id)
        user = db.get(User, user_id)

        response = gateway.create_deposit(
            value,
            f"Depósito na carteira - {user.FullName}",
            {"name": user.FullName, "email": user.Email, "phone": phone_number or user.PhoneNumber},
            payment_method,
        )
        try:
            tx = self.post_transaction(
                db,
                wallet.WalletID,
                TransactionType.DEPOSIT,
                value,
                f"Depósito via ProxyPay - {payment_method}",
                reference=response.reference,
                metadata={
                    "gateway": "proxypay",
                    "paymentMethod": payment_method,
                    "phoneNumber": phone_number,
                    "paymentUrl": response.payment_url,
                },
                status=TransactionStatus.PENDING,
                gateway_reference=response.reference,
                gateway_transaction_id=response.transaction_id,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("Pending deposit %s of %s for wallet %s", tx.TransactionID, value, wallet.WalletID)
        return {
            "transaction": serialize_transaction(tx),
            "paymentUrl": response.payment_url,
            "reference": response.reference,
            "message": response.message,
        }

    def withdraw_via_gateway(
        self,
        db: Session,
        user_id: int,
        amount: Any,
        withdrawal_method: str,
        account_number: str,
        bank_name: str | None = None,
    ) -> dict:
        value = to_money(amount)
        if value <= 0:
            raise ValidationError("Withdrawal amount must be positive.")
        gateway = self._require_gateway()
        wallet = self.get_or_create(db, user_id)

        response = None
        try:
            self._lock_wallet(db, wallet.WalletID)
            # Reserve first so a failed gateway call rolls the hold back with it.
            self._shift(db, wallet.WalletID, ZERO, value)
            response = gateway.create_withdrawal(
                value,
                f"Saque da carteira - {withdrawal_method}",
                {"account_number": account_number, "bank_name": bank_name},
                withdrawal_method,
            )
            tx = self._record(
                db,
                wallet.WalletID,
                TransactionType.WITHDRAWAL,
                -value,
                f"Saque via ProxyPay - {withdrawal_method}",
                TransactionStatus.PENDING,
                reference=response.reference,
                metadata={
                    "gateway": "proxypay",
                    "withdrawalMethod": withdrawal_method,
                    "accountNumber": account_number,
                    "bankName": bank_name,
                },
                gateway_reference=response.reference,
                gateway_transaction_id=response.transaction_id,
            )
            db.commit()
        except Exception:
            db.rollback()
            if response is not None:
                logger.error(
                    "ProxyPay accepted withdrawal %s (reference %s) of %s for wallet %s but it was not recorded",
                    response.transaction_id,
                    response.reference,
                    value,
                    wallet.WalletID,
                )
            raise
        logger.info("Pending withdrawal %s of %s for wallet %s", tx.TransactionID, value, wallet.WalletID)
        return {
            "transaction": serialize_transaction(tx),
            "reference": response.reference,
            "status": response.status,
            "message": response.message,
        }

    def settle_transaction(self, db: Session, transaction_id: int, outcome: TransactionStatus | str) -> WalletTransaction:
        try:
            outcome = TransactionStatus(outcome)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if outcome not in _SETTLED_OUTCOMES:
            raise ValidationError(f"Cannot settle a transaction as {outcome.value}.")

        try:
            tx = db.execute(
                select(WalletTransaction)
                .where(WalletTransaction.TransactionID == transaction_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars().first()
            if not tx:
                raise NotFoundError("Wallet transaction not found.")
            if tx.Status != TransactionStatus.PENDING:
                logger.info("Transaction %s already %s; ignoring %s", tx.TransactionID, _value(tx.Status), outcome.value)
                db.rollback()
                return tx

            amount = Decimal(tx.Amount)
            self._lock_wallet(db, tx.WalletID)
            if outcome == TransactionStatus.COMPLETED:
                if amount > 0:
                    self._shift(db, tx.WalletID, amount)
                else:
                    self._shift(db, tx.WalletID, amount, amount)
            elif amount < 0:
                self._shift(db, tx.WalletID, ZERO, amount)

            tx.Status = outcome
            tx.UpdatedAt = datetime.now()
            log_audit(db, "WalletTransaction", tx.TransactionID, "Settle", f"PENDING -> {outcome.value}")
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("Transaction %s settled as %s", tx.TransactionID, outcome.value)
        return tx

    def handle_gateway_event(self, db: Session, payload: dict[str, Any]) -> WalletTransaction | None:
        event_type = str(payload.get("event_type") or "").strip()
        if event_type not in GATEWAY_EVENTS:
            logger.warning("Unknown ProxyPay webhook event type: %s", event_type or "<missing>")
            return None
        gateway_id = str(payload.get("transaction_id") or "").strip()
        if not gateway_id:
            raise ValidationError("Webhook payload is missing transaction_id.")

        expected_type, outcome = GATEWAY_EVENTS[event_type]
        tx = db.execute(
            select(WalletTransaction)
            .where(
                or_(
                    WalletTransaction.GatewayTransactionID == gateway_id,
                    WalletTransaction.GatewayReference == gateway_id,
                )
            )
            .order_by(WalletTransaction.TransactionID.desc())
        ).scalars().first()
        if not tx:
            raise NotFoundError(f"No wallet transaction for gateway id {gateway_id}.")
        if tx.Type != expected_type:
            raise InvalidStateError(f"Event {event_type} does not apply to a {_value(tx.Type)} transaction.")
        return self.settle_transaction(db, tx.TransactionID, outcome)

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> None:
        secret = self.settings.proxypay_webhook_secret
        if not secret:
            return
        expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        supplied = (signature or "").strip().lower()
        if not supplied or not hmac.compare_digest(expected, supplied):
            raise ForbiddenError("Invalid webhook signature.")
