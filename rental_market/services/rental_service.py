from __future__ import annotations

import logging
import math
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from models.market_models import (
    Equipment,
    PaymentMethod,
    PaymentStatus,
    PricePeriod,
    ReceiptStatus,
    Rental,
    RentalStatus,
    TransactionType,
    User,
    UserRole,
    UserType,
)
from schemas.rentals import CreateRentalDto
from services.audit_service import log_audit
from services.errors import (
    ForbiddenError,
    InvalidStateError,
    MarketplaceError,
    NotFoundError,
    ValidationError,
)
from services.wallet_service import WalletLedger, to_money
from settings import Settings


logger = logging.getLogger("rental_market.rentals")

STATE_TRANSITIONS = {
    RentalStatus.PENDING: {RentalStatus.APPROVED, RentalStatus.REJECTED, RentalStatus.CANCELLED},
    RentalStatus.APPROVED: {RentalStatus.PAID, RentalStatus.ACTIVE, RentalStatus.REJECTED, RentalStatus.CANCELLED},
    RentalStatus.PAID: {RentalStatus.ACTIVE, RentalStatus.COMPLETED},
    RentalStatus.ACTIVE: {RentalStatus.COMPLETED},
    RentalStatus.COMPLETED: set(),
    RentalStatus.CANCELLED: set(),
    RentalStatus.REJECTED: set(),
}
OWNER_ONLY_TARGETS = {RentalStatus.APPROVED, RentalStatus.REJECTED, RentalStatus.ACTIVE, RentalStatus.COMPLETED}
HOLDING_STATES = (RentalStatus.APPROVED, RentalStatus.PAID, RentalStatus.ACTIVE)
HISTORY_STATES = (RentalStatus.COMPLETED, RentalStatus.CANCELLED)
REMINDER_STATES = (RentalStatus.ACTIVE, RentalStatus.PAID)
MODERATOR_ROLES = {UserRole.MODERATOR, UserRole.ADMIN}
HOURS_PER_RENTAL_DAY = 8


def count_billing_periods(price_period: PricePeriod | str | None, days: int) -> int:
    period = PricePeriod(price_period or PricePeriod.DAILY)
    if period == PricePeriod.HOURLY:
        return days * HOURS_PER_RENTAL_DAY
    if period == PricePeriod.WEEKLY:
        return math.ceil(days / 7)
    if period == PricePeriod.MONTHLY:
        return math.ceil(days / 30)
    return days


def compute_total_amount(daily_rate: Decimal | int | float, price_period: PricePeriod | str | None, start_date: date, end_date: date) -> Decimal:
    days = (end_date - start_date).days
    return to_money(Decimal(str(daily_rate)) * count_billing_periods(price_period, days))


def _value(raw):
    return getattr(raw, "value", raw)


def _party(user: User | None) -> dict | None:
    if not user:
        return None
    return {"userID": user.UserID, "fullName": user.FullName, "email": user.Email}


def serialize_rental(rental: Rental) -> dict:
    equipment = rental.Equipment
    return {
        "rentalID": rental.RentalID,
        "equipmentID": rental.EquipmentID,
        "renterID": rental.RenterID,
        "ownerID": rental.OwnerID,
        "startDate": rental.StartDate,
        "endDate": rental.EndDate,
        "startTime": rental.StartTime,
        "endTime": rental.EndTime,
        "totalAmount": rental.TotalAmount,
        "dailyRate": rental.DailyRate,
        "pricePeriod": _value(rental.PricePeriod),
        "maxRentalDays": rental.MaxRentalDays,
        "paymentMethod": _value(rental.PaymentMethod),
        "paymentReference": rental.PaymentReference,
        "paymentReceipt": rental.PaymentReceipt,
        "status": _value(rental.Status),
        "paymentStatus": _value(rental.PaymentStatus),
        "paymentReceiptStatus": _value(rental.PaymentReceiptStatus),
        "rejectionReason": rental.RejectionReason,
        "moderatedBy": rental.ModeratedBy,
        "moderatedAt": rental.ModeratedAt,
        "hasPriority": bool(rental.HasPriority),
        "priorityAmount": rental.PriorityAmount,
        "priorityPaidAt": rental.PriorityPaidAt,
        "renterLatitude": rental.RenterLatitude,
        "renterLongitude": rental.RenterLongitude,
        "renterAddress": rental.RenterAddress,
        "returnReminderDate": rental.ReturnReminderDate,
        "returnNotificationSent": bool(rental.ReturnNotificationSent),
        "approvedAt": rental.ApprovedAt,
        "createdDate": rental.CreatedDate,
        "updatedDate": rental.UpdatedDate,
        "equipment": {
            "equipmentID": equipment.EquipmentID,
            "name": equipment.Name,
            "isAvailable": bool(equipment.IsAvailable),
        } if equipment else None,
        "renter": _party(rental.Renter),
        "owner": _party(rental.Owner),
    }


def _with_parties(stmt):
    return stmt.options(
        selectinload(Rental.Equipment),
        selectinload(Rental.Renter),
        selectinload(Rental.Owner),
    )


class RentalLifecycle:
    def __init__(self, ledger: WalletLedger, settings: Settings):
        self.ledger = ledger
        self.settings = settings

    # -- lookups -----------------------------------------------------------

    def _get_live_rental(self, db: Session, rental_id: int) -> Rental:
        rental = db.get(Rental, rental_id)
        if not rental or rental.DeletedAt is not None:
            raise NotFoundError("Rental not found.")
        return rental

    def _lock_equipment(self, db: Session, equipment_id: int) -> Equipment | None:
        return db.execute(
            select(Equipment)
            .where(Equipment.EquipmentID == equipment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().first()

    def get_rental(self, db: Session, rental_id: int, user_id: int | None = None) -> Rental:
        rental = db.execute(
            _with_parties(select(Rental)).where(Rental.RentalID == rental_id, Rental.DeletedAt.is_(None))
        ).scalars().first()
        if not rental:
            raise NotFoundError("Rental not found.")
        if user_id is not None and user_id not in (rental.RenterID, rental.OwnerID):
            raise ForbiddenError("You do not have permission to view this rental.")
        return rental

    def list_rentals(
        self,
        db: Session,
        status: str | None = None,
        user_id: int | None = None,
        equipment_id: int | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> dict:
        conditions = [Rental.DeletedAt.is_(None)]
        if status:
            try:
                conditions.append(Rental.Status == RentalStatus(status))
            except ValueError as exc:
                raise ValidationError(f"Unknown rental status: {status}") from exc
        if user_id is not None:
            conditions.append(or_(Rental.RenterID == user_id, Rental.OwnerID == user_id))
        if equipment_id is not None:
            conditions.append(Rental.EquipmentID == equipment_id)

        total = db.execute(select(func.count()).select_from(Rental).where(*conditions)).scalar_one()
        stmt = (
            _with_parties(select(Rental))
            .where(*conditions)
            .order_by(
                Rental.HasPriority.desc(),
                Rental.PriorityPaidAt.is_(None),
                Rental.PriorityPaidAt.desc(),
                Rental.CreatedDate.desc(),
                Rental.RentalID.desc(),
            )
        )
        if limit:
            page = max(1, int(page or 1))
            stmt = stmt.offset((page - 1) * limit).limit(limit)
        rows = db.execute(stmt).scalars().all()
        return {
            "data": [serialize_rental(rental) for rental in rows],
            "total": total,
            "page": page or 1,
            "limit": limit or total,
            "totalPages": math.ceil(total / limit) if limit else 1,
        }

    def get_user_rentals(self, db: Session, user_id: int, role: str | None = None) -> list[Rental]:
        if role == "renter":
            party = Rental.RenterID == user_id
        elif role == "owner":
            party = Rental.OwnerID == user_id
        else:
            party = or_(Rental.RenterID == user_id, Rental.OwnerID == user_id)
        return list(
            db.execute(
                _with_parties(select(Rental))
                .where(party, Rental.DeletedAt.is_(None))
                .order_by(Rental.CreatedDate.desc(), Rental.RentalID.desc())
            ).scalars()
        )

    def get_rental_history(self, db: Session, user_id: int) -> list[Rental]:
        # Cancelled rentals are soft-deleted, so DeletedAt is not filtered here.
        return list(
            db.execute(
                _with_parties(select(Rental))
                .where(
                    or_(Rental.RenterID == user_id, Rental.OwnerID == user_id),
                    Rental.Status.in_(HISTORY_STATES),
                )
                .order_by(Rental.UpdatedDate.desc(), Rental.RentalID.desc())
            ).scalars()
        )

    def get_pending_payment_receipts(self, db: Session) -> list[Rental]:
        return list(
            db.execute(
                _with_parties(select(Rental))
                .where(
                    Rental.PaymentReceiptStatus == ReceiptStatus.PENDING,
                    Rental.PaymentReceipt.is_not(None),
                    Rental.DeletedAt.is_(None),
                )
                .order_by(Rental.CreatedDate.asc(), Rental.RentalID.asc())
            ).scalars()
        )

    # -- creation ----------------------------------------------------------

    def create(self, db: Session, renter_id: int, payload: CreateRentalDto, today: date | None = None) -> Rental:
        today = today or date.today()
        try:
            equipment = self._lock_equipment(db, payload.equipmentID)
            if not equipment or equipment.DeletedAt is not None:
                raise NotFoundError("Equipment not found.")
            if not equipment.IsAvailable:
                raise InvalidStateError("Equipment is not available.")
            if equipment.OwnerID == renter_id:
                raise ValidationError("You cannot rent your own equipment.")

            renter = db.get(User, renter_id)
            if not renter:
                raise NotFoundError("Renter not found.")
            if renter.UserType == UserType.LANDLORD:
                raise ForbiddenError("Landlords cannot rent equipment. Only tenants can rent equipment.")

            if payload.startDate < today:
                raise ValidationError("Start date cannot be in the past.")
            if payload.endDate <= payload.startDate:
                raise ValidationError("End date must be after start date.")
            days = (payload.endDate - payload.startDate).days
            if payload.maxRentalDays and days > payload.maxRentalDays:
                raise ValidationError(f"Rental period cannot exceed {payload.maxRentalDays} days.")

            daily_rate = payload.dailyRate if payload.dailyRate is not None else (equipment.Price or 0)
            price_period = PricePeriod(payload.pricePeriod or equipment.PricePeriod or PricePeriod.DAILY)
            if payload.totalAmount:
                total_amount = to_money(payload.totalAmount)
            else:
                total_amount = compute_total_amount(daily_rate, price_period, payload.startDate, payload.endDate)
            if total_amount <= 0:
                raise ValidationError("Rental total must be positive.")

            payment_method = PaymentMethod(payload.paymentMethod)
            wants_priority = bool(payload.hasPriority and payload.priorityAmount and payload.priorityAmount > 0)
            now = datetime.now()
            rental = Rental(
                EquipmentID=equipment.EquipmentID,
                RenterID=renter_id,
                OwnerID=equipment.OwnerID,
                StartDate=payload.startDate,
                EndDate=payload.endDate,
                StartTime=payload.startTime,
                EndTime=payload.endTime,
                TotalAmount=total_amount,
                DailyRate=to_money(daily_rate),
                PricePeriod=price_period,
                MaxRentalDays=payload.maxRentalDays,
                PaymentMethod=payment_method,
                PaymentReference=payload.paymentReference,
                Status=RentalStatus.PENDING,
                PaymentStatus=PaymentStatus.PENDING,
                PaymentReceiptStatus=ReceiptStatus.PENDING if payment_method == PaymentMethod.RECEIPT else None,
                HasPriority=wants_priority,
                PriorityAmount=to_money(payload.priorityAmount) if wants_priority else None,
                RenterLatitude=payload.renterLatitude,
                RenterLongitude=payload.renterLongitude,
                RenterAddress=payload.renterAddress,
                ReturnReminderDate=payload.endDate - timedelta(days=1),
                ReturnNotificationSent=False,
                CreatedDate=now,
                UpdatedDate=now,
            )
            db.add(rental)
            db.flush()
            log_audit(db, "Rental", rental.RentalID, "CreateRental", f"Requested {days} day(s), total {total_amount}", user_id=renter_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("Rental %s requested by user %s for equipment %s", rental.RentalID, renter_id, equipment.EquipmentID)

        if wants_priority:
            self._charge_priority_fee(db, rental, equipment.Name)
        return rental

    def _charge_priority_fee(self, db: Session, rental: Rental, equipment_name: str) -> None:
        rental_id = rental.RentalID
        try:
            wallet = self.ledger.get_or_create(db, rental.RenterID)
            self.ledger.post_transaction(
                db,
                wallet.WalletID,
                TransactionType.PRIORITY_FEE,
                -to_money(rental.PriorityAmount),
                f"Taxa de prioridade - Aluguel {equipment_name}",
                reference=f"RENTAL_{rental_id}",
                metadata={"rentalId": rental_id, "equipmentId": rental.EquipmentID},
            )
            rental.PriorityPaidAt = datetime.now()
            rental.UpdatedDate = datetime.now()
            db.commit()
        except (MarketplaceError, SQLAlchemyError) as exc:
            db.rollback()
            logger.warning("Priority fee for rental %s was not charged, dropping priority: %s", rental_id, exc)
            rental = db.get(Rental, rental_id)
            rental.HasPriority = False
            rental.PriorityAmount = None
            rental.PriorityPaidAt = None
            rental.UpdatedDate = datetime.now()
            db.commit()

    # -- transitions -------------------------------------------------------

    def _refresh_equipment_availability(self, db: Session, equipment_id: int, today: date) -> bool:
        """Free the equipment unless another live rental still holds it."""
        db.flush()
        holding = db.execute(
            select(func.count())
            .select_from(Rental)
            .where(
                Rental.EquipmentID == equipment_id,
                Rental.Status.in_(HOLDING_STATES),
                Rental.EndDate >= today,
                Rental.DeletedAt.is_(None),
            )
        ).scalar_one()
        if holding:
            return False
        equipment = db.get(Equipment, equipment_id)
        if equipment and not equipment.IsAvailable:
            equipment.IsAvailable = True
            equipment.UpdatedDate = datetime.now()
        return True

    def _approve(self, db: Session, rental: Rental, now: datetime) -> int:
        equipment = self._lock_equipment(db, rental.EquipmentID)
        if equipment:
            equipment.IsAvailable = False
            equipment.UpdatedDate = now
        rejected = db.execute(
            update(Rental)
            .where(
                Rental.EquipmentID == rental.EquipmentID,
                Rental.RentalID != rental.RentalID,
                Rental.Status == RentalStatus.PENDING,
                Rental.DeletedAt.is_(None),
            )
            .values(Status=RentalStatus.REJECTED, UpdatedDate=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        rental.Status = RentalStatus.APPROVED
        rental.ApprovedAt = now
        return rejected

    def update_status(
        self,
        db: Session,
        rental_id: int,
        new_status: RentalStatus | str,
        actor_id: int,
        now: datetime | None = None,
    ) -> Rental:
        now = now or datetime.now()
        try:
            target = RentalStatus(new_status)
        except ValueError as exc:
            raise ValidationError(f"Unknown rental status: {new_status}") from exc

        try:
            rental = self._get_live_rental(db, rental_id)
            is_owner = actor_id == rental.OwnerID
            if actor_id not in (rental.RenterID, rental.OwnerID):
                raise ForbiddenError("You do not have permission to update this rental.")
            if target == RentalStatus.PAID:
                raise InvalidStateError("Rentals become PAID through a payment, not a status update.")
            if target in OWNER_ONLY_TARGETS and not is_owner:
                raise ForbiddenError(f"Only the owner can set a rental to {target.value}.")
            current = RentalStatus(rental.Status)
            if target not in STATE_TRANSITIONS[current]:
                raise InvalidStateError(f"Invalid status transition: {current.value} -> {target.value}")

            details = f"{current.value} -> {target.value}"
            if target == RentalStatus.APPROVED:
                rejected = self._approve(db, rental, now)
                details += f"; auto-rejected {rejected} pending request(s)"
            else:
                rental.Status = target
            rental.UpdatedDate = now
            if target == RentalStatus.CANCELLED:
                rental.DeletedAt = now
            if target in (RentalStatus.CANCELLED, RentalStatus.REJECTED):
                self._refresh_equipment_availability(db, rental.EquipmentID, now.date())
            log_audit(db, "Rental", rental.RentalID, "UpdateStatus", details, user_id=actor_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("Rental %s: %s by user %s", rental_id, details, actor_id)
        return rental

    def cancel_rental(self, db: Session, rental_id: int, actor_id: int, now: datetime | None = None) -> Rental:
        now = now or datetime.now()
        try:
            rental = self._get_live_rental(db, rental_id)
            if actor_id not in (rental.RenterID, rental.OwnerID):
                raise ForbiddenError("You do not have permission to cancel this rental.")
            current = RentalStatus(rental.Status)
            if current == RentalStatus.COMPLETED:
                raise InvalidStateError("Cannot cancel a completed rental.")
            if RentalStatus.CANCELLED not in STATE_TRANSITIONS[current]:
                raise InvalidStateError(f"Cannot cancel a rental in status {current.value}.")

            rental.Status = RentalStatus.CANCELLED
            rental.DeletedAt = now
            rental.UpdatedDate = now
            self._refresh_equipment_availability(db, rental.EquipmentID, now.date())
            log_audit(db, "Rental", rental.RentalID, "Cancel", f"{current.value} -> CANCELLED", user_id=actor_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("Rental %s cancelled by user %s", rental_id, actor_id)
        return rental

    # -- payment -----------------------------------------------------------

    def pay_with_wallet(self, db: Session, rental_id: int, payer_id: int) -> Rental:
        try:
            rental = self._get_live_rental(db, rental_id)
            if payer_id != rental.RenterID:
                raise ForbiddenError("You can only pay for your own rentals.")
            if rental.PaymentStatus == PaymentStatus.PAID:
                raise InvalidStateError("Rental already paid.")
            if rental.Status != RentalStatus.APPROVED:
                raise InvalidStateError("Rental must be approved before payment.")
            if rental.TotalAmount is None or rental.TotalAmount <= 0:
                raise InvalidStateError("Rental has no amount to pay.")

            wallet = self.ledger.get_or_create(db, payer_id)
            rental = self._get_live_rental(db, rental_id)
            equipment = rental.Equipment
            self.ledger.post_transaction(
                db,
                wallet.WalletID,
                TransactionType.PAYMENT,
                -to_money(rental.TotalAmount),
                f"Pagamento de aluguel - {equipment.Name if equipment else rental.EquipmentID}",
                reference=f"RENTAL_{rental.RentalID}",
                metadata={"rentalId": rental.RentalID, "equipmentId": rental.EquipmentID, "ownerId": rental.OwnerID},
            )
            rental.PaymentStatus = PaymentStatus.PAID
            rental.PaymentMethod = PaymentMethod.WALLET
            rental.Status = RentalStatus.PAID
            rental.UpdatedDate = datetime.now()
            log_audit(db, "Rental", rental.RentalID, "PayWithWallet", f"Paid {rental.TotalAmount} from wallet {wallet.WalletID}", user_id=payer_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("Rental %s paid from wallet by user %s", rental_id, payer_id)
        return rental

    def upload_payment_receipt(self, db: Session, rental_id: int, receipt_url: str, actor_id: int) -> Rental:
        try:
            rental = self._get_live_rental(db, rental_id)
            if actor_id != rental.RenterID:
                raise ForbiddenError("You can only upload receipt for your own rentals.")
            if rental.PaymentMethod != PaymentMethod.RECEIPT:
                raise InvalidStateError("This rental does not use receipt payment method.")
            if rental.PaymentStatus == PaymentStatus.PAID:
                raise InvalidStateError("Rental already paid.")
            if not (receipt_url or "").strip():
                raise ValidationError("Receipt URL is required.")

            rental.PaymentReceipt = receipt_url.strip()
            rental.PaymentReceiptStatus = ReceiptStatus.PENDING
            rental.RejectionReason = None
            rental.UpdatedDate = datetime.now()
            log_audit(db, "Rental", rental.RentalID, "UploadReceipt", None, user_id=actor_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return rental

    def validate_payment_receipt(
        self,
        db: Session,
        rental_id: int,
        is_approved: bool,
        moderator_id: int,
        rejection_reason: str | None = None,
    ) -> Rental:
        try:
            moderator = db.get(User, moderator_id)
            if not moderator or moderator.Role not in MODERATOR_ROLES:
                raise ForbiddenError("Only moderators can validate payment receipts.")
            rental = self._get_live_rental(db, rental_id)
            if rental.PaymentReceiptStatus != ReceiptStatus.PENDING or not rental.PaymentReceipt:
                raise InvalidStateError("Payment receipt is not pending validation.")

            now = datetime.now()
            rental.ModeratedBy = moderator_id
            rental.ModeratedAt = now
            rental.UpdatedDate = now
            if is_approved:
                rental.PaymentReceiptStatus = ReceiptStatus.APPROVED
                rental.PaymentStatus = PaymentStatus.PAID
                rental.Status = RentalStatus.PAID
                rental.RejectionReason = None
            else:
                rental.PaymentReceiptStatus = ReceiptStatus.REJECTED
                rental.RejectionReason = (rejection_reason or "").strip() or "Comprovativo rejeitado"
            log_audit(
                db,
                "Rental",
                rental.RentalID,
                "ValidateReceipt",
                "approved" if is_approved else f"rejected: {rental.RejectionReason}",
                user_id=moderator_id,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        return rental

    # -- sweeps ------------------------------------------------------------

    def cancel_expired_approved_rentals(self, db: Session, now: datetime | None = None) -> list[Rental]:
        """Cancel unpaid approvals past the payment window.

        Unlike user cancellations these rows keep DeletedAt unset and stay
        readable through get_rental.
        """
        now = now or datetime.now()
        cutoff = now - timedelta(hours=self.settings.rental_payment_timeout_hours)
        candidates = db.execute(
            select(Rental.RentalID).where(
                Rental.Status == RentalStatus.APPROVED,
                Rental.PaymentStatus == PaymentStatus.PENDING,
                Rental.ApprovedAt <= cutoff,
                Rental.DeletedAt.is_(None),
            )
        ).scalars().all()

        cancelled: list[Rental] = []
        for rental_id in candidates:
            try:
                # Re-check inside the update so a rental paid or cancelled since
                # the scan is left alone.
                claimed = db.execute(
                    update(Rental)
                    .where(
                        Rental.RentalID == rental_id,
                        Rental.Status == RentalStatus.APPROVED,
                        Rental.PaymentStatus == PaymentStatus.PENDING,
                        Rental.DeletedAt.is_(None),
                    )
                    .values(Status=RentalStatus.CANCELLED, UpdatedDate=now)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if not claimed:
                    db.rollback()
                    continue
                rental = db.execute(
                    _with_parties(select(Rental))
                    .where(Rental.RentalID == rental_id)
                    .execution_options(populate_existing=True)
                ).scalars().one()
                self._refresh_equipment_availability(db, rental.EquipmentID, now.date())
                log_audit(db, "Rental", rental_id, "AutoCancel", "Payment timeout expired")
                db.commit()
                cancelled.append(rental)
            except Exception:
                db.rollback()
                logger.exception("Failed to cancel expired rental %s", rental_id)
        if cancelled:
            logger.info("Cancelled %s approved rental(s) with expired payment window", len(cancelled))
        return cancelled

    def send_return_reminders(self, db: Session, today: date | None = None) -> list[Rental]:
        """Claim the rentals due a return reminder and return only those this call flipped."""
        today = today or date.today()
        candidates = db.execute(
            select(Rental.RentalID).where(
                Rental.ReturnReminderDate <= today,
                Rental.ReturnNotificationSent.is_(False),
                Rental.Status.in_(REMINDER_STATES),
                Rental.DeletedAt.is_(None),
            )
        ).scalars().all()

        claimed_ids: list[int] = []
        try:
            for rental_id in candidates:
                claimed = db.execute(
                    update(Rental)
                    .where(
                        Rental.RentalID == rental_id,
                        Rental.ReturnNotificationSent.is_(False),
                        Rental.Status.in_(REMINDER_STATES),
                        Rental.DeletedAt.is_(None),
                    )
                    .values(ReturnNotificationSent=True)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if claimed:
                    claimed_ids.append(rental_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        if not claimed_ids:
            return []
        rentals = db.execute(
            _with_parties(select(Rental))
            .where(Rental.RentalID.in_(claimed_ids))
            .order_by(Rental.RentalID.asc())
            .execution_options(populate_existing=True)
        ).scalars().all()
        logger.info("Marked %s rental(s) for return reminders", len(rentals))
        return list(rentals)
