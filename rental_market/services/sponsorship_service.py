from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from models.market_models import AdSponsorship, Equipment, SponsorshipStatus, TransactionType, User
from schemas.sponsorships import CreateSponsorshipDto
from services.audit_service import log_audit
from services.errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from services.wallet_service import WalletLedger, to_money


logger = logging.getLogger("rental_market.sponsorships")

ADS_PER_GENERAL_SPONSORSHIP = 3
MAX_SPONSORED_ADS = 5
EQUIPMENT_PER_GENERAL_SPONSORSHIP = 5
ACTIVE_SPONSORSHIP_MESSAGE = (
    "Você já possui um patrocínio ativo. Aguarde a expiração ou cancele o atual para criar um novo."
)

STATUS_TRANSITIONS = {
    SponsorshipStatus.ACTIVE: {SponsorshipStatus.PAUSED, SponsorshipStatus.CANCELLED},
    SponsorshipStatus.PAUSED: {SponsorshipStatus.ACTIVE, SponsorshipStatus.CANCELLED},
    SponsorshipStatus.EXPIRED: set(),
    SponsorshipStatus.CANCELLED: set(),
}


def _serialize_equipment(equipment: Equipment) -> dict:
    return {
        "equipmentID": equipment.EquipmentID,
        "ownerID": equipment.OwnerID,
        "name": equipment.Name,
        "price": equipment.Price,
        "pricePeriod": getattr(equipment.PricePeriod, "value", equipment.PricePeriod),
    }


def serialize_sponsorship(sponsorship: AdSponsorship) -> dict:
    return {
        "sponsorshipID": sponsorship.SponsorshipID,
        "sponsorID": sponsorship.SponsorID,
        "targetUserID": sponsorship.TargetUserID,
        "equipmentID": sponsorship.EquipmentID,
        "amount": sponsorship.Amount,
        "duration": sponsorship.Duration,
        "startDate": sponsorship.StartDate,
        "endDate": sponsorship.EndDate,
        "status": getattr(sponsorship.Status, "value", sponsorship.Status),
        "impressions": sponsorship.Impressions or 0,
        "clicks": sponsorship.Clicks or 0,
        "createdAt": sponsorship.CreatedAt,
        "updatedAt": sponsorship.UpdatedAt,
    }


def _in_window(now: datetime):
    return and_(
        AdSponsorship.Status == SponsorshipStatus.ACTIVE,
        AdSponsorship.StartDate <= now,
        AdSponsorship.EndDate >= now,
    )


class SponsorshipLifecycle:
    def __init__(self, ledger: WalletLedger):
        self.ledger = ledger

    def _find_active(self, db: Session, sponsor_id: int, now: datetime) -> AdSponsorship | None:
        return db.execute(
            select(AdSponsorship).where(AdSponsorship.SponsorID == sponsor_id, _in_window(now))
        ).scalars().first()

    def get_sponsorship(self, db: Session, sponsorship_id: int) -> AdSponsorship:
        sponsorship = db.execute(
            select(AdSponsorship)
            .options(selectinload(AdSponsorship.Equipment), selectinload(AdSponsorship.Sponsor))
            .where(AdSponsorship.SponsorshipID == sponsorship_id)
        ).scalars().first()
        if not sponsorship:
            raise NotFoundError("Sponsorship not found.")
        return sponsorship

    def list_sponsorships(
        self,
        db: Session,
        sponsor_id: int | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> dict:
        conditions = []
        if sponsor_id is not None:
            conditions.append(AdSponsorship.SponsorID == sponsor_id)
        if status:
            try:
                conditions.append(AdSponsorship.Status == SponsorshipStatus(status))
            except ValueError as exc:
                raise ValidationError(f"Unknown sponsorship status: {status}") from exc
        page = max(1, int(page or 1))
        limit = max(1, int(limit or 10))

        total = db.execute(select(func.count()).select_from(AdSponsorship).where(*conditions)).scalar_one()
        rows = db.execute(
            select(AdSponsorship)
            .where(*conditions)
            .order_by(AdSponsorship.CreatedAt.desc(), AdSponsorship.SponsorshipID.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        return {
            "data": [serialize_sponsorship(row) for row in rows],
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit) if total else 0,
        }

    def create(self, db: Session, sponsor_id: int, payload: CreateSponsorshipDto, now: datetime | None = None) -> AdSponsorship:
        now = now or datetime.now()
        amount = to_money(payload.amount)
        if amount <= 0:
            raise ValidationError("Amount must be positive.")
        if payload.duration is None or payload.duration <= 0:
            raise ValidationError("Duration must be positive.")
        if not db.get(User, sponsor_id):
            raise NotFoundError("Sponsor not found.")
        wallet = self.ledger.get_or_create(db, sponsor_id)

        try:
            # Rows still flagged ACTIVE after their window closed would trip the
            # one-active-per-sponsor index.
            self._expire(db, now, sponsor_id=sponsor_id)
            if self._find_active(db, sponsor_id, now):
                raise InvalidStateError(ACTIVE_SPONSORSHIP_MESSAGE)

            if payload.equipmentID is not None:
                equipment = db.get(Equipment, payload.equipmentID)
                if not equipment or equipment.OwnerID != sponsor_id or equipment.DeletedAt is not None:
                    raise NotFoundError("Equipment not found or not owned by user.")
            if payload.targetUserID is not None and not db.get(User, payload.targetUserID):
                raise NotFoundError("Target user not found.")

            sponsorship = AdSponsorship(
                SponsorID=sponsor_id,
                TargetUserID=payload.targetUserID,
                EquipmentID=payload.equipmentID,
                Amount=amount,
                Duration=payload.duration,
                StartDate=now,
                EndDate=now + timedelta(days=payload.duration),
                Status=SponsorshipStatus.ACTIVE,
                Impressions=0,
                Clicks=0,
                CreatedAt=now,
                UpdatedAt=now,
            )
            db.add(sponsorship)
            db.flush()
            self.ledger.post_transaction(
                db,
                wallet.WalletID,
                TransactionType.PROMOTION_FEE,
                -amount,
                f"Patrocínio de anúncio - {payload.duration} dias",
                reference=f"SPONSORSHIP_{sponsorship.SponsorshipID}",
                metadata={
                    "sponsorshipId": sponsorship.SponsorshipID,
                    "duration": payload.duration,
                    "equipmentId": payload.equipmentID,
                    "targetUserId": payload.targetUserID,
                },
            )
            log_audit(db, "AdSponsorship", sponsorship.SponsorshipID, "Create", f"{amount} for {payload.duration} day(s)", user_id=sponsor_id)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise InvalidStateError(ACTIVE_SPONSORSHIP_MESSAGE) from exc
        except Exception:
            db.rollback()
            raise
        logger.info("Sponsorship %s created by user %s", sponsorship.SponsorshipID, sponsor_id)
        return sponsorship

    def extend(
        self,
        db: Session,
        sponsor_id: int,
        sponsorship_id: int,
        additional_days: int,
        additional_amount,
    ) -> AdSponsorship:
        if additional_days is None or additional_days <= 0:
            raise ValidationError("Additional days must be positive.")
        amount = to_money(additional_amount)
        if amount <= 0:
            raise ValidationError("Additional amount must be positive.")
        wallet = self.ledger.get_or_create(db, sponsor_id)

        try:
            sponsorship = db.execute(
                select(AdSponsorship)
                .where(AdSponsorship.SponsorshipID == sponsorship_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars().first()
            if not sponsorship:
                raise NotFoundError("Sponsorship not found.")
            if sponsorship.SponsorID != sponsor_id:
                raise ForbiddenError("You can only extend your own sponsorships.")
            if sponsorship.Status != SponsorshipStatus.ACTIVE:
                raise InvalidStateError("Can only extend active sponsorships.")

            self.ledger.post_transaction(
                db,
                wallet.WalletID,
                TransactionType.PROMOTION_FEE,
                -amount,
                f"Extensão de patrocínio - {additional_days} dias adicionais",
                reference=f"SPONSORSHIP_{sponsorship.SponsorshipID}",
                metadata={
                    "sponsorshipId": sponsorship.SponsorshipID,
                    "additionalDays": additional_days,
                    "type": "extension",
                },
            )
            sponsorship.EndDate = sponsorship.EndDate + timedelta(days=additional_days)
            sponsorship.Duration = sponsorship.Duration + additional_days
            sponsorship.Amount = to_money(sponsorship.Amount) + amount
            sponsorship.UpdatedAt = datetime.now()
            log_audit(db, "AdSponsorship", sponsorship.SponsorshipID, "Extend", f"+{additional_days} day(s), +{amount}", user_id=sponsor_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return sponsorship

    def update_status(self, db: Session, sponsor_id: int, sponsorship_id: int, new_status, now: datetime | None = None) -> AdSponsorship:
        now = now or datetime.now()
        try:
            target = SponsorshipStatus(new_status)
        except ValueError as exc:
            raise ValidationError(f"Unknown sponsorship status: {new_status}") from exc

        try:
            sponsorship = db.get(AdSponsorship, sponsorship_id)
            if not sponsorship:
                raise NotFoundError("Sponsorship not found.")
            if sponsorship.SponsorID != sponsor_id:
                raise ForbiddenError("You can only update your own sponsorships.")
            current = SponsorshipStatus(sponsorship.Status)
            if target not in STATUS_TRANSITIONS[current]:
                raise InvalidStateError(f"Invalid status transition: {current.value} -> {target.value}")
            if target == SponsorshipStatus.ACTIVE and sponsorship.EndDate < now:
                raise InvalidStateError("Sponsorship window has already ended.")

            sponsorship.Status = target
            sponsorship.UpdatedAt = now
            log_audit(db, "AdSponsorship", sponsorship.SponsorshipID, "UpdateStatus", f"{current.value} -> {target.value}", user_id=sponsor_id)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise InvalidStateError(ACTIVE_SPONSORSHIP_MESSAGE) from exc
        except Exception:
            db.rollback()
            raise
        return sponsorship

    def _increment(self, db: Session, sponsorship_id: int, column_name: str) -> None:
        column = getattr(AdSponsorship, column_name)
        result = db.execute(
            update(AdSponsorship)
            .where(AdSponsorship.SponsorshipID == sponsorship_id)
            .values({column_name: column + 1})
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            db.rollback()
            raise NotFoundError("Sponsorship not found.")
        db.commit()

    def increment_impression(self, db: Session, sponsorship_id: int) -> None:
        self._increment(db, sponsorship_id, "Impressions")

    def increment_click(self, db: Session, sponsorship_id: int) -> None:
        self._increment(db, sponsorship_id, "Clicks")

    def _expire(self, db: Session, now: datetime, sponsor_id: int | None = None) -> int:
        stmt = update(AdSponsorship).where(
            AdSponsorship.Status == SponsorshipStatus.ACTIVE,
            AdSponsorship.EndDate < now,
        )
        if sponsor_id is not None:
            stmt = stmt.where(AdSponsorship.SponsorID == sponsor_id)
        return db.execute(
            stmt.values(Status=SponsorshipStatus.EXPIRED, UpdatedAt=now).execution_options(synchronize_session=False)
        ).rowcount

    def expire_old_sponsorships(self, db: Session, now: datetime | None = None) -> int:
        now = now or datetime.now()
        try:
            expired = self._expire(db, now)
            db.commit()
        except Exception:
            db.rollback()
            raise
        if expired:
            logger.info("Expired %s sponsorship(s)", expired)
        return expired

    def is_equipment_sponsored(self, db: Session, equipment_id: int, now: datetime | None = None) -> bool:
        now = now or datetime.now()
        equipment = db.get(Equipment, equipment_id)
        if not equipment:
            return False
        match = db.execute(
            select(AdSponsorship.SponsorshipID)
            .where(
                _in_window(now),
                or_(
                    AdSponsorship.EquipmentID == equipment_id,
                    and_(AdSponsorship.EquipmentID.is_(None), AdSponsorship.SponsorID == equipment.OwnerID),
                ),
            )
            .limit(1)
        ).first()
        return match is not None

    def can_create_new_sponsorship(self, db: Session, sponsor_id: int, now: datetime | None = None) -> dict:
        active = self._find_active(db, sponsor_id, now or datetime.now())
        if active:
            return {
                "canCreate": False,
                "reason": "Você já possui um patrocínio ativo",
                "activeSponsorship": serialize_sponsorship(active),
            }
        return {"canCreate": True}

    def _active_by_value(self, db: Session, now: datetime) -> list[AdSponsorship]:
        return list(
            db.execute(
                select(AdSponsorship)
                .where(_in_window(now))
                .order_by(AdSponsorship.Amount.desc(), AdSponsorship.CreatedAt.desc(), AdSponsorship.SponsorshipID.desc())
            ).scalars()
        )

    def _listed_equipment(self, db: Session, sponsorship: AdSponsorship, per_general: int) -> list[Equipment]:
        live = and_(Equipment.DeletedAt.is_(None), Equipment.IsAvailable.is_(True))
        if sponsorship.EquipmentID is not None:
            equipment = db.execute(
                select(Equipment).where(Equipment.EquipmentID == sponsorship.EquipmentID, live)
            ).scalars().first()
            return [equipment] if equipment else []
        return list(
            db.execute(
                select(Equipment)
                .where(Equipment.OwnerID == sponsorship.SponsorID, live)
                .order_by(Equipment.EquipmentID.asc())
                .limit(per_general)
            ).scalars()
        )

    def get_sponsored_ads_for_user(self, db: Session, user_id: int | None = None, now: datetime | None = None) -> list[dict]:
        now = now or datetime.now()
        ads: list[dict] = []
        for sponsorship in self._active_by_value(db, now):
            if sponsorship.TargetUserID is not None and sponsorship.TargetUserID != user_id:
                continue
            for equipment in self._listed_equipment(db, sponsorship, ADS_PER_GENERAL_SPONSORSHIP):
                ads.append({**serialize_sponsorship(sponsorship), "equipment": _serialize_equipment(equipment)})
        return ads[:MAX_SPONSORED_ADS]

    def get_sponsored_equipments(self, db: Session, limit: int = 10, now: datetime | None = None) -> list[dict]:
        now = now or datetime.now()
        seen: set[int] = set()
        results: list[dict] = []
        for sponsorship in self._active_by_value(db, now):
            for equipment in self._listed_equipment(db, sponsorship, EQUIPMENT_PER_GENERAL_SPONSORSHIP):
                if equipment.EquipmentID in seen:
                    continue
                seen.add(equipment.EquipmentID)
                results.append(
                    {
                        **_serialize_equipment(equipment),
                        "isSponsored": True,
                        "sponsorshipID": sponsorship.SponsorshipID,
                        "sponsorshipAmount": sponsorship.Amount,
                    }
                )
        return results[:limit]
