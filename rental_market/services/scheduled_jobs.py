from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy.orm import Session

from services.notification_service import RentalNotifier
from services.rental_service import RentalLifecycle
from services.sponsorship_service import SponsorshipLifecycle


logger = logging.getLogger("rental_market.jobs")


def run_return_reminders(
    db: Session,
    rentals: RentalLifecycle,
    notifier: RentalNotifier,
    today: date | None = None,
) -> dict:
    """Daily job. Rentals are marked before anything is queued, so a failed
    queue write is logged and never retried."""
    due = rentals.send_return_reminders(db, today=today)
    queued = 0
    failed = 0
    for rental in due:
        try:
            notifier.queue_return_reminder(db, rental)
            db.commit()
            queued += 1
        except Exception:
            db.rollback()
            failed += 1
            logger.exception("Failed to queue return reminder for rental %s", rental.RentalID)
    logger.info("Return reminders: %s due, %s queued, %s failed", len(due), queued, failed)
    return {"due": len(due), "queued": queued, "failed": failed}


def run_expired_rental_cancellation(
    db: Session,
    rentals: RentalLifecycle,
    notifier: RentalNotifier,
    now: datetime | None = None,
) -> dict:
    """Hourly job. Cancellations stay committed even when the notices fail."""
    cancelled = rentals.cancel_expired_approved_rentals(db, now=now)
    notified = 0
    failed = 0
    for rental in cancelled:
        try:
            notifier.queue_cancellation(db, rental)
            db.commit()
            notified += 1
        except Exception:
            db.rollback()
            failed += 1
            logger.exception("Failed to queue cancellation notices for rental %s", rental.RentalID)
    logger.info("Expired rentals: %s cancelled, %s notified, %s failed", len(cancelled), notified, failed)
    return {"cancelled": len(cancelled), "notified": notified, "failed": failed}


def run_sponsorship_expiry(db: Session, sponsorships: SponsorshipLifecycle, now: datetime | None = None) -> dict:
    expired = sponsorships.expire_old_sponsorships(db, now=now)
    return {"expired": expired}


def run_hourly(
    db: Session,
    rentals: RentalLifecycle,
    sponsorships: SponsorshipLifecycle,
    notifier: RentalNotifier,
    now: datetime | None = None,
) -> dict:
    return {
        "rentals": run_expired_rental_cancellation(db, rentals, notifier, now=now),
        "sponsorships": run_sponsorship_expiry(db, sponsorships, now=now),
    }


def run_daily(db: Session, rentals: RentalLifecycle, notifier: RentalNotifier, today: date | None = None) -> dict:
    return {"reminders": run_return_reminders(db, rentals, notifier, today=today)}
