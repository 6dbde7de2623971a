from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models.market_models import NotificationQueue, Rental, User


RETURN_REMINDER = "ReturnReminder"
RENTAL_CANCELLED = "RentalCancelled"

RENTER_CANCELLATION_REASON = "Tempo limite para pagamento expirado"
OWNER_CANCELLATION_REASON = "Locatário não efetuou pagamento no prazo"


def _rental_payload(rental: Rental) -> dict:
    equipment = rental.Equipment
    return {
        "rentalID": rental.RentalID,
        "equipmentID": rental.EquipmentID,
        "equipmentName": equipment.Name if equipment else None,
        "startDate": rental.StartDate.isoformat() if rental.StartDate else None,
        "endDate": rental.EndDate.isoformat() if rental.EndDate else None,
        "totalAmount": str(rental.TotalAmount) if rental.TotalAmount is not None else None,
    }


class RentalNotifier:
    """Queues rental e-mails for the delivery worker."""

    def _queue(self, db: Session, rental: Rental, notification_type: str, recipient: User | None, extra: dict) -> NotificationQueue:
        payload = _rental_payload(rental)
        payload.update(extra)
        if recipient is not None:
            payload["recipientName"] = recipient.FullName
        notification = NotificationQueue(
            RentalID=rental.RentalID,
            NotificationType=notification_type,
            Recipient=recipient.Email if recipient is not None else None,
            Payload=json.dumps(payload, ensure_ascii=True),
            CreatedAt=datetime.now(),
        )
        db.add(notification)
        return notification

    def queue_return_reminder(self, db: Session, rental: Rental) -> NotificationQueue:
        return self._queue(db, rental, RETURN_REMINDER, rental.Renter, {"role": "renter"})

    def queue_cancellation(self, db: Session, rental: Rental) -> list[NotificationQueue]:
        return [
            self._queue(db, rental, RENTAL_CANCELLED, rental.Renter, {"role": "renter", "reason": RENTER_CANCELLATION_REASON}),
            self._queue(db, rental, RENTAL_CANCELLED, rental.Owner, {"role": "owner", "reason": OWNER_CANCELLATION_REASON}),
        ]

    def list_pending(self, db: Session) -> list[NotificationQueue]:
        return list(
            db.execute(
                select(NotificationQueue)
                .where(NotificationQueue.SentAt.is_(None))
                .order_by(NotificationQueue.NotificationID.asc())
            ).scalars()
        )

    def mark_sent(self, db: Session, notification_ids: list[int]) -> int:
        if not notification_ids:
            return 0
        result = db.execute(
            update(NotificationQueue)
            .where(NotificationQueue.NotificationID.in_(notification_ids), NotificationQueue.SentAt.is_(None))
            .values(SentAt=datetime.now())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount


def serialize_notification(notification: NotificationQueue) -> dict:
    return {
        "notificationID": notification.NotificationID,
        "rentalID": notification.RentalID,
        "type": notification.NotificationType,
        "recipient": notification.Recipient,
        "payload": notification.Payload,
        "createdAt": notification.CreatedAt,
        "sentAt": notification.SentAt,
    }
