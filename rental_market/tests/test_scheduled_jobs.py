import contextlib
import io
import json
import unittest
from datetime import date, datetime, timedelta
from decimal import Decimal

from market_fixtures import add_equipment, add_user, fund, make_database

from sqlalchemy import text

from models.market_models import RentalStatus, SponsorshipStatus, UserType
from schemas.rentals import CreateRentalDto
from schemas.sponsorships import CreateSponsorshipDto
from scripts import ledger_audit, run_sweeps
from services import scheduled_jobs
from services.notification_service import (
    OWNER_CANCELLATION_REASON,
    RENTAL_CANCELLED,
    RENTER_CANCELLATION_REASON,
    RETURN_REMINDER,
    RentalNotifier,
)
from services.rental_service import RentalLifecycle
from services.sponsorship_service import SponsorshipLifecycle
from services.wallet_service import WalletLedger
from settings import Settings


class BrokenNotifier(RentalNotifier):
    def queue_cancellation(self, db, rental):
        raise RuntimeError("mail queue offline")


class ScheduledJobTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.factory = make_database()
        self.db = self.factory()
        self.ledger = WalletLedger(Settings())
        self.rentals = RentalLifecycle(self.ledger, Settings())
        self.sponsorships = SponsorshipLifecycle(self.ledger)
        self.notifier = RentalNotifier()
        self.owner = add_user(self.db, "Carlos Owner", user_type=UserType.LANDLORD)
        self.renter = add_user(self.db, "Ana Tenant")
        self.equipment = add_equipment(self.db, self.owner)
        self.today = date.today()
        self.now = datetime.now()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _rental(self, start_offset=1, days=2):
        start = self.today + timedelta(days=start_offset)
        payload = CreateRentalDto(
            equipmentID=self.equipment.EquipmentID,
            startDate=start,
            endDate=start + timedelta(days=days),
            paymentMethod="REFERENCE",
        )
        return self.rentals.create(self.db, self.renter.UserID, payload)

    def _stale_approval(self):
        rental = self._rental()
        self.rentals.update_status(
            self.db, rental.RentalID, RentalStatus.APPROVED, self.owner.UserID, now=self.now - timedelta(hours=25)
        )
        return rental

    def test_hourly_cancels_unpaid_rentals_and_expires_sponsorships(self):
        rental = self._stale_approval()
        fund(self.ledger, self.db, self.owner, 100)
        self.sponsorships.create(
            self.db,
            self.owner.UserID,
            CreateSponsorshipDto(amount=Decimal("50"), duration=1),
            now=self.now - timedelta(days=2),
        )

        result = scheduled_jobs.run_hourly(self.db, self.rentals, self.sponsorships, self.notifier, now=self.now)
        self.assertEqual(result["rentals"], {"cancelled": 1, "notified": 1, "failed": 0})
        self.assertEqual(result["sponsorships"], {"expired": 1})

        notices = self.notifier.list_pending(self.db)
        self.assertEqual([n.NotificationType for n in notices], [RENTAL_CANCELLED, RENTAL_CANCELLED])
        self.assertEqual({n.RentalID for n in notices}, {rental.RentalID})
        payloads = [json.loads(n.Payload) for n in notices]
        self.assertEqual(payloads[0]["reason"], RENTER_CANCELLATION_REASON)
        self.assertEqual(payloads[1]["reason"], OWNER_CANCELLATION_REASON)
        self.assertEqual(notices[1].Recipient, self.owner.Email)

        active = self.sponsorships.list_sponsorships(self.db, status=SponsorshipStatus.ACTIVE.value)
        self.assertEqual(active["total"], 0)

    def test_failed_notice_keeps_cancellation(self):
        rental = self._stale_approval()
        with self.assertLogs("rental_market.jobs", level="ERROR"):
            result = scheduled_jobs.run_expired_rental_cancellation(self.db, self.rentals, BrokenNotifier(), now=self.now)
        self.assertEqual(result, {"cancelled": 1, "notified": 0, "failed": 1})

        self.db.expire_all()
        self.assertEqual(self.rentals.get_rental(self.db, rental.RentalID).Status, RentalStatus.CANCELLED)

    def test_daily_queues_each_reminder_once(self):
        rental = self._rental(start_offset=0, days=1)
        self.rentals.update_status(self.db, rental.RentalID, RentalStatus.APPROVED, self.owner.UserID)
        self.rentals.update_status(self.db, rental.RentalID, RentalStatus.ACTIVE, self.owner.UserID)

        first = scheduled_jobs.run_daily(self.db, self.rentals, self.notifier, today=self.today)
        self.assertEqual(first, {"reminders": {"due": 1, "queued": 1, "failed": 0}})
        second = scheduled_jobs.run_daily(self.db, self.rentals, self.notifier, today=self.today)
        self.assertEqual(second["reminders"]["due"], 0)

        notices = self.notifier.list_pending(self.db)
        self.assertEqual(len(notices), 1)
        self.assertEqual(notices[0].NotificationType, RETURN_REMINDER)
        self.assertEqual(notices[0].Recipient, self.renter.Email)

        self.assertEqual(self.notifier.mark_sent(self.db, [notices[0].NotificationID]), 1)
        self.assertEqual(self.notifier.list_pending(self.db), [])

    def test_long_payloads_stay_valid_json(self):
        self.equipment.Name = "Betoneira " + "ç" * 240
        self.renter.FullName = "Ana " + "ã" * 240
        self.db.commit()
        rental = self._rental()
        self.notifier.queue_return_reminder(self.db, rental)
        self.db.commit()

        notice = self.notifier.list_pending(self.db)[0]
        self.assertGreater(len(notice.Payload), 2000)
        payload = json.loads(notice.Payload)
        self.assertEqual(payload["equipmentName"], self.equipment.Name)
        self.assertEqual(payload["recipientName"], self.renter.FullName)

    def test_sweep_script_runs_all_jobs(self):
        self._stale_approval()
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            exit_code = run_sweeps.main(["all", "--log-level", "WARNING"], session_factory=self.factory)
        self.assertEqual(exit_code, 0)
        summary = json.loads(out.getvalue())
        self.assertEqual(summary["hourly"]["rentals"]["cancelled"], 1)
        self.assertEqual(summary["daily"]["reminders"]["due"], 0)


class LedgerAuditTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.factory = make_database()
        self.db = self.factory()
        self.ledger = WalletLedger(Settings())
        self.user = add_user(self.db, "Ana Tenant")

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _failed(self):
        return [result.name for result in ledger_audit.run_integrity_checks(self.engine) if not result.ok]

    def test_clean_ledger_passes(self):
        fund(self.ledger, self.db, self.user, 100)
        self.assertTrue(all(result.ok for result in ledger_audit.run_existence_checks(self.engine)))
        self.assertTrue(all(result.ok for result in ledger_audit.run_column_checks(self.engine)))
        self.assertEqual(self._failed(), [])

    def test_balance_drift_is_reported(self):
        wallet = fund(self.ledger, self.db, self.user, 100)
        with self.engine.begin() as conn:
            conn.execute(text("UPDATE Wallets SET Balance = Balance + 5 WHERE WalletID = :id"), {"id": wallet.WalletID})
        self.assertEqual(self._failed(), ["wallets:balance_matches_completed_transactions"])

    def test_missing_db_url_exits_with_code_2(self):
        with contextlib.redirect_stdout(io.StringIO()):
            self.assertEqual(ledger_audit.main(["--db-url", ""]), 2)


if __name__ == "__main__":
    unittest.main()
