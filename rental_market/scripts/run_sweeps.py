#!/usr/bin/env python3
"""Cron entry point for the rental and sponsorship sweeps.

Hourly: cancel approved rentals whose payment window has lapsed and expire
sponsorships past their end date. Daily: queue return reminders.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys

from dotenv import load_dotenv

APP_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if APP_DIR not in sys.path:
    sys.path.insert(0, APP_DIR)

load_dotenv()

from services import scheduled_jobs  # noqa: E402
from services.notification_service import RentalNotifier  # noqa: E402
from services.rental_service import RentalLifecycle  # noqa: E402
from services.sponsorship_service import SponsorshipLifecycle  # noqa: E402
from services.wallet_service import WalletLedger  # noqa: E402
from settings import load_settings  # noqa: E402


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run scheduled marketplace sweeps once.")
    parser.add_argument("job", choices=["hourly", "daily", "all"], help="Which sweep set to run")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))
    return parser


def run(job: str, db) -> dict:
    settings = load_settings()
    ledger = WalletLedger(settings)
    rentals = RentalLifecycle(ledger, settings)
    sponsorships = SponsorshipLifecycle(ledger)
    notifier = RentalNotifier()

    result: dict = {}
    if job in ("hourly", "all"):
        result["hourly"] = scheduled_jobs.run_hourly(db, rentals, sponsorships, notifier)
    if job in ("daily", "all"):
        result["daily"] = scheduled_jobs.run_daily(db, rentals, notifier)
    return result


def main(argv: list[str] | None = None, session_factory=None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if session_factory is None:
        from db.session import SessionLocalMarket

        session_factory = SessionLocalMarket

    db = session_factory()
    try:
        result = run(args.job, db)
    finally:
        db.close()

    print(json.dumps(result, ensure_ascii=True, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
