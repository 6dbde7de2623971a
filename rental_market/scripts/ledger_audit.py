#!/usr/bin/env python3
"""Ledger and availability integrity checks for the rental marketplace DB."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from datetime import date
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Users",
    "Equipments",
    "Wallets",
    "WalletTransactions",
    "Rentals",
    "AdSponsorships",
    "AuditLogs",
    "NotificationQueue",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Wallets": ["WalletID", "UserID", "Balance", "HeldAmount", "IsActive"],
    "WalletTransactions": [
        "TransactionID",
        "WalletID",
        "Type",
        "Amount",
        "Description",
        "Status",
        "Reference",
        "GatewayReference",
        "GatewayTransactionID",
        "Metadata",
    ],
    "Rentals": [
        "RentalID",
        "EquipmentID",
        "RenterID",
        "OwnerID",
        "Status",
        "PaymentStatus",
        "ApprovedAt",
        "ReturnReminderDate",
        "ReturnNotificationSent",
        "DeletedAt",
    ],
    "AdSponsorships": ["SponsorshipID", "SponsorID", "Status", "StartDate", "EndDate", "Impressions", "Clicks"],
}

# Amounts are NUMERIC(18,2); anything under half a cent is rounding noise.
_TOLERANCE = 0.005


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _count_check(engine: Engine, name: str, sql: str, params: dict | None = None) -> CheckResult:
    count = int(_scalar(engine, sql, params) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def run_column_checks(engine: Engine) -> list[CheckResult]:
    inspector = inspect(engine)
    present = set(inspector.get_table_names())
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def run_integrity_checks(engine: Engine, today: date | None = None) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    checks: list[CheckResult] = []
    today = today or date.today()

    if {"Wallets", "WalletTransactions"} <= present:
        checks.append(
            _count_check(
                engine,
                "wallets:balance_matches_completed_transactions",
                """
                SELECT COUNT(*)
                FROM Wallets w
                WHERE ABS(w.Balance - COALESCE((
                    SELECT SUM(t.Amount)
                    FROM WalletTransactions t
                    WHERE t.WalletID = w.WalletID AND t.Status = 'COMPLETED'
                ), 0)) > :tolerance
                """,
                {"tolerance": _TOLERANCE},
            )
        )
        checks.append(
            _count_check(
                engine,
                "wallets:held_matches_pending_debits",
                """
                SELECT COUNT(*)
                FROM Wallets w
                WHERE ABS(w.HeldAmount + COALESCE((
                    SELECT SUM(t.Amount)
                    FROM WalletTransactions t
                    WHERE t.WalletID = w.WalletID AND t.Status = 'PENDING' AND t.Amount < 0
                ), 0)) > :tolerance
                """,
                {"tolerance": _TOLERANCE},
            )
        )
        checks.append(
            _count_check(
                engine,
                "wallets:negative_spendable_balance",
                "SELECT COUNT(*) FROM Wallets WHERE Balance - HeldAmount < -:tolerance",
                {"tolerance": _TOLERANCE},
            )
        )
        checks.append(
            _count_check(
                engine,
                "transactions:orphan_wallet",
                """
                SELECT COUNT(*)
                FROM WalletTransactions t
                LEFT JOIN Wallets w ON w.WalletID = t.WalletID
                WHERE w.WalletID IS NULL
                """,
            )
        )

    if "AdSponsorships" in present:
        checks.append(
            _count_check(
                engine,
                "sponsorships:multiple_active_per_sponsor",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT SponsorID
                    FROM AdSponsorships
                    WHERE Status = 'ACTIVE'
                    GROUP BY SponsorID
                    HAVING COUNT(*) > 1
                ) d
                """,
            )
        )

    if {"Equipments", "Rentals"} <= present:
        holding = """
            SELECT 1
            FROM Rentals r
            WHERE r.EquipmentID = e.EquipmentID
              AND r.Status IN ('APPROVED', 'PAID', 'ACTIVE')
              AND r.EndDate >= :today
              AND r.DeletedAt IS NULL
        """
        checks.append(
            _count_check(
                engine,
                "equipment:available_while_held",
                f"SELECT COUNT(*) FROM Equipments e WHERE e.IsAvailable = 1 AND e.DeletedAt IS NULL AND EXISTS ({holding})",
                {"today": today.isoformat()},
            )
        )
        checks.append(
            _count_check(
                engine,
                "rentals:approved_without_timestamp",
                "SELECT COUNT(*) FROM Rentals WHERE Status = 'APPROVED' AND ApprovedAt IS NULL",
            )
        )
    return checks


def _print_results(title: str, results: Iterable[CheckResult]) -> None:
    _print_section(title)
    for result in results:
        marker = "OK" if result.ok else "FAIL"
        print(f"[{marker}] {result.name}: {result.detail}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Rental marketplace ledger audit")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_MARKET_DB_URL", ""))
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_MARKET_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    existence = run_existence_checks(engine)
    columns = run_column_checks(engine)
    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", existence)
    _print_results("Column Checks", columns)
    _print_results("Integrity Checks", integrity)
    return 0 if all(result.ok for result in [*existence, *columns, *integrity]) else 1


if __name__ == "__main__":
    sys.exit(main())
