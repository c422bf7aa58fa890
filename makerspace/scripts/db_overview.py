#!/usr/bin/env python3
"""Database overview and integrity checks for makerspace scheduling."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from dotenv import load_dotenv
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Users",
    "Machines",
    "TrainingModules",
    "MachineRequirements",
    "TrainingProgress",
    "ManagerCheckouts",
    "Reservations",
    "CheckoutAvailabilityBlocks",
    "CheckoutAvailabilityRules",
    "CheckoutAppointments",
    "AppSettings",
    "AuditLogs",
    "NotificationQueue",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "TrainingProgress": ["UserID", "ModuleID", "WatchedSeconds", "WatchedRanges", "LastPosition", "CompletedAt"],
    "Reservations": ["ReservationID", "MachineID", "StartTime", "EndTime", "Status"],
    "CheckoutAvailabilityRules": ["RuleID", "ManagerID", "DayOfWeek", "StartMinuteOfDay", "EndMinuteOfDay", "Timezone", "Status"],
    "CheckoutAppointments": ["AppointmentID", "UserID", "MachineID", "ManagerID", "StartTime", "EndTime", "Status"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}


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


def _table_names(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(col["name"]) for col in inspect(engine).get_columns(table_name)}


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = table in present
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    checks: list[CheckResult] = []

    if "Reservations" in present:
        checks.append(
            _count_check(
                engine,
                "reservations:overlapping_active_per_machine",
                """
                SELECT COUNT(*)
                FROM "Reservations" a
                JOIN "Reservations" b
                  ON a."MachineID" = b."MachineID"
                 AND a."ReservationID" < b."ReservationID"
                 AND a."StartTime" < b."EndTime"
                 AND a."EndTime" > b."StartTime"
                WHERE a."Status" IN ('pending', 'approved', 'confirmed')
                  AND b."Status" IN ('pending', 'approved', 'confirmed')
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "reservations:end_not_after_start",
                'SELECT COUNT(*) FROM "Reservations" WHERE "EndTime" <= "StartTime"',
            )
        )

    if "CheckoutAppointments" in present:
        checks.append(
            _count_check(
                engine,
                "appointments:overlapping_scheduled_per_manager",
                """
                SELECT COUNT(*)
                FROM "CheckoutAppointments" a
                JOIN "CheckoutAppointments" b
                  ON a."ManagerID" = b."ManagerID"
                 AND a."AppointmentID" < b."AppointmentID"
                 AND a."StartTime" < b."EndTime"
                 AND a."EndTime" > b."StartTime"
                WHERE a."Status" = 'scheduled'
                  AND b."Status" = 'scheduled'
                """,
            )
        )

    if "CheckoutAvailabilityRules" in present:
        checks.append(
            _count_check(
                engine,
                "rules:invalid_minute_range",
                """
                SELECT COUNT(*)
                FROM "CheckoutAvailabilityRules"
                WHERE "StartMinuteOfDay" < 0
                   OR "StartMinuteOfDay" >= 1440
                   OR "EndMinuteOfDay" <= 0
                   OR "EndMinuteOfDay" > 1440
                   OR "EndMinuteOfDay" <= "StartMinuteOfDay"
                   OR "DayOfWeek" < 0
                   OR "DayOfWeek" > 6
                """,
            )
        )

    if "MachineRequirements" in present:
        checks.append(
            _count_check(
                engine,
                "requirements:percent_out_of_range",
                """
                SELECT COUNT(*)
                FROM "MachineRequirements"
                WHERE "RequiredWatchPercent" <= 0 OR "RequiredWatchPercent" > 100
                """,
            )
        )

    return checks


def run_checks(engine: Engine) -> list[CheckResult]:
    return _run_existence_checks(engine) + _run_column_checks(engine) + _run_integrity_checks(engine)


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = _table_names(engine)
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f'SELECT COUNT(*) FROM "{table}"')
        print(f"{table}: {int(count or 0)}")


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Makerspace scheduling DB overview")
    parser.add_argument("--db-url", default=os.environ.get("MAKERSPACE_DB_URL", ""))
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("MAKERSPACE_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    existence = _run_existence_checks(engine)
    columns = _run_column_checks(engine)
    integrity = _run_integrity_checks(engine)
    _print_results("Table Existence", existence)
    _print_results("Column Checks", columns)
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    return 0 if all(row.ok for row in existence + columns + integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
