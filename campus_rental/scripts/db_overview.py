#!/usr/bin/env python3
"""Database overview and integrity checks for the campus rental store."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


EXPECTED_TABLES = [
    "Items",
    "RentalApplications",
    "RentalApplicationItems",
    "AuditLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Items": ["id", "name", "initialStock", "currentStock", "price", "description", "imageUrl", "unit"],
    "RentalApplications": [
        "id",
        "applicantName",
        "phoneNumber",
        "studentId",
        "accountHolderName",
        "accountNumber",
        "rentalDate",
        "returnDate",
        "totalItemCost",
        "deposit",
        "totalAmount",
        "status",
        "applicationDate",
        "rentalStaff",
        "returnStaff",
        "actualReturnDate",
        "depositRefunded",
    ],
    "RentalApplicationItems": ["rentalApplicationId", "itemId", "quantity"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}

# Stock held back by Pending and Rented applications, per item.
RESERVED_SQL = """
    SELECT ai.itemId AS itemId, SUM(ai.quantity) AS reserved
    FROM RentalApplicationItems ai
    JOIN RentalApplications a ON a.id = ai.rentalApplicationId
    WHERE a.status IN ('Pending', 'Rented')
    GROUP BY ai.itemId
"""


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


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _table_names(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _run_existence_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    return [
        CheckResult(f"table:{table}", table in tables, "present" if table in tables else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    results: list[CheckResult] = []
    inspector = inspect(engine)
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
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


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if "Items" in tables:
        checks.append(
            _count_check(
                engine,
                "items:stock_out_of_bounds",
                "SELECT COUNT(*) FROM Items WHERE currentStock < 0 OR currentStock > initialStock",
            )
        )

    if {"Items", "RentalApplications", "RentalApplicationItems"} <= tables:
        # currentStock + reserved must equal initialStock for every item.
        checks.append(
            _count_check(
                engine,
                "items:stock_not_conserved",
                f"""
                SELECT COUNT(*)
                FROM Items i
                LEFT JOIN ({RESERVED_SQL}) r ON r.itemId = i.id
                WHERE i.currentStock + COALESCE(r.reserved, 0) <> i.initialStock
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "applicationitems:reserved_unknown_item",
                """
                SELECT COUNT(*)
                FROM RentalApplicationItems ai
                JOIN RentalApplications a ON a.id = ai.rentalApplicationId
                LEFT JOIN Items i ON i.id = ai.itemId
                WHERE a.status IN ('Pending', 'Rented') AND i.id IS NULL
                """,
            )
        )

    if {"RentalApplications", "RentalApplicationItems"} <= tables:
        checks.append(
            _count_check(
                engine,
                "applicationitems:orphan_application",
                """
                SELECT COUNT(*)
                FROM RentalApplicationItems ai
                LEFT JOIN RentalApplications a ON a.id = ai.rentalApplicationId
                WHERE a.id IS NULL
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "applications:without_items",
                """
                SELECT COUNT(*)
                FROM RentalApplications a
                LEFT JOIN RentalApplicationItems ai ON ai.rentalApplicationId = a.id
                WHERE ai.itemId IS NULL
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "applications:returned_without_return_date",
                "SELECT COUNT(*) FROM RentalApplications WHERE status = 'Returned' AND actualReturnDate IS NULL",
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine, tables: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_index_summary(engine: Engine, tables: set[str]) -> None:
    _print_section("Index Summary (key tables)")
    inspector = inspect(engine)
    for table in ["RentalApplicationItems", "AuditLogs"]:
        if table not in tables:
            print(f"{table}: missing")
            continue
        print(f"{table}:")
        for index in inspector.get_indexes(table):
            cols = ",".join(str(col) for col in index.get("column_names") or [])
            print(f"  - {index.get('name')} unique={bool(index.get('unique'))} cols={cols}")


def _print_samples(engine: Engine, tables: set[str], sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if "Items" in tables:
        rows = _rows(
            engine,
            """
            SELECT id, name, currentStock, initialStock
            FROM Items
            ORDER BY currentStock ASC, name ASC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("Items (lowest stock):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "AuditLogs" in tables:
        rows = _rows(
            engine,
            """
            SELECT AuditID, EntityType, EntityID, Action, CreatedAt
            FROM AuditLogs
            ORDER BY AuditID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Campus rental DB overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
        tables = _table_names(engine)
    except SQLAlchemyError as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = _run_integrity_checks(engine, tables)
    _print_results("Table Existence", _run_existence_checks(engine, tables))
    _print_results("Column Checks", _run_column_checks(engine, tables))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine, tables)
    _print_index_summary(engine, tables)
    _print_samples(engine, tables, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
