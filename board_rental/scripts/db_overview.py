#!/usr/bin/env python3
"""Database overview and integrity checks for the board game rental tracker."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "games",
    "rentals",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "games": [
        "id",
        "title",
        "min_players",
        "max_players",
        "play_time",
        "complexity",
        "description",
        "image_url",
        "koreaboardgames_url",
        "created_at",
        "updated_at",
    ],
    "rentals": [
        "id",
        "game_id",
        "name",
        "email",
        "phone",
        "rented_at",
        "due_date",
        "returned_at",
        "notes",
        "created_at",
        "updated_at",
    ],
}

ACTIVE_RENTAL_INDEX = "ux_rentals_active_game"


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


def _table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(column["name"]) for column in inspect(engine).get_columns(table_name)}


def _index_rows(engine: Engine, table_name: str) -> list[tuple[str, bool, str]]:
    rows = []
    for index in inspect(engine).get_indexes(table_name):
        columns = ",".join(str(name) for name in index.get("column_names") or [])
        rows.append((str(index.get("name")), bool(index.get("unique")), columns))
    return sorted(rows)


def _create_schema(engine: Engine) -> None:
    app_dir = Path(__file__).resolve().parents[1]
    if str(app_dir) not in sys.path:
        sys.path.insert(0, str(app_dir))
    from db.base import Base
    import models.rental_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = _table_exists(engine, table)
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if not _table_exists(engine, table):
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


def _count_check(engine: Engine, name: str, sql: str, params: dict | None = None) -> CheckResult:
    count = int(_scalar(engine, sql, params) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine, today: str) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if _table_exists(engine, "rentals"):
        checks.append(
            _count_check(
                engine,
                "rentals:games_with_multiple_active_rentals",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT game_id
                    FROM rentals
                    WHERE returned_at IS NULL
                    GROUP BY game_id
                    HAVING COUNT(*) > 1
                ) d
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "rentals:missing_contact",
                """
                SELECT COUNT(*)
                FROM rentals
                WHERE (email IS NULL OR email = '') AND (phone IS NULL OR phone = '')
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "rentals:due_before_rented",
                "SELECT COUNT(*) FROM rentals WHERE due_date < rented_at",
            )
        )
        index_names = {name for name, _, _ in _index_rows(engine, "rentals")}
        checks.append(
            CheckResult(
                f"rentals:index:{ACTIVE_RENTAL_INDEX}",
                ACTIVE_RENTAL_INDEX in index_names,
                "present" if ACTIVE_RENTAL_INDEX in index_names else "missing",
            )
        )

        # Reported, not a failure: overdue rentals are a normal business state.
        overdue = int(
            _scalar(
                engine,
                "SELECT COUNT(*) FROM rentals WHERE returned_at IS NULL AND due_date < :today",
                {"today": today},
            )
            or 0
        )
        checks.append(CheckResult("rentals:overdue_active", True, f"count={overdue}"))

    if _table_exists(engine, "rentals") and _table_exists(engine, "games"):
        checks.append(
            _count_check(
                engine,
                "rentals:orphan_game_id",
                """
                SELECT COUNT(*)
                FROM rentals r
                LEFT JOIN games g ON g.id = r.game_id
                WHERE g.id IS NULL
                """,
            )
        )

    if _table_exists(engine, "games"):
        checks.append(
            _count_check(
                engine,
                "games:min_players_above_max",
                """
                SELECT COUNT(*)
                FROM games
                WHERE min_players IS NOT NULL AND max_players IS NOT NULL AND min_players > max_players
                """,
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if not _table_exists(engine, table):
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_index_summary(engine: Engine) -> None:
    _print_section("Index Summary")
    for table in EXPECTED_TABLES:
        if not _table_exists(engine, table):
            print(f"{table}: missing")
            continue
        print(f"{table}:")
        for name, is_unique, cols in _index_rows(engine, table):
            print(f"  - {name} unique={is_unique} cols={cols}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if _table_exists(engine, "games"):
        rows = _rows(
            engine,
            "SELECT id, title, min_players, max_players, complexity FROM games ORDER BY id DESC LIMIT :n",
            {"n": sample_size},
        )
        print("games (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if _table_exists(engine, "rentals"):
        rows = _rows(
            engine,
            """
            SELECT id, game_id, name, rented_at, due_date, returned_at
            FROM rentals
            ORDER BY id DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("rentals (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def run_checks(engine: Engine, today: str) -> list[CheckResult]:
    return _run_existence_checks(engine) + _run_column_checks(engine) + _run_integrity_checks(engine, today)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Board game rental DB overview")
    parser.add_argument("--db-url", default=os.environ.get("BOARD_RENTAL_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    parser.add_argument("--create", action="store_true", help="create missing tables before checking")
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("BOARD_RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    if args.create:
        _create_schema(engine)
        print("Schema created (missing tables only).")

    today = datetime.now(timezone.utc).date().isoformat()
    _print_results("Table Existence", _run_existence_checks(engine))
    _print_results("Column Checks", _run_column_checks(engine))
    _print_results("Integrity Checks", _run_integrity_checks(engine, today))
    _print_row_counts(engine)
    _print_index_summary(engine)
    _print_samples(engine, args.samples)
    return 0


if __name__ == "__main__":
    sys.exit(main())
