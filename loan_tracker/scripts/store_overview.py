#!/usr/bin/env python3
"""Record store overview and stock integrity checks for the loan tracker."""

from __future__ import annotations

import argparse
import os
import sys
from collections import Counter
from dataclasses import dataclass
from typing import Iterable

from loan_tracker.db.record_store import (
    EQUIPMENT,
    LOAN_ACTIVE,
    LOAN_RETURNED,
    LOANS,
    USERS,
    HttpRecordStore,
    RecordStoreError,
    sort_by_borrowed_at,
)
from loan_tracker.db.session import DEFAULT_RECORD_STORE_URL, get_sessionmaker
from loan_tracker.db.sql_store import SqlRecordStore


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _detail(offenders: list[str], limit: int = 5) -> str:
    if not offenders:
        return "count=0"
    shown = ",".join(offenders[:limit])
    more = f" (+{len(offenders) - limit} more)" if len(offenders) > limit else ""
    return f"count={len(offenders)} ids={shown}{more}"


def run_integrity_checks(equipment: list[dict], loans: list[dict]) -> list[CheckResult]:
    active_by_equipment = Counter(
        loan.get("equipmentId") for loan in loans if loan.get("status") == LOAN_ACTIVE
    )
    equipment_ids = {item.get("id") for item in equipment}

    out_of_bounds = []
    drifted = []
    for item in equipment:
        available = int(item.get("availableQuantity") or 0)
        total = int(item.get("totalQuantity") or 0)
        if not 0 <= available <= total:
            out_of_bounds.append(str(item.get("id")))
        if available != total - active_by_equipment.get(item.get("id"), 0):
            drifted.append(str(item.get("id")))

    orphaned = [
        str(loan.get("id"))
        for loan in loans
        if loan.get("status") == LOAN_ACTIVE and loan.get("equipmentId") not in equipment_ids
    ]
    unstamped = [
        str(loan.get("id"))
        for loan in loans
        if loan.get("status") == LOAN_RETURNED and not loan.get("returnedAt")
    ]
    unknown_status = [
        str(loan.get("id"))
        for loan in loans
        if loan.get("status") not in {LOAN_ACTIVE, LOAN_RETURNED}
    ]

    return [
        CheckResult("equipment:stock_within_bounds", not out_of_bounds, _detail(out_of_bounds)),
        CheckResult("equipment:stock_matches_active_loans", not drifted, _detail(drifted)),
        CheckResult("loans:active_without_equipment", not orphaned, _detail(orphaned)),
        CheckResult("loans:returned_without_timestamp", not unstamped, _detail(unstamped)),
        CheckResult("loans:unknown_status", not unknown_status, _detail(unknown_status)),
    ]


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_counts(equipment: list[dict], loans: list[dict], users: list[dict]) -> None:
    _print_section("Record Counts")
    print(f"{EQUIPMENT}: {len(equipment)}")
    print(f"{LOANS}: {len(loans)}")
    print(f"{USERS}: {len(users)}")
    statuses = Counter(loan.get("status") for loan in loans)
    for status, count in sorted(statuses.items(), key=lambda item: str(item[0])):
        print(f"  - {status}: {count}")


def _print_samples(loans: list[dict], sample_size: int) -> None:
    _print_section("Recent Loans")
    for loan in sort_by_borrowed_at(loans)[: max(1, sample_size)]:
        print(f"  - {loan.get('id')} equipment={loan.get('equipmentId')} user={loan.get('userId')} status={loan.get('status')}")


def _open_store(args: argparse.Namespace):
    if args.backend == "sql":
        return SqlRecordStore(get_sessionmaker(args.db_url)())
    return HttpRecordStore(args.url, timeout=args.timeout)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Loan tracker record store overview")
    parser.add_argument("--backend", choices=["http", "sql"], default=(os.environ.get("RECORD_STORE_BACKEND") or "http").strip().lower())
    parser.add_argument("--url", default=os.environ.get("RECORD_STORE_URL", DEFAULT_RECORD_STORE_URL))
    parser.add_argument("--db-url", default=os.environ.get("RECORD_STORE_DB_URL", ""))
    parser.add_argument("--timeout", type=float, default=10.0)
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    args.db_url = (args.db_url or "").strip()
    if args.backend == "sql" and not args.db_url:
        print("RECORD_STORE_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    store = _open_store(args)
    try:
        equipment = store.get_all(EQUIPMENT)
        loans = store.get_all(LOANS)
        users = store.get_all(USERS)
    except RecordStoreError as exc:
        print(f"Could not read record store: {exc}")
        return 3
    finally:
        store.close()

    results = run_integrity_checks(equipment, loans)
    _print_results("Integrity Checks", results)
    _print_counts(equipment, loans, users)
    _print_samples(loans, args.samples)
    return 0 if all(row.ok for row in results) else 1


if __name__ == "__main__":
    sys.exit(main())
