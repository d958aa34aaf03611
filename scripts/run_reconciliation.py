#!/usr/bin/env python3
"""
Reconciliation Runner

Recomputes draw totals, invoice billed/paid amounts and budget line totals
from their source records and reports any drift. Dry run unless --write.

Usage:
    python scripts/run_reconciliation.py                 # every job, report only
    python scripts/run_reconciliation.py --job JOB-1     # one job
    python scripts/run_reconciliation.py --write --json  # correct and emit JSON

Environment Variables:
    JOBLEDGER_DB_PATH - SQLite file (default: jobledger.db)
    DATABASE_URL      - Postgres DSN; takes precedence when set

Exit status is 1 when a dry run finds discrepancies, so the script can gate
a nightly job.
"""

import argparse
import json
import sys

from jobledger.services.reconciliation import get_reconciliation_engine


def print_report(report) -> None:
    print(f"\nJob {report.job_id}")
    if report.is_clean:
        print("   ✅ No discrepancies")
    for d in report.discrepancies:
        target = d.entity_id or f"cost code {d.cost_code_id}"
        print(f"   ❌ {d.entity} {target}.{d.field}: stored {d.stored:.2f}, derived {d.derived:.2f}")
    for w in report.warnings:
        print(f"   ⚠️  {w.kind}: {w.message}")
    if report.write and report.corrections_applied:
        print(f"   ✅ Applied {report.corrections_applied} correction(s)")


def main():
    parser = argparse.ArgumentParser(description="Reconcile JobLedger derived totals")
    parser.add_argument("--job", help="Only reconcile this job id")
    parser.add_argument("--write", action="store_true", help="Apply corrections (default: report only)")
    parser.add_argument("--json", action="store_true", help="Emit reports as JSON")
    args = parser.parse_args()

    engine = get_reconciliation_engine()
    reports = [engine.reconcile_job(args.job, write=args.write)] if args.job else engine.reconcile_all(write=args.write)

    if args.json:
        print(json.dumps([r.to_dict() for r in reports], indent=2))
    else:
        print("=" * 60)
        print(f"JobLedger Reconciliation ({'write' if args.write else 'dry run'})")
        print("=" * 60)
        for report in reports:
            print_report(report)
        print(f"\n{len(reports)} job(s), {sum(len(r.discrepancies) for r in reports)} discrepancy(ies)")

    if not args.write and any(r.discrepancies for r in reports):
        sys.exit(1)


if __name__ == "__main__":
    main()
