#!/usr/bin/env python3
# cli.py
import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from integrity import Corrector, IntegrityChecker, SqlInventoryStore, generate_integrity_report

logger = logging.getLogger("app.cli")


def session_factory_for(db_path: Optional[str]):
    if not db_path:
        from db import SessionLocal

        return SessionLocal

    path = Path(db_path).expanduser()
    if not path.exists():
        raise FileNotFoundError(path)
    engine = create_engine(f"sqlite:///{path.resolve().as_posix()}")
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def format_findings(findings) -> str:
    header = f"{'equipment':<30} {'total':>6} {'avail':>6} {'out':>6}  result"
    lines = [header, "-" * len(header)]
    for f in findings:
        lines.append(
            f"{f.name[:30]:<30} {f.total_quantity:>6} {f.available_quantity:>6} {f.outstanding:>6}  "
            f"{'MISMATCH ' + f.category.value if f.mismatch else 'ok'}"
        )
    return "\n".join(lines)


def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Check (and optionally correct) equipment availability counts.")
    ap.add_argument("--db", default=None, help="Path to SQLite DB (default: APP_DB_PATH or data/lab.db)")
    ap.add_argument("--correct", action="store_true", help="Rewrite available_quantity for mismatched equipment")
    ap.add_argument("--quiet", action="store_true", help="Only print the summary line")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.WARNING if args.quiet else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    store = SqlInventoryStore(session_factory_for(args.db))
    checker = IntegrityChecker(store)
    report = generate_integrity_report(checker, Corrector(store, checker), auto_correct=args.correct)

    if not args.quiet:
        print(format_findings(report["findings"]))
        for c in report.get("corrections") or []:
            print(f"corrected {c.name}: {c.previous_available} -> {c.new_available}")

    remaining = report["inconsistent_equipment"]
    if args.correct:
        remaining = sum(1 for f in checker.check() if f.mismatch)

    print(
        f"checked={report['total_equipment']} "
        f"inconsistent={report['inconsistent_equipment']} remaining={remaining}"
    )
    return 1 if remaining else 0


if __name__ == "__main__":
    sys.exit(main())
