"""
Operator job: return leaked package numbers to their mailroom pools.

A number leaks when a registration request dies after claiming it but before
the package row is saved. This job compares each pool against the live
(WAITING / RETRIEVED) packages and releases numbers nobody holds. Numbers
claimed within the grace window are skipped so in-flight registrations keep them.

Usage:
  python scripts/reconcile_package_numbers.py                 # all mailrooms
  python scripts/reconcile_package_numbers.py --mailroom 3
  python scripts/reconcile_package_numbers.py --dry-run --grace-minutes 30
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.mailroom.db import make_sessionmaker
from app.mailroom.models import Mailroom
from app.mailroom.modules.packages.allocator import PackageNumberAllocator
from app.mailroom.modules.packages.models import PackageNumber
from app.mailroom.modules.packages.service import live_numbers
from scripts._db_utils import create_script_engine

logger = logging.getLogger("reconcile_package_numbers")


def find_leaked(s: Session, mailroom_id: int, *, cutoff: datetime) -> list[int]:
    held = live_numbers(s, mailroom_id)
    rows = s.execute(
        select(PackageNumber.number, PackageNumber.last_used_at).where(
            PackageNumber.mailroom_id == mailroom_id,
            PackageNumber.is_available.is_(False),
        )
    ).all()
    return sorted(n for n, last_used in rows if n not in held and (last_used is None or last_used <= cutoff))


def reconcile(
    db_url: str,
    *,
    mailroom_id: int | None = None,
    grace: timedelta = timedelta(minutes=10),
    dry_run: bool = False,
) -> dict[int, list[int]]:
    """Returns {mailroom_id: [released numbers]} (would-be released when dry_run)."""
    engine = create_script_engine(db_url)
    sm = make_sessionmaker(engine)
    allocator = PackageNumberAllocator(sm)
    results: dict[int, list[int]] = {}
    try:
        with sm() as s:
            query = select(Mailroom.id).order_by(Mailroom.id)
            if mailroom_id is not None:
                query = query.where(Mailroom.id == mailroom_id)
            mailroom_ids = list(s.execute(query).scalars())

        for mid in mailroom_ids:
            if dry_run:
                with sm() as s:
                    results[mid] = find_leaked(s, mid, cutoff=datetime.utcnow() - grace)
                continue
            with sm() as s:
                held = live_numbers(s, mid)
            results[mid] = allocator.reconcile(mid, held, grace=grace)
    finally:
        engine.dispose()
    return results


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Release package numbers held by no live package.")
    parser.add_argument("--mailroom", type=int, default=None, help="Only reconcile this mailroom id.")
    parser.add_argument(
        "--grace-minutes",
        type=int,
        default=int(os.environ.get("RECONCILE_GRACE_MINUTES") or 10),
        help="Skip numbers claimed within this many minutes (default: RECONCILE_GRACE_MINUTES or 10).",
    )
    parser.add_argument("--dry-run", action="store_true", help="Report leaked numbers without releasing them.")
    parser.add_argument("--database-url", default=None, help="Defaults to DATABASE_URL.")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    db_url = (args.database_url or os.environ.get("DATABASE_URL") or "sqlite:///mailroom.db").strip()

    results = reconcile(
        db_url,
        mailroom_id=args.mailroom,
        grace=timedelta(minutes=args.grace_minutes),
        dry_run=args.dry_run,
    )
    verb = "would release" if args.dry_run else "released"
    total = 0
    for mid, numbers in results.items():
        total += len(numbers)
        if numbers:
            print(f"mailroom {mid}: {verb} {len(numbers)} number(s): {numbers}")
    print(f"Done. {total} number(s) {verb} across {len(results)} mailroom(s).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
