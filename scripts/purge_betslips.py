"""
purge_betslips.py — Delete betslip selections for long-finished matches.

The server runs the same prune every few hours; this script is for one-off
clean-ups with a custom age or for a single user.

Usage
-----
  python scripts/purge_betslips.py                       # dry-run (counts only)
  python scripts/purge_betslips.py --execute             # delete, default age
  python scripts/purge_betslips.py --execute --days 30
  python scripts/purge_betslips.py --execute --user user2 --all   # wipe one user
"""

import argparse
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure the project root (one level up from scripts/) is on sys.path so that
# `from backend.xxx import ...` resolves when the script is run directly.
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def main() -> None:
    from backend.services.betslip import BETSLIP_PRUNE_DAYS

    parser = argparse.ArgumentParser(
        description="Purge stale betslip selections for Sharp Odds."
    )
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Actually delete rows.  Without this flag the script runs dry.",
    )
    parser.add_argument(
        "--days",
        type=int,
        default=BETSLIP_PRUNE_DAYS,
        help=f"Age in days after kick-off (default {BETSLIP_PRUNE_DAYS}).",
    )
    parser.add_argument("--user", help="Restrict to one user id (e.g. user1).")
    parser.add_argument(
        "--all",
        action="store_true",
        help="With --user: delete every selection of that user regardless of age.",
    )
    args = parser.parse_args()

    if args.all and not args.user:
        parser.error("--all requires --user")

    dry_run = not args.execute

    from backend.models import SessionLocal, BetslipSelection

    db = SessionLocal()
    try:
        label = "[DRY RUN] " if dry_run else ""

        query = db.query(BetslipSelection)
        if args.user:
            query = query.filter(BetslipSelection.user_id == args.user)
        if not args.all:
            cutoff = datetime.utcnow() - timedelta(days=args.days)
            query = query.filter(
                BetslipSelection.commence_time.isnot(None),
                BetslipSelection.commence_time < cutoff,
            )

        count: int = query.count()
        print(
            f"{label}betslip_selections: {count} row(s) matched"
            + (" — would delete" if dry_run else "")
        )

        if dry_run:
            db.rollback()
            print("\nDry run complete — no rows were deleted.")
            print("Re-run with --execute to apply changes.")
        else:
            if count:
                query.delete(synchronize_session=False)
            db.commit()
            print(
                f"\nPurge complete at {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')} UTC "
                f"({count} row(s) deleted)."
            )

    except Exception as exc:
        try:
            db.rollback()
        except Exception:
            pass  # Connection already broken; nothing to roll back
        root = exc.__cause__ or exc
        print(f"ERROR: {type(root).__name__}: {root}")
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
