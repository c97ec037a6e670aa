"""Create the administrator account and the default categories.

Usage examples:
  python postgres_migration/seed_data.py --admin-email admin@example.com --admin-password change-me
  SEED_ADMIN_PASSWORD=change-me python postgres_migration/seed_data.py --create-tables
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add backend directory to import path when executed from backend/ or backend/postgres_migration/
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from app.database import Base, SessionLocal, engine
from app.errors import LedgerError
from app.services.seed_service import SeedService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed the administrator actor and default categories")
    parser.add_argument(
        "--admin-email",
        default=os.getenv("SEED_ADMIN_EMAIL", "admin@ledger.local"),
        help="Administrator email (default: SEED_ADMIN_EMAIL or admin@ledger.local)",
    )
    parser.add_argument(
        "--admin-password",
        default=os.getenv("SEED_ADMIN_PASSWORD"),
        help="Administrator password (default: SEED_ADMIN_PASSWORD)",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables from the SQLAlchemy metadata first",
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()

    if not args.admin_password:
        parser.error("Provide --admin-password or set SEED_ADMIN_PASSWORD")

    if args.create_tables:
        Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        summary = SeedService(session).run(args.admin_email, args.admin_password)
        print("\nSeed completed successfully")
        print(f"- admin_id: {summary['admin_id']}")
        print(f"- categories_created: {summary['categories_created']}")
        return 0
    except LedgerError as exc:
        print(f"Seeding failed: {exc.message}", file=sys.stderr)
        return 1
    finally:
        session.close()


if __name__ == "__main__":
    raise SystemExit(main())
