#!/usr/bin/env python3
"""
Database Migration — create the CampaignRelay tables from the SQLAlchemy models.

Usage:
    python scripts/migrate_db.py                      # create missing tables
    python scripts/migrate_db.py --check              # report only, no changes
    python scripts/migrate_db.py --url sqlite:///./relay.db
"""
import argparse
import asyncio
import os
import sys

from sqlalchemy import inspect

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(engine) -> list[str]:
    async with engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


async def run_migration(check_only: bool = False, db_url: str = None) -> int:
    from config.settings import load_settings
    load_settings()

    from database.models import Base
    from database.session import _redact, close_db, init_db, init_engine, ping_db

    engine = init_engine(db_url)
    defined = list(Base.metadata.tables.keys())
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {_redact(engine.url)}")
    print(f"Tables defined: {', '.join(defined)}")

    try:
        if not await ping_db():
            print("Database unreachable.")
            return 2
        existing = await _existing_tables(engine)
        missing = sorted(set(defined) - set(existing))
        print(f"Tables existing: {', '.join(existing) or '(none)'}")

        if check_only:
            if missing:
                print(f"Tables MISSING: {', '.join(missing)}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist. ✓")
            return 0

        print("Running database migration...")
        await init_db()
        created = sorted(set(await _existing_tables(engine)) & set(missing))
        print(f"Tables created: {', '.join(created) or '(none)'}")
        print("Migration complete. ✓")
        return 0
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--url", default=None, help="Database URL (default: settings.database.url)")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, db_url=args.url)))


if __name__ == "__main__":
    main()
