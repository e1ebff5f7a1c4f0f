#!/usr/bin/env python3
"""
Database Migration — Create outbox_jobs / messages from SQLAlchemy models.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _safe_url(engine) -> str:
    url = str(engine.url)
    return url.split("@")[-1] if "@" in url else url


async def _existing_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text

    if dialect == "postgresql":
        result = await conn.execute(text(
            "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
        ))
    elif dialect == "mysql":
        result = await conn.execute(text("SHOW TABLES"))
    else:  # sqlite
        result = await conn.execute(text(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ))
    return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False):
    from config.settings import load_settings
    settings = load_settings()

    from database.session import connect, close_db
    from database.models import Base

    engine = connect(settings.database.url, echo=settings.debug)
    dialect = engine.dialect.name
    defined = list(Base.metadata.tables.keys())

    print(f"Database: {dialect}")
    print(f"URL: {_safe_url(engine)}")
    print(f"Tables defined: {', '.join(defined)}")

    if check_only:
        async with engine.connect() as conn:
            existing = await _existing_tables(conn, dialect)
        print(f"Tables existing: {', '.join(existing) or '(none)'}")

        missing = set(defined) - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return

    print("Running database migration...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with engine.connect() as conn:
        existing = await _existing_tables(conn, dialect)
    print(f"Tables created/verified: {', '.join(t for t in existing if t in defined)}")

    await close_db()
    print("Migration complete. ✓")


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check))


if __name__ == "__main__":
    main()
