#!/usr/bin/env python3
"""
Enqueue an outbound WhatsApp message for manual testing.

Usage:
    python scripts/enqueue.py +447900000001 "Hello from the hub"

    # Also create a linked dashboard message row:
    python scripts/enqueue.py +447900000001 "Hello" --with-message

    # Show job counts by status:
    python scripts/enqueue.py --stats
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run(destination: str, body: str, with_message: bool, stats_only: bool):
    from config.settings import load_settings
    settings = load_settings()

    from database.session import init_db, close_db
    from database.store import SqlJobStore
    from utils.phone import normalize_phone

    await init_db(settings.database.url)
    store = SqlJobStore()
    try:
        if not stats_only:
            message_id = None
            if with_message:
                message = await store.create_message()
                message_id = message.id
                print(f"Message created: {message_id}")

            job = await store.enqueue_job(normalize_phone(destination), body,
                                          linked_message_id=message_id)
            print(f"Job queued: {job.id} → {job.destination}")

        counts = await store.count_by_status()
        print("Jobs: " + ", ".join(f"{k}={v}" for k, v in counts.items()))
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Enqueue an outbound WhatsApp message")
    parser.add_argument("destination", nargs="?", help="Recipient phone, e.g. +447900000001")
    parser.add_argument("body", nargs="?", help="Message text")
    parser.add_argument("--with-message", action="store_true", help="Create a linked messages row")
    parser.add_argument("--stats", action="store_true", help="Only print job counts")
    args = parser.parse_args()

    if not args.stats and not (args.destination and args.body):
        parser.error("destination and body are required unless --stats is given")

    asyncio.run(run(args.destination, args.body, args.with_message, args.stats))


if __name__ == "__main__":
    main()
