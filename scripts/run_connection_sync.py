#!/usr/bin/env python3
"""
Connection Sync CLI

Drives the sync engine without the API server, against the configured
database (DATABASE_URL).

Usage:
    python scripts/run_connection_sync.py create --platform shopify --account my-store.myshopify.com --token shpat_...
    python scripts/run_connection_sync.py start 1
    python scripts/run_connection_sync.py status 1
    python scripts/run_connection_sync.py resume

Examples:
    # Quick sync then wait for the historical import to finish
    python scripts/run_connection_sync.py start 1 --wait

    # Re-attach to imports left BULK_IMPORTING by a crashed worker
    python scripts/run_connection_sync.py resume
"""
import asyncio
import argparse
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.models.base import init_db
from app.services.connection_sync import ConnectionSyncController
from app.storage.sql import SqlSyncStore
from app.sync.errors import SyncError


def print_header(text):
    print(f"\n{'='*70}")
    print(f"  {text}")
    print('='*70)


def print_json(data):
    print(json.dumps(data, indent=2, default=str))


async def start(controller: ConnectionSyncController, connection_id: int, wait: bool):
    handle = await controller.start_sync(connection_id)
    print_header(f"Quick sync finished for connection {connection_id}")
    print_json(handle.to_dict())

    if wait and handle.historical_task is not None:
        print("\nWaiting for historical import (this can take hours)...")
        outcomes = await handle.historical_task
        print_header("Historical import finished")
        print_json([o.to_dict() for o in outcomes])
    elif handle.historical_task is not None:
        # The import runs in this process; exiting would orphan it until the next resume
        handle.historical_task.cancel()
        print("\nHistorical import left for the scheduler to resume (BULK_IMPORTING)")


async def main(args):
    init_db()
    controller = ConnectionSyncController(SqlSyncStore())

    if args.command == "create":
        connection = controller.store.create_connection(
            platform=args.platform,
            account_ref=args.account,
            credential_handle=args.token,
            brand_id=args.brand,
        )
        print(f"Created connection {connection.id} ({connection.platform} {connection.account_ref})")
    elif args.command == "start":
        await start(controller, args.connection_id, args.wait)
    elif args.command == "status":
        print_json(controller.get_sync_status(args.connection_id))
    elif args.command == "resume":
        results = await controller.resume_orphaned_imports()
        print_header(f"Resumed {len(results)} imports")
        print_json(results)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Run platform connection syncs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create", help="Register a connection")
    create_parser.add_argument("--platform", required=True, choices=["shopify", "meta"])
    create_parser.add_argument("--account", required=True, help="Shop domain or ad account id")
    create_parser.add_argument("--token", required=True, help="Access token")
    create_parser.add_argument("--brand", default=None, help="Brand id (optional)")

    start_parser = subparsers.add_parser("start", help="Quick sync + historical import")
    start_parser.add_argument("connection_id", type=int)
    start_parser.add_argument(
        "--wait", action="store_true",
        help="Stay attached until the historical import finishes"
    )

    status_parser = subparsers.add_parser("status", help="Show sync progress")
    status_parser.add_argument("connection_id", type=int)

    subparsers.add_parser("resume", help="Resume orphaned historical imports")

    args = parser.parse_args()

    try:
        asyncio.run(main(args))
    except SyncError as e:
        print(f"Error: {e}")
        sys.exit(1)
