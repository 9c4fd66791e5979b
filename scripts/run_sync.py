"""Run sync operations from the command line.

Runs the engine in-process (no Temporal needed), on the same code paths
the workflows and the API use.

Usage:
    python scripts/run_sync.py init-db
    python scripts/run_sync.py add-connection shopify my-shop.myshopify.com --credentials '{"access_token": "..."}'
    python scripts/run_sync.py reconcile [--connection 3]
    python scripts/run_sync.py orders 3
    python scripts/run_sync.py catalog 3
    python scripts/run_sync.py failures [--unresolved] [--connection 3]
    python scripts/run_sync.py recover [--failure 12]
    python scripts/run_sync.py resolve 12
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import get_settings
from core.observability.logging import configure_from_settings
from sync_engine import SyncEngine, db
from sync_engine.errors import ConnectionNotFound
from sync_engine.models import FailureFilter, FailureStatus


def cmd_init_db(args) -> int:
    settings = get_settings()
    db.init_sync_db(settings.db_path)
    print(f"Database ready: {settings.db_path}")
    return 0


def cmd_add_connection(args) -> int:
    settings = get_settings()
    db.init_sync_db(settings.db_path)
    credentials = json.loads(args.credentials) if args.credentials else {}
    connection = db.create_connection(
        args.platform, args.store, credentials, db_path=settings.db_path
    )
    print(f"Created connection {connection.id}: {connection.platform} {connection.store_identifier}")
    return 0


async def _with_engine(operation):
    engine = SyncEngine.from_settings()
    try:
        return await operation(engine)
    finally:
        await engine.close()


def cmd_reconcile(args) -> int:
    run = asyncio.run(_with_engine(lambda e: e.run_reconciliation(args.connection)))

    print("=" * 60)
    print("INVENTORY RECONCILIATION")
    print("=" * 60)
    if run.error:
        print(f"Ledger unavailable: {run.error}")
    print(f"{'Conn':<6} {'Platform':<12} {'Checked':>8} {'Pushed':>7} {'Same':>6} {'Failed':>7}")
    print("-" * 60)
    for r in run.per_connection:
        note = " (skipped)" if r.skipped else (f" ({r.error})" if r.error else "")
        print(f"{r.connection_id:<6} {r.platform or '':<12} {r.checked:>8} {r.pushed:>7} "
              f"{r.unchanged:>6} {r.failed:>7}{note}")
    print(f"\nTotal: {run.total_pushed} pushed, {run.total_failed} failed")
    return 1 if run.error else 0


def cmd_orders(args) -> int:
    batch = asyncio.run(_with_engine(lambda e: e.sync_orders(args.connection_id)))
    if batch.error:
        print(f"Order sync failed: {batch.error}")
        return 1
    print(f"Fetched {batch.fetched}: {batch.processed} mirrored, "
          f"{batch.skipped} skipped, {batch.failed} failed")
    for r in batch.results:
        if not r.processed:
            print(f"  - {r.external_order_id}: {r.reason}")
    return 0


def cmd_catalog(args) -> int:
    result = asyncio.run(_with_engine(lambda e: e.push_catalog(args.connection_id)))
    if result.error:
        print(f"Catalog push failed: {result.error}")
        return 1
    print(f"Pushed {result.pushed}/{result.total} products ({result.failed} failed)")
    return 0


def cmd_failures(args) -> int:
    settings = get_settings()
    failure_filter = FailureFilter(
        connection_id=args.connection,
        resolved=False if args.unresolved else None,
        status=FailureStatus(args.status) if args.status else None,
        limit=args.limit,
    )
    failures = db.list_failures(failure_filter, db_path=settings.db_path)
    if not failures:
        print("No failures found.")
        return 0

    print(f"{'ID':<6} {'Conn':<5} {'Category':<22} {'Status':<10} {'Tries':>5}  Message")
    print("-" * 90)
    for f in failures:
        flag = " [manual]" if f.requires_manual_intervention else ""
        print(f"{f.id:<6} {f.connection_id:<5} {f.category.value:<22} {f.status.value:<10} "
              f"{f.recovery_attempts:>5}  {f.message[:60]}{flag}")
        if f.status == FailureStatus.ESCALATED and f.context.get("next_step"):
            print(f"{'':<6} next step: {f.context['next_step']}")
    print(f"\nTotal: {len(failures)} failure(s)")
    return 0


def cmd_recover(args) -> int:
    run = asyncio.run(_with_engine(
        lambda e: e.recover_failures(failure_id=args.failure, connection_id=args.connection)
    ))
    print(f"Processed {run.processed}: {run.resolved} resolved, "
          f"{run.escalated} escalated, {run.still_open} still open")
    for r in run.results:
        if r.status == FailureStatus.ESCALATED:
            print(f"  - #{r.failure_id} {r.category.value}: {r.next_step}")
    return 0


def cmd_resolve(args) -> int:
    settings = get_settings()
    failure = db.get_failure(args.failure_id, db_path=settings.db_path)
    if failure is None:
        print(f"Failure {args.failure_id} not found")
        return 1
    if db.mark_failure_resolved(args.failure_id, auto_recovered=False, db_path=settings.db_path):
        print(f"Failure {args.failure_id} resolved")
    else:
        print(f"Failure {args.failure_id} was already resolved")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Storefront/ledger sync operations")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the sync database tables").set_defaults(func=cmd_init_db)

    p = sub.add_parser("add-connection", help="Register a storefront connection")
    p.add_argument("platform", choices=["woocommerce", "shopify"])
    p.add_argument("store", help="Shop domain or store URL")
    p.add_argument("--credentials", help="Credentials as a JSON object")
    p.set_defaults(func=cmd_add_connection)

    p = sub.add_parser("reconcile", help="Push ledger stock to storefronts")
    p.add_argument("--connection", type=int, help="Only this connection")
    p.set_defaults(func=cmd_reconcile)

    p = sub.add_parser("orders", help="Pull recent orders and mirror them")
    p.add_argument("connection_id", type=int)
    p.set_defaults(func=cmd_orders)

    p = sub.add_parser("catalog", help="Push the ledger catalog to a storefront")
    p.add_argument("connection_id", type=int)
    p.set_defaults(func=cmd_catalog)

    p = sub.add_parser("failures", help="List recorded failures")
    p.add_argument("--connection", type=int)
    p.add_argument("--unresolved", action="store_true")
    p.add_argument("--status", choices=[s.value for s in FailureStatus])
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_failures)

    p = sub.add_parser("recover", help="Run a recovery pass")
    p.add_argument("--failure", type=int, help="Only this failure")
    p.add_argument("--connection", type=int)
    p.set_defaults(func=cmd_recover)

    p = sub.add_parser("resolve", help="Mark a failure resolved by hand")
    p.add_argument("failure_id", type=int)
    p.set_defaults(func=cmd_resolve)

    args = parser.parse_args()
    configure_from_settings()
    try:
        sys.exit(args.func(args))
    except ConnectionNotFound as e:
        print(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
