"""
whtzup CLI - inspect and drive the local sync queue.

Usage:
    whtzup device
    whtzup status [--json]
    whtzup queue [--json]
    whtzup failed [--json]
    whtzup retry [ID ...]
    whtzup flush
"""

import argparse
import asyncio
import json
import logging
import sys

from whtzup.config import ClientConfig
from whtzup.errors import SyncError
from whtzup.network import NetworkMonitor
from whtzup.storage import LocalStore
from whtzup.sync import SyncService
from whtzup.transport.http import SyncHttpClient

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def _open_store(config: ClientConfig) -> LocalStore:
    return LocalStore(config.db_path, max_retries=config.max_retries)


def cmd_device(args, config: ClientConfig):
    """Print this installation's device id."""
    store = _open_store(config)
    print(store.get_device_id())


def cmd_status(args, config: ClientConfig):
    """Show local queue status and last sync time."""
    store = _open_store(config)
    counts = store.queue.status()
    last_sync = store.get_last_sync_time()

    if args.json:
        print(
            json.dumps(
                {
                    "device_id": store.get_device_id(),
                    "api_url": config.api_url,
                    "pending_operations": counts["pending"],
                    "failed_operations": counts["failed"],
                    "by_kind": counts["by_kind"],
                    "last_sync_at": last_sync.isoformat() if last_sync else None,
                    "cached_events": store.cache.count(),
                },
                indent=2,
            )
        )
        return

    print("Sync Status")
    print("=" * 40)
    print(f"Device:   {store.get_device_id()}")
    print(f"Backend:  {config.api_url}")
    print(f"Pending:  {counts['pending']}")
    if counts["by_kind"]:
        for kind, count in sorted(counts["by_kind"].items()):
            print(f"  {kind}: {count}")
    if counts["failed"]:
        print(f"⚠ Failed: {counts['failed']} (run `whtzup failed` to inspect)")
    print(f"Cached:   {store.cache.count()} events")
    if last_sync:
        print(f"Last sync: {last_sync.isoformat()}")
    else:
        print("Last sync: never")


def cmd_queue(args, config: ClientConfig):
    """List pending operations in the order they will be flushed."""
    store = _open_store(config)
    operations = store.queue.list()

    if args.json:
        print(
            json.dumps(
                [
                    {
                        "id": op.id,
                        "kind": op.kind.value,
                        "event_id": op.event_id,
                        "created_at": op.created_at.isoformat(),
                        "retry_count": op.retry_count,
                        "last_error": op.last_error,
                    }
                    for op in operations
                ],
                indent=2,
            )
        )
        return

    if not operations:
        print("✓ Queue is empty")
        return

    print(f"{len(operations)} pending operation(s):")
    for op in operations:
        retry = f" (retries: {op.retry_count})" if op.retry_count else ""
        print(f"  {op.id}  {op.kind.value:<6}  {op.event_id}{retry}")
        if op.last_error:
            print(f"      last error: {op.last_error}")


def cmd_failed(args, config: ClientConfig):
    """List operations that need attention."""
    store = _open_store(config)
    failed = store.queue.failed()

    if args.json:
        print(json.dumps(failed, indent=2, default=str))
        return

    if not failed:
        print("✓ No failed operations")
        return

    print(f"✗ {len(failed)} failed operation(s):")
    for entry in failed:
        print(f"  {entry['id']}  {entry['kind']:<6}  {entry['event_id']}")
        print(f"      retries: {entry['retry_count']}  error: {entry['last_error']}")
    print("\nRun `whtzup retry` to put them back on the queue.")


def cmd_retry(args, config: ClientConfig):
    """Requeue failed operations."""
    store = _open_store(config)
    count = store.queue.requeue_failed(args.ids or None)
    if count:
        print(f"✓ Requeued {count} operation(s)")
    else:
        print("Nothing to requeue")


async def _flush(config: ClientConfig):
    store = _open_store(config)
    http = SyncHttpClient(config.api_url, store.get_device_id(), timeout=config.request_timeout)
    service = SyncService(store, http, monitor=NetworkMonitor(initial_online=True))
    try:
        service.queue.restore()
        return await service.flush()
    finally:
        await service.close()


def cmd_flush(args, config: ClientConfig):
    """Push queued operations to the server once."""
    result = asyncio.run(_flush(config))

    if result.submitted == 0 and not result.errors and not result.failed:
        print("✓ Nothing to flush")
        return

    print(f"Submitted: {result.submitted}")
    print(f"Applied:   {result.applied}")
    if result.failed:
        print(f"Failed:    {result.failed}")
    for op_id in result.exhausted:
        print(f"  ✗ {op_id} needs attention")
    for error in result.errors:
        print(f"  ✗ {error}")

    if not result.success:
        sys.exit(1)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="whtzup",
        description="Offline-first event sync client",
    )
    parser.add_argument("--home", help="Data directory (default: ~/.whtzup)", default=None)
    parser.add_argument("--api-url", dest="api_url", help="Backend URL", default=None)
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("device", help="Show device id")

    p_status = subparsers.add_parser("status", help="Show sync status")
    p_status.add_argument("--json", "-j", action="store_true")

    p_queue = subparsers.add_parser("queue", help="List pending operations")
    p_queue.add_argument("--json", "-j", action="store_true")

    p_failed = subparsers.add_parser("failed", help="List failed operations")
    p_failed.add_argument("--json", "-j", action="store_true")

    p_retry = subparsers.add_parser("retry", help="Requeue failed operations")
    p_retry.add_argument("ids", nargs="*", help="Operation ids (default: all)")

    subparsers.add_parser("flush", help="Push queued operations to the server")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    commands = {
        "device": cmd_device,
        "status": cmd_status,
        "queue": cmd_queue,
        "failed": cmd_failed,
        "retry": cmd_retry,
        "flush": cmd_flush,
    }

    try:
        config = ClientConfig.load(api_url=args.api_url, home=args.home)
        commands[args.command](args, config)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except SyncError as e:
        logger.error(f"Sync failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
