#!/usr/bin/env python3
"""
vaultsync Operations CLI

Commands:
- restore: Re-register every stored entity on the ledger and reconcile owners
- ensure-indexes: Create the store's lookup indexes
- derive-id: Print the deterministic identity for an asset's attributes

Usage:
    python -m tools.restore <command> [options]

Examples:
    python -m tools.restore restore
    python -m tools.restore restore --json
    python -m tools.restore ensure-indexes
    python -m tools.restore derive-id --domain-id P1 --name Villa --locality Whitefield
"""

import argparse
import json
import sys


def cmd_restore(args):
    """Run one restoration pass and print the summary."""
    from vaultsync.core import build_service_from_env

    service = build_service_from_env()
    try:
        def progress(outcome):
            if args.json:
                return
            marker = "[FAIL]" if outcome.error else "[OK]"
            print(
                f"  {marker} {outcome.kind} {outcome.domain_id}: "
                f"{outcome.registration.value}, {outcome.ownership.value}"
                + (f" - {outcome.error}" if outcome.error else "")
            )

        if not args.json:
            print("Restoring ledger state...")
        summary = service.restore_ledger_state(on_progress=progress)
    finally:
        service.close()

    if args.json:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        print("\nRestoration complete")
        print(f"  Run: {summary.run_id}")
        print(f"  Signer: {summary.signer}")
        print(f"  Processed: {summary.processed}")
        print(f"  Registered: {summary.registered}")
        print(f"  Transferred: {summary.transferred}")
        print(f"  Skipped (no wallet): {summary.skipped_no_wallet}")
        print(f"  Errors: {summary.errors}")

    return 0 if summary.ok else 1


def cmd_ensure_indexes(args):
    """Create the store's indexes."""
    from vaultsync.db import StoreConfig, describe_indexes, get_store_driver, StoreDriver
    from vaultsync.db.store import MongoEntityStore

    config = StoreConfig.from_env()

    if get_store_driver() != StoreDriver.MONGO:
        print("No MongoDB configured (set MONGODB_URL); nothing to do.")
        return 1

    print(f"Connecting to {config.redacted_url()} ({config.database})...")
    store = MongoEntityStore.from_config(config)
    try:
        store.ensure_indexes()
    finally:
        store.close()

    for collection, indexes in describe_indexes(config).items():
        print(f"\n{collection}:")
        for index in indexes:
            flags = [f for f in ("unique", "sparse") if index[f]]
            suffix = f" ({', '.join(flags)})" if flags else ""
            print(f"  [OK] {index['name']}{suffix}")
    return 0


def cmd_derive_id(args):
    """Print the deterministic asset identity."""
    from vaultsync.core import IdentityDeriver, ValidationError

    try:
        identity = IdentityDeriver().derive_property_identity(
            args.domain_id, args.name, args.locality
        )
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(identity)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="vaultsync Operations CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # restore
    p_restore = subparsers.add_parser(
        "restore",
        help="Restore ledger state from the off-chain store",
    )
    p_restore.add_argument("--json", action="store_true", help="Print the summary as JSON")

    # ensure-indexes
    subparsers.add_parser(
        "ensure-indexes",
        help="Create lookup indexes on the store",
    )

    # derive-id
    p_derive = subparsers.add_parser(
        "derive-id",
        help="Print the deterministic identity for an asset",
    )
    p_derive.add_argument("--domain-id", required=True, help="Asset domain id (propertyId)")
    p_derive.add_argument("--name", required=True, help="Asset name")
    p_derive.add_argument("--locality", required=True, help="Asset locality")

    return parser


def main(argv=None):
    from vaultsync.observability import setup_logging

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging()

    commands = {
        "restore": cmd_restore,
        "ensure-indexes": cmd_ensure_indexes,
        "derive-id": cmd_derive_id,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
