#!/usr/bin/env python3
"""
Provenance Ledger Management CLI

Commands for managing the ledger system:
- init-db: Create the PostgreSQL schema
- verify-chain: Verify audit chain integrity
- export-events: Export the audit log to JSON
- assign-role: Assign a role to a principal (as the admin)
- health-check: Run store and chain health checks

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-db
    python -m tools.manage verify-chain
    python -m tools.manage assign-role acme manufacturer
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _load_service():
    from provenance.config import LedgerSettings
    from provenance.core.service import ProvenanceService
    from provenance.db.config import build_state_store

    settings = LedgerSettings.from_env()
    store = build_state_store(settings.lock_timeout_seconds)
    return ProvenanceService(store=store, settings=settings)


def cmd_init_db(args):
    """Create tables, rules and the chain head row."""
    from provenance.db.config import (
        DatabaseConfig,
        StateStoreDriver,
        connection_factory,
        get_database_url,
        get_store_driver,
    )
    from provenance.db.store import PostgresStateStore

    db_url = get_database_url()
    if get_store_driver() != StateStoreDriver.PSYCOPG2 or not db_url:
        print("Error: no PostgreSQL configured. Set DATABASE_URL or DATABASE_HOST.")
        return 1

    print(f"Creating schema on {DatabaseConfig.from_url(db_url).to_url(include_password=False)}...")
    PostgresStateStore(connection_factory(db_url)).create_schema()
    print("[OK] Schema ready")
    return 0


def cmd_verify_chain(args):
    """Verify the integrity of the audit chain."""
    service = _load_service()
    print(f"Audit log loaded: {service.event_count} events")

    if service.verify_chain_integrity():
        print("[OK] Chain integrity verified OK")
        head = service.store.get_head()
        if head.last_event_hash:
            print(f"  Chain head: {head.last_event_hash[:16]}...")
        return 0

    print("[FAIL] Chain integrity verification FAILED!")
    return 1


def cmd_export_events(args):
    """Export all events to a JSON file."""
    service = _load_service()
    events = service.get_events()
    print(f"Found {len(events)} events")

    export_data = [event.model_dump(mode="json") for event in events]

    output_file = args.output or "ledger_export.json"
    with open(output_file, "w") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(events)} events to {output_file}")
    return 0


def cmd_assign_role(args):
    """Assign a role as the configured admin principal."""
    from provenance.core.errors import LedgerError

    service = _load_service()
    try:
        principal = service.assign_role(service.settings.admin_principal, args.principal, args.role)
    except LedgerError as e:
        print(f"[FAIL] {e.code}: {e}")
        return 1

    print(f"[OK] {principal.principal_id} is now {principal.role.value}")
    if principal.is_service_center:
        print("  Authorized service center")
    return 0


def cmd_health_check(args):
    """Run store and chain health checks."""
    from provenance.observability import check_health

    service = _load_service()
    result = check_health(service=service, store=service.store, verify_chain=True)

    print("=== Provenance Ledger Health Check ===\n")
    for name, check in result.checks.items():
        marker = "[OK]" if check["status"] == "healthy" else "[FAIL]"
        details = ", ".join(f"{k}={v}" for k, v in check.items() if k != "status")
        print(f"  {name}: {marker} {details}".rstrip())
    print(f"\n  Took {result.duration_ms}ms")
    return 0 if result.healthy else 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Provenance Ledger Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create the PostgreSQL schema")
    subparsers.add_parser("verify-chain", help="Verify audit chain integrity")

    p_export = subparsers.add_parser("export-events", help="Export the audit log to JSON")
    p_export.add_argument("--output", "-o", help="Output file (default: ledger_export.json)")

    p_assign = subparsers.add_parser("assign-role", help="Assign a role to a principal")
    p_assign.add_argument("principal", help="Principal id")
    p_assign.add_argument(
        "role",
        choices=["none", "manufacturer", "retailer", "customer", "service_center"],
        help="Role to assign",
    )

    subparsers.add_parser("health-check", help="Run store and chain health checks")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init-db": cmd_init_db,
        "verify-chain": cmd_verify_chain,
        "export-events": cmd_export_events,
        "assign-role": cmd_assign_role,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
