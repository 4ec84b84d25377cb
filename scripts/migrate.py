#!/usr/bin/env python
"""Ledger migration CLI: list, apply and roll back schema migrations.

Usage:
    python scripts/migrate.py --db data/leprechaun.ledger list
    python scripts/migrate.py --db data/leprechaun.ledger apply [--dry-run]
    python scripts/migrate.py --db data/leprechaun.ledger rollback --version 2
    python scripts/migrate.py --db data/leprechaun.ledger rollback --last [--dry-run] [--yes]
"""
import argparse
import sqlite3
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from leprechaun.db_migrations import (
    MIGRATIONS,
    applied_versions,
    apply_migrations,
    pending_versions,
    rollback_last,
    rollback_migration,
)


def list_migrations(conn):
    applied = applied_versions(conn)
    print("Available migrations:")
    for v in sorted(MIGRATIONS):
        status = "applied" if v in applied else "pending"
        print(f"  {v}: {status} (applied_at={applied.get(v, '-')})")


def confirm(prompt: str) -> bool:
    try:
        return input(f"{prompt} This may DROP data. Type 'yes' to continue: ").strip().lower() == "yes"
    except (EOFError, BrokenPipeError):
        # non-interactive stdin: proceed
        return True


def main():
    parser = argparse.ArgumentParser(description="Ledger schema migrations")
    parser.add_argument("--db", required=True, help="Path to the ledger database")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("list")
    apply_p = sub.add_parser("apply")
    apply_p.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying them")

    rb = sub.add_parser("rollback")
    rb.add_argument("--version", type=int, help="Rollback a specific migration version")
    rb.add_argument("--last", action="store_true", help="Rollback the last applied migration")
    rb.add_argument("--dry-run", action="store_true", help="Show what would be rolled back")
    rb.add_argument("--yes", action="store_true", help="Do not prompt for confirmation")

    args = parser.parse_args()
    db = Path(args.db)
    db.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db), timeout=30)

    try:
        if args.cmd == "list":
            list_migrations(conn)
        elif args.cmd == "apply":
            if args.dry_run:
                pending = pending_versions(conn)
                print(f"Pending migrations: {pending}" if pending else "No pending migrations; ledger up-to-date.")
            else:
                applied = apply_migrations(conn)
                print(f"Applied migrations: {applied}" if applied else "No migrations applied; ledger up-to-date.")
        elif args.cmd == "rollback" and (args.version or args.last):
            if args.version:
                target = args.version
            else:
                applied = applied_versions(conn)
                if not applied:
                    print("No applied migrations to rollback")
                    return
                target = max(applied)
            if args.dry_run:
                print(f"Would rollback migration {target} (dry-run)")
                return
            if not args.yes and not confirm(f"Rollback migration {target}?"):
                print("Aborted.")
                return
            if args.version:
                rollback_migration(conn, target)
            else:
                rollback_last(conn)
            print(f"Rolled back migration {target}")
        else:
            parser.print_help()
    finally:
        conn.close()


if __name__ == "__main__":
    main()
