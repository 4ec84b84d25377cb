#!/usr/bin/env python
"""Ledger status CLI: inspect pending position records.

Usage:
    python scripts/ledger_status.py --db data/leprechaun.ledger list [--asset XBT]
    python scripts/ledger_status.py --db data/leprechaun.ledger show <record_id>
    python scripts/ledger_status.py --db data/leprechaun.ledger viable --asset XBT --price 5200000
"""
import argparse
import os
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from leprechaun.ledger import LedgerError, open_ledger
from leprechaun.models import OrderType


def format_decimal(d, decimals=2):
    return f"{d:.{decimals}f}"


def print_table(records):
    if not records:
        print("No pending records")
        return
    print(f"\n{'Record ID':<20} {'Asset':<6} {'Type':<12} {'Volume':<12} {'Price':<15} {'Trigger':<15} {'Closed':<6}")
    print("-" * 92)
    for rec in records:
        print(
            f"{rec.id:<20} {rec.asset:<6} {rec.order_type.value:<12} "
            f"{format_decimal(rec.volume, 6):<12} {format_decimal(rec.price):<15} "
            f"{format_decimal(rec.trigger_price):<15} {'yes' if rec.closed else 'no':<6}"
        )


def show_record(rec):
    print(f"\n=== Record: {rec.id} ===")
    for key, value in rec.to_dict().items():
        print(f"{key:>16}: {value}")


def main():
    parser = argparse.ArgumentParser(description="Ledger status CLI")
    parser.add_argument("--db", required=True, help="Path to the ledger database")
    parser.add_argument("--password", default=os.getenv("LEPRECHAUN_LEDGER_PASSWORD"), help="Ledger encryption password")

    sub = parser.add_subparsers(dest="cmd")
    lst = sub.add_parser("list")
    lst.add_argument("--asset")
    show = sub.add_parser("show")
    show.add_argument("record_id")
    viable = sub.add_parser("viable")
    viable.add_argument("--asset", required=True)
    viable.add_argument("--price", required=True)

    args = parser.parse_args()

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Ledger not found: {db_path}")
        sys.exit(1)

    try:
        with open_ledger(db_path, password=args.password) as ledger:
            if args.cmd == "list":
                records = ledger.all_records()
                if args.asset:
                    records = [r for r in records if r.asset == args.asset.upper()]
                print_table(records)
            elif args.cmd == "show":
                rec = ledger.record_by_id(args.record_id)
                if rec is None:
                    print(f"Record not found: {args.record_id}")
                    sys.exit(1)
                show_record(rec)
            elif args.cmd == "viable":
                try:
                    price = Decimal(args.price)
                except InvalidOperation:
                    print(f"Invalid price: {args.price}")
                    sys.exit(2)
                asset = args.asset.upper()
                records = ledger.viable_records(asset, OrderType.LONG, price)
                records += ledger.viable_records(asset, OrderType.SHORT, price)
                print_table(records)
            else:
                parser.print_help()
    except LedgerError as e:
        print(f"Ledger error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
