#!/usr/bin/env python
"""Trade history and profit reporter.

Usage:
    python scripts/trade_history.py --data-dir data summary
    python scripts/trade_history.py --data-dir data sales [--limit 20]
    python scripts/trade_history.py --data-dir data purchases [--limit 20]
"""
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from leprechaun.config import SUPPORTED_ASSETS
from leprechaun.stats import ASSET_NAMES, StatsStore


def summary(store, assets):
    print(f"\n{'Asset':<14} {'Trades':<8} {'Bought':<14} {'Spent':<16} {'Sold':<14} {'Raised':<16} {'Profit':<14}")
    print("-" * 100)
    for asset in assets:
        s = store.get_stats(asset)
        if not s.trades:
            continue
        print(
            f"{ASSET_NAMES.get(asset, asset):<14} {s.trades:<8} "
            f"{s.purchase_volume:<14.6f} {s.purchase_cost:<16.2f} "
            f"{s.sale_volume:<14.6f} {s.sale_cost:<16.2f} {s.profit:<14.2f}"
        )


def history(entries, title, limit):
    if not entries:
        print(f"No {title} recorded")
        return
    print(f"\n{title.capitalize()} (most recent last):")
    print(f"{'Order ID':<20} {'Asset':<6} {'Timestamp':<20} {'Buy @':<14} {'Sell @':<14} {'Volume':<12} {'Profit':<12}")
    print("-" * 100)
    for e in entries[-limit:]:
        print(
            f"{e.order_id:<20} {e.asset:<6} {e.timestamp:<20} {e.purchase_price:<14.2f} "
            f"{e.sale_price:<14.2f} {e.sale_volume:<12.6f} {e.profit:<12.2f}"
        )


def main():
    parser = argparse.ArgumentParser(description="Trade history reporter")
    parser.add_argument("--data-dir", default="data", help="Directory holding the stats JSON files")
    sub = parser.add_subparsers(dest="cmd")
    summ = sub.add_parser("summary")
    summ.add_argument("--asset", action="append", help="Limit to these assets (repeatable)")
    for name in ("sales", "purchases"):
        p = sub.add_parser(name)
        p.add_argument("--limit", type=int, default=20)

    args = parser.parse_args()
    store = StatsStore(args.data_dir)

    if args.cmd == "summary":
        assets = [a.upper() for a in args.asset] if args.asset else list(SUPPORTED_ASSETS)
        summary(store, assets)
    elif args.cmd == "sales":
        history(store.get_sales(), "sales", args.limit)
    elif args.cmd == "purchases":
        history(store.get_purchases(), "purchases", args.limit)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
