#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from datetime import date, timedelta
from pathlib import Path

import pandas as pd

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from api_server import DEFAULT_ACCOUNT_ID, replace_daily_sales, sales_stats  # noqa: E402

DEMO_SALES = {
    0: [
        {"revenue": 150.50, "referral_id": "REF001", "product_name": "Camiseta Social", "quantity": 2},
        {"revenue": 89.90, "referral_id": "REF002", "product_name": "Calça Jeans", "quantity": 1},
        {"revenue": 200.00, "referral_id": None, "product_name": "Tênis Esportivo", "quantity": 1},
    ],
    1: [
        {"revenue": 120.00, "referral_id": "REF001", "product_name": "Camiseta Social", "quantity": 1},
        {"revenue": 50.00, "referral_id": None, "product_name": "Meias", "quantity": 5},
    ],
}


def seed(account_id: str, as_of: date) -> dict[str, int]:
    counts = {}
    for days_back, rows in DEMO_SALES.items():
        day = (as_of - timedelta(days=days_back)).isoformat()
        counts[day] = replace_daily_sales(account_id, day, pd.DataFrame(rows), source="seed")
    return counts


def main() -> int:
    parser = argparse.ArgumentParser(description="Replace today's and yesterday's sales with demo rows")
    parser.add_argument("--account", default=DEFAULT_ACCOUNT_ID, help="Account id to seed")
    parser.add_argument("--as-of", default=date.today().isoformat(), help="Date treated as today (YYYY-MM-DD)")
    args = parser.parse_args()

    try:
        as_of = date.fromisoformat(args.as_of)
    except ValueError:
        raise SystemExit(f"Invalid --as-of date: {args.as_of}")

    for day, count in seed(args.account, as_of).items():
        print(f"- {day}: {count} sales")
    stats = sales_stats(args.account, "all")
    print(f"Social: {stats['revenue_social']}  Video: {stats['revenue_video']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
