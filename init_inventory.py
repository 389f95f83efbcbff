#!/usr/bin/env python3
"""
Define ticket categories and bulk-create their ticket rows.

Usage:
  DATABASE_URL=sqlite:///boxoffice.db python init_inventory.py \
      --category regular --name "Regular" --price 1500 --capacity 500 \
      --max-per-order 6
"""
import argparse
import asyncio
import sys

from boxoffice.config import Settings
from boxoffice.errors import CategoryExistsError
from boxoffice.helpers import now_ts
from boxoffice.infra.sql import GatedStore, make_async_engine
from boxoffice.model import inventory
from boxoffice.model.db import create_schema


async def init_category(settings: Settings, args: argparse.Namespace) -> int:
    engine, SessionAsync, gated = make_async_engine(settings.database_url)
    store = GatedStore(sessions=SessionAsync, gated=gated)
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
        async with store.transaction() as db:
            await inventory.create_category(
                db,
                category_id=args.category,
                name=args.name or args.category,
                price=args.price,
                capacity=args.capacity,
                max_per_order=args.max_per_order,
                now=now_ts(),
            )
        async with store.transaction() as db:
            stats = await inventory.inventory_stats(db, args.category)
    except CategoryExistsError as e:
        print(f"⚠️  {e}")
        return 1
    finally:
        await engine.dispose()

    print(f"✅ category {args.category} created: "
          f"{stats['available']}/{stats['capacity']} tickets available")
    return 0


def main() -> None:
    ap = argparse.ArgumentParser(description="BoxOffice inventory setup")
    ap.add_argument("--category", required=True, help="Category id")
    ap.add_argument("--name", default=None, help="Display name")
    ap.add_argument("--price", type=int, required=True,
                    help="Unit price in KES")
    ap.add_argument("--capacity", type=int, required=True,
                    help="Number of tickets to create")
    ap.add_argument("--max-per-order", type=int, default=None,
                    help="Per-order ticket limit (unset = no limit)")
    args = ap.parse_args()

    sys.exit(asyncio.run(init_category(Settings.from_env(), args)))


if __name__ == "__main__":
    main()
