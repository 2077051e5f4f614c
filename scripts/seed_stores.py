#!/usr/bin/env python3
"""
Store seeding script for chains without a live store locator.

Loads stores from a JSON file and upserts them into the stores table,
keyed on (chain_name, external_store_id). Re-running the script updates
changed fields and never creates duplicates.

Schema of the seed file:
- {"stores": [ {...}, ... ]}
- Required fields: chain_name, external_store_id, zip_code
- Optional fields: store_name, address, city, state, latitude, longitude
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from sqlalchemy import func, select

from grocart.db.models import Store
from grocart.db.session import AsyncSessionLocal, init_models
from grocart.discovery.locators import StoreRecord
from grocart.discovery.store_discovery import StoreDiscovery

DEFAULT_SEED_FILE = Path(__file__).parent.parent / "data" / "stores_seed.json"
REQUIRED_FIELDS = ("chain_name", "external_store_id", "zip_code")


def load_records(seed_file: Path) -> tuple[list[StoreRecord], int]:
    """
    Parse and validate the seed file.

    Returns:
        (valid records, number of rejected entries)
    """
    try:
        with open(seed_file, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON in {seed_file}: {e}")
        sys.exit(1)

    records = []
    errors = 0
    for idx, entry in enumerate(data.get("stores", []), 1):
        missing = [name for name in REQUIRED_FIELDS if not entry.get(name)]
        if missing:
            print(f"  [ERROR] Store {idx}: Missing required fields: {', '.join(missing)}")
            errors += 1
            continue

        entry = dict(entry, external_store_id=str(entry["external_store_id"]))
        zip_code = str(entry["zip_code"]).strip()[:5]
        if not (len(zip_code) == 5 and zip_code.isdigit()):
            print(f"  [ERROR] Store {idx}: Invalid ZIP code {entry['zip_code']!r}")
            errors += 1
            continue
        entry["zip_code"] = zip_code
        records.append(StoreRecord.from_dict(entry))

    return records, errors


async def seed_stores(seed_file: Path) -> None:
    """Upsert every valid store in ``seed_file``."""
    if not seed_file.exists():
        print(f"Error: {seed_file} not found")
        sys.exit(1)

    records, errors = load_records(seed_file)
    if not records:
        print("No valid stores found in seed file")
        return

    print(f"Found {len(records)} stores to seed...")
    await init_models()

    discovery = StoreDiscovery(AsyncSessionLocal, locators=[])
    try:
        async with AsyncSessionLocal() as db:
            stored = await discovery.upsert_stores(db, records)
    finally:
        await discovery.cache.close()

    print("\nSeeding complete!")
    print(f"  - Upserted: {len(stored)}")
    if errors:
        print(f"  - Errors: {errors}")


async def list_stores() -> None:
    """Print the number of active stores per chain."""
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(Store.chain_name, func.count(Store.id))
            .where(Store.active.is_(True))
            .group_by(Store.chain_name)
            .order_by(Store.chain_name)
        )
        rows = result.all()

    if not rows:
        print("No stores found.")
        return
    for chain, count in rows:
        print(f"  {chain}: {count} active stores")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed stores for database-located chains")
    parser.add_argument("seed_file", nargs="?", type=Path, default=DEFAULT_SEED_FILE)
    parser.add_argument("--list", action="store_true", help="List stored chains and exit")
    args = parser.parse_args()

    if args.list:
        asyncio.run(list_stores())
    else:
        asyncio.run(seed_stores(args.seed_file))


if __name__ == "__main__":
    main()
