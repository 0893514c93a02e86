"""
One-time copy of a JSON file store into the SQL store.

    python -m cardshop.migrate --data-dir data --database-url postgresql://...

Every record is upserted on its own, so re-running is safe and one bad record
does not stop the rest. Exit status is 0 only if everything migrated.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List

from .config import configure_logging
from .model.records import CardSecret, Order, Product
from .model.store import SqlStore
from .model.store._file import (
    CARD_SECRETS_FILE, ORDERS_FILE, PRODUCTS_FILE, read_json_list,
)

logger = logging.getLogger(__name__)


@dataclass
class EntityReport:
    found: int = 0
    migrated: int = 0
    failed: List[str] = field(default_factory=list)


async def _migrate_entity(
    label: str, path: Path, parse: Callable[[Dict], object],
    put: Callable[[object], Awaitable[object]],
) -> EntityReport:
    report = EntityReport()
    if not path.exists():
        print(f"No {path.name} found, skipping {label}")
        return report

    rows = read_json_list(path)
    report.found = len(rows)
    print(f"Found {len(rows)} {label}")
    for row in rows:
        rid = str(row.get("id", "?"))
        try:
            await put(parse(row))
        except Exception as e:
            logger.error("failed to migrate %s %s: %s", label, rid, e)
            report.failed.append(rid)
        else:
            report.migrated += 1
    return report


async def migrate(data_dir: str | Path, database_url: str) -> Dict[str, EntityReport]:
    data_dir = Path(data_dir)
    target = SqlStore(database_url)
    await target.open()
    try:
        # parents first
        return {
            "products": await _migrate_entity(
                "products", data_dir / PRODUCTS_FILE,
                Product.from_dict, target.put_product,
            ),
            "card_secrets": await _migrate_entity(
                "card secrets", data_dir / CARD_SECRETS_FILE,
                CardSecret.from_dict, target.put_card_secret,
            ),
            "orders": await _migrate_entity(
                "orders", data_dir / ORDERS_FILE,
                Order.from_dict, target.put_order,
            ),
        }
    finally:
        await target.close()


def print_summary(reports: Dict[str, EntityReport]) -> bool:
    print("")
    print("=" * 50)
    print("Migration summary")
    ok = True
    for name, r in reports.items():
        print(f"   - {name:<13} {r.migrated}/{r.found} migrated"
              + (f", {len(r.failed)} failed" if r.failed else ""))
        if r.failed:
            ok = False
            print(f"     failed ids: {', '.join(r.failed)}")
    print("=" * 50)
    return ok


def main(argv: List[str] | None = None) -> int:
    ap = argparse.ArgumentParser(
        prog="cardshop-migrate",
        description="Copy the JSON file store into the SQL database.",
    )
    ap.add_argument(
        "--data-dir", default=os.environ.get("DATA_DIR", "data"),
        help="directory holding products.json, card-secrets.json, "
             "orders.json (default: $DATA_DIR or ./data)",
    )
    ap.add_argument(
        "--database-url", default=os.environ.get("DATABASE_URL"),
        help="target database (default: $DATABASE_URL)",
    )
    args = ap.parse_args(argv)
    configure_logging(os.environ.get("LOG_LEVEL", "INFO").upper())

    if not args.database_url:
        print("NEED DATABASE_URL (or --database-url)", file=sys.stderr)
        return 1

    reports = asyncio.run(migrate(args.data_dir, args.database_url))
    return 0 if print_summary(reports) else 1


if __name__ == "__main__":
    sys.exit(main())
