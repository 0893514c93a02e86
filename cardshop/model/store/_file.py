"""
JSON-file store backend.

One file per entity in ``data_dir`` (``products.json``, ``card-secrets.json``,
``orders.json``), each a JSON list. Writes go to a temp file that replaces the
original, and every read-modify-write runs under one asyncio lock, so the
conditional operations are atomic within a single server process. Meant for
local development: every call re-reads the whole file, and two processes
sharing one data_dir are not coordinated.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from ...helpers import parse_iso
from ..records import (
    PAY_PAID, SECRET_AVAILABLE, SECRET_SOLD, CardSecret, CardSecretSnapshot,
    Order, Product,
)
from .base import StoreBackend

logger = logging.getLogger(__name__)

PRODUCTS_FILE = "products.json"
CARD_SECRETS_FILE = "card-secrets.json"
ORDERS_FILE = "orders.json"

T = TypeVar("T")


def _atomic_write_json(path: Path, obj) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(
        json.dumps(obj, ensure_ascii=False, indent=2) + "\n", encoding="utf-8"
    )
    os.replace(tmp, path)


def read_json_list(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    data = json.loads(path.read_text(encoding="utf-8") or "[]")
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a JSON list")
    return data


def _newest_first(items: List[T], key: Callable[[T], Optional[str]]) -> List[T]:
    def sort_key(item):
        ts = parse_iso(key(item))
        return ts.timestamp() if ts else 0.0
    return sorted(items, key=sort_key, reverse=True)


def _plain(changes: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(changes)
    cs = out.get("card_secret")
    if isinstance(cs, CardSecretSnapshot):
        out["card_secret"] = cs.to_dict()
    return out


class FileStore(StoreBackend):
    name = "File System"

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)
        self.lock = asyncio.Lock()

    def _path(self, filename: str) -> Path:
        return self.data_dir / filename

    # file I/O runs in a worker thread so the event loop keeps serving
    async def _load(self, filename: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(read_json_list, self._path(filename))

    async def _save(self, filename: str, rows: List[Dict[str, Any]]) -> None:
        await asyncio.to_thread(_atomic_write_json, self._path(filename), rows)

    async def _upsert(self, filename: str, record: Dict[str, Any]) -> None:
        rows = await self._load(filename)
        for i, r in enumerate(rows):
            if str(r.get("id")) == str(record["id"]):
                rows[i] = record
                break
        else:
            rows.append(record)
        await self._save(filename, rows)

    async def open(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        for filename in (PRODUCTS_FILE, CARD_SECRETS_FILE, ORDERS_FILE):
            if not self._path(filename).exists():
                await self._save(filename, [])
        logger.info("file store at %s", self.data_dir.resolve())

    # ------------------------------------------------------------------
    # products
    # ------------------------------------------------------------------
    async def list_products(self) -> List[Product]:
        products = [
            Product.from_dict(r) for r in await self._load(PRODUCTS_FILE)
        ]
        return _newest_first(products, lambda p: p.created_at)

    async def get_product(self, product_id: str) -> Optional[Product]:
        for r in await self._load(PRODUCTS_FILE):
            if str(r.get("id")) == product_id:
                return Product.from_dict(r)
        return None

    async def put_product(self, product: Product) -> Product:
        async with self.lock:
            await self._upsert(PRODUCTS_FILE, product.to_dict())
        return product

    async def delete_product(self, product_id: str) -> bool:
        async with self.lock:
            products = await self._load(PRODUCTS_FILE)
            kept = [p for p in products if str(p.get("id")) != product_id]
            if len(kept) == len(products):
                return False
            secrets = await self._load(CARD_SECRETS_FILE)
            await self._save(CARD_SECRETS_FILE, [
                s for s in secrets if str(s.get("product_id")) != product_id
            ])
            await self._save(PRODUCTS_FILE, kept)
        return True

    async def adjust_product(
        self, product_id: str, stock_delta: int, sold_delta: int, now: str
    ) -> bool:
        async with self.lock:
            products = await self._load(PRODUCTS_FILE)
            for p in products:
                if str(p.get("id")) == product_id:
                    p["stock"] = max(0, int(p.get("stock", 0)) + stock_delta)
                    p["sold_count"] = int(p.get("sold_count", 0)) + sold_delta
                    p["updated_at"] = now
                    await self._save(PRODUCTS_FILE, products)
                    return True
        return False

    async def set_product_stock(
        self, product_id: str, stock: int, now: str
    ) -> bool:
        async with self.lock:
            products = await self._load(PRODUCTS_FILE)
            for p in products:
                if str(p.get("id")) == product_id:
                    p["stock"] = max(0, int(stock))
                    p["updated_at"] = now
                    await self._save(PRODUCTS_FILE, products)
                    return True
        return False

    # ------------------------------------------------------------------
    # card secrets
    # ------------------------------------------------------------------
    async def list_card_secrets(
        self, product_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[CardSecret]:
        out = []
        for r in await self._load(CARD_SECRETS_FILE):
            if product_id is not None and str(r.get("product_id")) != product_id:
                continue
            if status is not None and r.get("status") != status:
                continue
            out.append(CardSecret.from_dict(r))
        return _newest_first(out, lambda s: s.created_at)

    async def get_card_secret(
        self, card_secret_id: str
    ) -> Optional[CardSecret]:
        for r in await self._load(CARD_SECRETS_FILE):
            if str(r.get("id")) == card_secret_id:
                return CardSecret.from_dict(r)
        return None

    async def put_card_secret(self, card_secret: CardSecret) -> CardSecret:
        async with self.lock:
            await self._upsert(CARD_SECRETS_FILE, card_secret.to_dict())
        return card_secret

    async def put_card_secrets(
        self, card_secrets: Iterable[CardSecret]
    ) -> List[CardSecret]:
        items = list(card_secrets)
        async with self.lock:
            rows = await self._load(CARD_SECRETS_FILE)
            rows.extend(cs.to_dict() for cs in items)
            await self._save(CARD_SECRETS_FILE, rows)
        return items

    async def delete_card_secret(
        self, card_secret_id: str
    ) -> Optional[CardSecret]:
        async with self.lock:
            rows = await self._load(CARD_SECRETS_FILE)
            for i, r in enumerate(rows):
                if str(r.get("id")) != card_secret_id:
                    continue
                if r.get("status") != SECRET_AVAILABLE:
                    return None
                del rows[i]
                await self._save(CARD_SECRETS_FILE, rows)
                return CardSecret.from_dict(r)
        return None

    async def claim_card_secret(
        self, product_id: str, order_id: str, now: str
    ) -> Optional[CardSecret]:
        async with self.lock:
            rows = await self._load(CARD_SECRETS_FILE)
            for r in rows:
                if r.get("order_id") == order_id:
                    return CardSecret.from_dict(r)
            candidates = [
                r for r in rows
                if str(r.get("product_id")) == product_id
                and r.get("status") == SECRET_AVAILABLE
            ]
            if not candidates:
                return None
            # oldest first
            pick = _newest_first(candidates, lambda r: r.get("created_at"))[-1]
            pick.update({
                "status": SECRET_SOLD,
                "order_id": order_id,
                "sold_at": now,
                "updated_at": now,
            })
            await self._save(CARD_SECRETS_FILE, rows)
            return CardSecret.from_dict(pick)

    # ------------------------------------------------------------------
    # orders
    # ------------------------------------------------------------------
    async def list_orders(
        self, contact_info: Optional[str] = None
    ) -> List[Order]:
        orders = [
            Order.from_dict(r) for r in await self._load(ORDERS_FILE)
            if contact_info is None or r.get("contact_info") == contact_info
        ]
        return _newest_first(orders, lambda o: o.created_at)

    async def get_order(self, order_id: str) -> Optional[Order]:
        for r in await self._load(ORDERS_FILE):
            if str(r.get("id")) == order_id:
                return Order.from_dict(r)
        return None

    async def put_order(self, order: Order) -> Order:
        async with self.lock:
            await self._upsert(ORDERS_FILE, order.to_dict())
        return order

    async def count_orders_for_product(self, product_id: str) -> int:
        return sum(
            1 for r in await self._load(ORDERS_FILE)
            if str(r.get("product_id")) == product_id
        )

    async def transition_order(
        self, order_id: str, from_statuses: Iterable[str], to_status: str,
        changes: Dict[str, Any], now: str
    ) -> Optional[Order]:
        allowed = set(from_statuses)
        async with self.lock:
            rows = await self._load(ORDERS_FILE)
            for r in rows:
                if str(r.get("id")) != order_id:
                    continue
                if r.get("payment_status") not in allowed:
                    return None
                r.update(_plain(changes))
                r["payment_status"] = to_status
                r["updated_at"] = now
                await self._save(ORDERS_FILE, rows)
                return Order.from_dict(r)
        return None

    async def attach_card_secret(
        self, order_id: str, snapshot: CardSecretSnapshot, now: str
    ) -> Optional[Order]:
        async with self.lock:
            rows = await self._load(ORDERS_FILE)
            for r in rows:
                if str(r.get("id")) != order_id:
                    continue
                if (
                    r.get("payment_status") != PAY_PAID
                    or r.get("card_secret_delivered_at") is not None
                ):
                    return None
                r["card_secret"] = snapshot.to_dict()
                r["card_secret_delivered_at"] = now
                r["updated_at"] = now
                await self._save(ORDERS_FILE, rows)
                return Order.from_dict(r)
        return None

    async def health_check(self) -> bool:
        await self._load(PRODUCTS_FILE)
        return True
