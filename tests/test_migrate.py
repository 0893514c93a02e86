"""Tests for the file -> SQL migration command."""

import asyncio
import json

from cardshop.migrate import main, migrate
from cardshop.model.store import SqlStore
from cardshop.store import Store

PRODUCT = {
    "id": "p1", "title": "Netflix", "price": 1500, "stock": 1,
    "sold_count": 1, "attributes": ["HD"], "status": "active",
    "created_at": "2024-05-01T10:00:00.000Z",
    "updated_at": "2024-05-01T10:00:00.000Z",
}
SECRETS = [
    {
        "id": "cs1", "product_id": "p1", "account": "u1", "password": "pw1",
        "status": "sold", "order_id": "o1",
        "sold_at": "2024-05-02T10:00:00.000Z",
        "created_at": "2024-05-01T10:00:00.000Z",
        "updated_at": "2024-05-02T10:00:00.000Z",
    },
    {
        "id": "cs2", "product_id": "p1", "account": "u2", "password": "pw2",
        "status": "available",
        "created_at": "2024-05-01T10:00:00.000Z",
        "updated_at": "2024-05-01T10:00:00.000Z",
    },
]
ORDER = {
    "id": "o1", "order_number": "ORD1", "product_id": "p1",
    "product_title": "Netflix", "quantity": 1, "unit_price": 1500,
    "total_amount": 1500, "contact_info": "a@b.co",
    "payment_status": "paid",
    "card_secret": {"account": "u1", "password": "pw1"},
    "card_secret_delivered_at": "2024-05-02T10:00:00.000Z",
    "created_at": "2024-05-02T09:59:00.000Z",
    "updated_at": "2024-05-02T10:00:00.000Z",
}


def write(data_dir, name, rows):
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / name).write_text(json.dumps(rows), encoding="utf-8")


async def read_back(url):
    store = Store(SqlStore(url))
    await store.open()
    try:
        return (
            await store.get_products(),
            await store.get_card_secrets(),
            await store.get_orders(),
        )
    finally:
        await store.close()


class TestMigrate:
    def test_copies_everything(self, temp_dir, sql_url):
        data = temp_dir / "data"
        write(data, "products.json", [PRODUCT])
        write(data, "card-secrets.json", SECRETS)
        write(data, "orders.json", [ORDER])

        reports = asyncio.run(migrate(data, sql_url))
        assert {k: (r.found, r.migrated) for k, r in reports.items()} == {
            "products": (1, 1), "card_secrets": (2, 2), "orders": (1, 1),
        }

        products, secrets, orders = asyncio.run(read_back(sql_url))
        assert [p.id for p in products] == ["p1"]
        assert products[0].attributes == ["HD"]
        assert {s.id: s.status for s in secrets} == {
            "cs1": "sold", "cs2": "available",
        }
        assert orders[0].card_secret.account == "u1"
        assert orders[0].created_at == "2024-05-02T09:59:00+00:00"

    def test_rerun_is_idempotent(self, temp_dir, sql_url):
        data = temp_dir / "data"
        write(data, "products.json", [PRODUCT])
        asyncio.run(migrate(data, sql_url))
        reports = asyncio.run(migrate(data, sql_url))
        assert reports["products"].migrated == 1
        products, _, _ = asyncio.run(read_back(sql_url))
        assert len(products) == 1

    def test_missing_files_skipped(self, temp_dir, sql_url, capsys):
        reports = asyncio.run(migrate(temp_dir / "empty", sql_url))
        assert all(r.found == 0 for r in reports.values())
        assert "skipping" in capsys.readouterr().out


class TestMain:
    def test_exit_zero_on_success(self, temp_dir, sql_url, capsys):
        data = temp_dir / "data"
        write(data, "products.json", [PRODUCT])
        rc = main(["--data-dir", str(data), "--database-url", sql_url])
        assert rc == 0
        out = capsys.readouterr().out
        assert "Migration summary" in out
        assert "1/1 migrated" in out

    def test_exit_one_on_bad_record(self, temp_dir, sql_url, capsys):
        data = temp_dir / "data"
        # no title: rejected, the good one still goes in
        write(data, "products.json", [PRODUCT, {"id": "bad", "price": 1}])
        rc = main(["--data-dir", str(data), "--database-url", sql_url])
        assert rc == 1
        out = capsys.readouterr().out
        assert "1 failed" in out
        assert "bad" in out

    def test_needs_database_url(self, temp_dir, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert main(["--data-dir", str(temp_dir)]) == 1
