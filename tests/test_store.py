"""Tests for the Store adapter, run against both backends."""

import asyncio
from dataclasses import replace

import pytest

from cardshop.errors import StoreError
from cardshop.helpers import parse_iso
from cardshop.model.records import (
    PAY_CANCELLED, PAY_PAID, PAY_PENDING, PRODUCT_INACTIVE, SECRET_AVAILABLE,
    SECRET_SOLD, CardSecretSnapshot,
)
from cardshop.model.store import FileStore
from cardshop.store import Store


def run(coro):
    return asyncio.run(coro)


def add_product(store, **kw):
    data = {"title": "Netflix 1 month", "price": 1500, "category": "video"}
    data.update(kw)
    return run(store.add_product(data))


def add_order(store, product, contact="a@b.co", **kw):
    data = {
        "order_number": "ORD1",
        "product_id": product.id,
        "product_title": product.title,
        "unit_price": product.price,
        "contact_info": contact,
    }
    data.update(kw)
    return run(store.add_order(data))


def secrets_for(n, start=1):
    return [
        {
            "account": f"user{i}",
            "password": f"pw{i}",
            "created_at": f"2024-01-0{i}T00:00:00+00:00",
        }
        for i in range(start, start + n)
    ]


class TestProducts:
    def test_add_assigns_id_and_timestamps(self, any_store):
        p = add_product(any_store)
        assert p.id
        assert parse_iso(p.created_at) is not None
        assert p.updated_at == p.created_at
        assert run(any_store.get_product_by_id(p.id)) == p

    def test_get_missing_is_none(self, any_store):
        assert run(any_store.get_product_by_id("nope")) is None

    def test_save_refreshes_updated_at(self, any_store):
        old = "2020-01-01T00:00:00+00:00"
        p = add_product(any_store, created_at=old, updated_at=old)
        saved = run(any_store.save_product(replace(p, title="Netflix")))
        assert saved.created_at == old
        assert parse_iso(saved.updated_at) > parse_iso(old)
        assert run(any_store.get_product_by_id(p.id)).title == "Netflix"

    def test_rejects_bad_status(self, any_store):
        with pytest.raises(ValueError):
            add_product(any_store, status="archived")

    def test_list_newest_first(self, any_store):
        a = add_product(any_store, title="a",
                        created_at="2024-01-01T00:00:00+00:00")
        b = add_product(any_store, title="b",
                        created_at="2024-02-01T00:00:00+00:00")
        ids = [p.id for p in run(any_store.get_products())]
        assert ids == [b.id, a.id]

    def test_stock_and_sold_count(self, any_store):
        p = add_product(any_store, stock=3)
        assert run(any_store.update_product_stock(p.id, 7))
        assert run(any_store.increment_product_sold_count(p.id))
        got = run(any_store.get_product_by_id(p.id))
        assert (got.stock, got.sold_count) == (7, 1)
        assert not run(any_store.update_product_stock("nope", 1))

    def test_record_sale_floors_stock(self, any_store):
        p = add_product(any_store, stock=0)
        run(any_store.record_sale(p.id))
        got = run(any_store.get_product_by_id(p.id))
        assert (got.stock, got.sold_count) == (0, 1)


class TestDeleteProduct:
    def test_hard_delete_removes_secrets(self, any_store):
        p = add_product(any_store)
        run(any_store.add_card_secrets(p.id, secrets_for(2)))
        assert run(any_store.delete_product(p.id)) is True
        assert run(any_store.get_product_by_id(p.id)) is None
        assert run(any_store.get_card_secrets(p.id)) == []

    def test_soft_delete_when_ordered(self, any_store):
        p = add_product(any_store)
        add_order(any_store, p)
        assert run(any_store.delete_product(p.id)) is True
        got = run(any_store.get_product_by_id(p.id))
        assert got is not None
        assert got.status == PRODUCT_INACTIVE

    def test_missing(self, any_store):
        assert run(any_store.delete_product("nope")) is False


class TestCardSecrets:
    def test_bulk_add_raises_stock(self, any_store):
        p = add_product(any_store, stock=1)
        added = run(any_store.add_card_secrets(p.id, secrets_for(3)))
        assert len(added) == 3
        assert all(cs.status == SECRET_AVAILABLE for cs in added)
        assert run(any_store.get_product_by_id(p.id)).stock == 4

    def test_bulk_add_unknown_product(self, any_store):
        with pytest.raises(LookupError):
            run(any_store.add_card_secrets("nope", secrets_for(1)))

    def test_filter_by_status(self, any_store):
        p = add_product(any_store)
        run(any_store.add_card_secrets(p.id, secrets_for(2)))
        run(any_store.claim_card_secret(p.id, "order-1"))
        assert len(run(any_store.get_card_secrets(p.id, SECRET_SOLD))) == 1
        assert len(run(any_store.get_card_secrets(p.id, SECRET_AVAILABLE))) == 1
        assert len(run(any_store.get_card_secrets())) == 2

    def test_delete_available_decrements_stock(self, any_store):
        p = add_product(any_store)
        [cs] = run(any_store.add_card_secrets(p.id, secrets_for(1)))
        assert run(any_store.delete_card_secret(cs.id)) is True
        assert run(any_store.get_card_secret(cs.id)) is None
        assert run(any_store.get_product_by_id(p.id)).stock == 0

    def test_delete_sold_refused(self, any_store):
        p = add_product(any_store)
        [cs] = run(any_store.add_card_secrets(p.id, secrets_for(1)))
        run(any_store.claim_card_secret(p.id, "order-1"))
        assert run(any_store.delete_card_secret(cs.id)) is False
        assert run(any_store.get_card_secret(cs.id)).status == SECRET_SOLD

    def test_claim_oldest_first(self, any_store):
        p = add_product(any_store)
        run(any_store.add_card_secrets(p.id, secrets_for(1, start=3)))
        run(any_store.add_card_secrets(p.id, secrets_for(1, start=1)))
        claimed = run(any_store.claim_card_secret(p.id, "order-1"))
        assert claimed.account == "user1"
        assert claimed.status == SECRET_SOLD
        assert claimed.order_id == "order-1"
        assert claimed.sold_at is not None

    def test_claim_again_returns_held_secret(self, any_store):
        p = add_product(any_store)
        run(any_store.add_card_secrets(p.id, secrets_for(2)))
        first = run(any_store.claim_card_secret(p.id, "order-1"))
        again = run(any_store.claim_card_secret(p.id, "order-1"))
        assert again.id == first.id
        assert len(run(any_store.get_card_secrets(p.id, SECRET_SOLD))) == 1

    def test_claim_when_empty(self, any_store):
        p = add_product(any_store)
        assert run(any_store.claim_card_secret(p.id, "order-1")) is None

    def test_reassigning_sold_secret_refused(self, any_store):
        p = add_product(any_store)
        run(any_store.add_card_secrets(p.id, secrets_for(1)))
        claimed = run(any_store.claim_card_secret(p.id, "order-1"))
        with pytest.raises(ValueError):
            run(any_store.save_card_secret(replace(claimed, order_id="x")))


class TestOrders:
    def test_add_computes_total(self, any_store):
        p = add_product(any_store)
        o = add_order(any_store, p)
        assert o.quantity == 1
        assert o.total_amount == 1500
        assert o.payment_status == PAY_PENDING
        assert run(any_store.get_order(o.id)) == o

    def test_total_is_immutable(self, any_store):
        p = add_product(any_store)
        o = add_order(any_store, p)
        with pytest.raises(ValueError):
            run(any_store.save_order(replace(o, total_amount=1)))

    def test_by_contact_info(self, any_store):
        p = add_product(any_store)
        add_order(any_store, p, contact="a@b.co")
        add_order(any_store, p, contact="a@b.co", order_number="ORD2")
        add_order(any_store, p, contact="c@d.co", order_number="ORD3")
        assert len(run(any_store.orders_by_contact_info("a@b.co"))) == 2
        assert run(any_store.orders_by_contact_info("x@y.co")) == []

    def test_transition_guard(self, any_store):
        p = add_product(any_store)
        o = add_order(any_store, p)
        paid = run(any_store.transition_order(
            o.id, (PAY_PENDING,), PAY_PAID, payment_transaction_id="C1"
        ))
        assert paid.payment_status == PAY_PAID
        assert paid.payment_transaction_id == "C1"
        assert run(any_store.transition_order(
            o.id, (PAY_PENDING,), PAY_CANCELLED
        )) is None
        assert run(any_store.get_order(o.id)).payment_status == PAY_PAID

    def test_transition_missing(self, any_store):
        assert run(any_store.transition_order(
            "nope", (PAY_PENDING,), PAY_PAID
        )) is None

    def test_attach_card_secret(self, any_store):
        p = add_product(any_store)
        o = add_order(any_store, p)
        run(any_store.transition_order(o.id, (PAY_PENDING,), PAY_PAID))
        snap = CardSecretSnapshot(account="u", password="p")
        got = run(any_store.attach_card_secret(o.id, snap))
        assert got.card_secret == snap
        assert got.card_secret_delivered_at is not None
        assert run(any_store.get_order(o.id)).card_secret == snap

        other = CardSecretSnapshot(account="x", password="y")
        assert run(any_store.attach_card_secret(o.id, other)) is None
        assert run(any_store.get_order(o.id)).card_secret == snap

    def test_attach_needs_paid_order(self, any_store):
        p = add_product(any_store)
        o = add_order(any_store, p)
        snap = CardSecretSnapshot(account="u", password="p")
        assert run(any_store.attach_card_secret(o.id, snap)) is None
        assert run(any_store.attach_card_secret("nope", snap)) is None
        assert run(any_store.get_order(o.id)).card_secret is None


class TestHealth:
    def test_health_and_type(self, file_store, sql_store):
        assert run(file_store.health_check()) is True
        assert run(sql_store.health_check()) is True
        assert file_store.database_type == "File System"
        assert sql_store.database_type == "PostgreSQL"


class BrokenBackend(FileStore):
    async def list_products(self):
        raise OSError("disk on fire")

    async def health_check(self):
        raise OSError("disk on fire")


class TestErrors:
    def test_backend_failure_becomes_store_error(self, temp_dir):
        store = Store(BrokenBackend(temp_dir))
        with pytest.raises(StoreError) as exc:
            run(store.get_products())
        assert exc.value.operation == "get_products"
        assert isinstance(exc.value.cause, OSError)

    def test_health_check_returns_false(self, temp_dir):
        store = Store(BrokenBackend(temp_dir))
        assert run(store.health_check()) is False
