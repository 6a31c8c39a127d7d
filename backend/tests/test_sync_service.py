# Overview: Pytest coverage for offline sale reconciliation.

"""
Reconciliation Tests

Covers:
- SYNCED path: sale, items, EXIT movements and lot consumption in one go
- Idempotency: resubmission is a CONFLICT and stock moves once
- Integrity failures are ERROR and never touch stock
- Insufficient stock discovered at sync time is a CONFLICT
- Infrastructure failures are ERROR for that record only
- Outcome order follows submission order
"""

from dataclasses import replace
from datetime import date, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from pharmaledger.extensions import db
from pharmaledger.models import Lot, MovementKind, Sale, SaleItem, StockMovement
from pharmaledger.models.sales import SALE_ORIGIN_OFFLINE
from pharmaledger.services import sales_service, stock_service, sync_service
from pharmaledger.services.offline_sale_service import build_offline_sale, record_to_payload
from pharmaledger.services.sync_service import SyncStatus
from pharmaledger.validation import ValidationError

from conftest import ACTOR


def _offline(product, quantity, price=500, **item_fields):
    item = {"product_id": product.id, "quantity": quantity, "unit_price_cents": price}
    item.update(item_fields)
    return build_offline_sale([item], actor_id=ACTOR, client_id="register-1")


def _exit_count(product_id):
    return db.session.query(StockMovement).filter_by(product_id=product_id, kind=MovementKind.EXIT).count()


class TestReconcile:

    def test_synced_record_is_materialized(self, make_product):
        product = make_product(stock=10)
        record = _offline(product, 3)

        batch = sync_service.reconcile([record])

        assert batch.to_dict()["succeeded"] == 1
        assert batch.details[0].record_id == record.id
        assert batch.details[0].status == SyncStatus.SYNCED

        sale = db.session.query(Sale).filter_by(id=record.id).one()
        assert sale.origin == SALE_ORIGIN_OFFLINE
        assert sale.total_value_cents == 1500
        assert sale.client_id == "register-1"
        assert sale.occurred_at == record.client_timestamp
        assert [item.id for item in sale.items] == [record.items[0].id]

        movement = db.session.query(StockMovement).filter_by(related_sale_id=record.id).one()
        assert movement.quantity == 3
        assert sale.items[0].stock_movement_id == movement.id
        assert stock_service.get_current_stock(product.id) == 7
        assert stock_service.verify_ledger(product.id).consistent

    def test_resubmission_is_conflict_and_stock_moves_once(self, make_product):
        product = make_product(stock=10)
        record = _offline(product, 4)

        first = sync_service.reconcile([record])
        second = sync_service.reconcile([record])

        assert first.details[0].status == SyncStatus.SYNCED
        assert second.details[0].status == SyncStatus.CONFLICT
        assert second.details[0].message == "sale already exists on server"
        assert stock_service.get_current_stock(product.id) == 6
        assert _exit_count(product.id) == 1

    def test_duplicate_inside_one_batch(self, make_product):
        product = make_product(stock=10)
        record = _offline(product, 1)

        batch = sync_service.reconcile([record, record])

        assert [d.status for d in batch.details] == [SyncStatus.SYNCED, SyncStatus.CONFLICT]
        assert stock_service.get_current_stock(product.id) == 9

    def test_tampered_record_is_error_without_touching_stock(self, make_product):
        product = make_product(stock=10)
        record = _offline(product, 2)
        tampered = replace(record, items=(replace(record.items[0], quantity=1),))

        batch = sync_service.reconcile([tampered])

        assert batch.errors == 1
        assert batch.details[0].status == SyncStatus.ERROR
        assert batch.details[0].message == "integrity validation failed"
        assert stock_service.get_current_stock(product.id) == 10
        assert db.session.query(Sale).count() == 0

    def test_empty_record_is_integrity_error(self, make_product):
        product = make_product(stock=10)
        record = _offline(product, 2)
        empty = replace(record, items=(), total_value_cents=0)

        batch = sync_service.reconcile([empty])
        assert batch.details[0].message == "integrity validation failed"

    def test_stock_changed_since_offline_is_conflict(self, make_product):
        """Server stock is 1, the register sold 2 while offline."""
        product = make_product(stock=1)
        record = _offline(product, 2)

        batch = sync_service.reconcile([record])

        assert batch.conflicts == 1
        assert batch.details[0].status == SyncStatus.CONFLICT
        assert "insufficient stock" in batch.details[0].message
        assert stock_service.get_current_stock(product.id) == 1
        assert db.session.query(Sale).count() == 0
        assert db.session.query(SaleItem).count() == 0

    def test_multi_item_record_is_all_or_nothing(self, make_product):
        plenty = make_product(stock=10)
        scarce = make_product(stock=1)
        record = build_offline_sale(
            [
                {"product_id": plenty.id, "quantity": 5, "unit_price_cents": 100},
                {"product_id": scarce.id, "quantity": 2, "unit_price_cents": 100},
            ],
            actor_id=ACTOR,
        )

        batch = sync_service.reconcile([record])

        assert batch.details[0].status == SyncStatus.CONFLICT
        assert stock_service.get_current_stock(plenty.id) == 10
        assert _exit_count(plenty.id) == 0

    def test_unknown_product_is_error(self, app):
        record = build_offline_sale(
            [{"product_id": "gone", "quantity": 1, "unit_price_cents": 100}], actor_id=ACTOR,
        )
        batch = sync_service.reconcile([record])

        assert batch.details[0].status == SyncStatus.ERROR
        assert "product not found" in batch.details[0].message

    def test_one_failure_does_not_abort_the_batch(self, make_product):
        product = make_product(stock=5)
        ok_1 = _offline(product, 1)
        too_many = _offline(product, 50)
        tampered = replace(_offline(product, 1), total_value_cents=1)
        ok_2 = _offline(product, 2)

        batch = sync_service.reconcile([ok_1, too_many, tampered, ok_2])

        assert [d.record_id for d in batch.details] == [ok_1.id, too_many.id, tampered.id, ok_2.id]
        assert [d.status for d in batch.details] == [
            SyncStatus.SYNCED, SyncStatus.CONFLICT, SyncStatus.ERROR, SyncStatus.SYNCED,
        ]
        assert (batch.processed, batch.succeeded, batch.conflicts, batch.errors) == (4, 2, 1, 1)
        assert stock_service.get_current_stock(product.id) == 2

    def test_infrastructure_failure_is_error_for_that_record_only(self, make_product, monkeypatch):
        broken = make_product(stock=10, name="Broken")
        healthy = make_product(stock=10, name="Healthy")
        broken_id = broken.id
        original = sales_service._apply_movement_locked

        def flaky(product, *args, **kwargs):
            if product.id == broken_id:
                raise OperationalError("UPDATE products", {}, Exception("database is locked"))
            return original(product, *args, **kwargs)

        monkeypatch.setattr(sales_service, "_apply_movement_locked", flaky)

        bad = _offline(broken, 1)
        good = _offline(healthy, 1)
        batch = sync_service.reconcile([bad, good])

        assert batch.details[0].status == SyncStatus.ERROR
        assert batch.details[0].message == "connection failure"
        assert batch.details[1].status == SyncStatus.SYNCED
        assert stock_service.get_current_stock(broken.id) == 10
        assert stock_service.get_current_stock(healthy.id) == 9
        assert db.session.query(Sale).filter_by(id=bad.id).first() is None

    def test_batch_size_limit(self, app, make_product):
        app.config["SYNC_MAX_BATCH_SIZE"] = 2
        product = make_product(stock=10)
        records = [_offline(product, 1) for _ in range(3)]

        with pytest.raises(ValidationError):
            sync_service.reconcile(records)
        assert stock_service.get_current_stock(product.id) == 10


class TestLotsAtReconciliation:

    def test_lot_mandatory_requires_explicit_lots(self, make_product):
        product = make_product(stock=10, lot_mandatory=True)
        batch = sync_service.reconcile([_offline(product, 1)])

        assert batch.details[0].status == SyncStatus.ERROR
        assert "explicit lot" in batch.details[0].message
        assert stock_service.get_current_stock(product.id) == 10

    def test_explicit_lots_are_consumed(self, make_product, make_lot):
        product = make_product(stock=10, lot_mandatory=True)
        lot = make_lot(product, "LM-1", 10, date.today() + timedelta(days=200))
        record = _offline(product, 3, lots=[{"lot_id": lot.id, "quantity": 3}])

        batch = sync_service.reconcile([record])

        assert batch.details[0].status == SyncStatus.SYNCED
        assert db.session.get(Lot, lot.id).current_quantity == 7
        item = db.session.query(SaleItem).filter_by(sale_id=record.id).one()
        assert [(a.lot_id, a.quantity) for a in item.lots] == [(lot.id, 3)]

    def test_lot_quantities_must_match_item(self, make_product, make_lot):
        product = make_product(stock=10, lot_mandatory=True)
        lot = make_lot(product, "LM-1", 10, date.today() + timedelta(days=200))
        record = _offline(product, 3, lots=[{"lot_id": lot.id, "quantity": 2}])

        batch = sync_service.reconcile([record])

        assert batch.details[0].status == SyncStatus.ERROR
        assert stock_service.get_current_stock(product.id) == 10

    def test_short_lot_is_conflict(self, make_product, make_lot):
        product = make_product(stock=10, lot_mandatory=True)
        lot = make_lot(product, "LM-1", 2, date.today() + timedelta(days=200))
        record = _offline(product, 3, lots=[{"lot_id": lot.id, "quantity": 3}])

        batch = sync_service.reconcile([record])

        assert batch.details[0].status == SyncStatus.CONFLICT
        assert "insufficient stock" in batch.details[0].message
        assert db.session.get(Lot, lot.id).current_quantity == 2
        assert stock_service.get_current_stock(product.id) == 10

    def test_fefo_for_products_without_mandatory_lots(self, make_product, make_lot):
        product = make_product(stock=10)
        later = make_lot(product, "LATE", 5, date.today() + timedelta(days=300))
        sooner = make_lot(product, "SOON", 5, date.today() + timedelta(days=30))

        batch = sync_service.reconcile([_offline(product, 6)])

        assert batch.details[0].status == SyncStatus.SYNCED
        assert db.session.get(Lot, sooner.id).current_quantity == 0
        assert db.session.get(Lot, later.id).current_quantity == 4


class TestReconcilePayload:

    def test_payload_round_trip(self, make_product):
        product = make_product(stock=10)
        record = _offline(product, 2)

        batch = sync_service.reconcile_payload([record_to_payload(record)])

        assert batch.details[0].status == SyncStatus.SYNCED
        assert stock_service.get_current_stock(product.id) == 8

    def test_unreadable_record_is_error_in_place(self, make_product):
        product = make_product(stock=10)
        record = _offline(product, 2)

        batch = sync_service.reconcile_payload([{"id": "junk", "items": "?"}, record_to_payload(record)])

        assert batch.details[0].record_id == "junk"
        assert batch.details[0].status == SyncStatus.ERROR
        assert batch.details[0].message.startswith("malformed record")
        assert batch.details[1].status == SyncStatus.SYNCED

    def test_records_must_be_a_list(self, app):
        with pytest.raises(ValidationError):
            sync_service.reconcile_payload({"records": []})

    def test_non_ascii_digest_is_error_for_that_record_only(self, make_product):
        product = make_product(stock=10)
        first = record_to_payload(_offline(product, 1))
        garbled = {**record_to_payload(_offline(product, 2)), "integrity_digest": "é" * 64}
        last = record_to_payload(_offline(product, 3))

        batch = sync_service.reconcile_payload([first, garbled, last])

        assert [d.status for d in batch.details] == [SyncStatus.SYNCED, SyncStatus.ERROR, SyncStatus.SYNCED]
        assert batch.details[1].message == "integrity validation failed"
        assert stock_service.get_current_stock(product.id) == 6


class TestUnexpectedFailures:

    def test_unexpected_exception_stays_with_its_record(self, make_product, monkeypatch):
        broken = make_product(stock=10, name="Broken")
        healthy = make_product(stock=10, name="Healthy")
        broken_id = broken.id
        original = sales_service._apply_movement_locked

        def exploding(product, *args, **kwargs):
            if product.id == broken_id:
                raise RuntimeError("unexpected")
            return original(product, *args, **kwargs)

        monkeypatch.setattr(sales_service, "_apply_movement_locked", exploding)

        before = _offline(healthy, 1)
        bad = _offline(broken, 1)
        after = _offline(healthy, 2)
        batch = sync_service.reconcile([before, bad, after])

        assert [d.status for d in batch.details] == [SyncStatus.SYNCED, SyncStatus.ERROR, SyncStatus.SYNCED]
        assert batch.details[1].message == "transaction failure"
        assert stock_service.get_current_stock(broken.id) == 10
        assert stock_service.get_current_stock(healthy.id) == 7
        assert db.session.query(Sale).filter_by(id=bad.id).first() is None
