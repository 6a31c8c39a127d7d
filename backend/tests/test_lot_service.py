# Overview: Pytest coverage for the lot catalog and FEFO allocation.

"""
Lot Catalog / FEFO Tests

Covers:
- FEFO ordering with manufacture-date tie-break, partial plans, eligibility
- Planning never mutates lots
- Receiving (create-or-merge) is paired with an ENTRY movement
- Reservations keep current >= reserved >= 0
- Expiration write-off goes through the stock ledger
"""

from datetime import date, timedelta

import pytest
from pharmaledger.extensions import db
from pharmaledger.models import Lot, LotMovement, LotMovementKind, MovementKind, StockMovement
from pharmaledger.services import lot_service, stock_service
from pharmaledger.services.lot_service import (
    LotAllocation,
    LotError,
    LotStatus,
    NoLotsAvailableError,
    plan_fefo,
)
from pharmaledger.services.stock_service import InsufficientStockError
from pharmaledger.validation import ValidationError

from conftest import ACTOR


AS_OF = date(2024, 1, 1)


@pytest.fixture
def fefo_lots(make_product, make_lot):
    product = make_product(stock=10, lot_mandatory=True)
    l1 = make_lot(product, "L1", 5, date(2024, 1, 10), manufacture_date=date(2023, 6, 1))
    l2 = make_lot(product, "L2", 3, date(2024, 1, 5), manufacture_date=date(2023, 6, 1))
    l3 = make_lot(product, "L3", 2, date(2024, 1, 5), manufacture_date=date(2023, 3, 1))
    return product, l1, l2, l3


class TestFefoAllocation:

    def test_earliest_expiry_first_with_manufacture_tie_break(self, fefo_lots):
        product, l1, l2, l3 = fefo_lots

        plan = lot_service.allocate(product.id, 4, as_of=AS_OF)

        assert plan.allocations == [LotAllocation(l3.id, 2), LotAllocation(l2.id, 2)]
        assert plan.is_sufficient
        assert l1.id not in {a.lot_id for a in plan.allocations}

    def test_partial_plan_reports_shortfall(self, fefo_lots):
        product, l1, l2, l3 = fefo_lots

        plan = lot_service.allocate(product.id, 12, as_of=AS_OF)

        assert plan.available == 10
        assert plan.allocated == 10
        assert plan.shortfall == 2
        assert not plan.is_sufficient
        assert [a.lot_id for a in plan.allocations] == [l3.id, l2.id, l1.id]

    def test_planning_does_not_mutate_lots(self, fefo_lots):
        product, l1, l2, l3 = fefo_lots
        lot_service.allocate(product.id, 7, as_of=AS_OF)

        db.session.expire_all()
        assert [lot.current_quantity for lot in (l1, l2, l3)] == [5, 3, 2]
        assert [lot.reserved_quantity for lot in (l1, l2, l3)] == [0, 0, 0]
        assert db.session.query(LotMovement).count() == 0

    def test_excludes_expired_inactive_and_fully_reserved(self, make_product, make_lot):
        product = make_product()
        make_lot(product, "EXPIRED", 5, AS_OF)
        make_lot(product, "INACTIVE", 5, date(2024, 3, 1), active=False)
        make_lot(product, "RESERVED", 5, date(2024, 3, 1), reserved=5)
        good = make_lot(product, "GOOD", 5, date(2024, 6, 1), reserved=2)

        plan = lot_service.allocate(product.id, 5, as_of=AS_OF)

        assert plan.allocations == [LotAllocation(good.id, 3)]
        assert plan.shortfall == 2

    def test_no_eligible_lots(self, make_product, make_lot):
        product = make_product()
        make_lot(product, "OLD", 5, date(2023, 12, 31))

        with pytest.raises(NoLotsAvailableError):
            lot_service.allocate(product.id, 1, as_of=AS_OF)

    def test_plan_fefo_is_deterministic_on_full_ties(self):
        a = Lot(id="b", lot_number="X", expiry_date=date(2024, 2, 1), manufacture_date=date(2023, 1, 1),
                current_quantity=1, reserved_quantity=0, active=True)
        b = Lot(id="a", lot_number="X", expiry_date=date(2024, 2, 1), manufacture_date=date(2023, 1, 1),
                current_quantity=1, reserved_quantity=0, active=True)

        plan = plan_fefo("p", [a, b], 2, AS_OF)

        assert [x.lot_id for x in plan.allocations] == ["a", "b"]

    def test_check_availability(self, fefo_lots):
        product, l1, l2, l3 = fefo_lots
        result = lot_service.check_availability(product.id, 4, as_of=AS_OF)
        assert result["available"] is True
        assert result["suggested"][0] == {"lot_id": l3.id, "quantity": 2}

        result = lot_service.check_availability(product.id, 4, as_of=date(2024, 2, 1))
        assert result["available"] is False
        assert result["available_quantity"] == 0


class TestReceiveLot:

    def test_creates_lot_and_entry_movement(self, make_product):
        product = make_product()

        lot, movement = lot_service.receive_lot(
            product_id=product.id,
            lot_number="ABC123",
            quantity=40,
            unit_cost_cents=210,
            manufacture_date=date.today() - timedelta(days=30),
            expiry_date=date.today() + timedelta(days=365),
            actor_id=ACTOR,
        )

        assert lot.current_quantity == 40
        assert lot.initial_quantity == 40
        assert movement.kind == MovementKind.ENTRY
        assert movement.quantity == 40
        assert stock_service.get_current_stock(product.id) == 40
        assert stock_service.verify_ledger(product.id).consistent
        assert lot.movements.filter_by(kind=LotMovementKind.ENTRY).count() == 1

    def test_merges_into_existing_active_lot(self, make_product):
        product = make_product()
        common = dict(
            product_id=product.id,
            lot_number="ABC123",
            manufacture_date=date.today() - timedelta(days=30),
            expiry_date=date.today() + timedelta(days=365),
            actor_id=ACTOR,
        )

        first, _ = lot_service.receive_lot(quantity=10, unit_cost_cents=100, **common)
        second, _ = lot_service.receive_lot(quantity=5, unit_cost_cents=120, **common)

        assert first.id == second.id
        assert second.current_quantity == 15
        assert second.unit_cost_cents == 120
        assert db.session.query(Lot).filter_by(product_id=product.id).count() == 1
        assert stock_service.get_current_stock(product.id) == 15

    def test_invalid_lot_data_writes_nothing(self, make_product):
        product = make_product()

        with pytest.raises(ValidationError) as exc_info:
            lot_service.receive_lot(
                product_id=product.id,
                lot_number="BAD",
                quantity=10,
                manufacture_date=date.today() + timedelta(days=3),
                expiry_date=date.today() + timedelta(days=2),
                actor_id="",
            )

        fields = {v.field for v in exc_info.value.violations}
        assert {"manufacture_date", "expiry_date", "actor_id"} <= fields
        assert db.session.query(Lot).count() == 0
        assert db.session.query(StockMovement).count() == 0


class TestReservations:

    def test_reserve_and_release(self, make_product, make_lot):
        product = make_product(stock=10)
        lot = make_lot(product, "R1", 10, date.today() + timedelta(days=100))

        lot_service.reserve([(lot.id, 4)], ACTOR)
        assert lot_service.get_lot(lot.id).reserved_quantity == 4
        assert lot_service.get_lot(lot.id).available_quantity == 6

        lot_service.release([LotAllocation(lot.id, 3)], ACTOR)
        assert lot_service.get_lot(lot.id).reserved_quantity == 1

        kinds = [m.kind for m in db.session.query(LotMovement).order_by(LotMovement.id)]
        assert kinds == [LotMovementKind.RESERVE, LotMovementKind.RELEASE]

    def test_cannot_reserve_more_than_available(self, make_product, make_lot):
        product = make_product(stock=10)
        lot = make_lot(product, "R1", 5, date.today() + timedelta(days=100), reserved=3)

        with pytest.raises(InsufficientStockError):
            lot_service.reserve([(lot.id, 3)], ACTOR)
        assert lot_service.get_lot(lot.id).reserved_quantity == 3

    def test_cannot_release_more_than_reserved(self, make_product, make_lot):
        product = make_product(stock=10)
        lot = make_lot(product, "R1", 5, date.today() + timedelta(days=100), reserved=1)

        with pytest.raises(LotError):
            lot_service.release([(lot.id, 2)], ACTOR)

    def test_reserve_is_all_or_nothing(self, make_product, make_lot):
        product = make_product(stock=10)
        ok = make_lot(product, "OK", 5, date.today() + timedelta(days=100))
        short = make_lot(product, "SHORT", 1, date.today() + timedelta(days=100))

        with pytest.raises(InsufficientStockError):
            lot_service.reserve([(ok.id, 2), (short.id, 2)], ACTOR)

        assert lot_service.get_lot(ok.id).reserved_quantity == 0


class TestExpiry:

    def test_lot_status(self, app):
        lot = Lot(expiry_date=date(2024, 1, 20))
        assert lot_service.lot_status(lot, as_of=date(2024, 1, 21)) == LotStatus.EXPIRED
        assert lot_service.lot_status(lot, as_of=date(2024, 1, 1)) == LotStatus.NEAR_EXPIRY
        assert lot_service.lot_status(lot, as_of=date(2023, 6, 1)) == LotStatus.VALID

    def test_lot_expiring_today_is_expired(self, app):
        lot = Lot(expiry_date=date(2024, 1, 20), current_quantity=5, reserved_quantity=0, active=True)
        assert lot_service.lot_status(lot, as_of=date(2024, 1, 20)) == LotStatus.EXPIRED
        assert not lot_service.is_eligible(lot, date(2024, 1, 20))

    def test_expire_lot_writes_off_through_ledger(self, make_product, make_lot):
        product = make_product(stock=10)
        lot = make_lot(product, "OLD", 6, date(2024, 1, 1), reserved=2)

        movement = lot_service.expire_lot(lot.id, ACTOR, as_of=date(2024, 1, 2))

        assert movement.kind == MovementKind.EXPIRATION
        assert movement.quantity == 6
        assert stock_service.get_current_stock(product.id) == 4
        refreshed = lot_service.get_lot(lot.id)
        assert refreshed.active is False
        assert refreshed.current_quantity == 0
        assert refreshed.reserved_quantity == 0
        assert stock_service.verify_ledger(product.id).consistent

    def test_cannot_expire_valid_lot(self, make_product, make_lot):
        product = make_product(stock=10)
        lot = make_lot(product, "NEW", 6, date(2024, 6, 1))

        with pytest.raises(LotError):
            lot_service.expire_lot(lot.id, ACTOR, as_of=date(2024, 1, 2))
        assert stock_service.get_current_stock(product.id) == 10

    def test_expire_due_lots(self, make_product, make_lot):
        product = make_product(stock=10)
        make_lot(product, "A", 3, date(2024, 1, 1))
        make_lot(product, "B", 2, date(2024, 1, 15))
        make_lot(product, "C", 5, date(2024, 3, 1))

        result = lot_service.expire_due_lots(ACTOR, as_of=date(2024, 1, 20))

        assert sorted(e["quantity"] for e in result["written_off"]) == [2, 3]
        assert result["failed"] == []
        assert stock_service.get_current_stock(product.id) == 5

    def test_lots_near_expiry_and_barcode_lookup(self, make_product, make_lot):
        product = make_product(stock=10)
        soon = make_lot(product, "SOON", 3, date(2024, 1, 10))
        make_lot(product, "LATER", 3, date(2024, 9, 1))

        near = lot_service.lots_near_expiry(days=30, as_of=date(2024, 1, 1))
        assert [lot.id for lot in near] == [soon.id]

        assert lot_service.find_lot_by_barcode("SOON").id == soon.id
        assert lot_service.find_lot_by_barcode("NOPE") is None
