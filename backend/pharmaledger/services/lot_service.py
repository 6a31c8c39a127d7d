# Overview: Lot catalog and FEFO allocation; lot receipt, reservation, consumption and write-off.

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable

from flask import current_app

from ..extensions import db
from ..models import Lot, LotMovement, LotMovementKind, MovementKind, StockMovement
from ..time_utils import today
from ..validation import RuleViolation, ValidationError, validate_lot_data
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .stock_service import InsufficientStockError, _apply_movement_locked, get_product
"""
Lot Invariants (authoritative)

- current_quantity >= reserved_quantity >= 0 for every lot.
- current_quantity grows only through receive_lot() and sale returns; it
  shrinks only through sale consumption and expiration write-offs.
- A lot is eligible for FEFO when it is active, has unreserved quantity and
  expires strictly after the reference date.
- FEFO order: expiry date, then manufacture date (oldest first), then lot
  number and id so the order is total and repeatable.
- Planning never mutates lots. Only reserve/release/consume do, each inside
  a transaction that also writes a LotMovement row.
"""


class LotError(Exception):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class LotNotFoundError(LotError):
    def __init__(self, lot_id: str):
        super().__init__(f"lot not found: {lot_id}", {"lot_id": lot_id})


class NoLotsAvailableError(LotError):
    def __init__(self, product_id: str):
        super().__init__(f"no lots available for product {product_id}", {"product_id": product_id})
        self.product_id = product_id


class LotStatus(str, enum.Enum):
    VALID = "VALID"
    NEAR_EXPIRY = "NEAR_EXPIRY"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class LotAllocation:
    lot_id: str
    quantity: int

    def to_dict(self) -> dict:
        return {"lot_id": self.lot_id, "quantity": self.quantity}


@dataclass
class AllocationPlan:
    product_id: str
    requested: int
    allocations: list[LotAllocation] = field(default_factory=list)
    available: int = 0

    @property
    def allocated(self) -> int:
        return sum(a.quantity for a in self.allocations)

    @property
    def shortfall(self) -> int:
        return max(self.requested - self.allocated, 0)

    @property
    def is_sufficient(self) -> bool:
        return self.shortfall == 0

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "requested": self.requested,
            "allocated": self.allocated,
            "available": self.available,
            "shortfall": self.shortfall,
            "sufficient": self.is_sufficient,
            "allocations": [a.to_dict() for a in self.allocations],
        }


def _as_date(value: date | datetime | None) -> date:
    if value is None:
        return today()
    if isinstance(value, datetime):
        return value.date()
    return value


def is_eligible(lot: Lot, as_of: date) -> bool:
    return bool(lot.active) and lot.available_quantity > 0 and lot.expiry_date > as_of


def fefo_key(lot: Lot):
    return (lot.expiry_date, lot.manufacture_date, lot.lot_number, lot.id)


def plan_fefo(product_id: str, lots: Iterable[Lot], desired: int, as_of: date | datetime | None = None) -> AllocationPlan:
    """
    Greedy First-Expire-First-Out plan over the eligible lots.

    Pure: reads lot fields only. A plan that cannot cover `desired` is still
    returned, with shortfall > 0, so the caller decides whether to reject.
    """
    as_of = _as_date(as_of)
    eligible = sorted((lot for lot in lots if is_eligible(lot, as_of)), key=fefo_key)

    plan = AllocationPlan(product_id=product_id, requested=desired)
    plan.available = sum(lot.available_quantity for lot in eligible)

    remaining = desired
    for lot in eligible:
        if remaining <= 0:
            break
        take = min(lot.available_quantity, remaining)
        plan.allocations.append(LotAllocation(lot.id, take))
        remaining -= take
    return plan


def _eligible_lots_query(product_id: str, as_of: date):
    return db.session.query(Lot).filter(
        Lot.product_id == product_id,
        Lot.active.is_(True),
        Lot.current_quantity > Lot.reserved_quantity,
        Lot.expiry_date > as_of,
    )


def allocate(product_id: str, desired: int, as_of: date | datetime | None = None, *, lock: bool = False) -> AllocationPlan:
    """
    FEFO allocation plan for `desired` units of a product.

    Raises NoLotsAvailableError when no lot is eligible. lock=True is for
    callers that will consume the plan inside their current transaction.
    """
    if isinstance(desired, bool) or not isinstance(desired, int) or desired <= 0:
        raise ValidationError("quantity must be greater than zero")
    as_of = _as_date(as_of)

    q = _eligible_lots_query(product_id, as_of)
    if lock:
        q = lock_for_update(q)
    lots = q.all()
    if not lots:
        raise NoLotsAvailableError(product_id)
    return plan_fefo(product_id, lots, desired, as_of)


def check_availability(product_id: str, quantity: int, as_of: date | datetime | None = None) -> dict:
    get_product(product_id)
    try:
        plan = allocate(product_id, quantity, as_of)
    except NoLotsAvailableError:
        plan = AllocationPlan(product_id=product_id, requested=quantity)
    return {
        "available": plan.is_sufficient,
        "available_quantity": plan.available,
        "suggested": [a.to_dict() for a in plan.allocations],
    }


def lot_status(lot: Lot, as_of: date | datetime | None = None, alert_days: int | None = None) -> LotStatus:
    as_of = _as_date(as_of)
    if alert_days is None:
        alert_days = current_app.config.get("LOT_EXPIRY_ALERT_DAYS", 30)
    if lot.expiry_date <= as_of:
        return LotStatus.EXPIRED
    if lot.expiry_date <= as_of + timedelta(days=alert_days):
        return LotStatus.NEAR_EXPIRY
    return LotStatus.VALID


def describe_lot(lot: Lot, as_of: date | datetime | None = None) -> dict:
    as_of = _as_date(as_of)
    data = lot.to_dict()
    data["days_to_expiry"] = (lot.expiry_date - as_of).days
    data["status"] = lot_status(lot, as_of).value
    return data


def get_lot(lot_id: str, *, lock: bool = False) -> Lot:
    q = db.session.query(Lot).filter_by(id=lot_id)
    if lock:
        q = lock_for_update(q)
    lot = q.first()
    if lot is None:
        raise LotNotFoundError(lot_id)
    return lot


def find_lot_by_barcode(code: str) -> Lot | None:
    return (
        db.session.query(Lot)
        .filter((Lot.lot_number == code) | (Lot.barcode == code))
        .order_by(Lot.active.desc(), Lot.expiry_date.asc())
        .first()
    )


def list_lots(product_id: str, *, only_available: bool = True, active: bool = True) -> list[Lot]:
    """Lots of a product in FEFO order."""
    q = db.session.query(Lot).filter(Lot.product_id == product_id, Lot.active.is_(active))
    if only_available:
        q = q.filter(Lot.current_quantity > Lot.reserved_quantity)
    return q.order_by(Lot.expiry_date.asc(), Lot.manufacture_date.asc(), Lot.lot_number.asc()).all()


def lots_near_expiry(days: int | None = None, as_of: date | datetime | None = None) -> list[Lot]:
    """Active lots with stock whose expiry falls within `days` (already expired ones included)."""
    if days is None:
        days = current_app.config.get("LOT_EXPIRY_ALERT_DAYS", 30)
    limit_date = _as_date(as_of) + timedelta(days=days)
    return (
        db.session.query(Lot)
        .filter(
            Lot.active.is_(True),
            Lot.current_quantity > 0,
            Lot.expiry_date <= limit_date,
        )
        .order_by(Lot.expiry_date.asc())
        .all()
    )


def _log_lot_movement(lot: Lot, kind: LotMovementKind, quantity: int, reason: str, actor_id: str, sale_id: str | None = None):
    db.session.add(LotMovement(
        lot_id=lot.id,
        kind=kind,
        quantity=quantity,
        reason=reason,
        actor_id=actor_id,
        sale_id=sale_id,
    ))


def receive_lot(
    *,
    product_id: str,
    lot_number: str,
    quantity: int,
    expiry_date: date,
    manufacture_date: date,
    actor_id: str,
    unit_cost_cents: int | None = None,
    reason: str | None = None,
    barcode: str | None = None,
) -> tuple[Lot, StockMovement]:
    """
    Receive goods into a lot and the stock ledger in one transaction.

    Create-or-merge: an active lot with the same (product_id, lot_number)
    gets the quantity added and its unit cost replaced; otherwise a new lot
    is created. The paired ENTRY movement is written in the same transaction.
    """
    violations = validate_lot_data(
        lot_number=lot_number,
        manufacture_date=manufacture_date,
        expiry_date=expiry_date,
        quantity=quantity,
        unit_cost_cents=unit_cost_cents,
        barcode=barcode,
        today=today(),
    )
    if not actor_id:
        violations.append(RuleViolation("actor_id", "actor_id is required"))
    if violations:
        raise ValidationError.from_violations(violations)

    lot_number = lot_number.strip()
    reason = reason or f"Lot receipt {lot_number}"

    def _op():
        begin_write_transaction()
        product = get_product(product_id, lock=True)

        lot = lock_for_update(
            db.session.query(Lot).filter_by(product_id=product_id, lot_number=lot_number, active=True)
        ).first()
        if lot is not None:
            lot.current_quantity += quantity
            if unit_cost_cents is not None:
                lot.unit_cost_cents = unit_cost_cents
        else:
            lot = Lot(
                product_id=product_id,
                lot_number=lot_number,
                barcode=barcode,
                manufacture_date=manufacture_date,
                expiry_date=expiry_date,
                initial_quantity=quantity,
                current_quantity=quantity,
                reserved_quantity=0,
                unit_cost_cents=unit_cost_cents,
                active=True,
            )
            db.session.add(lot)
            db.session.flush()

        _log_lot_movement(lot, LotMovementKind.ENTRY, quantity, reason, actor_id)
        movement = _apply_movement_locked(
            product,
            MovementKind.ENTRY,
            quantity,
            reason=reason,
            actor_id=actor_id,
        )

        db.session.commit()
        current_app.logger.info(
            "Received %d units into lot %s of product %s", quantity, lot_number, product_id,
        )
        return lot, movement

    return run_with_retry(_op)


def _coerce_allocations(allocations) -> list[LotAllocation]:
    result = []
    for a in allocations:
        if not isinstance(a, LotAllocation):
            a = LotAllocation(*a)
        if a.quantity <= 0:
            raise ValidationError("allocation quantity must be greater than zero")
        result.append(a)
    if not result:
        raise ValidationError("at least one lot allocation is required")
    return result


def reserve(allocations, actor_id: str, reason: str = "Reservation") -> list[Lot]:
    """Hold unreserved lot quantity (e.g. while a counter sale is being built)."""
    allocations = _coerce_allocations(allocations)

    def _op():
        begin_write_transaction()
        lots = []
        for a in allocations:
            lot = get_lot(a.lot_id, lock=True)
            if lot.available_quantity < a.quantity:
                raise InsufficientStockError(
                    lot.product_id, lot.available_quantity, a.quantity, lot_number=lot.lot_number,
                )
            lot.reserved_quantity += a.quantity
            _log_lot_movement(lot, LotMovementKind.RESERVE, a.quantity, reason, actor_id)
            lots.append(lot)
        db.session.commit()
        return lots

    return run_with_retry(_op)


def release(allocations, actor_id: str, reason: str = "Reservation released") -> list[Lot]:
    allocations = _coerce_allocations(allocations)

    def _op():
        begin_write_transaction()
        lots = []
        for a in allocations:
            lot = get_lot(a.lot_id, lock=True)
            if a.quantity > lot.reserved_quantity:
                raise LotError(
                    f"cannot release {a.quantity} from lot {lot.lot_number}: only {lot.reserved_quantity} reserved",
                    {"lot_id": lot.id, "reserved": lot.reserved_quantity, "requested": a.quantity},
                )
            lot.reserved_quantity -= a.quantity
            _log_lot_movement(lot, LotMovementKind.RELEASE, a.quantity, reason, actor_id)
            lots.append(lot)
        db.session.commit()
        return lots

    return run_with_retry(_op)


def _consume_locked(
    product_id: str,
    allocations: list[LotAllocation],
    *,
    sale_id: str,
    actor_id: str,
    from_reservation: bool = False,
) -> None:
    """Take allocated units out of their lots. Caller owns the transaction."""
    for a in allocations:
        lot = get_lot(a.lot_id, lock=True)
        if lot.product_id != product_id:
            raise ValidationError(f"lot {lot.lot_number} does not belong to product {product_id}")

        if not lot.active:
            covered = 0
        elif from_reservation:
            covered = lot.reserved_quantity
        else:
            covered = lot.available_quantity
        if covered < a.quantity:
            raise InsufficientStockError(product_id, covered, a.quantity, lot_number=lot.lot_number)

        lot.current_quantity -= a.quantity
        if from_reservation:
            lot.reserved_quantity -= a.quantity
        _log_lot_movement(lot, LotMovementKind.SALE, a.quantity, f"Sale #{sale_id}", actor_id, sale_id)


def _return_locked(lot_id: str, quantity: int, *, sale_id: str, actor_id: str, reason: str) -> None:
    lot = get_lot(lot_id, lock=True)
    lot.current_quantity += quantity
    _log_lot_movement(lot, LotMovementKind.RETURN, quantity, reason, actor_id, sale_id)


def expire_lot(lot_id: str, actor_id: str, as_of: date | datetime | None = None) -> StockMovement | None:
    """
    Write off what is left of an expired lot.

    The remaining quantity leaves the stock ledger as an EXPIRATION movement
    and the lot is deactivated, both in one transaction. Returns None when
    the lot was already empty.
    """
    as_of = _as_date(as_of)

    def _op():
        begin_write_transaction()
        lot = get_lot(lot_id, lock=True)
        if lot.expiry_date > as_of:
            raise LotError(
                f"lot {lot.lot_number} has not expired (expiry {lot.expiry_date.isoformat()})",
                {"lot_id": lot.id, "expiry_date": lot.expiry_date.isoformat()},
            )

        quantity = lot.current_quantity
        movement = None
        if quantity > 0:
            product = get_product(lot.product_id, lock=True)
            reason = f"Lot {lot.lot_number} expired on {lot.expiry_date.isoformat()}"
            movement = _apply_movement_locked(
                product,
                MovementKind.EXPIRATION,
                quantity,
                reason=reason,
                actor_id=actor_id,
            )
            _log_lot_movement(lot, LotMovementKind.EXPIRATION, quantity, reason, actor_id)

        lot.current_quantity = 0
        lot.reserved_quantity = 0
        lot.active = False

        db.session.commit()
        current_app.logger.info("Lot %s written off (%d units)", lot.lot_number, quantity)
        return movement

    return run_with_retry(_op)


def expire_due_lots(actor_id: str, as_of: date | datetime | None = None) -> dict:
    """Write off every active lot that expired on or before `as_of`."""
    as_of = _as_date(as_of)
    due = (
        db.session.query(Lot.id)
        .filter(Lot.active.is_(True), Lot.expiry_date <= as_of)
        .order_by(Lot.expiry_date.asc())
        .all()
    )

    written_off, failed = [], []
    for (lot_id,) in due:
        try:
            movement = expire_lot(lot_id, actor_id, as_of)
        except (LotError, InsufficientStockError) as exc:
            current_app.logger.warning("Could not write off lot %s: %s", lot_id, exc)
            failed.append({"lot_id": lot_id, "error": str(exc)})
            continue
        written_off.append({"lot_id": lot_id, "quantity": movement.quantity if movement else 0})

    return {"written_off": written_off, "failed": failed}
