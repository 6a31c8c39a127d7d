# Overview: Stock ledger; the single writer of Product.current_stock and its append-only movements.

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Product, StockMovement, MovementKind
from ..validation import ValidationError, validate_movement, validate_outbound
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
"""
Stock Ledger Invariants (authoritative)

- Product.current_stock is never negative.
- Every change to current_stock is paired with exactly one StockMovement row,
  written in the same DB transaction. Movements are never updated or deleted.
- Replaying a product's movements in id order and summing signed quantities
  reproduces current_stock, and each movement's resulting_stock equals the
  running total at that point.
- The sufficiency check for outbound kinds runs after the product row is
  locked, inside the transaction that performs the decrement.
- Direction per kind lives only in MovementKind.direction.
"""


class StockError(Exception):
    """Base class for stock ledger errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ProductNotFoundError(StockError):
    def __init__(self, product_id: str):
        super().__init__(f"product not found: {product_id}", {"product_id": product_id})
        self.product_id = product_id


class InsufficientStockError(StockError):
    """The request is valid but current stock (or lot quantity) cannot cover it."""

    def __init__(
        self,
        product_id: str,
        available: int,
        requested: int,
        *,
        product_name: str | None = None,
        lot_number: str | None = None,
    ):
        label = product_name or product_id
        if lot_number:
            message = (
                f"insufficient stock in lot {lot_number} of product {label} "
                f"(available: {available}, requested: {requested})"
            )
        else:
            message = f"insufficient stock for product {label} (available: {available}, requested: {requested})"
        super().__init__(
            message,
            {
                "product_id": product_id,
                "available": available,
                "requested": requested,
                "lot_number": lot_number,
            },
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class StockStatus(str, enum.Enum):
    NORMAL = "NORMAL"
    LOW = "LOW"
    CRITICAL = "CRITICAL"
    ZERO = "ZERO"
    EXCESS = "EXCESS"


LOW_STOCK_STATUSES = (StockStatus.LOW, StockStatus.CRITICAL, StockStatus.ZERO)


@dataclass(frozen=True)
class LedgerCheck:
    product_id: str
    current_stock: int
    replayed_stock: int
    movement_count: int
    first_divergent_movement_id: int | None = None

    @property
    def consistent(self) -> bool:
        return self.current_stock == self.replayed_stock and self.first_divergent_movement_id is None

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "current_stock": self.current_stock,
            "replayed_stock": self.replayed_stock,
            "movement_count": self.movement_count,
            "first_divergent_movement_id": self.first_divergent_movement_id,
            "consistent": self.consistent,
        }


def coerce_kind(kind) -> MovementKind:
    if isinstance(kind, MovementKind):
        return kind
    try:
        return MovementKind(kind)
    except ValueError:
        raise ValidationError(f"invalid movement kind: {kind}")


def get_product(product_id: str, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise ProductNotFoundError(product_id)
    return product


def _apply_movement_locked(
    product: Product,
    kind: MovementKind,
    quantity: int,
    *,
    reason: str,
    actor_id: str,
    related_sale_id: str | None = None,
    notes: str | None = None,
) -> StockMovement:
    """Core ledger write without locking, retry or commit.

    The caller holds the product row (get_product(lock=True)) inside its own
    transaction. Used by apply_movement() and by the sale, lot and
    reconciliation paths that need several movements in one transaction.
    """
    previous = product.current_stock

    if kind.is_outbound and validate_outbound(previous, quantity):
        raise InsufficientStockError(product.id, previous, quantity, product_name=product.name)

    resulting = previous + kind.signed(quantity)
    product.current_stock = resulting

    movement = StockMovement(
        product_id=product.id,
        kind=kind,
        quantity=quantity,
        previous_stock=previous,
        resulting_stock=resulting,
        reason=reason.strip(),
        notes=notes,
        related_sale_id=related_sale_id,
        actor_id=actor_id,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def apply_movement(
    product_id: str,
    kind,
    quantity: int,
    reason: str,
    actor_id: str,
    related_sale_id: str | None = None,
    notes: str | None = None,
) -> StockMovement:
    """
    Record one stock movement and update the product's quantity atomically.

    Raises:
    - ValidationError: malformed input (every rule violation is reported)
    - ProductNotFoundError
    - InsufficientStockError: outbound quantity exceeds current stock
    - PersistenceError: the store failed underneath (connection/transaction)
    """
    violations = validate_movement({
        "product_id": product_id,
        "kind": kind.value if isinstance(kind, MovementKind) else kind,
        "quantity": quantity,
        "reason": reason,
        "actor_id": actor_id,
        "notes": notes,
    })
    if violations:
        raise ValidationError.from_violations(violations)
    kind = coerce_kind(kind)

    def _op():
        begin_write_transaction()
        product = get_product(product_id, lock=True)
        movement = _apply_movement_locked(
            product,
            kind,
            quantity,
            reason=reason,
            actor_id=actor_id,
            related_sale_id=related_sale_id,
            notes=notes,
        )
        db.session.commit()
        current_app.logger.info(
            "Stock movement %s %d on product %s (%d -> %d)",
            kind.value, quantity, product_id, movement.previous_stock, movement.resulting_stock,
        )
        return movement

    return run_with_retry(_op)


def get_current_stock(product_id: str) -> int:
    return get_product(product_id).current_stock


def verify_ledger(product_id: str) -> LedgerCheck:
    """
    Replay a product's movements in creation order.

    Flags the first movement whose snapshot disagrees with the running total
    or that would have taken the running total below zero.
    """
    product = get_product(product_id)
    movements = (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.id.asc())
        .all()
    )

    running = 0
    divergent_id = None
    for movement in movements:
        running += movement.signed_quantity
        if divergent_id is None and (running < 0 or running != movement.resulting_stock):
            divergent_id = movement.id

    return LedgerCheck(
        product_id=product_id,
        current_stock=product.current_stock,
        replayed_stock=running,
        movement_count=len(movements),
        first_divergent_movement_id=divergent_id,
    )


def replay_stock(product_id: str) -> int:
    return verify_ledger(product_id).replayed_stock


def list_movements(
    *,
    product_id: str | None = None,
    kind=None,
    actor_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict:
    """Newest-first page of movements with pagination metadata."""
    max_limit = current_app.config.get("MOVEMENT_PAGE_SIZE_MAX", 100)
    page = max(page, 1)
    limit = max(1, min(limit, max_limit))

    q = db.session.query(StockMovement)
    if product_id:
        q = q.filter(StockMovement.product_id == product_id)
    if kind is not None:
        q = q.filter(StockMovement.kind == coerce_kind(kind))
    if actor_id:
        q = q.filter(StockMovement.actor_id == actor_id)
    if start is not None:
        q = q.filter(StockMovement.created_at >= start)
    if end is not None:
        q = q.filter(StockMovement.created_at <= end)

    total = q.count()
    rows = (
        q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    total_pages = (total + limit - 1) // limit

    return {
        "movements": rows,
        "pagination": {
            "current_page": page,
            "total_pages": total_pages,
            "total_items": total,
            "items_per_page": limit,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def determine_stock_status(quantity: int, minimum: int, maximum: int | None = None) -> StockStatus:
    if quantity == 0:
        return StockStatus.ZERO
    if quantity <= minimum * 0.5:
        return StockStatus.CRITICAL
    if quantity <= minimum:
        return StockStatus.LOW
    if maximum and quantity > maximum:
        return StockStatus.EXCESS
    return StockStatus.NORMAL


def stock_summary() -> list[dict]:
    last_movement = (
        db.session.query(
            StockMovement.product_id,
            func.max(StockMovement.created_at).label("last_at"),
        )
        .group_by(StockMovement.product_id)
        .subquery()
    )
    rows = (
        db.session.query(Product, last_movement.c.last_at)
        .outerjoin(last_movement, last_movement.c.product_id == Product.id)
        .filter(Product.is_active.is_(True))
        .order_by(Product.name.asc())
        .all()
    )

    summary = []
    for product, last_at in rows:
        status = determine_stock_status(product.current_stock, product.minimum_stock, product.maximum_stock)
        summary.append({
            "product_id": product.id,
            "product_name": product.name,
            "quantity": product.current_stock,
            "minimum_stock": product.minimum_stock,
            "maximum_stock": product.maximum_stock,
            "value_cents": product.current_stock * (product.cost_price_cents or 0),
            "last_movement_at": last_at.isoformat() if last_at else None,
            "status": status.value,
        })
    return summary


def low_stock_products() -> list[dict]:
    wanted = {s.value for s in LOW_STOCK_STATUSES}
    return [row for row in stock_summary() if row["status"] in wanted]


def stock_alerts(days: int | None = None) -> dict:
    """Low-stock groups plus lots approaching expiry."""
    from .lot_service import lots_near_expiry

    low = low_stock_products()
    by_status = {status.value: [r for r in low if r["status"] == status.value] for status in LOW_STOCK_STATUSES}
    expiring = [lot.to_dict() for lot in lots_near_expiry(days)]

    return {
        "low": by_status[StockStatus.LOW.value],
        "critical": by_status[StockStatus.CRITICAL.value],
        "zero": by_status[StockStatus.ZERO.value],
        "near_expiry": expiring,
        "summary": {
            "total_alerts": len(low) + len(expiring),
            "low": len(by_status[StockStatus.LOW.value]),
            "critical": len(by_status[StockStatus.CRITICAL.value]),
            "zero": len(by_status[StockStatus.ZERO.value]),
            "near_expiry": len(expiring),
        },
    }


def movement_report(
    start: datetime,
    end: datetime,
    kind=None,
    product_id: str | None = None,
) -> dict:
    if end < start:
        raise ValidationError("end must not be before start")

    q = db.session.query(StockMovement).filter(
        StockMovement.created_at >= start,
        StockMovement.created_at <= end,
    )
    if kind is not None:
        q = q.filter(StockMovement.kind == coerce_kind(kind))
    if product_id:
        q = q.filter(StockMovement.product_id == product_id)
    movements = q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).all()

    count_by_kind: dict[str, int] = {}
    units_by_kind: dict[str, int] = {}
    for m in movements:
        count_by_kind[m.kind.value] = count_by_kind.get(m.kind.value, 0) + 1
        units_by_kind[m.kind.value] = units_by_kind.get(m.kind.value, 0) + m.quantity

    return {
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "total_movements": len(movements),
        "count_by_kind": count_by_kind,
        "units_by_kind": units_by_kind,
        "movements": [m.to_dict() for m in movements],
    }
