"""
Sales Service - counter sales and the shared sale materialization

Both the synchronous counter path (create_sale) and offline reconciliation
(sync_service) go through _materialize_sale_locked(), so a sale always turns
into the same Sale + SaleItem + StockMovement + lot consumption set inside one
transaction.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from flask import current_app

from ..extensions import db
from ..models import MovementKind, Product, Sale, SaleItem, SaleItemLot
from ..models.sales import SALE_ORIGIN_COUNTER, SALE_STATUS_CANCELLED
from ..time_utils import utcnow
from ..validation import NOTES_MAX_LENGTH, REASON_MIN_LENGTH, SaleLineInput, ValidationError, parse_sale_lines
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .lot_service import (
    LotAllocation,
    NoLotsAvailableError,
    _consume_locked,
    _return_locked,
    allocate,
)
from .stock_service import InsufficientStockError, _apply_movement_locked, get_product


class SaleError(Exception):
    """Raised for sale operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class SaleNotFoundError(SaleError):
    def __init__(self, sale_id: str):
        super().__init__(f"sale not found: {sale_id}", {"sale_id": sale_id})


@dataclass
class PreparedLine:
    product_id: str
    quantity: int
    unit_price_cents: int | None = None
    product_name: str | None = None
    requires_prescription: bool = False
    lots: list[tuple[str, int]] = field(default_factory=list)
    item_id: str | None = None

    @classmethod
    def from_input(cls, line: SaleLineInput) -> "PreparedLine":
        return cls(
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price_cents=line.unit_price_cents,
            lots=list(line.lots),
        )


def _validate_on_hand(lines: list[PreparedLine], products: dict[str, Product]) -> None:
    totals: dict[str, int] = {}
    for line in lines:
        totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity

    for product_id, qty in totals.items():
        product = products[product_id]
        if product.current_stock < qty:
            raise InsufficientStockError(product_id, product.current_stock, qty, product_name=product.name)


def _resolve_lots(product: Product, line: PreparedLine, *, require_explicit_lots: bool) -> list[LotAllocation]:
    """
    Lots that physically supply one sale line.

    - Explicit choices must add up to the line quantity.
    - Lot-mandatory products without choices: rejected when the caller
      requires explicit lots, otherwise a complete FEFO plan is required.
    - Other products: FEFO best effort; current_stock stays the binding check.
    """
    if line.lots:
        merged: dict[str, int] = {}
        for lot_id, qty in line.lots:
            merged[lot_id] = merged.get(lot_id, 0) + qty
        if sum(merged.values()) != line.quantity:
            raise ValidationError(
                f"lot quantities for product {product.name} must add up to {line.quantity}"
            )
        return [LotAllocation(lot_id, qty) for lot_id, qty in merged.items()]

    if product.lot_mandatory and require_explicit_lots:
        raise ValidationError(f"product {product.name} requires explicit lot selection")

    try:
        plan = allocate(product.id, line.quantity, lock=True)
    except NoLotsAvailableError:
        if product.lot_mandatory:
            raise InsufficientStockError(product.id, 0, line.quantity, product_name=product.name)
        return []

    if product.lot_mandatory and not plan.is_sufficient:
        raise InsufficientStockError(product.id, plan.available, line.quantity, product_name=product.name)
    return plan.allocations


def _materialize_sale_locked(
    sale: Sale,
    lines: list[PreparedLine],
    actor_id: str,
    *,
    require_explicit_lots: bool,
    from_reservation: bool = False,
) -> Sale:
    """
    Persist a sale with its items, EXIT movements and lot consumption.

    Caller owns the transaction (no commit here). Any exception leaves the
    session dirty; run_with_retry rolls it back.
    """
    if not lines:
        raise ValidationError("a sale needs at least one item")

    products: dict[str, Product] = {}
    for line in lines:
        if line.product_id not in products:
            products[line.product_id] = get_product(line.product_id, lock=True)

    _validate_on_hand(lines, products)

    prices = []
    for line in lines:
        price = line.unit_price_cents
        if price is None:
            price = products[line.product_id].price_cents
        if price is None:
            raise ValidationError(f"product {products[line.product_id].name} has no price")
        prices.append(price)

    sale.total_value_cents = sum(line.quantity * price for line, price in zip(lines, prices))
    db.session.add(sale)

    for position, (line, price) in enumerate(zip(lines, prices)):
        product = products[line.product_id]
        allocations = _resolve_lots(product, line, require_explicit_lots=require_explicit_lots)

        movement = _apply_movement_locked(
            product,
            MovementKind.EXIT,
            line.quantity,
            reason=f"Sale #{sale.id}",
            actor_id=actor_id,
            related_sale_id=sale.id,
        )
        if allocations:
            _consume_locked(
                product.id,
                allocations,
                sale_id=sale.id,
                actor_id=actor_id,
                from_reservation=from_reservation and bool(line.lots),
            )

        item_kwargs = {}
        if line.item_id:
            item_kwargs["id"] = line.item_id
        item = SaleItem(
            position=position,
            product_id=product.id,
            product_name=line.product_name or product.name,
            quantity=line.quantity,
            unit_price_cents=price,
            subtotal_cents=line.quantity * price,
            requires_prescription=line.requires_prescription or product.requires_prescription,
            stock_movement_id=movement.id,
            **item_kwargs,
        )
        item.lots = [SaleItemLot(lot_id=a.lot_id, quantity=a.quantity) for a in allocations]
        sale.items.append(item)

    sale.has_controlled_items = any(item.requires_prescription for item in sale.items)
    db.session.flush()
    return sale


def create_sale(
    items,
    actor_id: str,
    client_id: str | None = None,
    notes: str | None = None,
    from_reservation: bool = False,
) -> Sale:
    """
    Synchronous counter sale: stock check, items, EXIT movements and lot
    consumption in one transaction.

    items: raw dicts (product_id, quantity, unit_price_cents?, lots?) or
    SaleLineInput values. Raises InsufficientStockError before any write.
    """
    if not actor_id:
        raise ValidationError("actor_id is required")
    if notes is not None and len(notes) > NOTES_MAX_LENGTH:
        raise ValidationError(f"notes cannot exceed {NOTES_MAX_LENGTH} characters")

    if items and all(isinstance(i, SaleLineInput) for i in items):
        inputs = list(items)
    else:
        inputs = parse_sale_lines(items)
    lines = [PreparedLine.from_input(i) for i in inputs]

    def _op():
        begin_write_transaction()
        sale = Sale(
            id=str(uuid.uuid4()),
            actor_id=actor_id,
            client_id=client_id,
            notes=notes,
            origin=SALE_ORIGIN_COUNTER,
            occurred_at=utcnow(),
        )
        _materialize_sale_locked(
            sale,
            lines,
            actor_id,
            require_explicit_lots=False,
            from_reservation=from_reservation,
        )
        db.session.commit()
        current_app.logger.info(
            "Counter sale %s recorded: %d items, total %d cents", sale.id, len(lines), sale.total_value_cents,
        )
        return sale

    return run_with_retry(_op)


def get_sale(sale_id: str) -> Sale:
    sale = db.session.query(Sale).filter_by(id=sale_id).first()
    if sale is None:
        raise SaleNotFoundError(sale_id)
    return sale


def cancel_sale(sale_id: str, actor_id: str, reason: str) -> Sale:
    """
    Cancel a completed sale: ENTRY movements put the stock back and the
    consumed lot quantities are returned to their lots.
    """
    if not actor_id:
        raise ValidationError("actor_id is required")
    if not isinstance(reason, str) or len(reason.strip()) < REASON_MIN_LENGTH:
        raise ValidationError(f"reason must have at least {REASON_MIN_LENGTH} characters")
    reason = reason.strip()

    def _op():
        begin_write_transaction()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if sale is None:
            raise SaleNotFoundError(sale_id)
        if sale.status == SALE_STATUS_CANCELLED:
            raise SaleError("sale already cancelled", {"sale_id": sale_id})

        for item in sale.items:
            product = get_product(item.product_id, lock=True)
            _apply_movement_locked(
                product,
                MovementKind.ENTRY,
                item.quantity,
                reason=f"Cancellation of sale #{sale.id}",
                actor_id=actor_id,
                related_sale_id=sale.id,
                notes=reason,
            )
            for lot_alloc in item.lots:
                _return_locked(
                    lot_alloc.lot_id,
                    lot_alloc.quantity,
                    sale_id=sale.id,
                    actor_id=actor_id,
                    reason=f"Cancellation of sale #{sale.id}",
                )

        sale.status = SALE_STATUS_CANCELLED
        sale.cancelled_at = utcnow()
        sale.cancelled_by = actor_id
        sale.cancel_reason = reason[:255]

        db.session.commit()
        current_app.logger.info("Sale %s cancelled by %s", sale.id, actor_id)
        return sale

    return run_with_retry(_op)
