from __future__ import annotations

import uuid

from ..extensions import db
from pharmaledger.time_utils import to_utc_z, utcnow


SALE_ORIGIN_COUNTER = "COUNTER"
SALE_ORIGIN_OFFLINE = "OFFLINE"

SALE_STATUS_COMPLETED = "COMPLETED"
SALE_STATUS_CANCELLED = "CANCELLED"


class Sale(db.Model):
    """
    Persisted sale.

    For offline sales the primary key is the client-generated record id, which
    is also the idempotency key: a second insert with the same id fails at the
    database level even when two batches race.
    """
    __tablename__ = "sales"

    id = db.Column(db.String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = db.Column(db.String(64), nullable=True, index=True)
    actor_id = db.Column(db.String(64), nullable=False, index=True)

    total_value_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(32), nullable=False, default="CASH")

    origin = db.Column(db.String(16), nullable=False, default=SALE_ORIGIN_COUNTER, index=True)
    status = db.Column(db.String(16), nullable=False, default=SALE_STATUS_COMPLETED, index=True)
    has_controlled_items = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.String(500), nullable=True)

    # Business time as recorded by the register (offline) or the server (counter)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by = db.Column(db.String(64), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    items = db.relationship(
        "SaleItem",
        backref="sale",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="SaleItem.position",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "actor_id": self.actor_id,
            "total_value_cents": self.total_value_cents,
            "payment_method": self.payment_method,
            "origin": self.origin,
            "status": self.status,
            "has_controlled_items": self.has_controlled_items,
            "notes": self.notes,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "cancelled_by": self.cancelled_by,
            "cancel_reason": self.cancel_reason,
            "items": [item.to_dict() for item in self.items],
        }


class SaleItem(db.Model):
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_positive"),
    )

    id = db.Column(db.String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    sale_id = db.Column(db.String(64), db.ForeignKey("sales.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), nullable=False, index=True)
    product_name = db.Column(db.String(255), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    requires_prescription = db.Column(db.Boolean, nullable=False, default=False)

    stock_movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)

    lots = db.relationship("SaleItemLot", backref="sale_item", lazy=True, cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "subtotal_cents": self.subtotal_cents,
            "requires_prescription": self.requires_prescription,
            "stock_movement_id": self.stock_movement_id,
            "lots": [{"lot_id": a.lot_id, "quantity": a.quantity} for a in self.lots],
        }


class SaleItemLot(db.Model):
    """Which lots physically supplied a sale item (traceability for recalls)."""
    __tablename__ = "sale_item_lots"
    __table_args__ = (
        db.UniqueConstraint("sale_item_id", "lot_id", name="uq_sale_item_lots_item_lot"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_item_id = db.Column(db.String(64), db.ForeignKey("sale_items.id"), nullable=False, index=True)
    lot_id = db.Column(db.String(36), db.ForeignKey("lots.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
