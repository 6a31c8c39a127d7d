from __future__ import annotations

import enum
import uuid

from ..extensions import db
from pharmaledger.time_utils import to_utc_z, utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class MovementKind(str, enum.Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    ADJUSTMENT = "ADJUSTMENT"
    LOSS = "LOSS"
    EXPIRATION = "EXPIRATION"

    @property
    def direction(self) -> int:
        """+1 when the movement adds to on-hand stock, -1 when it removes."""
        return _MOVEMENT_DIRECTION[self]

    @property
    def is_outbound(self) -> bool:
        return self.direction < 0

    def signed(self, quantity: int) -> int:
        return self.direction * quantity


# Single source of truth for stock direction. ADJUSTMENT is additive-only
# until a signed correction kind is agreed with the product owner.
_MOVEMENT_DIRECTION = {
    MovementKind.ENTRY: 1,
    MovementKind.ADJUSTMENT: 1,
    MovementKind.EXIT: -1,
    MovementKind.LOSS: -1,
    MovementKind.EXPIRATION: -1,
}
if set(_MOVEMENT_DIRECTION) != set(MovementKind):
    raise RuntimeError("every MovementKind needs a direction")


class LotMovementKind(str, enum.Enum):
    ENTRY = "ENTRY"
    SALE = "SALE"
    RESERVE = "RESERVE"
    RELEASE = "RELEASE"
    EXPIRATION = "EXPIRATION"
    RETURN = "RETURN"


class Product(db.Model):
    """
    Product as seen by the stock ledger.

    The catalog owns everything else about a product; the ledger only reads
    and writes current_stock. current_stock is a materialized value that must
    always equal the signed replay of the product's StockMovement rows.

    version_id gives optimistic locking: two writers that both read the same
    version cannot both commit (StaleDataError, retried by run_with_retry).
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("current_stock >= 0", name="ck_products_stock_non_negative"),
        db.Index("ix_products_active_name", "is_active", "name"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    name = db.Column(db.String(255), nullable=False)
    barcode = db.Column(db.String(64), nullable=True, index=True)

    price_cents = db.Column(db.Integer, nullable=True)
    cost_price_cents = db.Column(db.Integer, nullable=True)

    current_stock = db.Column(db.Integer, nullable=False, default=0)
    minimum_stock = db.Column(db.Integer, nullable=False, default=0)
    maximum_stock = db.Column(db.Integer, nullable=True)

    lot_mandatory = db.Column(db.Boolean, nullable=False, default=False)
    requires_prescription = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id!r} name={self.name!r} stock={self.current_stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "barcode": self.barcode,
            "price_cents": self.price_cents,
            "cost_price_cents": self.cost_price_cents,
            "current_stock": self.current_stock,
            "minimum_stock": self.minimum_stock,
            "maximum_stock": self.maximum_stock,
            "lot_mandatory": self.lot_mandatory,
            "requires_prescription": self.requires_prescription,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only ledger entry. Rows are never updated or deleted.

    quantity is always positive; the sign comes from kind. The integer id is
    the creation order used for replay.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), nullable=False, index=True)

    kind = db.Column(db.Enum(MovementKind, native_enum=False, length=16), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    previous_stock = db.Column(db.Integer, nullable=False)
    resulting_stock = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(200), nullable=False)
    notes = db.Column(db.String(500), nullable=True)

    related_sale_id = db.Column(db.String(64), nullable=True, index=True)
    actor_id = db.Column(db.String(64), nullable=False, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    product = db.relationship("Product", backref=db.backref("movements", lazy="dynamic"))

    @property
    def signed_quantity(self) -> int:
        return self.kind.signed(self.quantity)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "kind": self.kind.value,
            "quantity": self.quantity,
            "signed_quantity": self.signed_quantity,
            "previous_stock": self.previous_stock,
            "resulting_stock": self.resulting_stock,
            "reason": self.reason,
            "notes": self.notes,
            "related_sale_id": self.related_sale_id,
            "actor_id": self.actor_id,
            "created_at": to_utc_z(self.created_at),
        }


class Lot(db.Model):
    """
    Physical batch of a product.

    Invariant: current_quantity >= reserved_quantity >= 0. Receiving is the
    only way current_quantity grows; sales, losses and expirations shrink it.
    (product_id, lot_number) identifies the lot for create-or-merge on receipt.
    """
    __tablename__ = "lots"
    __table_args__ = (
        db.CheckConstraint("reserved_quantity >= 0", name="ck_lots_reserved_non_negative"),
        db.CheckConstraint("current_quantity >= reserved_quantity", name="ck_lots_current_covers_reserved"),
        db.Index("ix_lots_product_expiry", "product_id", "expiry_date"),
        db.Index("ix_lots_product_number", "product_id", "lot_number"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), nullable=False, index=True)

    lot_number = db.Column(db.String(50), nullable=False)
    barcode = db.Column(db.String(50), nullable=True, index=True)

    manufacture_date = db.Column(db.Date, nullable=False)
    expiry_date = db.Column(db.Date, nullable=False)

    initial_quantity = db.Column(db.Integer, nullable=False)
    current_quantity = db.Column(db.Integer, nullable=False)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)

    unit_cost_cents = db.Column(db.Integer, nullable=True)
    active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    product = db.relationship("Product", backref=db.backref("lots", lazy="dynamic"))

    @property
    def available_quantity(self) -> int:
        return self.current_quantity - self.reserved_quantity

    def __repr__(self) -> str:
        return (
            f"<Lot id={self.id!r} number={self.lot_number!r} expiry={self.expiry_date} "
            f"qty={self.current_quantity}/{self.reserved_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "lot_number": self.lot_number,
            "barcode": self.barcode,
            "manufacture_date": self.manufacture_date.isoformat(),
            "expiry_date": self.expiry_date.isoformat(),
            "initial_quantity": self.initial_quantity,
            "current_quantity": self.current_quantity,
            "reserved_quantity": self.reserved_quantity,
            "available_quantity": self.available_quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "active": self.active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class LotMovement(db.Model):
    """Audit trail of every change to a lot's current or reserved quantity."""
    __tablename__ = "lot_movements"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_lot_movements_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    lot_id = db.Column(db.String(36), db.ForeignKey("lots.id"), nullable=False, index=True)
    kind = db.Column(db.Enum(LotMovementKind, native_enum=False, length=16), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(200), nullable=False)
    actor_id = db.Column(db.String(64), nullable=False)
    sale_id = db.Column(db.String(64), nullable=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    lot = db.relationship("Lot", backref=db.backref("movements", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lot_id": self.lot_id,
            "kind": self.kind.value,
            "quantity": self.quantity,
            "reason": self.reason,
            "actor_id": self.actor_id,
            "sale_id": self.sale_id,
            "created_at": to_utc_z(self.created_at),
        }
