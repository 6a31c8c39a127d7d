from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from pharmaledger.models.inventory import MovementKind


REASON_MIN_LENGTH = 3
REASON_MAX_LENGTH = 200
NOTES_MAX_LENGTH = 500
LOT_NUMBER_MAX_LENGTH = 50

# Maximum unit price / cost: 9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999


@dataclass(frozen=True)
class RuleViolation:
    field: str
    message: str

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.message}


class ValidationError(ValueError):
    """400-level input problem. Nothing has been written when this is raised."""

    def __init__(self, message: str, violations: list[RuleViolation] | None = None):
        super().__init__(message)
        self.violations = list(violations or [])

    @classmethod
    def from_violations(cls, violations: list[RuleViolation]) -> "ValidationError":
        return cls("; ".join(v.message for v in violations), violations)


class ConflictError(ValueError):
    """409-level conflict: the request is valid but collides with existing state."""


def coerce_int(value: Any, field_name: str) -> int:
    """
    Strict integer coercion for JSON input.

    Accepts ints and plain digit strings; rejects bools, floats, decimals and
    scientific notation.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field_name} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field_name} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field_name} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field_name} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field_name} must be an integer, not a decimal")
    raise ValidationError(f"{field_name} must be an integer")


def _is_blank(value: Any) -> bool:
    return value is None or not isinstance(value, str) or value.strip() == ""


def validate_movement(data: dict) -> list[RuleViolation]:
    """
    Movement business rules. Pure; collects every violation instead of
    stopping at the first so callers can report them all at once.

    Expected keys: product_id, kind, quantity, reason, actor_id, notes (optional).
    """
    violations: list[RuleViolation] = []

    if _is_blank(data.get("product_id")):
        violations.append(RuleViolation("product_id", "product_id is required"))

    kind = data.get("kind")
    if isinstance(kind, MovementKind):
        pass
    elif not isinstance(kind, str) or kind not in MovementKind.__members__:
        violations.append(RuleViolation("kind", "invalid movement kind"))

    quantity = data.get("quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        violations.append(RuleViolation("quantity", "quantity must be an integer greater than zero"))
    elif quantity <= 0:
        violations.append(RuleViolation("quantity", "quantity must be greater than zero"))

    reason = data.get("reason")
    if not isinstance(reason, str) or len(reason.strip()) < REASON_MIN_LENGTH:
        violations.append(RuleViolation("reason", f"reason must have at least {REASON_MIN_LENGTH} characters"))
    elif len(reason) > REASON_MAX_LENGTH:
        violations.append(RuleViolation("reason", f"reason cannot exceed {REASON_MAX_LENGTH} characters"))

    notes = data.get("notes")
    if notes is not None and len(str(notes)) > NOTES_MAX_LENGTH:
        violations.append(RuleViolation("notes", f"notes cannot exceed {NOTES_MAX_LENGTH} characters"))

    if _is_blank(data.get("actor_id")):
        violations.append(RuleViolation("actor_id", "actor_id is required"))

    return violations


def validate_outbound(current_stock: int, quantity: int) -> list[RuleViolation]:
    """Outbound movements may not take more than is on hand."""
    if quantity > current_stock:
        return [
            RuleViolation(
                "quantity",
                f"insufficient stock (available: {current_stock}, requested: {quantity})",
            )
        ]
    return []


_DIGITS = re.compile(r"\D")


def is_valid_lot_barcode(code: str | None) -> bool:
    if not code:
        return False
    digits = _DIGITS.sub("", code)
    return 8 <= len(digits) <= 50


def validate_lot_data(
    *,
    lot_number: Any,
    manufacture_date: date | None,
    expiry_date: date | None,
    quantity: Any,
    unit_cost_cents: Any,
    barcode: str | None,
    today: date,
) -> list[RuleViolation]:
    violations: list[RuleViolation] = []

    if _is_blank(lot_number) or len(lot_number.strip()) > LOT_NUMBER_MAX_LENGTH:
        violations.append(
            RuleViolation("lot_number", f"lot_number must have 1 to {LOT_NUMBER_MAX_LENGTH} characters")
        )

    if manufacture_date is None:
        violations.append(RuleViolation("manufacture_date", "manufacture_date is required"))
    if expiry_date is None:
        violations.append(RuleViolation("expiry_date", "expiry_date is required"))
    if manufacture_date is not None and manufacture_date > today:
        violations.append(RuleViolation("manufacture_date", "manufacture_date cannot be in the future"))
    if manufacture_date is not None and expiry_date is not None and expiry_date <= manufacture_date:
        violations.append(RuleViolation("expiry_date", "expiry_date must be after manufacture_date"))

    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        violations.append(RuleViolation("quantity", "quantity must be greater than zero"))

    if unit_cost_cents is not None:
        if isinstance(unit_cost_cents, bool) or not isinstance(unit_cost_cents, int):
            violations.append(RuleViolation("unit_cost_cents", "unit_cost_cents must be an integer"))
        elif not 0 <= unit_cost_cents <= MAX_PRICE_CENTS:
            violations.append(RuleViolation("unit_cost_cents", f"unit_cost_cents must be between 0 and {MAX_PRICE_CENTS}"))

    if barcode is not None and not is_valid_lot_barcode(barcode):
        violations.append(RuleViolation("barcode", "barcode must contain 8 to 50 digits"))

    return violations


@dataclass
class SaleLineInput:
    """Normalized sale line used by both the counter and the offline path."""
    product_id: str
    quantity: int
    unit_price_cents: int | None = None
    lots: list[tuple[str, int]] = field(default_factory=list)


def parse_lot_choices(raw: Any, field_name: str) -> list[tuple[str, int]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(f"{field_name} must be a list")
    choices = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict) or _is_blank(entry.get("lot_id")):
            raise ValidationError(f"{field_name}[{i}].lot_id is required")
        qty = coerce_int(entry.get("quantity"), f"{field_name}[{i}].quantity")
        if qty <= 0:
            raise ValidationError(f"{field_name}[{i}].quantity must be greater than zero")
        choices.append((entry["lot_id"].strip(), qty))
    return choices


def parse_sale_lines(raw_items: Any) -> list[SaleLineInput]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")

    lines = []
    for i, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{i}] must be an object")
        if _is_blank(raw.get("product_id")):
            raise ValidationError(f"items[{i}].product_id is required")
        quantity = coerce_int(raw.get("quantity"), f"items[{i}].quantity")
        if quantity <= 0:
            raise ValidationError(f"items[{i}].quantity must be greater than zero")
        price = raw.get("unit_price_cents")
        if price is not None:
            price = coerce_int(price, f"items[{i}].unit_price_cents")
            if not 0 <= price <= MAX_PRICE_CENTS:
                raise ValidationError(f"items[{i}].unit_price_cents must be between 0 and {MAX_PRICE_CENTS}")
        lots = parse_lot_choices(raw.get("lots"), f"items[{i}].lots")
        lines.append(SaleLineInput(raw["product_id"].strip(), quantity, price, lots))
    return lines
