# Overview: Offline sale records built on the register and their integrity digest.

from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from ..time_utils import parse_iso_datetime, to_utc_millis_z, truncate_to_millis, utcnow
from ..validation import MAX_PRICE_CENTS, NOTES_MAX_LENGTH, ValidationError, coerce_int, parse_lot_choices, parse_sale_lines


# Sale and sale item primary keys are String(64)
RECORD_ID_MAX_LENGTH = 64


@dataclass(frozen=True)
class OfflineSaleItem:
    id: str
    product_id: str
    quantity: int
    unit_price_cents: int
    subtotal_cents: int
    product_name: str | None = None
    requires_prescription: bool = False
    lots: tuple[tuple[str, int], ...] = ()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "subtotal_cents": self.subtotal_cents,
            "requires_prescription": self.requires_prescription,
            "lots": [{"lot_id": lot_id, "quantity": qty} for lot_id, qty in self.lots],
        }


@dataclass(frozen=True)
class OfflineSaleRecord:
    """
    A sale completed on a disconnected register.

    Frozen: any change after build_offline_sale() has to go through
    dataclasses.replace(), and the digest then no longer matches.
    """
    id: str
    items: tuple[OfflineSaleItem, ...]
    total_value_cents: int
    actor_id: str
    client_timestamp: datetime
    integrity_digest: str = ""
    client_id: str | None = None
    notes: str | None = None


def canonical_payload(record: OfflineSaleRecord) -> dict:
    """Every field of the record except the digest itself."""
    return {
        "id": record.id,
        "items": [item.to_dict() for item in record.items],
        "total_value_cents": record.total_value_cents,
        "client_id": record.client_id,
        "actor_id": record.actor_id,
        "client_timestamp": to_utc_millis_z(record.client_timestamp),
        "notes": record.notes,
    }


def canonical_bytes(record: OfflineSaleRecord) -> bytes:
    return json.dumps(
        canonical_payload(record),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def compute_integrity_digest(record: OfflineSaleRecord) -> str:
    """SHA-256 over the canonical JSON. Detects corruption, not forgery."""
    return hashlib.sha256(canonical_bytes(record)).hexdigest()


def verify_integrity(record: OfflineSaleRecord) -> bool:
    if not record.integrity_digest:
        return False
    return hmac.compare_digest(
        record.integrity_digest.encode("utf-8"),
        compute_integrity_digest(record).encode("utf-8"),
    )


def is_well_formed(record: OfflineSaleRecord) -> bool:
    """Structural and arithmetic consistency; says nothing about stock."""
    if not record.id or len(record.id) > RECORD_ID_MAX_LENGTH or not record.actor_id or not record.items:
        return False

    seen_ids = set()
    total = 0
    for item in record.items:
        if not item.id or len(item.id) > RECORD_ID_MAX_LENGTH or item.id in seen_ids or not item.product_id:
            return False
        seen_ids.add(item.id)
        if item.quantity <= 0 or item.unit_price_cents < 0:
            return False
        if item.subtotal_cents != item.quantity * item.unit_price_cents:
            return False
        if any(qty <= 0 for _, qty in item.lots):
            return False
        total += item.subtotal_cents
    return total == record.total_value_cents


def build_offline_sale(
    items: list[dict],
    actor_id: str,
    client_id: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> OfflineSaleRecord:
    """
    Build a sale record on the register while offline.

    Each item needs product_id, quantity and unit_price_cents; product_name,
    requires_prescription and lots ([{lot_id, quantity}]) are optional.
    Subtotals, total, timestamp, ids and digest are computed here.
    """
    if not actor_id or not str(actor_id).strip():
        raise ValidationError("actor_id is required")
    if notes is not None and len(notes) > NOTES_MAX_LENGTH:
        raise ValidationError(f"notes cannot exceed {NOTES_MAX_LENGTH} characters")

    lines = parse_sale_lines(items)
    built = []
    for i, (line, raw) in enumerate(zip(lines, items)):
        if line.unit_price_cents is None:
            raise ValidationError(f"items[{i}].unit_price_cents is required for offline sales")
        built.append(OfflineSaleItem(
            id=str(uuid.uuid4()),
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price_cents=line.unit_price_cents,
            subtotal_cents=line.quantity * line.unit_price_cents,
            product_name=raw.get("product_name"),
            requires_prescription=bool(raw.get("requires_prescription", False)),
            lots=tuple(line.lots),
        ))

    record = OfflineSaleRecord(
        id=str(uuid.uuid4()),
        items=tuple(built),
        total_value_cents=sum(item.subtotal_cents for item in built),
        actor_id=str(actor_id).strip(),
        client_timestamp=truncate_to_millis(now or utcnow()),
        client_id=client_id,
        notes=notes,
    )
    return _with_digest(record)


def _with_digest(record: OfflineSaleRecord) -> OfflineSaleRecord:
    return replace(record, integrity_digest=compute_integrity_digest(record))


def record_to_payload(record: OfflineSaleRecord) -> dict:
    payload = canonical_payload(record)
    payload["integrity_digest"] = record.integrity_digest
    return payload


def _require_str(data: dict, key: str, where: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{where}{key} is required")
    return value


def _item_from_payload(raw: Any, index: int) -> OfflineSaleItem:
    where = f"items[{index}]."
    if not isinstance(raw, dict):
        raise ValidationError(f"items[{index}] must be an object")

    unit_price = coerce_int(raw.get("unit_price_cents"), where + "unit_price_cents")
    if not 0 <= unit_price <= MAX_PRICE_CENTS:
        raise ValidationError(f"{where}unit_price_cents must be between 0 and {MAX_PRICE_CENTS}")

    name = raw.get("product_name")
    if name is not None and not isinstance(name, str):
        raise ValidationError(f"{where}product_name must be a string")

    return OfflineSaleItem(
        id=_require_str(raw, "id", where),
        product_id=_require_str(raw, "product_id", where),
        quantity=coerce_int(raw.get("quantity"), where + "quantity"),
        unit_price_cents=unit_price,
        subtotal_cents=coerce_int(raw.get("subtotal_cents"), where + "subtotal_cents"),
        product_name=name,
        requires_prescription=bool(raw.get("requires_prescription", False)),
        lots=tuple(parse_lot_choices(raw.get("lots"), where + "lots")),
    )


def record_from_payload(data: Any) -> OfflineSaleRecord:
    """
    Parse one record from the sync transport.

    Values are taken as sent (no recomputation) so that the integrity check
    sees exactly what the register hashed. Raises ValidationError when the
    payload cannot be read at all.
    """
    if not isinstance(data, dict):
        raise ValidationError("record must be an object")

    raw_items = data.get("items")
    if not isinstance(raw_items, list):
        raise ValidationError("items must be a list")

    try:
        timestamp = parse_iso_datetime(data.get("client_timestamp"))
    except (AttributeError, ValueError):
        raise ValidationError("client_timestamp must be an ISO-8601 datetime")
    if timestamp is None:
        raise ValidationError("client_timestamp is required")

    client_id = data.get("client_id")
    notes = data.get("notes")
    if client_id is not None and not isinstance(client_id, str):
        raise ValidationError("client_id must be a string")
    if notes is not None and not isinstance(notes, str):
        raise ValidationError("notes must be a string")

    digest = data.get("integrity_digest")
    return OfflineSaleRecord(
        id=_require_str(data, "id", ""),
        items=tuple(_item_from_payload(raw, i) for i, raw in enumerate(raw_items)),
        total_value_cents=coerce_int(data.get("total_value_cents"), "total_value_cents"),
        actor_id=_require_str(data, "actor_id", ""),
        client_timestamp=timestamp,
        integrity_digest=digest if isinstance(digest, str) else "",
        client_id=client_id,
        notes=notes,
    )
