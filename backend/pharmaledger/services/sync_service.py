# Overview: Reconciliation of offline sale batches against server stock (idempotent, per-record atomic).

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import Sale
from ..models.sales import SALE_ORIGIN_OFFLINE
from ..validation import ConflictError, ValidationError
from .concurrency import PersistenceError, begin_write_transaction, classify_persistence_error, run_with_retry
from .lot_service import LotError
from .offline_sale_service import OfflineSaleRecord, is_well_formed, record_from_payload, verify_integrity
from .sales_service import PreparedLine, _materialize_sale_locked
from .stock_service import InsufficientStockError, StockError
"""
Reconciliation Invariants (authoritative)

- Records are handled one at a time, in submission order; the outcome list
  has the same order as the input.
- A record is applied completely (sale, items, movements, lot consumption)
  in one transaction, or not at all.
- The record id is the Sale primary key. A second submission of the same
  record is a CONFLICT and never decrements stock again, including when two
  batches race on it (the insert then fails with IntegrityError).
- Insufficient stock discovered here is a CONFLICT: the sale already
  happened at the register. Malformed or tampered records are ERROR.
- No failure of one record aborts the batch.
"""

MSG_INTEGRITY_FAILED = "integrity validation failed"
MSG_ALREADY_SYNCED = "sale already exists on server"


class SyncStatus(str, enum.Enum):
    SYNCED = "SYNCED"
    CONFLICT = "CONFLICT"
    ERROR = "ERROR"


@dataclass(frozen=True)
class RecordOutcome:
    record_id: str | None
    status: SyncStatus
    message: str | None = None

    def to_dict(self) -> dict:
        return {"record_id": self.record_id, "status": self.status.value, "message": self.message}


@dataclass
class BatchOutcome:
    processed: int = 0
    succeeded: int = 0
    conflicts: int = 0
    errors: int = 0
    details: list[RecordOutcome] = field(default_factory=list)

    def add(self, outcome: RecordOutcome) -> None:
        self.processed += 1
        if outcome.status == SyncStatus.SYNCED:
            self.succeeded += 1
        elif outcome.status == SyncStatus.CONFLICT:
            self.conflicts += 1
        else:
            self.errors += 1
        self.details.append(outcome)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "details": [d.to_dict() for d in self.details],
        }


def _check_batch_size(size: int) -> None:
    limit = current_app.config.get("SYNC_MAX_BATCH_SIZE", 500)
    if size > limit:
        raise ValidationError(f"batch too large: {size} records (maximum {limit})")


def _sale_exists(record_id: str) -> bool:
    return db.session.query(Sale.id).filter_by(id=record_id).first() is not None


def _apply_offline_sale(record: OfflineSaleRecord) -> Sale:
    lines = [
        PreparedLine(
            product_id=item.product_id,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
            product_name=item.product_name,
            requires_prescription=item.requires_prescription,
            lots=list(item.lots),
            item_id=item.id,
        )
        for item in record.items
    ]

    def _op():
        begin_write_transaction()
        # Re-check under the write lock: another batch may have synced it meanwhile
        if _sale_exists(record.id):
            raise ConflictError(MSG_ALREADY_SYNCED)

        sale = Sale(
            id=record.id,
            client_id=record.client_id,
            actor_id=record.actor_id,
            origin=SALE_ORIGIN_OFFLINE,
            notes=record.notes,
            occurred_at=record.client_timestamp,
        )
        _materialize_sale_locked(sale, lines, record.actor_id, require_explicit_lots=True)
        db.session.commit()
        return sale

    return run_with_retry(_op)


def _reconcile_record(record: OfflineSaleRecord) -> RecordOutcome:
    try:
        if not is_well_formed(record) or not verify_integrity(record):
            return RecordOutcome(record.id, SyncStatus.ERROR, MSG_INTEGRITY_FAILED)
        if _sale_exists(record.id):
            return RecordOutcome(record.id, SyncStatus.CONFLICT, MSG_ALREADY_SYNCED)
        _apply_offline_sale(record)
    except (InsufficientStockError, ConflictError) as exc:
        return RecordOutcome(record.id, SyncStatus.CONFLICT, str(exc))
    except IntegrityError:
        db.session.rollback()
        if _sale_exists(record.id):
            return RecordOutcome(record.id, SyncStatus.CONFLICT, MSG_ALREADY_SYNCED)
        return RecordOutcome(record.id, SyncStatus.ERROR, "transaction failure")
    except (StockError, LotError, ValidationError) as exc:
        return RecordOutcome(record.id, SyncStatus.ERROR, str(exc))
    except PersistenceError as exc:
        return RecordOutcome(record.id, SyncStatus.ERROR, f"{exc.kind} failure")
    except SQLAlchemyError as exc:
        db.session.rollback()
        return RecordOutcome(record.id, SyncStatus.ERROR, f"{classify_persistence_error(exc)} failure")
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Unexpected failure reconciling offline sale %s", record.id)
        return RecordOutcome(record.id, SyncStatus.ERROR, "transaction failure")

    return RecordOutcome(record.id, SyncStatus.SYNCED)


def _run_batch(entries: list) -> BatchOutcome:
    batch = BatchOutcome()
    for entry in entries:
        outcome = entry if isinstance(entry, RecordOutcome) else _reconcile_record(entry)
        if outcome.status != SyncStatus.SYNCED:
            current_app.logger.warning(
                "Offline sale %s not applied: %s (%s)", outcome.record_id, outcome.status.value, outcome.message,
            )
        batch.add(outcome)

    current_app.logger.info(
        "Reconciled batch: %d processed, %d synced, %d conflicts, %d errors",
        batch.processed, batch.succeeded, batch.conflicts, batch.errors,
    )
    return batch


def reconcile(records: list[OfflineSaleRecord]) -> BatchOutcome:
    """
    Apply a batch of offline sale records, in order, each on its own.

    Raises ValidationError only when the batch as a whole is rejected
    (too large); every per-record failure becomes an outcome entry.
    """
    records = list(records)
    _check_batch_size(len(records))
    return _run_batch(records)


def reconcile_payload(payloads) -> BatchOutcome:
    """Same as reconcile() for records still in transport (JSON) form."""
    if not isinstance(payloads, list):
        raise ValidationError("records must be a list")
    _check_batch_size(len(payloads))

    entries = []
    for payload in payloads:
        try:
            entries.append(record_from_payload(payload))
        except ValidationError as exc:
            record_id = payload.get("id") if isinstance(payload, dict) else None
            if not isinstance(record_id, str):
                record_id = None
            entries.append(RecordOutcome(record_id, SyncStatus.ERROR, f"malformed record: {exc}"))
    return _run_batch(entries)
