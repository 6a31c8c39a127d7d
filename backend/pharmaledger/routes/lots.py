# backend/pharmaledger/routes/lots.py
"""Lot catalog routes: receiving, lookup, FEFO allocation and reservations."""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..services import lot_service
from ..services.concurrency import PersistenceError
from ..services.lot_service import LotError, LotNotFoundError, NoLotsAvailableError
from ..services.stock_service import InsufficientStockError, ProductNotFoundError
from ..time_utils import parse_iso_date
from ..validation import ValidationError, coerce_int, parse_lot_choices


lots_bp = Blueprint("lots", __name__, url_prefix="/api/lots")


def _validation_response(e: ValidationError):
    return jsonify({"error": str(e), "violations": [v.to_dict() for v in e.violations]}), 400


def _date_field(data: dict, name: str):
    try:
        return parse_iso_date(data.get(name))
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a YYYY-MM-DD date")


@lots_bp.post("/receive")
@require_actor
def receive_lot_route():
    """
    Receive goods into a lot (create or merge) and the stock ledger.

    Body: product_id, lot_number, quantity, manufacture_date, expiry_date,
    unit_cost_cents (optional), barcode (optional), reason (optional).
    """
    data = request.get_json(silent=True) or {}

    try:
        lot, movement = lot_service.receive_lot(
            product_id=data.get("product_id"),
            lot_number=data.get("lot_number"),
            quantity=data.get("quantity"),
            manufacture_date=_date_field(data, "manufacture_date"),
            expiry_date=_date_field(data, "expiry_date"),
            unit_cost_cents=data.get("unit_cost_cents"),
            barcode=data.get("barcode"),
            reason=data.get("reason"),
            actor_id=g.actor_id,
        )
        return jsonify({"lot": lot.to_dict(), "movement": movement.to_dict()}), 201

    except ValidationError as e:
        return _validation_response(e)
    except ProductNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except PersistenceError as e:
        current_app.logger.warning("Lot receipt failed: %s", e)
        return jsonify({"error": str(e)}), 503
    except Exception:
        current_app.logger.exception("Failed to receive lot")
        return jsonify({"error": "Internal server error"}), 500


@lots_bp.get("/product/<product_id>")
def list_product_lots_route(product_id: str):
    only_available = request.args.get("all", "").lower() not in ("1", "true", "yes")
    lots = lot_service.list_lots(product_id, only_available=only_available)
    return jsonify({"lots": [lot_service.describe_lot(lot) for lot in lots]}), 200


@lots_bp.get("/expiring")
def expiring_lots_route():
    days = request.args.get("days")
    try:
        days = coerce_int(days, "days") if days is not None else None
    except ValidationError as e:
        return _validation_response(e)
    lots = lot_service.lots_near_expiry(days)
    return jsonify({"lots": [lot_service.describe_lot(lot) for lot in lots]}), 200


@lots_bp.get("/barcode/<code>")
def lot_by_barcode_route(code: str):
    lot = lot_service.find_lot_by_barcode(code)
    if lot is None:
        return jsonify({"error": "Lot not found"}), 404
    return jsonify({"lot": lot_service.describe_lot(lot)}), 200


@lots_bp.get("/<lot_id>")
def get_lot_route(lot_id: str):
    try:
        lot = lot_service.get_lot(lot_id)
    except LotNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"lot": lot_service.describe_lot(lot)}), 200


@lots_bp.post("/allocate")
def allocate_route():
    """FEFO allocation plan (read-only). Body: product_id, quantity, as_of (optional)."""
    data = request.get_json(silent=True) or {}

    try:
        product_id = data.get("product_id")
        if not product_id:
            raise ValidationError("product_id is required")
        quantity = coerce_int(data.get("quantity"), "quantity")
        plan = lot_service.allocate(product_id, quantity, _date_field(data, "as_of"))
    except ValidationError as e:
        return _validation_response(e)
    except NoLotsAvailableError as e:
        return jsonify({"error": str(e), "details": e.details}), 404

    return jsonify({"plan": plan.to_dict()}), 200


def _reservation_route(action):
    data = request.get_json(silent=True) or {}

    try:
        allocations = parse_lot_choices(data.get("allocations"), "allocations")
        lots = action(allocations, g.actor_id)
        return jsonify({"lots": [lot.to_dict() for lot in lots]}), 200

    except ValidationError as e:
        return _validation_response(e)
    except LotNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except (InsufficientStockError, LotError) as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except PersistenceError as e:
        return jsonify({"error": str(e)}), 503
    except Exception:
        current_app.logger.exception("Failed to update lot reservation")
        return jsonify({"error": "Internal server error"}), 500


@lots_bp.post("/reserve")
@require_actor
def reserve_route():
    """Body: allocations [{lot_id, quantity}]"""
    return _reservation_route(lot_service.reserve)


@lots_bp.post("/release")
@require_actor
def release_route():
    """Body: allocations [{lot_id, quantity}]"""
    return _reservation_route(lot_service.release)


@lots_bp.post("/<lot_id>/expire")
@require_actor
def expire_lot_route(lot_id: str):
    """Write off an expired lot's remaining quantity."""
    try:
        movement = lot_service.expire_lot(lot_id, g.actor_id)
        lot = lot_service.get_lot(lot_id)
        return jsonify({
            "lot": lot.to_dict(),
            "movement": movement.to_dict() if movement else None,
        }), 200

    except LotNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except (LotError, InsufficientStockError) as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except PersistenceError as e:
        return jsonify({"error": str(e)}), 503
    except Exception:
        current_app.logger.exception("Failed to expire lot")
        return jsonify({"error": "Internal server error"}), 500
