# backend/pharmaledger/routes/stock.py
"""
Stock ledger routes.

All write routes require the X-Actor-Id header (see decorators.require_actor).

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- start/end filtering is inclusive.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..services import stock_service
from ..services.concurrency import PersistenceError
from ..services.stock_service import InsufficientStockError, ProductNotFoundError
from ..time_utils import parse_iso_datetime
from ..validation import ValidationError, coerce_int


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _validation_response(e: ValidationError):
    return jsonify({"error": str(e), "violations": [v.to_dict() for v in e.violations]}), 400


def _query_datetime(name: str):
    try:
        return parse_iso_datetime(request.args.get(name))
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 datetime")


@stock_bp.post("/movements")
@require_actor
def create_movement_route():
    """
    Record one stock movement.

    Body: product_id, kind (ENTRY|EXIT|ADJUSTMENT|LOSS|EXPIRATION), quantity,
    reason, notes (optional), related_sale_id (optional).
    """
    data = request.get_json(silent=True) or {}

    try:
        movement = stock_service.apply_movement(
            product_id=data.get("product_id"),
            kind=data.get("kind"),
            quantity=data.get("quantity"),
            reason=data.get("reason"),
            actor_id=g.actor_id,
            related_sale_id=data.get("related_sale_id"),
            notes=data.get("notes"),
        )
        return jsonify({"movement": movement.to_dict(), "current_stock": movement.resulting_stock}), 201

    except ValidationError as e:
        return _validation_response(e)
    except ProductNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except InsufficientStockError as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except PersistenceError as e:
        current_app.logger.warning("Stock movement failed: %s", e)
        return jsonify({"error": str(e)}), 503
    except Exception:
        current_app.logger.exception("Failed to record stock movement")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.get("/movements")
def list_movements_route():
    """Paginated movement history, newest first."""
    try:
        page = coerce_int(request.args.get("page", "1"), "page")
        limit = coerce_int(request.args.get("limit", "50"), "limit")
        result = stock_service.list_movements(
            product_id=request.args.get("product_id"),
            kind=request.args.get("kind") or None,
            actor_id=request.args.get("actor_id"),
            start=_query_datetime("start"),
            end=_query_datetime("end"),
            page=page,
            limit=limit,
        )
    except ValidationError as e:
        return _validation_response(e)

    return jsonify({
        "movements": [m.to_dict() for m in result["movements"]],
        "pagination": result["pagination"],
    }), 200


@stock_bp.get("/summary")
def summary_route():
    return jsonify({"products": stock_service.stock_summary()}), 200


@stock_bp.get("/low")
def low_stock_route():
    return jsonify({"products": stock_service.low_stock_products()}), 200


@stock_bp.get("/alerts")
def alerts_route():
    days = request.args.get("days")
    try:
        days = coerce_int(days, "days") if days is not None else None
    except ValidationError as e:
        return _validation_response(e)
    return jsonify(stock_service.stock_alerts(days)), 200


@stock_bp.get("/report")
def report_route():
    """Movements between start and end (both required), grouped by kind."""
    try:
        start = _query_datetime("start")
        end = _query_datetime("end")
        if start is None or end is None:
            raise ValidationError("start and end are required")
        report = stock_service.movement_report(
            start,
            end,
            kind=request.args.get("kind") or None,
            product_id=request.args.get("product_id"),
        )
    except ValidationError as e:
        return _validation_response(e)
    return jsonify(report), 200


@stock_bp.get("/products/<product_id>/ledger")
def verify_ledger_route(product_id: str):
    """Replay the product's movements and compare with current stock."""
    try:
        check = stock_service.verify_ledger(product_id)
    except ProductNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(check.to_dict()), 200
