# Overview: Flask API routes for counter sales; parses input and returns JSON responses.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..services import sales_service
from ..services.concurrency import PersistenceError
from ..services.lot_service import LotError
from ..services.sales_service import SaleError, SaleNotFoundError
from ..services.stock_service import InsufficientStockError, ProductNotFoundError
from ..validation import ValidationError


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.post("")
@require_actor
def create_sale_route():
    """
    Record a counter sale.

    Body: items [{product_id, quantity, unit_price_cents?, lots?}],
    client_id (optional), notes (optional), from_reservation (optional).
    """
    data = request.get_json(silent=True) or {}

    try:
        sale = sales_service.create_sale(
            data.get("items"),
            g.actor_id,
            client_id=data.get("client_id"),
            notes=data.get("notes"),
            from_reservation=bool(data.get("from_reservation", False)),
        )
        return jsonify({"sale": sale.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ProductNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except (InsufficientStockError, LotError) as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except PersistenceError as e:
        return jsonify({"error": str(e)}), 503
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<sale_id>")
def get_sale_route(sale_id: str):
    try:
        sale = sales_service.get_sale(sale_id)
    except SaleNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"sale": sale.to_dict()}), 200


@sales_bp.post("/<sale_id>/cancel")
@require_actor
def cancel_sale_route(sale_id: str):
    """Cancel a sale and put its stock back. Body: reason."""
    data = request.get_json(silent=True) or {}

    try:
        sale = sales_service.cancel_sale(sale_id, g.actor_id, data.get("reason"))
        return jsonify({"sale": sale.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except SaleNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except SaleError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except PersistenceError as e:
        return jsonify({"error": str(e)}), 503
    except Exception:
        current_app.logger.exception("Failed to cancel sale")
        return jsonify({"error": "Internal server error"}), 500
