# Overview: Offline sale synchronization routes; batch reconciliation and record simulation.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..services import offline_sale_service, sync_service
from ..validation import ValidationError


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


@sync_bp.post("/sales")
@require_actor
def sync_sales_route():
    """
    Reconcile a batch of offline sale records.

    Body: {"records": [...]} as produced by the register. The response lists
    every record's outcome (SYNCED, CONFLICT, ERROR) in submission order.
    A rejected batch (not a list, too large) is a 400 and nothing is applied.
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({"error": "body must be an object with a records list"}), 400

    try:
        batch = sync_service.reconcile_payload(data.get("records"))
        return jsonify(batch.to_dict()), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to reconcile offline sales")
        return jsonify({"error": "Internal server error"}), 500


@sync_bp.post("/simulate")
@require_actor
def simulate_offline_sale_route():
    """Build an offline sale record server-side, the way a register would."""
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({"error": "body must be an object"}), 400

    try:
        record = offline_sale_service.build_offline_sale(
            data.get("items"),
            actor_id=g.actor_id,
            client_id=data.get("client_id"),
            notes=data.get("notes"),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify({"record": offline_sale_service.record_to_payload(record)}), 201
