# backend/materials/routes/inventory.py
"""
Inventory ledger routes.

Every stock movement is POST /<id>/transaction; the body's "type" picks the
movement (receipt, issue, return, adjustment, transfer, write_off).

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- performed_at defaults to now; backdating is allowed, future timestamps are not.
"""
from flask import Blueprint, current_app, g, request

from ..extensions import db
from ..validation import ValidationError, error_response, parse_bool_arg
from ..decorators import identify_actor
from ..services import inventory_service
from ..services.reorder_service import list_low_stock


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

TRANSACTION_FIELDS = {
    "type", "quantity", "serial_numbers", "reason", "reference_type", "reference_id",
    "from_location", "to_location", "unit_cost", "notes", "performed_at", "unit_status",
}


@inventory_bp.get("")
def list_inventory_route():
    try:
        records = inventory_service.list_inventory(
            location=request.args.get("location") or None,
            product_id=request.args.get("product_id", type=int),
            inventory_type=request.args.get("inventory_type") or None,
            low_stock=parse_bool_arg(request.args.get("low_stock")),
        )
    except ValueError as e:
        return error_response(e)
    return {"items": [r.to_dict(include_units=False) for r in records], "count": len(records)}


@inventory_bp.get("/low-stock")
def low_stock_route():
    items = list_low_stock()
    return {"items": items, "count": len(items)}


@inventory_bp.get("/product/<int:product_id>")
@inventory_bp.get("/product/<int:product_id>/<int:variant_id>")
def inventory_by_product_route(product_id: int, variant_id: int | None = None):
    try:
        record = inventory_service.get_inventory_by_product(product_id, variant_id)
    except ValueError as e:
        return error_response(e)
    return record.to_dict()


@inventory_bp.get("/<int:inventory_id>")
def get_inventory_route(inventory_id: int):
    try:
        record = inventory_service.get_inventory(inventory_id)
    except ValueError as e:
        return error_response(e)
    return record.to_dict()


@inventory_bp.get("/<int:inventory_id>/transactions")
def list_transactions_route(inventory_id: int):
    limit = request.args.get("limit", default=200, type=int)
    limit = max(1, min(limit, 1000))
    try:
        transactions = inventory_service.list_transactions(
            inventory_id,
            transaction_type=request.args.get("type") or None,
            limit=limit,
        )
    except ValueError as e:
        return error_response(e)
    return {"items": [t.to_dict() for t in transactions], "count": len(transactions)}


@inventory_bp.get("/<int:inventory_id>/reconcile")
def reconcile_route(inventory_id: int):
    try:
        report = inventory_service.reconcile_inventory(inventory_id)
    except ValueError as e:
        return error_response(e)
    return report


@inventory_bp.post("")
@identify_actor
def create_or_update_inventory_route():
    payload = request.get_json(silent=True) or {}
    try:
        record, created = inventory_service.create_or_update_inventory(payload, performed_by=g.actor_id)
    except ValueError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to save inventory record")
        return {"error": "Failed to save inventory record"}, 500
    return record.to_dict(), 201 if created else 200


@inventory_bp.post("/<int:inventory_id>/transaction")
@identify_actor
def add_transaction_route(inventory_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        unknown = sorted(set(payload) - TRANSACTION_FIELDS)
        if unknown:
            raise ValidationError(f"Field not allowed: {unknown[0]}")
        if not payload.get("type"):
            raise ValidationError("Missing required fields: type")

        txn = inventory_service.add_transaction(
            inventory_id,
            transaction_type=payload["type"],
            quantity=payload.get("quantity"),
            serial_numbers=payload.get("serial_numbers"),
            reason=payload.get("reason"),
            reference_type=payload.get("reference_type"),
            reference_id=payload.get("reference_id"),
            from_location=payload.get("from_location"),
            to_location=payload.get("to_location"),
            unit_cost=payload.get("unit_cost"),
            notes=payload.get("notes"),
            performed_by=g.actor_id,
            performed_at=payload.get("performed_at"),
            unit_status=payload.get("unit_status"),
        )
    except ValueError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to record inventory transaction")
        return {"error": "Failed to record inventory transaction"}, 500

    record = inventory_service.get_inventory(inventory_id)
    return {"transaction": txn.to_dict(), "inventory": record.to_dict()}, 201


@inventory_bp.post("/<int:inventory_id>/serialized-units")
@identify_actor
def add_serialized_units_route(inventory_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        txn = inventory_service.add_serialized_units(
            inventory_id,
            payload.get("serial_numbers"),
            location=payload.get("location"),
            received_date=payload.get("received_date"),
            notes=payload.get("notes"),
            performed_by=g.actor_id,
        )
    except ValueError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to receive serialized units")
        return {"error": "Failed to receive serialized units"}, 500

    record = inventory_service.get_inventory(inventory_id)
    return {"transaction": txn.to_dict(), "inventory": record.to_dict()}, 201


@inventory_bp.put("/<int:inventory_id>/serialized-units/<serial_number>")
@identify_actor
def update_serialized_unit_route(inventory_id: int, serial_number: str):
    payload = request.get_json(silent=True) or {}
    try:
        unit = inventory_service.update_serialized_unit(
            inventory_id, serial_number, payload, performed_by=g.actor_id
        )
    except ValueError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update serialized unit %s", serial_number)
        return {"error": "Failed to update serialized unit"}, 500
    return unit.to_dict()


@inventory_bp.post("/<int:inventory_id>/reserve")
@identify_actor
def reserve_route(inventory_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        record = inventory_service.reserve_inventory(
            inventory_id, payload.get("quantity"), performed_by=g.actor_id
        )
    except ValueError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to reserve inventory")
        return {"error": "Failed to reserve inventory"}, 500
    return record.to_dict(include_units=False)


@inventory_bp.post("/<int:inventory_id>/release")
@identify_actor
def release_route(inventory_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        record = inventory_service.release_reservation(
            inventory_id, payload.get("quantity"), performed_by=g.actor_id
        )
    except ValueError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to release reservation")
        return {"error": "Failed to release reservation"}, 500
    return record.to_dict(include_units=False)
