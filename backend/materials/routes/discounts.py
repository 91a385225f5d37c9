# backend/materials/routes/discounts.py
"""
Discount rule routes.

Creating or editing a rule re-prices matching products right away when
DISCOUNTS_APPLY_ON_SAVE is set; the apply result rides along in the response.
DELETE deactivates (rules are kept for audit).
"""
from flask import Blueprint, current_app, g, request

from ..extensions import db
from ..validation import error_response, parse_bool_arg
from ..decorators import identify_actor
from ..services import discount_service


discounts_bp = Blueprint("discounts", __name__, url_prefix="/api/discounts")


def _with_apply_result(discount, apply_result) -> dict:
    return {
        "discount": discount.to_dict(),
        "apply_result": apply_result.to_dict() if apply_result is not None else None,
    }


@discounts_bp.get("")
def list_discounts_route():
    try:
        discounts = discount_service.list_discounts(
            discount_type=request.args.get("discount_type") or None,
            category=request.args.get("category") or None,
            is_active=parse_bool_arg(request.args.get("is_active")),
        )
    except ValueError as e:
        return error_response(e)
    return {"items": [d.to_dict() for d in discounts], "count": len(discounts)}


@discounts_bp.get("/<int:discount_id>")
def get_discount_route(discount_id: int):
    try:
        discount = discount_service.get_discount(discount_id)
    except ValueError as e:
        return error_response(e)
    return discount.to_dict()


@discounts_bp.post("")
@identify_actor
def create_discount_route():
    payload = request.get_json(silent=True) or {}
    try:
        discount, apply_result = discount_service.create_discount(payload, created_by=g.actor_id)
    except ValueError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create discount")
        return {"error": "Failed to create discount"}, 500
    return _with_apply_result(discount, apply_result), 201


@discounts_bp.put("/<int:discount_id>")
@identify_actor
def update_discount_route(discount_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        discount, apply_result = discount_service.update_discount(
            discount_id, payload, updated_by=g.actor_id
        )
    except ValueError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update discount")
        return {"error": "Failed to update discount"}, 500
    return _with_apply_result(discount, apply_result)


@discounts_bp.delete("/<int:discount_id>")
def delete_discount_route(discount_id: int):
    try:
        discount = discount_service.deactivate_discount(discount_id)
    except ValueError as e:
        db.session.rollback()
        return error_response(e)
    return {"message": "Discount deactivated", "discount": discount.to_dict()}


@discounts_bp.post("/<int:discount_id>/apply")
@identify_actor
def apply_discount_route(discount_id: int):
    try:
        result = discount_service.apply_discount(discount_id, applied_by=g.actor_id)
    except ValueError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to apply discount %s", discount_id)
        return {"error": "Failed to apply discount"}, 500

    if result.status == "inactive":
        return {"error": result.error, "code": "inactive", "result": result.to_dict()}, 409
    return result.to_dict()


@discounts_bp.post("/apply-all")
@identify_actor
def apply_all_discounts_route():
    try:
        batch = discount_service.apply_all_discounts(applied_by=g.actor_id)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to apply discounts")
        return {"error": "Failed to apply discounts"}, 500
    return batch.to_dict()
