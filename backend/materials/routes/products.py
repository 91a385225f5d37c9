# backend/materials/routes/products.py
"""
Catalog routes: products, price history, supplier offers and property definitions.

Products are never hard-deleted; DELETE deactivates.
"""
from flask import Blueprint, current_app, g, request

from ..extensions import db
from ..validation import ValidationError, error_response, parse_bool_arg
from ..decorators import identify_actor
from ..services import catalog_service
from ..services.catalog_service import ProductQuery


products_bp = Blueprint("products", __name__, url_prefix="/api/products")
property_definitions_bp = Blueprint(
    "property_definitions", __name__, url_prefix="/api/property-definitions"
)


@products_bp.get("")
def list_products_route():
    try:
        include_inactive = parse_bool_arg(request.args.get("include_inactive")) or False
        query = ProductQuery(
            category=request.args.get("category") or None,
            category_group=request.args.get("category_group") or None,
            pricebook_group_code=request.args.get("pricebook_group_code") or None,
            supplier_id=request.args.get("supplier_id", type=int),
            search=request.args.get("q") or None,
            active_only=not include_inactive,
        )
    except ValueError as e:
        return error_response(e)
    return catalog_service.list_products(query)


@products_bp.get("/<int:product_id>")
def get_product_route(product_id: int):
    try:
        product = catalog_service.get_product(product_id)
    except ValueError as e:
        return error_response(e)
    return product.to_dict()


@products_bp.post("")
@identify_actor
def create_product_route():
    payload = request.get_json(silent=True) or {}
    try:
        product = catalog_service.create_product(payload, created_by=g.actor_id)
    except ValueError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create product")
        return {"error": "Failed to create product"}, 500
    return product.to_dict(), 201


@products_bp.put("/<int:product_id>")
@identify_actor
def update_product_route(product_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        product = catalog_service.update_product(product_id, payload, updated_by=g.actor_id)
    except ValueError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update product")
        return {"error": "Failed to update product"}, 500
    return product.to_dict()


@products_bp.delete("/<int:product_id>")
def deactivate_product_route(product_id: int):
    try:
        product = catalog_service.deactivate_product(product_id)
    except ValueError as e:
        db.session.rollback()
        return error_response(e)
    return {"message": "Product deactivated", "product": product.to_dict(include_variants=False)}


@products_bp.get("/<int:product_id>/price-history")
def price_history_route(product_id: int):
    limit = max(1, min(request.args.get("limit", default=200, type=int), 1000))
    try:
        events = catalog_service.list_price_history(product_id, limit=limit)
    except ValueError as e:
        return error_response(e)
    return {"items": [e.to_dict() for e in events], "count": len(events)}


@products_bp.get("/<int:product_id>/suppliers")
@products_bp.get("/<int:product_id>/variants/<int:variant_id>/suppliers")
def supplier_offers_route(product_id: int, variant_id: int | None = None):
    try:
        offers = catalog_service.get_supplier_offers(product_id, variant_id)
        selected = catalog_service.select_offer(product_id, variant_id)
    except ValueError as e:
        return error_response(e)
    return {
        "items": [o.to_dict() for o in offers],
        "selected_offer_id": selected.id if selected is not None else None,
    }


@products_bp.post("/supplier-groups")
def supplier_groups_route():
    """
    Group material request lines by supplier.

    Body: {"lines": [{"product_id": 1, "variant_id": 2, "quantity": 10}, ...]}
    Read-only: used by purchasing to split a request into purchase orders.
    """
    payload = request.get_json(silent=True) or {}
    try:
        lines = payload.get("lines")
        if not isinstance(lines, list) or not lines:
            raise ValidationError("lines must be a non-empty list")
        groups = catalog_service.group_lines_by_supplier(lines)
    except ValueError as e:
        return error_response(e)
    return {"groups": groups}


@property_definitions_bp.get("")
def list_property_definitions_route():
    try:
        include_inactive = parse_bool_arg(request.args.get("include_inactive")) or False
    except ValueError as e:
        return error_response(e)
    definitions = catalog_service.list_property_definitions(active_only=not include_inactive)
    return {"items": [d.to_dict() for d in definitions], "count": len(definitions)}


@property_definitions_bp.post("")
def create_property_definition_route():
    payload = request.get_json(silent=True) or {}
    try:
        definition = catalog_service.create_property_definition(payload)
    except ValueError as e:
        db.session.rollback()
        return error_response(e)
    return definition.to_dict(), 201
