# Overview: Catalog store operations: products, variants, supplier offers, properties and price history.

"""
Catalog Service

The catalog is the system of record for "current price". Two writers touch it:
- catalog edits (create_product / update_product), from pricebook ingestion or manual entry
- the discount engine (discount_service), which rewrites price fields only

Both go through save_product(), which checks the product invariants and
commits. Callers run it inside run_with_retry so a concurrent writer on the
same product retries instead of losing an update.

PRODUCT INVARIANTS:
- at least one product-level SupplierOffer
- variant_keys, when set, are carried by every active variant and no two
  active variants share the same key tuple

Purchasing (material request -> PO conversion) reads offers through
get_supplier_offers / select_offer / group_lines_by_supplier and never writes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import and_, or_

from ..extensions import db
from ..models import (
    PriceHistoryEvent,
    Product,
    ProductProperty,
    ProductVariant,
    PropertyDefinition,
    SupplierOffer,
    VariantProperty,
)
from ..models.catalog import MEASUREMENT_TYPES, PROPERTY_CATEGORIES
from ..validation import (
    ConflictError,
    ModelValidationPolicy,
    NotFoundError,
    ValidationError,
    enforce_rules_pricing,
    enforce_rules_product,
    validate_payload,
)
from .concurrency import lock_for_update, run_with_retry
from .unit_conversion import normalize
from materials.time_utils import utcnow


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "description", "internal_part_number", "unit_of_measure", "category",
        "pricebook_section", "pricebook_page_number", "pricebook_page_name",
        "pricebook_group_code", "manufacturer_id", "variant_keys", "notes", "is_active",
        "discount_percent", "discount_effective_date", "discount_expires_date",
    },
    required_on_create={"name"},
)

VARIANT_POLICY = ModelValidationPolicy(
    writable_fields={
        "sku", "name", "standard_cost", "list_price", "net_price", "discount_percent", "is_active",
    },
    required_on_create=set(),
)

OFFER_POLICY = ModelValidationPolicy(
    writable_fields={
        "distributor_id", "manufacturer_id", "supplier_part_number", "list_price",
        "net_price", "discount_percent", "last_purchased_date", "is_preferred",
    },
    required_on_create={"distributor_id"},
)

PROPERTY_DEFINITION_POLICY = ModelValidationPolicy(
    writable_fields={"key", "label", "category", "measurement_type", "unit", "aliases", "is_active"},
    required_on_create={"key"},
)

# (key, label, category, measurement_type, unit, aliases)
DEFAULT_PROPERTY_DEFINITIONS = [
    ("categoryGroup", "Category Group", "specification", "other", None, ["category_group"]),
    ("diameter", "Diameter", "dimension", "length", "in", ["pipe_diameter", "pipe_size"]),
    ("size", "Size", "dimension", "length", "in", []),
    ("length", "Length", "dimension", "length", "ft", []),
    ("width", "Width", "dimension", "length", "in", []),
    ("height", "Height", "dimension", "length", "in", []),
    ("thickness", "Thickness", "dimension", "length", "in", ["insulation_thickness"]),
    ("area", "Coverage Area", "dimension", "area", "sq_ft", ["coverage"]),
    ("volume", "Volume", "dimension", "volume", "gal", []),
    ("weight", "Weight", "performance", "weight", "lb", []),
    ("max_temperature", "Max Temperature", "performance", "temperature", "f", ["temperature_rating"]),
    ("material", "Material", "material", "other", None, []),
    ("jacket", "Jacket", "material", "other", None, ["facing"]),
    ("color", "Color", "specification", "other", None, []),
    ("gauge", "Gauge", "specification", "other", None, []),
    ("schedule", "Schedule", "specification", "other", None, []),
]


@dataclass(frozen=True)
class ProductQuery:
    """
    Optional predicates for find_products(); None means "don't filter".

    supplier_id matches the product's primary manufacturer or the
    manufacturer on any product-level supplier offer.
    """
    ids: Optional[tuple] = None
    category: Optional[str] = None
    category_group: Optional[str] = None
    pricebook_group_code: Optional[str] = None
    supplier_id: Optional[int] = None
    search: Optional[str] = None
    active_only: bool = True


# ---------------------------------------------------------------------------
# Property definitions
# ---------------------------------------------------------------------------

def _definition_index() -> dict[str, PropertyDefinition]:
    """Active definitions keyed by key and by every alias."""
    definitions = db.session.query(PropertyDefinition).filter_by(is_active=True).all()
    index: dict[str, PropertyDefinition] = {}
    for d in definitions:
        for alias in d.aliases or []:
            index.setdefault(alias, d)
    # Canonical keys win over aliases
    for d in definitions:
        index[d.key] = d
    return index


def list_property_definitions(*, active_only: bool = True) -> list[PropertyDefinition]:
    q = db.session.query(PropertyDefinition)
    if active_only:
        q = q.filter_by(is_active=True)
    return q.order_by(PropertyDefinition.key.asc()).all()


def create_property_definition(payload: dict) -> PropertyDefinition:
    patch = validate_payload(
        model=PropertyDefinition, payload=payload, policy=PROPERTY_DEFINITION_POLICY, partial=False
    )
    if patch.get("category") is not None and patch["category"] not in PROPERTY_CATEGORIES:
        raise ValidationError(f"category must be one of: {', '.join(sorted(PROPERTY_CATEGORIES))}")
    if patch.get("measurement_type") is not None and patch["measurement_type"] not in MEASUREMENT_TYPES:
        raise ValidationError(
            f"measurement_type must be one of: {', '.join(sorted(MEASUREMENT_TYPES))}"
        )
    aliases = patch.get("aliases")
    if aliases is not None and (
        not isinstance(aliases, list) or not all(isinstance(a, str) and a for a in aliases)
    ):
        raise ValidationError("aliases must be a list of strings")

    if db.session.query(PropertyDefinition).filter_by(key=patch["key"]).first() is not None:
        raise ConflictError(f"property definition already exists: {patch['key']}")

    definition = PropertyDefinition(**patch)
    db.session.add(definition)
    db.session.commit()
    return definition


def seed_property_definitions() -> int:
    """Insert the default definitions that are missing. Returns how many were created."""
    existing = {k for (k,) in db.session.query(PropertyDefinition.key).all()}
    created = 0
    for key, label, category, mtype, unit, aliases in DEFAULT_PROPERTY_DEFINITIONS:
        if key in existing:
            continue
        db.session.add(
            PropertyDefinition(
                key=key,
                label=label,
                category=category,
                measurement_type=mtype,
                unit=unit,
                aliases=list(aliases),
                is_active=True,
            )
        )
        created += 1
    db.session.commit()
    return created


def _set_properties(rows: list, row_cls, props, index: dict[str, PropertyDefinition]) -> None:
    """
    Replace a property map in place.

    Keys resolve through the definition index (aliases map to the canonical
    key); each value is stored raw and normalized.
    """
    if not isinstance(props, dict):
        raise ValidationError("properties must be an object")

    wanted: dict[str, tuple] = {}
    for raw_key, value in props.items():
        definition = index.get(raw_key)
        if definition is None:
            raise ValidationError(f"Unknown property: {raw_key}")
        if value is None or value == "":
            continue
        if isinstance(value, (dict, list)):
            raise ValidationError(f"property {raw_key} must be a scalar value")
        text = str(value).strip()
        if len(text) > 255:
            raise ValidationError(f"property {raw_key} exceeds max length 255")
        number, unit = normalize(definition.key, value, definition)
        wanted[definition.key] = (text, number, unit)

    by_key = {r.key: r for r in rows}
    for key, row in by_key.items():
        if key not in wanted:
            rows.remove(row)
    for key, (text, number, unit) in wanted.items():
        row = by_key.get(key)
        if row is None:
            row = row_cls(key=key)
            rows.append(row)
        row.value_text = text
        row.normalized_value = number
        row.unit = unit


# ---------------------------------------------------------------------------
# Offers and variants
# ---------------------------------------------------------------------------

def _sync_offers(offers: list, payloads) -> None:
    """Make the offer list match payloads: update by id, create new, drop the rest."""
    if not isinstance(payloads, list):
        raise ValidationError("suppliers must be a list")

    by_id = {o.id: o for o in offers if o.id is not None}
    keep = []
    for raw in payloads:
        if not isinstance(raw, dict):
            raise ValidationError("each supplier must be an object")
        raw = dict(raw)
        offer_id = raw.pop("id", None)
        if offer_id is not None:
            offer = by_id.get(offer_id)
            if offer is None:
                raise ValidationError(f"Unknown supplier offer id: {offer_id}")
            patch = validate_payload(model=SupplierOffer, payload=raw, policy=OFFER_POLICY, partial=True)
            enforce_rules_pricing(patch)
            for k, v in patch.items():
                setattr(offer, k, v)
        else:
            patch = validate_payload(model=SupplierOffer, payload=raw, policy=OFFER_POLICY, partial=False)
            enforce_rules_pricing(patch)
            offer = SupplierOffer(**patch)
            offers.append(offer)
        keep.append(offer)

    for offer in list(offers):
        if not any(offer is k for k in keep):
            offers.remove(offer)


def _apply_variant(variant: ProductVariant, raw: dict, index, *, partial: bool) -> None:
    raw = dict(raw)
    pricing = raw.pop("pricing", None) or {}
    if not isinstance(pricing, dict):
        raise ValidationError("pricing must be an object")
    props = raw.pop("properties", None)
    suppliers = raw.pop("suppliers", None)
    fields = {**pricing, **raw}

    patch = validate_payload(model=ProductVariant, payload=fields, policy=VARIANT_POLICY, partial=partial)
    enforce_rules_pricing(patch)
    for k, v in patch.items():
        setattr(variant, k, v)

    if props is not None:
        _set_properties(variant.property_rows, VariantProperty, props, index)
    if suppliers is not None:
        _sync_offers(variant.supplier_offers, suppliers)


def _sync_variants(product: Product, payloads, index) -> None:
    """
    Update variants by id, create those without one.

    Variants left out of the payload are deactivated, not deleted: inventory
    records and history may still point at them.
    """
    if not isinstance(payloads, list):
        raise ValidationError("variants must be a list")

    by_id = {v.id: v for v in product.variants if v.id is not None}
    seen = set()
    for raw in payloads:
        if not isinstance(raw, dict):
            raise ValidationError("each variant must be an object")
        raw = dict(raw)
        variant_id = raw.pop("id", None)
        if variant_id is not None:
            variant = by_id.get(variant_id)
            if variant is None:
                raise ValidationError(f"Unknown variant id: {variant_id}")
            _apply_variant(variant, raw, index, partial=True)
            seen.add(variant_id)
        else:
            variant = ProductVariant(is_active=True)
            product.variants.append(variant)
            _apply_variant(variant, raw, index, partial=False)

    for vid, variant in by_id.items():
        if vid not in seen:
            variant.is_active = False


def _canonicalize_variant_keys(product: Product, index) -> None:
    keys = product.variant_keys
    if not keys:
        return
    if not isinstance(keys, list) or not all(isinstance(k, str) and k for k in keys):
        raise ValidationError("variant_keys must be a list of property keys")
    unknown = [k for k in keys if k not in index]
    if unknown:
        raise ValidationError(f"Unknown variant keys: {', '.join(unknown)}")
    product.variant_keys = [index[k].key for k in keys]


def _validate_product(product: Product) -> None:
    if not product.supplier_offers:
        raise ValidationError("product must have at least one supplier offer")

    keys = product.variant_keys or []
    if not isinstance(keys, list) or not all(isinstance(k, str) and k for k in keys):
        raise ValidationError("variant_keys must be a list of property keys")
    if not keys:
        return

    seen: dict[tuple, ProductVariant] = {}
    for variant in product.variants:
        if not variant.is_active:
            continue
        key_tuple = variant.key_tuple(keys)
        missing = [k for k, v in zip(keys, key_tuple) if v is None]
        if missing:
            raise ValidationError(
                f"variant {variant.sku or variant.name or variant.id} is missing variant keys: {', '.join(missing)}"
            )
        if key_tuple in seen:
            raise ConflictError(
                f"duplicate variant for {', '.join(f'{k}={v}' for k, v in zip(keys, key_tuple))}"
            )
        seen[key_tuple] = variant


def save_product(product: Product) -> Product:
    """
    Check product invariants and commit.

    Touches updated_at so version_id moves even when only child rows
    (variants, offers, properties) changed; a concurrent writer then fails
    with StaleDataError and the caller's run_with_retry re-reads.
    """
    _validate_product(product)
    product.updated_at = utcnow()
    db.session.commit()
    return product


# ---------------------------------------------------------------------------
# Price history
# ---------------------------------------------------------------------------

def _price_state(product: Product) -> tuple:
    return (
        product.discount_percent,
        tuple(
            (v.id, v.standard_cost, v.list_price, v.net_price, v.discount_percent,
             tuple((o.id, o.list_price, o.net_price, o.discount_percent) for o in v.supplier_offers))
            for v in product.variants
        ),
        tuple((o.id, o.list_price, o.net_price, o.discount_percent) for o in product.supplier_offers),
    )


def price_snapshots(product: Product) -> tuple[list[dict], list[dict]]:
    variants = [
        {
            "variant_id": v.id,
            "name": v.name,
            "sku": v.sku,
            "list_price": v.list_price,
            "net_price": v.net_price,
            "discount_percent": v.discount_percent,
        }
        for v in product.variants
        if v.is_active
    ]
    offers = [
        {
            "offer_id": o.id,
            "variant_id": o.variant_id,
            "distributor_id": o.distributor_id,
            "manufacturer_id": o.manufacturer_id,
            "list_price": o.list_price,
            "net_price": o.net_price,
            "discount_percent": o.discount_percent,
        }
        for o in list(product.supplier_offers)
        + [o for v in product.variants if v.is_active for o in v.supplier_offers]
    ]
    return variants, offers


def record_price_event(
    product: Product,
    *,
    discount_id: int | None = None,
    applied_by: int | None = None,
    notes: str | None = None,
) -> PriceHistoryEvent:
    """Append a price history event for product's current pricing (not committed)."""
    # Ids for new variants/offers
    db.session.flush()
    variants, offers = price_snapshots(product)
    event = PriceHistoryEvent(
        product_id=product.id,
        discount_id=discount_id,
        discount_percent=product.discount_percent,
        effective_date=product.discount_effective_date,
        expires_date=product.discount_expires_date,
        applied_at=utcnow(),
        applied_by=applied_by,
        notes=notes,
        variant_snapshots=variants,
        supplier_snapshots=offers,
    )
    db.session.add(event)
    return event


def list_price_history(product_id: int, *, limit: int = 200) -> list[PriceHistoryEvent]:
    get_product(product_id)
    return (
        db.session.query(PriceHistoryEvent)
        .filter_by(product_id=product_id)
        .order_by(PriceHistoryEvent.applied_at.desc(), PriceHistoryEvent.id.desc())
        .limit(limit)
        .all()
    )


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

def find_products(query: ProductQuery) -> list[Product]:
    q = db.session.query(Product)
    if query.ids is not None:
        q = q.filter(Product.id.in_(list(query.ids)))
    if query.category is not None:
        q = q.filter(Product.category == query.category)
    if query.category_group is not None:
        q = q.filter(
            Product.property_rows.any(
                and_(ProductProperty.key == "categoryGroup", ProductProperty.value_text == query.category_group)
            )
        )
    if query.pricebook_group_code is not None:
        q = q.filter(Product.pricebook_group_code == query.pricebook_group_code)
    if query.supplier_id is not None:
        q = q.filter(
            or_(
                Product.manufacturer_id == query.supplier_id,
                Product.supplier_offers.any(SupplierOffer.manufacturer_id == query.supplier_id),
            )
        )
    if query.search:
        q = q.filter(Product.name.ilike(f"%{query.search}%"))
    if query.active_only:
        q = q.filter(Product.is_active.is_(True))
    return q.order_by(Product.name.asc(), Product.id.asc()).all()


def list_products(query: ProductQuery | None = None) -> dict:
    products = find_products(query or ProductQuery())
    return {
        "items": [p.to_dict(include_variants=False) for p in products],
        "count": len(products),
    }


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("product not found")
    return product


def _split_nested(payload) -> tuple[dict, object, object, object]:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    payload = dict(payload)
    props = payload.pop("properties", None)
    suppliers = payload.pop("suppliers", None)
    variants = payload.pop("variants", None)
    return payload, props, suppliers, variants


def create_product(payload: dict, *, created_by: int | None = None) -> Product:
    fields, props, suppliers, variants = _split_nested(payload)
    patch = validate_payload(model=Product, payload=fields, policy=PRODUCT_POLICY, partial=False)
    enforce_rules_product(patch)

    def _op():
        index = _definition_index()
        product = Product(**patch)
        product.created_by = created_by
        if product.unit_of_measure is None:
            product.unit_of_measure = "EA"
        _canonicalize_variant_keys(product, index)
        if props is not None:
            _set_properties(product.property_rows, ProductProperty, props, index)
        _sync_offers(product.supplier_offers, suppliers or [])
        if variants is not None:
            _sync_variants(product, variants, index)
        _validate_product(product)
        db.session.add(product)
        if _has_prices(product):
            record_price_event(product, applied_by=created_by, notes="initial pricing")
        return save_product(product)

    return run_with_retry(_op)


def _has_prices(product: Product) -> bool:
    return any(o.list_price is not None for o in product.supplier_offers) or any(
        v.list_price is not None for v in product.variants
    )


def update_product(product_id: int, payload: dict, *, updated_by: int | None = None) -> Product:
    fields, props, suppliers, variants = _split_nested(payload)
    patch = validate_payload(model=Product, payload=fields, policy=PRODUCT_POLICY, partial=True)
    enforce_rules_product(patch)

    def _op():
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if product is None:
            raise NotFoundError("product not found")

        index = _definition_index()
        before = _price_state(product)

        for k, v in patch.items():
            setattr(product, k, v)
        _canonicalize_variant_keys(product, index)
        if props is not None:
            _set_properties(product.property_rows, ProductProperty, props, index)
        if suppliers is not None:
            _sync_offers(product.supplier_offers, suppliers)
        if variants is not None:
            _sync_variants(product, variants, index)

        _validate_product(product)
        if _price_state(product) != before:
            record_price_event(product, applied_by=updated_by, notes="catalog edit")
        return save_product(product)

    return run_with_retry(_op)


def deactivate_product(product_id: int) -> Product:
    def _op():
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if product is None:
            raise NotFoundError("product not found")
        product.is_active = False
        db.session.commit()
        return product

    return run_with_retry(_op)


# ---------------------------------------------------------------------------
# Purchasing contract (read-only)
# ---------------------------------------------------------------------------

def get_supplier_offers(product_id: int, variant_id: int | None = None) -> list[SupplierOffer]:
    """Variant offers when the variant has any, else the product-level offers."""
    product = get_product(product_id)
    if variant_id is not None:
        variant = next((v for v in product.variants if v.id == variant_id), None)
        if variant is None:
            raise NotFoundError("variant not found")
        if variant.supplier_offers:
            return list(variant.supplier_offers)
    return list(product.supplier_offers)


def _offer_price(offer: SupplierOffer) -> float | None:
    return offer.net_price if offer.net_price is not None else offer.list_price


def select_offer(product_id: int, variant_id: int | None = None) -> SupplierOffer | None:
    """Preferred offer if any, else the cheapest priced offer, else the first."""
    offers = get_supplier_offers(product_id, variant_id)
    if not offers:
        return None
    preferred = [o for o in offers if o.is_preferred]
    if preferred:
        return preferred[0]
    return min(
        offers,
        key=lambda o: (_offer_price(o) is None, _offer_price(o) or 0.0, o.id or 0),
    )


def group_lines_by_supplier(lines: Iterable[dict]) -> list[dict]:
    """
    Group material request lines by the distributor of their selected offer.

    lines: [{"product_id", "variant_id"?, "quantity"}]
    Lines with no usable offer land in a group with distributor_id None.
    """
    groups: dict = {}
    for i, line in enumerate(lines):
        if not isinstance(line, dict):
            raise ValidationError(f"line {i} must be an object")
        product_id = line.get("product_id")
        if not isinstance(product_id, int) or isinstance(product_id, bool):
            raise ValidationError(f"line {i}: product_id must be an integer")
        quantity = line.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) or quantity <= 0:
            raise ValidationError(f"line {i}: quantity must be a positive number")
        variant_id = line.get("variant_id")

        offer = select_offer(product_id, variant_id)
        distributor_id = offer.distributor_id if offer is not None else None
        unit_price = _offer_price(offer) if offer is not None else None
        group = groups.setdefault(
            distributor_id, {"distributor_id": distributor_id, "lines": [], "total": 0.0}
        )
        extended = unit_price * quantity if unit_price is not None else None
        group["lines"].append(
            {
                "product_id": product_id,
                "variant_id": variant_id,
                "quantity": quantity,
                "offer_id": offer.id if offer is not None else None,
                "manufacturer_id": offer.manufacturer_id if offer is not None else None,
                "supplier_part_number": offer.supplier_part_number if offer is not None else None,
                "unit_price": unit_price,
                "extended_price": extended,
            }
        )
        if extended is not None:
            group["total"] += extended

    return sorted(groups.values(), key=lambda g: (g["distributor_id"] is None, g["distributor_id"] or 0))
