# Overview: Discount rule CRUD and the pricing recalculation engine.

"""
Discount Engine

apply_discount() resolves a rule to the products it covers and rewrites their
price fields:

    net_price = list_price * (1 - discount_percent / 100)

on every product-level SupplierOffer, every Variant, and every Variant-level
SupplierOffer that has a list_price. Exact float math, no rounding.

RULES:
1. Replace, never stack: the rule's percent overwrites whatever was there, so a
   second run with unchanged inputs writes the same values (and persists nothing).
2. One product at a time: lock, mutate, save, commit, under run_with_retry.
   There is no catalog-wide transaction; a crash mid-run leaves a consistent
   subset that the next run completes.
3. A product is persisted only when a field actually changed, and each persisted
   change appends one PriceHistoryEvent in the same commit.
4. The engine writes bookkeeping (last_applied, products_affected) onto the
   Discount and never touches its rule fields.
5. Inactive rules (is_active false, or outside effective/expires) are reported
   in the result, not raised.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import or_

from ..extensions import db
from ..models import Discount, Product
from ..validation import (
    ConflictError,
    ModelValidationPolicy,
    NotFoundError,
    ValidationError,
    enforce_rules_discount,
    validate_payload,
)
from .catalog_service import ProductQuery, find_products, record_price_event, save_product
from .concurrency import lock_for_update, run_with_retry
from materials.time_utils import utcnow, to_utc_naive


DISCOUNT_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "code", "discount_type",
        "category", "category_group", "section",
        "customer_id", "customer_name",
        "product_id", "product_name",
        "supplier_id", "supplier_name",
        "discount_percent", "discount_amount",
        "effective_date", "expires_date", "replaces_date",
        "pricebook_page", "pricebook_page_number",
        "is_active", "notes",
    },
    required_on_create={"name", "discount_type", "discount_percent"},
)


class InvalidRuleError(ValueError):
    """The discount has no usable selector for its type."""
    code = "invalid_rule"
    http_status = 422


@dataclass
class ApplyResult:
    discount_id: int
    products_updated: int = 0
    variants_updated: int = 0
    # applied | inactive | failed
    status: str = "applied"
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BatchResult:
    total_products_updated: int = 0
    total_variants_updated: int = 0
    discounts_processed: int = 0
    results: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_products_updated": self.total_products_updated,
            "total_variants_updated": self.total_variants_updated,
            "discounts_processed": self.discounts_processed,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class _Rule:
    """Rule values captured once, so per-product commits never re-read the Discount."""
    discount_id: int
    percent: float
    effective_date: Optional[datetime]
    expires_date: Optional[datetime]


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

def list_discounts(
    *,
    discount_type: str | None = None,
    category: str | None = None,
    is_active: bool | None = None,
) -> list[Discount]:
    q = db.session.query(Discount)
    if discount_type:
        q = q.filter(Discount.discount_type == discount_type)
    if category:
        q = q.filter(Discount.category == category)
    if is_active is not None:
        q = q.filter(Discount.is_active.is_(is_active))
    return q.order_by(Discount.effective_date.desc(), Discount.id.desc()).all()


def get_discount(discount_id: int) -> Discount:
    discount = db.session.get(Discount, discount_id)
    if discount is None:
        raise NotFoundError("discount not found")
    return discount


def find_active_discounts(at: datetime | None = None) -> list[Discount]:
    """Discounts that are active and in their effective window at `at` (default now)."""
    now = to_utc_naive(at) if at is not None else utcnow()
    return (
        db.session.query(Discount)
        .filter(Discount.is_active.is_(True))
        .filter(Discount.effective_date <= now)
        .filter(or_(Discount.expires_date.is_(None), Discount.expires_date >= now))
        .order_by(Discount.effective_date.asc(), Discount.id.asc())
        .all()
    )


def _check_unique_page(category_group, page_number, *, exclude_id: int | None = None) -> None:
    if category_group is None or page_number is None:
        return
    q = db.session.query(Discount).filter_by(
        category_group=category_group, pricebook_page_number=page_number
    )
    if exclude_id is not None:
        q = q.filter(Discount.id != exclude_id)
    if q.first() is not None:
        raise ConflictError(
            f"a discount for group {category_group} on pricebook page {page_number} already exists"
        )


def _apply_after_save(discount_id: int, applied_by: int | None) -> ApplyResult | None:
    if not current_app.config.get("DISCOUNTS_APPLY_ON_SAVE", True):
        return None
    try:
        return apply_discount(discount_id, applied_by=applied_by)
    except InvalidRuleError as e:
        # Staged rules (selector not filled in yet) save fine but don't apply
        return ApplyResult(discount_id=discount_id, status="failed", error=str(e))


def create_discount(payload: dict, *, created_by: int | None = None) -> tuple[Discount, ApplyResult | None]:
    """
    Create a rule. When DISCOUNTS_APPLY_ON_SAVE is set, the rule is applied
    right away and the ApplyResult is returned with it.
    """
    patch = validate_payload(model=Discount, payload=payload, policy=DISCOUNT_POLICY, partial=False)
    enforce_rules_discount(patch)
    _check_unique_page(patch.get("category_group"), patch.get("pricebook_page_number"))

    discount = Discount(**patch)
    discount.created_by = created_by
    if discount.effective_date is None:
        discount.effective_date = utcnow()
    if discount.is_active is None:
        discount.is_active = True
    discount.products_affected = 0
    db.session.add(discount)
    db.session.commit()

    current_app.logger.info(
        "Discount %s created (%s, %s%%)", discount.id, discount.discount_type, discount.discount_percent
    )
    return discount, _apply_after_save(discount.id, created_by)


def update_discount(
    discount_id: int, payload: dict, *, updated_by: int | None = None
) -> tuple[Discount, ApplyResult | None]:
    """Edit rule fields. Bookkeeping fields are not writable through here."""
    patch = validate_payload(model=Discount, payload=payload, policy=DISCOUNT_POLICY, partial=True)
    enforce_rules_discount(patch)

    def _op():
        discount = lock_for_update(db.session.query(Discount).filter_by(id=discount_id)).first()
        if discount is None:
            raise NotFoundError("discount not found")

        effective = patch.get("effective_date", discount.effective_date)
        expires = patch.get("expires_date", discount.expires_date)
        if effective is None:
            raise ValidationError("effective_date cannot be null")
        if expires is not None and to_utc_naive(expires) < to_utc_naive(effective):
            raise ValidationError("expires_date must not be before effective_date")
        _check_unique_page(
            patch.get("category_group", discount.category_group),
            patch.get("pricebook_page_number", discount.pricebook_page_number),
            exclude_id=discount.id,
        )

        for k, v in patch.items():
            setattr(discount, k, v)
        db.session.commit()
        return discount

    discount = run_with_retry(_op)
    return discount, _apply_after_save(discount.id, updated_by)


def deactivate_discount(discount_id: int) -> Discount:
    """DELETE semantics: the rule stays for audit, it just stops matching."""
    def _op():
        discount = lock_for_update(db.session.query(Discount).filter_by(id=discount_id)).first()
        if discount is None:
            raise NotFoundError("discount not found")
        discount.is_active = False
        db.session.commit()
        return discount

    discount = run_with_retry(_op)
    current_app.logger.info("Discount %s deactivated", discount_id)
    return discount


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def match_query(discount: Discount) -> ProductQuery:
    """
    Translate a rule's selector into a catalog query.

    Raises InvalidRuleError when the selector its type needs is missing.
    """
    dtype = discount.discount_type

    if dtype == "category":
        if not discount.category and not discount.category_group:
            raise InvalidRuleError("category discount needs category or category_group")
        return ProductQuery(
            category=discount.category or None,
            category_group=discount.category_group or None,
        )

    if dtype == "product":
        if discount.product_id is None:
            raise InvalidRuleError("product discount needs product_id")
        return ProductQuery(ids=(discount.product_id,))

    if dtype == "supplier":
        if discount.supplier_id is None:
            raise InvalidRuleError("supplier discount needs supplier_id")
        return ProductQuery(supplier_id=discount.supplier_id)

    if dtype == "group":
        selector = discount.category_group or discount.code
        if not selector:
            raise InvalidRuleError("group discount needs category_group or code")
        return ProductQuery(pricebook_group_code=selector)

    if dtype == "universal":
        return ProductQuery()

    if dtype == "customer":
        raise InvalidRuleError("customer discounts price quotes, not catalog entries")

    raise InvalidRuleError(f"unknown discount type: {dtype}")


def _reprice(target, percent: float) -> bool:
    """Set net_price/discount_percent on anything with a list_price. True if a value changed."""
    net = target.list_price * (1 - percent / 100)
    if target.net_price == net and target.discount_percent == percent:
        return False
    target.net_price = net
    target.discount_percent = percent
    return True


def _same_instant(a, b) -> bool:
    return to_utc_naive(a) == to_utc_naive(b)


def _apply_to_product(product_id: int, rule: _Rule, applied_by: int | None) -> tuple[bool, int]:
    """
    Reprice one product. Returns (persisted, variants covered).

    Covered variants are those with a list_price; the count is the same on
    every run so products_affected stays stable across reruns.
    """
    def _op():
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if product is None:
            return False, 0

        changed = False
        covered = 0

        for offer in product.supplier_offers:
            if offer.list_price is not None:
                changed |= _reprice(offer, rule.percent)

        for variant in product.variants:
            if not variant.is_active:
                continue
            if variant.list_price is not None:
                covered += 1
                changed |= _reprice(variant, rule.percent)
            for offer in variant.supplier_offers:
                if offer.list_price is not None:
                    changed |= _reprice(offer, rule.percent)

        if product.discount_percent != rule.percent:
            product.discount_percent = rule.percent
            changed = True
        if not _same_instant(product.discount_effective_date, rule.effective_date):
            product.discount_effective_date = rule.effective_date
            changed = True
        if not _same_instant(product.discount_expires_date, rule.expires_date):
            product.discount_expires_date = rule.expires_date
            changed = True

        if not changed:
            db.session.rollback()
            return False, covered

        record_price_event(
            product,
            discount_id=rule.discount_id,
            applied_by=applied_by,
            notes=f"discount {rule.discount_id} applied",
        )
        save_product(product)
        return True, covered

    return run_with_retry(_op)


def apply_discount(discount_id: int, *, applied_by: int | None = None) -> ApplyResult:
    """
    Apply one rule to every product it matches.

    Raises NotFoundError / InvalidRuleError. Inactive rules come back with
    status "inactive" and nothing written.
    """
    discount = get_discount(discount_id)

    if not discount.is_active:
        return ApplyResult(discount_id=discount_id, status="inactive", error="discount is inactive")
    if not discount.is_in_effect():
        return ApplyResult(
            discount_id=discount_id, status="inactive", error="discount is outside its effective window"
        )

    query = match_query(discount)
    rule = _Rule(
        discount_id=discount.id,
        percent=discount.discount_percent,
        effective_date=discount.effective_date,
        expires_date=discount.expires_date,
    )
    product_ids = [p.id for p in find_products(query)]

    products_updated = 0
    variants_updated = 0
    for product_id in product_ids:
        persisted, covered = _apply_to_product(product_id, rule, applied_by)
        if persisted:
            products_updated += 1
        variants_updated += covered

    def _bookkeeping():
        d = lock_for_update(db.session.query(Discount).filter_by(id=discount_id)).first()
        d.last_applied = utcnow()
        d.products_affected = variants_updated
        db.session.commit()

    run_with_retry(_bookkeeping)

    current_app.logger.info(
        "Discount %s applied: %s products matched, %s updated, %s variants",
        discount_id, len(product_ids), products_updated, variants_updated,
    )
    return ApplyResult(
        discount_id=discount_id,
        products_updated=products_updated,
        variants_updated=variants_updated,
    )


def apply_all_discounts(*, applied_by: int | None = None) -> BatchResult:
    """
    Apply every active, in-effect discount, oldest effective date first.

    A failing discount is logged and reported in its result entry; the batch
    carries on with the rest.
    """
    batch = BatchResult()
    discount_ids = [d.id for d in find_active_discounts()]

    for discount_id in discount_ids:
        try:
            result = apply_discount(discount_id, applied_by=applied_by)
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception("Failed to apply discount %s", discount_id)
            result = ApplyResult(discount_id=discount_id, status="failed", error=str(e))

        batch.results.append(result)
        batch.discounts_processed += 1
        batch.total_products_updated += result.products_updated
        batch.total_variants_updated += result.variants_updated

    current_app.logger.info(
        "Applied %s discounts: %s products, %s variants updated",
        batch.discounts_processed, batch.total_products_updated, batch.total_variants_updated,
    )
    return batch
