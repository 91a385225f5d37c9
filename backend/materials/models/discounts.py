from __future__ import annotations

from ..extensions import db
from materials.time_utils import to_utc_z, utcnow, to_utc_naive


DISCOUNT_TYPES = {"category", "customer", "product", "supplier", "group", "universal"}


class Discount(db.Model):
    """
    Pricebook discount rule.

    Rule fields (type, selectors, percent, dates) are edited only through the
    discount CRUD endpoints. The recalculation engine reads the rule and writes
    back bookkeeping (last_applied, products_affected) only.

    SELECTORS BY TYPE:
    - category: category and/or category_group (product property "categoryGroup")
    - product: product_id
    - supplier: supplier_id (manufacturer company id)
    - group: category_group, else code (matched to Product.pricebook_group_code)
    - universal: none
    - customer: customer_id (not applied to catalog prices)
    """
    __tablename__ = "discounts"
    __table_args__ = (
        # NULLs are distinct, so the pair is only unique when both are present
        db.UniqueConstraint(
            "category_group", "pricebook_page_number", name="uq_discounts_group_page"
        ),
        db.Index("ix_discounts_type_active", "discount_type", "is_active"),
        db.Index("ix_discounts_effective", "effective_date", "expires_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(64), nullable=True, index=True)
    discount_type = db.Column(db.String(16), nullable=False, default="category")

    # Selectors
    category = db.Column(db.String(120), nullable=True, index=True)
    category_group = db.Column(db.String(120), nullable=True, index=True)
    section = db.Column(db.String(120), nullable=True)
    customer_id = db.Column(db.Integer, nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)
    product_id = db.Column(db.Integer, nullable=True, index=True)
    product_name = db.Column(db.String(255), nullable=True)
    supplier_id = db.Column(db.Integer, nullable=True, index=True)
    supplier_name = db.Column(db.String(255), nullable=True)

    discount_percent = db.Column(db.Float, nullable=False)
    discount_amount = db.Column(db.Float, nullable=True)

    effective_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_date = db.Column(db.DateTime(timezone=True), nullable=True)
    replaces_date = db.Column(db.DateTime(timezone=True), nullable=True)

    # Pricebook reference
    pricebook_page = db.Column(db.String(255), nullable=True)
    pricebook_page_number = db.Column(db.String(32), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, nullable=True)

    # Engine bookkeeping
    last_applied = db.Column(db.DateTime(timezone=True), nullable=True)
    products_affected = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<Discount id={self.id} type={self.discount_type!r} "
            f"percent={self.discount_percent} active={self.is_active}>"
        )

    def is_in_effect(self, at=None) -> bool:
        """True if the rule is active and `at` (default now) falls in its window."""
        if not self.is_active:
            return False
        now = to_utc_naive(at) if at is not None else utcnow()
        effective = to_utc_naive(self.effective_date)
        expires = to_utc_naive(self.expires_date)
        if effective is not None and effective > now:
            return False
        if expires is not None and expires < now:
            return False
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "discount_type": self.discount_type,
            "category": self.category,
            "category_group": self.category_group,
            "section": self.section,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier_name,
            "discount_percent": self.discount_percent,
            "discount_amount": self.discount_amount,
            "effective_date": to_utc_z(self.effective_date),
            "expires_date": to_utc_z(self.expires_date),
            "replaces_date": to_utc_z(self.replaces_date),
            "pricebook_page": self.pricebook_page,
            "pricebook_page_number": self.pricebook_page_number,
            "is_active": self.is_active,
            "is_in_effect": self.is_in_effect(),
            "notes": self.notes,
            "created_by": self.created_by,
            "last_applied": to_utc_z(self.last_applied),
            "products_affected": self.products_affected,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
