from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from materials.time_utils import to_utc_z


UNITS_OF_MEASURE = {"EA", "FT", "M", "BOX", "ROLL", "SQ_FT", "GAL", "LB", "KG", "OTHER"}
PROPERTY_CATEGORIES = {"dimension", "performance", "material", "specification", "other"}
MEASUREMENT_TYPES = {"length", "area", "volume", "weight", "temperature", "time", "count", "other"}


class PropertyDefinition(db.Model):
    """
    Declared property keys for product and variant property maps.

    Product/Variant properties are open key->value maps in the pricebook data.
    Keys are validated against this table at write time, so every stored key
    is known, has a measurement type, and can be normalized for search.
    """
    __tablename__ = "property_definitions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(64), nullable=False, unique=True, index=True)
    label = db.Column(db.String(255), nullable=True)
    category = db.Column(db.String(32), nullable=False, default="other")
    measurement_type = db.Column(db.String(32), nullable=False, default="other")
    unit = db.Column(db.String(16), nullable=True)
    aliases = db.Column(db.JSON, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def matches(self, key: str) -> bool:
        return key == self.key or key in (self.aliases or [])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "key": self.key,
            "label": self.label,
            "category": self.category,
            "measurement_type": self.measurement_type,
            "unit": self.unit,
            "aliases": list(self.aliases or []),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class _PropertyValueMixin:
    key = db.Column(db.String(64), nullable=False)
    # Raw value as entered (pricebook cell text)
    value_text = db.Column(db.String(255), nullable=True)
    # Value in the measurement type's base unit, for cross-unit filtering
    normalized_value = db.Column(db.Float, nullable=True)
    unit = db.Column(db.String(16), nullable=True)


class ProductProperty(_PropertyValueMixin, db.Model):
    __tablename__ = "product_properties"
    __table_args__ = (
        db.UniqueConstraint("product_id", "key", name="uq_product_properties_key"),
        db.Index("ix_product_properties_key_value", "key", "value_text"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)


class VariantProperty(_PropertyValueMixin, db.Model):
    __tablename__ = "variant_properties"
    __table_args__ = (
        db.UniqueConstraint("variant_id", "key", name="uq_variant_properties_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)


def _properties_dict(rows) -> dict:
    return {r.key: r.value_text for r in rows}


def _normalized_dict(rows) -> dict:
    return {r.key: r.normalized_value for r in rows if r.normalized_value is not None}


def _units_dict(rows) -> dict:
    return {r.key: r.unit for r in rows if r.unit}


class SupplierOffer(db.Model):
    """
    A distributor + manufacturer pairing with its own list/net price.

    Attached either to a Product (product-level offer) or to one of its
    Variants, never both.
    """
    __tablename__ = "supplier_offers"
    __table_args__ = (
        db.CheckConstraint(
            "(product_id IS NULL) <> (variant_id IS NULL)",
            name="ck_supplier_offers_single_owner",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True, index=True)

    # Company ids live in the external company directory
    distributor_id = db.Column(db.Integer, nullable=False, index=True)
    manufacturer_id = db.Column(db.Integer, nullable=True, index=True)
    supplier_part_number = db.Column(db.String(64), nullable=True)

    list_price = db.Column(db.Float, nullable=True)
    net_price = db.Column(db.Float, nullable=True)
    discount_percent = db.Column(db.Float, nullable=True)

    last_purchased_date = db.Column(db.DateTime(timezone=True), nullable=True)
    is_preferred = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "distributor_id": self.distributor_id,
            "manufacturer_id": self.manufacturer_id,
            "supplier_part_number": self.supplier_part_number,
            "list_price": self.list_price,
            "net_price": self.net_price,
            "discount_percent": self.discount_percent,
            "last_purchased_date": to_utc_z(self.last_purchased_date),
            "is_preferred": self.is_preferred,
        }


class ProductVariant(db.Model):
    """A specific SKU within a Product, with its own pricing block and offers."""
    __tablename__ = "product_variants"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=True, index=True)
    name = db.Column(db.String(255), nullable=True)

    standard_cost = db.Column(db.Float, nullable=True)
    list_price = db.Column(db.Float, nullable=True)
    net_price = db.Column(db.Float, nullable=True)
    discount_percent = db.Column(db.Float, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    property_rows = db.relationship(
        "VariantProperty", cascade="all, delete-orphan", lazy=True, order_by="VariantProperty.key"
    )
    supplier_offers = db.relationship(
        "SupplierOffer",
        foreign_keys=[SupplierOffer.variant_id],
        cascade="all, delete-orphan",
        lazy=True,
        order_by="SupplierOffer.id",
    )

    @property
    def properties(self) -> dict:
        return _properties_dict(self.property_rows)

    def key_tuple(self, keys) -> tuple:
        props = self.properties
        return tuple(props.get(k) for k in keys)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "sku": self.sku,
            "name": self.name,
            "properties": self.properties,
            "properties_normalized": _normalized_dict(self.property_rows),
            "property_units": _units_dict(self.property_rows),
            "pricing": {
                "standard_cost": self.standard_cost,
                "list_price": self.list_price,
                "net_price": self.net_price,
                "discount_percent": self.discount_percent,
            },
            "suppliers": [o.to_dict() for o in self.supplier_offers],
            "is_active": self.is_active,
        }


class Product(db.Model):
    """
    Catalog entry.

    INVARIANTS:
    - At least one product-level SupplierOffer (checked by catalog_service).
    - When variant_keys is set, each variant carries exactly those keys and
      no two variants share a key tuple.
    - Never hard-deleted; deactivated through is_active.

    Price fields are written by catalog edits and by the discount engine.
    Child edits (variants, offers) touch updated_at so version_id always moves
    and concurrent writers collide on the product row.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_category_active", "category", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    internal_part_number = db.Column(db.String(64), nullable=True, index=True)
    unit_of_measure = db.Column(db.String(16), nullable=False, default="EA")
    category = db.Column(db.String(120), nullable=True, index=True)

    # Pricebook coordinates
    pricebook_section = db.Column(db.String(120), nullable=True, index=True)
    pricebook_page_number = db.Column(db.String(32), nullable=True, index=True)
    pricebook_page_name = db.Column(db.String(255), nullable=True)
    pricebook_group_code = db.Column(db.String(64), nullable=True, index=True)

    # Primary manufacturer (external company id)
    manufacturer_id = db.Column(db.Integer, nullable=True, index=True)

    variant_keys = db.Column(db.JSON, nullable=True)

    # Current product-level discount
    discount_percent = db.Column(db.Float, nullable=True)
    discount_effective_date = db.Column(db.DateTime(timezone=True), nullable=True)
    discount_expires_date = db.Column(db.DateTime(timezone=True), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    property_rows = db.relationship(
        "ProductProperty", cascade="all, delete-orphan", lazy=True, order_by="ProductProperty.key"
    )
    variants = db.relationship(
        "ProductVariant", cascade="all, delete-orphan", lazy=True, order_by="ProductVariant.id"
    )
    supplier_offers = db.relationship(
        "SupplierOffer",
        foreign_keys=[SupplierOffer.product_id],
        cascade="all, delete-orphan",
        lazy=True,
        order_by="SupplierOffer.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} category={self.category!r}>"

    @property
    def properties(self) -> dict:
        return _properties_dict(self.property_rows)

    def to_dict(self, *, include_variants: bool = True) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "internal_part_number": self.internal_part_number,
            "unit_of_measure": self.unit_of_measure,
            "category": self.category,
            "pricebook_section": self.pricebook_section,
            "pricebook_page_number": self.pricebook_page_number,
            "pricebook_page_name": self.pricebook_page_name,
            "pricebook_group_code": self.pricebook_group_code,
            "manufacturer_id": self.manufacturer_id,
            "variant_keys": list(self.variant_keys or []),
            "properties": self.properties,
            "properties_normalized": _normalized_dict(self.property_rows),
            "property_units": _units_dict(self.property_rows),
            "product_discount": {
                "discount_percent": self.discount_percent,
                "effective_date": to_utc_z(self.discount_effective_date),
                "expires_date": to_utc_z(self.discount_expires_date),
            },
            "suppliers": [o.to_dict() for o in self.supplier_offers],
            "is_active": self.is_active,
            "notes": self.notes,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_variants:
            data["variants"] = [v.to_dict() for v in self.variants]
        return data


class PriceHistoryEvent(db.Model):
    """
    Append-only price history for a product.

    One row per price change written by the discount engine (or a catalog
    price edit). Snapshots hold the pricing after the change, so audit
    tooling never has to reconstruct it from live rows.
    """
    __tablename__ = "product_price_events"
    __table_args__ = (
        db.Index("ix_price_events_product_applied", "product_id", "applied_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    discount_id = db.Column(db.Integer, db.ForeignKey("discounts.id"), nullable=True, index=True)

    discount_percent = db.Column(db.Float, nullable=True)
    effective_date = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_date = db.Column(db.DateTime(timezone=True), nullable=True)

    applied_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    applied_by = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    variant_snapshots = db.Column(db.JSON, nullable=True)
    supplier_snapshots = db.Column(db.JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "discount_id": self.discount_id,
            "discount_percent": self.discount_percent,
            "effective_date": to_utc_z(self.effective_date),
            "expires_date": to_utc_z(self.expires_date),
            "applied_at": to_utc_z(self.applied_at),
            "applied_by": self.applied_by,
            "notes": self.notes,
            "variant_snapshots": list(self.variant_snapshots or []),
            "supplier_snapshots": list(self.supplier_snapshots or []),
        }


@event.listens_for(PriceHistoryEvent, "before_update")
@event.listens_for(PriceHistoryEvent, "before_delete")
def _price_history_is_append_only(mapper, connection, target):
    raise ValueError("price history events are append-only")
