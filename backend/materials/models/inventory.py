from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from materials.time_utils import to_utc_z


INVENTORY_TYPES = {"bulk", "serialized"}
COST_METHODS = {"fifo", "lifo", "average"}
TRANSACTION_TYPES = {"receipt", "issue", "return", "adjustment", "transfer", "write_off"}
REFERENCE_TYPES = {"purchase_order", "material_request", "work_order", "adjustment", "transfer"}
ADJUSTMENT_REASONS = {"cycle_count", "damage", "theft", "expired", "found", "correction", "other"}
UNIT_STATUSES = {"available", "assigned", "in_use", "maintenance", "retired"}


class InventoryRecord(db.Model):
    """
    Stock position for one (product, variant) pair.

    Two tracking modes, fixed at creation:
    - bulk: fungible quantity split across InventoryLocation rows
    - serialized: one SerializedUnit row per physical item

    The quantity columns are a CACHE over the transaction log. They are only
    written by inventory_service under this row's lock, in the same DB
    transaction that appends the InventoryTransaction.

    INVARIANTS (bulk):
    - quantity_available = quantity_on_hand - quantity_reserved >= 0
    - sum(locations.quantity) == quantity_on_hand

    INVARIANTS (serialized):
    - quantity_on_hand = units not retired
    - quantity_available = units with status 'available'
    - quantity_reserved = 0
    """
    __tablename__ = "inventory_records"
    __table_args__ = (
        db.UniqueConstraint("product_id", "variant_id", name="uq_inventory_product_variant"),
        db.Index("ix_inventory_records_type_active", "inventory_type", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True, index=True)

    inventory_type = db.Column(db.String(16), nullable=False, default="bulk")

    quantity_on_hand = db.Column(db.Float, nullable=False, default=0.0)
    quantity_reserved = db.Column(db.Float, nullable=False, default=0.0)
    quantity_available = db.Column(db.Float, nullable=False, default=0.0)

    primary_location = db.Column(db.String(120), nullable=True)

    reorder_point = db.Column(db.Float, nullable=True)
    reorder_quantity = db.Column(db.Float, nullable=True)

    cost_method = db.Column(db.String(16), nullable=False, default="fifo")
    average_cost = db.Column(db.Float, nullable=False, default=0.0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    last_updated_by = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", foreign_keys=[product_id])
    variant = db.relationship("ProductVariant", foreign_keys=[variant_id])
    locations = db.relationship(
        "InventoryLocation",
        cascade="all, delete-orphan",
        lazy=True,
        order_by="InventoryLocation.location",
    )
    serialized_units = db.relationship(
        "SerializedUnit",
        cascade="all, delete-orphan",
        lazy=True,
        order_by="SerializedUnit.serial_number",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<InventoryRecord id={self.id} product_id={self.product_id} "
            f"variant_id={self.variant_id} type={self.inventory_type} on_hand={self.quantity_on_hand}>"
        )

    @property
    def is_serialized(self) -> bool:
        return self.inventory_type == "serialized"

    def location_quantities(self) -> dict[str, float]:
        """Per-location on-hand. Serialized records count units that are not retired."""
        if self.is_serialized:
            out: dict[str, float] = {}
            for unit in self.serialized_units:
                if unit.status == "retired":
                    continue
                key = unit.location or ""
                out[key] = out.get(key, 0.0) + 1.0
            return out
        return {loc.location: loc.quantity for loc in self.locations if loc.quantity}

    def to_dict(self, *, include_units: bool = True) -> dict:
        from ..services.reorder_service import is_low_stock

        data = {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "variant_id": self.variant_id,
            "variant_name": self.variant.name if self.variant else None,
            "inventory_type": self.inventory_type,
            "quantity_on_hand": self.quantity_on_hand,
            "quantity_reserved": self.quantity_reserved,
            "quantity_available": self.quantity_available,
            "primary_location": self.primary_location,
            "locations": [
                {"location": k, "quantity": v} for k, v in sorted(self.location_quantities().items())
            ],
            "reorder_point": self.reorder_point,
            "reorder_quantity": self.reorder_quantity,
            "is_low_stock": is_low_stock(self),
            "cost_method": self.cost_method,
            "average_cost": self.average_cost,
            "is_active": self.is_active,
            "notes": self.notes,
            "created_by": self.created_by,
            "last_updated_by": self.last_updated_by,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_units and self.is_serialized:
            data["serialized_units"] = [u.to_dict() for u in self.serialized_units]
        return data


class InventoryLocation(db.Model):
    """Per-location quantity of a bulk record."""
    __tablename__ = "inventory_locations"
    __table_args__ = (
        db.UniqueConstraint("inventory_id", "location", name="uq_inventory_locations_location"),
        db.CheckConstraint("quantity >= 0", name="ck_inventory_locations_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    inventory_id = db.Column(db.Integer, db.ForeignKey("inventory_records.id"), nullable=False, index=True)
    location = db.Column(db.String(120), nullable=False)
    quantity = db.Column(db.Float, nullable=False, default=0.0)


class SerializedUnit(db.Model):
    """
    One tracked physical item (tool, meter, equipment).

    Status changes follow unit_lifecycle_service.TRANSITIONS and always run
    under the parent InventoryRecord's row lock.
    """
    __tablename__ = "serialized_units"
    __table_args__ = (
        db.UniqueConstraint("inventory_id", "serial_number", name="uq_serialized_units_serial"),
        db.Index("ix_serialized_units_inventory_status", "inventory_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    inventory_id = db.Column(db.Integer, db.ForeignKey("inventory_records.id"), nullable=False, index=True)

    serial_number = db.Column(db.String(128), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="available")
    location = db.Column(db.String(120), nullable=True)

    # Job references come from the job system
    assigned_to = db.Column(db.String(64), nullable=True)
    assigned_to_task = db.Column(db.String(64), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    received_date = db.Column(db.DateTime(timezone=True), nullable=True)
    last_maintenance_date = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "inventory_id": self.inventory_id,
            "serial_number": self.serial_number,
            "status": self.status,
            "location": self.location,
            "assigned_to": self.assigned_to,
            "assigned_to_task": self.assigned_to_task,
            "notes": self.notes,
            "received_date": to_utc_z(self.received_date),
            "last_maintenance_date": to_utc_z(self.last_maintenance_date),
        }


class InventoryTransaction(db.Model):
    """
    Append-only ledger of stock movements.

    quantity is SIGNED: it is the transaction's effect on quantity_on_hand.
    Transfers carry the moved amount but leave on-hand alone; serialized
    issues/returns are 0 (units change status, not existence).

    Folding quantity over a record's history (ordered by performed_at, id,
    transfers skipped) reproduces the cached quantity_on_hand.
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        db.Index("ix_inventory_transactions_record_time", "inventory_id", "performed_at", "id"),
        db.Index("ix_inventory_transactions_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    inventory_id = db.Column(db.Integer, db.ForeignKey("inventory_records.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Float, nullable=False, default=0.0)
    serial_numbers = db.Column(db.JSON, nullable=True)

    from_location = db.Column(db.String(120), nullable=True)
    to_location = db.Column(db.String(120), nullable=True)

    reason = db.Column(db.String(32), nullable=True)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(64), nullable=True)

    unit_cost = db.Column(db.Float, nullable=True)
    total_cost = db.Column(db.Float, nullable=True)

    performed_by = db.Column(db.Integer, nullable=True)
    performed_at = db.Column(db.DateTime(timezone=True), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "inventory_id": self.inventory_id,
            "type": self.type,
            "quantity": self.quantity,
            "serial_numbers": list(self.serial_numbers or []),
            "from_location": self.from_location,
            "to_location": self.to_location,
            "reason": self.reason,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "unit_cost": self.unit_cost,
            "total_cost": self.total_cost,
            "performed_by": self.performed_by,
            "performed_at": to_utc_z(self.performed_at),
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(InventoryTransaction, "before_update")
@event.listens_for(InventoryTransaction, "before_delete")
def _transactions_are_append_only(mapper, connection, target):
    raise ValueError("inventory transactions are append-only")
