# Overview: Low-stock detection for bulk inventory (pure query, nothing persisted).

from __future__ import annotations

from ..extensions import db
from ..models import InventoryRecord


def is_low_stock(record: InventoryRecord) -> bool:
    """Bulk record with a reorder point and on-hand strictly below it."""
    return (
        record.inventory_type == "bulk"
        and record.reorder_point is not None
        and (record.quantity_on_hand or 0.0) < record.reorder_point
    )


def suggested_order_quantity(record: InventoryRecord) -> float:
    """reorder_quantity when set, else the shortfall to the reorder point."""
    if record.reorder_quantity is not None and record.reorder_quantity > 0:
        return record.reorder_quantity
    return max((record.reorder_point or 0.0) - (record.quantity_on_hand or 0.0), 0.0)


def list_low_stock() -> list[dict]:
    records = (
        db.session.query(InventoryRecord)
        .filter(InventoryRecord.is_active.is_(True))
        .filter(InventoryRecord.inventory_type == "bulk")
        .filter(InventoryRecord.reorder_point.isnot(None))
        .order_by(InventoryRecord.id.asc())
        .all()
    )
    out = []
    for record in records:
        if not is_low_stock(record):
            continue
        data = record.to_dict(include_units=False)
        data["suggested_order_quantity"] = suggested_order_quantity(record)
        out.append(data)
    return out
