# Overview: Inventory ledger: stock records, movements, serialized units, reservations and reconciliation.

"""
Inventory Ledger

Every stock change goes through add_transaction() (or a helper that calls it):
lock the InventoryRecord row, validate, mutate locations/units, append exactly
one InventoryTransaction, recompute the cached aggregates, commit. Any failure
rolls the whole call back.

TRANSACTION QUANTITY:
InventoryTransaction.quantity is the signed effect on quantity_on_hand, with
one exception: transfers carry the moved amount and never change on-hand.

    type         bulk                      serialized
    receipt      +q at to_location         +n, new 'available' units
    issue        -q from from_location     0, available -> assigned (-> in_use)
    return       +q at to_location         0, assigned|in_use -> available
    adjustment   +/-q (reason required)    +n new units / -n available units retired
    transfer     q moved from -> to        n units relocated
    write_off    -q from from_location     -n, -> retired

Folding quantity over the history (transfers excluded) reproduces the cached
quantity_on_hand; replay_transactions() / reconcile_inventory() check that.

Callers may send negative magnitudes for issue/write_off (UI payloads do);
only adjustments read the sign.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Iterable

from flask import current_app
from sqlalchemy import and_, or_

from ..extensions import db
from ..models import (
    InventoryLocation,
    InventoryRecord,
    InventoryTransaction,
    Product,
    ProductVariant,
    SerializedUnit,
)
from ..models.inventory import ADJUSTMENT_REASONS, REFERENCE_TYPES, TRANSACTION_TYPES
from ..validation import (
    ConflictError,
    ModelValidationPolicy,
    NotFoundError,
    ValidationError,
    enforce_rules_inventory_record,
    validate_payload,
)
from .concurrency import lock_for_update, run_with_retry
from .reorder_service import is_low_stock
from .unit_lifecycle_service import InvalidTransitionError, transition
from materials.time_utils import to_utc_naive, utcnow


# Float residue from repeated +/- on fractional quantities
EPSILON = 1e-9

INVENTORY_POLICY = ModelValidationPolicy(
    writable_fields={
        "product_id", "variant_id", "inventory_type", "primary_location",
        "reorder_point", "reorder_quantity", "cost_method", "average_cost",
        "is_active", "notes",
    },
    required_on_create={"product_id"},
)

UNIT_EDIT_FIELDS = {"status", "assigned_to", "assigned_to_task", "location", "notes", "last_maintenance_date"}


class InventoryError(ValueError):
    """Business-rule violation on a stock movement."""
    code = "inventory_error"
    http_status = 409


class InsufficientQuantityError(InventoryError):
    code = "insufficient_quantity"


class InsufficientQuantityAtLocationError(InventoryError):
    code = "insufficient_quantity_at_location"


class UnitNotAvailableError(InventoryError):
    code = "unit_not_available"


class NegativeQuantityError(InventoryError):
    code = "negative_quantity"


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------

def _number(value, name: str) -> float:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{name} must be a number")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            raise ValidationError(f"{name} must be a number")
    raise ValidationError(f"{name} must be a number")


def _clean_location(value) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    if len(s) > 120:
        raise ValidationError("location exceeds max length 120")
    return s or None


def _parse_serials(value) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError("serial_numbers must be a list")
    serials = []
    for s in value:
        if not isinstance(s, (str, int)) or isinstance(s, bool):
            raise ValidationError("serial numbers must be strings")
        s = str(s).strip()
        if not s:
            raise ValidationError("serial numbers cannot be blank")
        if len(s) > 128:
            raise ValidationError("serial number exceeds max length 128")
        serials.append(s)
    if len(set(serials)) != len(serials):
        raise ValidationError("duplicate serial numbers in request")
    return serials


def _parse_performed_at(value):
    if value is None:
        return utcnow()
    try:
        dt = to_utc_naive(value)
    except ValueError:
        raise ValidationError("performed_at must be an ISO-8601 datetime")
    skew = current_app.config.get("TRANSACTION_FUTURE_SKEW_SECONDS", 120)
    if dt > utcnow() + timedelta(seconds=skew):
        raise ValidationError("performed_at cannot be in the future")
    return dt


def _default_location(record: InventoryRecord) -> str:
    return record.primary_location or current_app.config.get("INVENTORY_DEFAULT_LOCATION", "MAIN")


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

def _refresh_aggregates(record: InventoryRecord) -> None:
    if record.is_serialized:
        record.quantity_on_hand = float(sum(1 for u in record.serialized_units if u.status != "retired"))
        record.quantity_available = float(sum(1 for u in record.serialized_units if u.status == "available"))
        record.quantity_reserved = 0.0
        return
    record.quantity_available = record.quantity_on_hand - record.quantity_reserved
    if record.quantity_available < -EPSILON:
        raise InsufficientQuantityError("available quantity cannot go below zero")


def _location_row(record: InventoryRecord, location: str, *, create: bool) -> InventoryLocation | None:
    for row in record.locations:
        if row.location == location:
            return row
    if not create:
        return None
    row = InventoryLocation(location=location, quantity=0.0)
    record.locations.append(row)
    return row


def _bulk_add(record: InventoryRecord, location: str, qty: float) -> None:
    row = _location_row(record, location, create=True)
    row.quantity = (row.quantity or 0.0) + qty
    record.quantity_on_hand = (record.quantity_on_hand or 0.0) + qty


def _bulk_remove(record: InventoryRecord, location: str, qty: float, *, change_on_hand: bool = True) -> None:
    row = _location_row(record, location, create=False)
    have = row.quantity if row is not None else 0.0
    if have + EPSILON < qty:
        raise InsufficientQuantityAtLocationError(
            f"only {have:g} on hand at {location}, requested {qty:g}"
        )
    row.quantity = max(have - qty, 0.0)
    if change_on_hand:
        record.quantity_on_hand = (record.quantity_on_hand or 0.0) - qty


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def _record_query(product_id: int, variant_id: int | None):
    q = db.session.query(InventoryRecord).filter(InventoryRecord.product_id == product_id)
    if variant_id is None:
        return q.filter(InventoryRecord.variant_id.is_(None))
    return q.filter(InventoryRecord.variant_id == variant_id)


def create_or_update_inventory(payload: dict, *, performed_by: int | None = None) -> tuple[InventoryRecord, bool]:
    """
    Upsert the record for (product_id, variant_id). Returns (record, created).

    inventory_type is fixed once the record exists. initial_quantity on a new
    bulk record is posted as a receipt so the history folds to the cache.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    payload = dict(payload)
    initial_quantity = payload.pop("initial_quantity", None)
    location = _clean_location(payload.pop("location", None))
    unit_cost = payload.pop("unit_cost", None)

    patch = validate_payload(model=InventoryRecord, payload=payload, policy=INVENTORY_POLICY, partial=False)
    enforce_rules_inventory_record(patch)
    if initial_quantity is not None:
        initial_quantity = _number(initial_quantity, "initial_quantity")
        if initial_quantity < 0:
            raise ValidationError("initial_quantity must be >= 0")
    if unit_cost is not None:
        unit_cost = _number(unit_cost, "unit_cost")
        if unit_cost < 0:
            raise ValidationError("unit_cost must be >= 0")

    product_id = patch["product_id"]
    variant_id = patch.get("variant_id")

    def _op():
        if db.session.get(Product, product_id) is None:
            raise NotFoundError("product not found")
        if variant_id is not None:
            variant = db.session.get(ProductVariant, variant_id)
            if variant is None or variant.product_id != product_id:
                raise ValidationError("variant does not belong to product")

        record = lock_for_update(_record_query(product_id, variant_id)).first()
        if record is not None:
            if "inventory_type" in patch and patch["inventory_type"] != record.inventory_type:
                raise ValidationError("inventory_type cannot be changed once set")
            if initial_quantity:
                raise ValidationError("initial_quantity only applies to new records; post a receipt instead")
            for k, v in patch.items():
                if k in ("product_id", "variant_id", "inventory_type"):
                    continue
                setattr(record, k, v)
            if location and not record.primary_location:
                record.primary_location = location
            record.last_updated_by = performed_by
            db.session.commit()
            return record, False

        record = InventoryRecord(**patch)
        if record.inventory_type is None:
            record.inventory_type = "bulk"
        if record.cost_method is None:
            record.cost_method = "fifo"
        if not record.primary_location:
            record.primary_location = location or current_app.config.get("INVENTORY_DEFAULT_LOCATION", "MAIN")
        record.quantity_on_hand = 0.0
        record.quantity_reserved = 0.0
        record.quantity_available = 0.0
        record.average_cost = record.average_cost or 0.0
        record.created_by = performed_by
        record.last_updated_by = performed_by
        db.session.add(record)
        db.session.flush()

        if initial_quantity:
            if record.is_serialized:
                raise ValidationError("serialized records receive units by serial number")
            _post(
                record,
                transaction_type="receipt",
                quantity=initial_quantity,
                serials=[],
                to_location=location,
                unit_cost=unit_cost,
                notes="initial quantity",
                performed_by=performed_by,
                performed_at=utcnow(),
            )

        _refresh_aggregates(record)
        db.session.commit()
        return record, True

    return run_with_retry(_op)


def get_inventory(inventory_id: int) -> InventoryRecord:
    record = db.session.get(InventoryRecord, inventory_id)
    if record is None:
        raise NotFoundError("inventory record not found")
    return record


def get_inventory_by_product(product_id: int, variant_id: int | None = None) -> InventoryRecord:
    record = _record_query(product_id, variant_id).first()
    if record is None:
        raise NotFoundError("inventory record not found")
    return record


def list_inventory(
    *,
    location: str | None = None,
    product_id: int | None = None,
    inventory_type: str | None = None,
    low_stock: bool | None = None,
    active_only: bool = True,
) -> list[InventoryRecord]:
    q = db.session.query(InventoryRecord)
    if active_only:
        q = q.filter(InventoryRecord.is_active.is_(True))
    if product_id is not None:
        q = q.filter(InventoryRecord.product_id == product_id)
    if inventory_type:
        q = q.filter(InventoryRecord.inventory_type == inventory_type)
    if location:
        q = q.filter(
            or_(
                InventoryRecord.primary_location == location,
                InventoryRecord.locations.any(
                    and_(InventoryLocation.location == location, InventoryLocation.quantity > 0)
                ),
                InventoryRecord.serialized_units.any(
                    and_(SerializedUnit.location == location, SerializedUnit.status != "retired")
                ),
            )
        )
    records = q.order_by(InventoryRecord.id.asc()).all()
    if low_stock is not None:
        records = [r for r in records if is_low_stock(r) == low_stock]
    return records


def list_transactions(
    inventory_id: int, *, transaction_type: str | None = None, limit: int = 200
) -> list[InventoryTransaction]:
    get_inventory(inventory_id)
    q = db.session.query(InventoryTransaction).filter_by(inventory_id=inventory_id)
    if transaction_type:
        q = q.filter(InventoryTransaction.type == transaction_type)
    return (
        q.order_by(InventoryTransaction.performed_at.desc(), InventoryTransaction.id.desc())
        .limit(limit)
        .all()
    )


# ---------------------------------------------------------------------------
# Movements
# ---------------------------------------------------------------------------

def _bulk_move(record, transaction_type, quantity, from_location, to_location, unit_cost):
    """Apply a bulk movement. Returns (signed quantity, from_location, to_location, unit_cost)."""
    if quantity is None:
        raise ValidationError("quantity is required")
    if abs(quantity) < EPSILON:
        raise ValidationError("quantity must be non-zero")
    qty = abs(quantity)

    if transaction_type in ("receipt", "return"):
        dest = to_location or _default_location(record)
        if transaction_type == "receipt" and unit_cost is not None:
            on_hand = max(record.quantity_on_hand or 0.0, 0.0)
            avg = record.average_cost or 0.0
            record.average_cost = (on_hand * avg + qty * unit_cost) / (on_hand + qty)
        _bulk_add(record, dest, qty)
        return qty, None, dest, unit_cost

    if transaction_type in ("issue", "write_off"):
        src = from_location or _default_location(record)
        if qty > (record.quantity_available or 0.0) + EPSILON:
            raise InsufficientQuantityError(
                f"requested {qty:g}, only {record.quantity_available:g} available"
            )
        _bulk_remove(record, src, qty)
        if unit_cost is None:
            unit_cost = record.average_cost
        return -qty, src, None, unit_cost

    if transaction_type == "adjustment":
        delta = quantity
        new_on_hand = (record.quantity_on_hand or 0.0) + delta
        if new_on_hand < -EPSILON:
            raise NegativeQuantityError(
                f"adjustment of {delta:g} would leave {new_on_hand:g} on hand"
            )
        if new_on_hand + EPSILON < (record.quantity_reserved or 0.0):
            raise InsufficientQuantityError(
                f"adjustment would leave {new_on_hand:g} on hand with {record.quantity_reserved:g} reserved"
            )
        if delta > 0:
            dest = to_location or from_location or _default_location(record)
            _bulk_add(record, dest, delta)
            return delta, None, dest, unit_cost
        src = from_location or to_location or _default_location(record)
        _bulk_remove(record, src, -delta)
        return delta, src, None, unit_cost

    # transfer
    if not from_location or not to_location:
        raise ValidationError("transfer needs from_location and to_location")
    if from_location == to_location:
        raise ValidationError("from_location and to_location must differ")
    _bulk_remove(record, from_location, qty, change_on_hand=False)
    row = _location_row(record, to_location, create=True)
    row.quantity = (row.quantity or 0.0) + qty
    return qty, from_location, to_location, unit_cost


def _units_for(record, serials: list[str]) -> list[SerializedUnit]:
    by_serial = {u.serial_number: u for u in record.serialized_units}
    missing = [s for s in serials if s not in by_serial]
    if missing:
        raise NotFoundError(f"serial numbers not found: {', '.join(missing)}")
    return [by_serial[s] for s in serials]


def _receive_units(record, serials, location, received_date, notes) -> None:
    existing = {u.serial_number for u in record.serialized_units}
    dupes = [s for s in serials if s in existing]
    if dupes:
        raise ConflictError(f"serial numbers already exist: {', '.join(dupes)}")
    for s in serials:
        record.serialized_units.append(
            SerializedUnit(
                serial_number=s,
                status="available",
                location=location,
                received_date=received_date,
                notes=notes,
            )
        )


def _serialized_move(
    record, transaction_type, quantity, serials, from_location, to_location,
    reference_id, unit_status, performed_at, notes,
):
    """Apply a serialized movement. Returns (signed quantity, from_location, to_location)."""
    if not serials:
        raise ValidationError("serial_numbers are required for serialized inventory")
    n = float(len(serials))

    if transaction_type == "receipt":
        dest = to_location or _default_location(record)
        _receive_units(record, serials, dest, performed_at, notes)
        return n, None, dest

    if transaction_type == "adjustment":
        if quantity is None or abs(quantity) < EPSILON:
            raise ValidationError("serialized adjustments need a signed quantity")
        if abs(abs(quantity) - n) > EPSILON:
            raise ValidationError("quantity must match the number of serial numbers")
        if quantity > 0:
            dest = to_location or _default_location(record)
            _receive_units(record, serials, dest, performed_at, notes)
            return n, None, dest
        units = _units_for(record, serials)
        for unit in units:
            if unit.status != "available":
                raise UnitNotAvailableError(f"unit {unit.serial_number} is {unit.status}")
        for unit in units:
            transition(unit, "retired")
        return -n, from_location, None

    units = _units_for(record, serials)

    if transaction_type == "issue":
        for unit in units:
            if unit.status != "available":
                raise UnitNotAvailableError(f"unit {unit.serial_number} is {unit.status}")
        for unit in units:
            transition(unit, "assigned")
            if unit_status == "in_use":
                transition(unit, "in_use")
            unit.assigned_to = reference_id
        return 0.0, from_location, None

    if transaction_type == "return":
        dest = to_location or _default_location(record)
        for unit in units:
            if unit.status not in ("assigned", "in_use"):
                raise InvalidTransitionError(f"unit {unit.serial_number} is not checked out ({unit.status})")
        for unit in units:
            transition(unit, "available")
            unit.assigned_to = None
            unit.assigned_to_task = None
            unit.location = dest
        return 0.0, None, dest

    if transaction_type == "transfer":
        if not to_location:
            raise ValidationError("transfer needs to_location")
        for unit in units:
            if unit.status == "retired":
                raise UnitNotAvailableError(f"unit {unit.serial_number} is retired")
            if from_location and unit.location != from_location:
                raise InsufficientQuantityAtLocationError(
                    f"unit {unit.serial_number} is not at {from_location}"
                )
        for unit in units:
            unit.location = to_location
        return n, from_location, to_location

    # write_off
    for unit in units:
        transition(unit, "retired")
    return -n, from_location, None


def _post(
    record: InventoryRecord,
    *,
    transaction_type: str,
    quantity: float | None,
    serials: list[str],
    from_location: str | None = None,
    to_location: str | None = None,
    reason: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    unit_cost: float | None = None,
    notes: str | None = None,
    performed_by: int | None = None,
    performed_at=None,
    unit_status: str | None = None,
) -> InventoryTransaction:
    """Mutate a locked record and append its transaction (no commit)."""
    if record.is_serialized:
        signed, src, dest = _serialized_move(
            record, transaction_type, quantity, serials, from_location, to_location,
            reference_id, unit_status, performed_at, notes,
        )
        txn_serials = serials
    else:
        if serials:
            raise ValidationError("serial_numbers only apply to serialized inventory")
        signed, src, dest, unit_cost = _bulk_move(
            record, transaction_type, quantity, from_location, to_location, unit_cost
        )
        txn_serials = None

    _refresh_aggregates(record)
    record.last_updated_by = performed_by
    # Transfers only touch location rows; the record row must still be
    # written so version_id moves and a concurrent writer goes stale.
    record.updated_at = utcnow()

    magnitude = abs(signed) if signed else float(len(serials))
    txn = InventoryTransaction(
        inventory_id=record.id,
        type=transaction_type,
        quantity=signed,
        serial_numbers=txn_serials,
        from_location=src,
        to_location=dest,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        unit_cost=unit_cost,
        total_cost=unit_cost * magnitude if unit_cost is not None else None,
        performed_by=performed_by,
        performed_at=performed_at,
        notes=notes,
    )
    db.session.add(txn)
    return txn


def add_transaction(
    inventory_id: int,
    *,
    transaction_type: str,
    quantity=None,
    serial_numbers=None,
    reason: str | None = None,
    reference_type: str | None = None,
    reference_id=None,
    from_location: str | None = None,
    to_location: str | None = None,
    unit_cost=None,
    notes: str | None = None,
    performed_by: int | None = None,
    performed_at=None,
    unit_status: str | None = None,
) -> InventoryTransaction:
    """
    Record one stock movement against a record.

    Raises ValidationError / NotFoundError for bad input, the InventoryError
    family for business-rule violations, InvalidTransitionError for illegal
    unit status changes. On any error nothing is written.
    """
    if transaction_type not in TRANSACTION_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(sorted(TRANSACTION_TYPES))}")
    if reference_type is not None and reference_type not in REFERENCE_TYPES:
        raise ValidationError(f"reference_type must be one of: {', '.join(sorted(REFERENCE_TYPES))}")
    if transaction_type == "adjustment" and not reason:
        raise ValidationError("adjustments require a reason")
    if reason is not None and reason not in ADJUSTMENT_REASONS:
        raise ValidationError(f"reason must be one of: {', '.join(sorted(ADJUSTMENT_REASONS))}")
    if unit_status is not None:
        if transaction_type != "issue" or unit_status not in ("assigned", "in_use"):
            raise ValidationError("unit_status applies to issues only and must be assigned or in_use")

    qty = _number(quantity, "quantity") if quantity is not None else None
    cost = _number(unit_cost, "unit_cost") if unit_cost is not None else None
    if cost is not None and cost < 0:
        raise ValidationError("unit_cost must be >= 0")
    serials = _parse_serials(serial_numbers)
    when = _parse_performed_at(performed_at)
    src = _clean_location(from_location)
    dest = _clean_location(to_location)
    ref_id = str(reference_id).strip() if reference_id is not None else None

    def _op():
        record = lock_for_update(db.session.query(InventoryRecord).filter_by(id=inventory_id)).first()
        if record is None:
            raise NotFoundError("inventory record not found")
        if not record.is_active:
            raise ValidationError("inventory record is inactive")

        txn = _post(
            record,
            transaction_type=transaction_type,
            quantity=qty,
            serials=serials,
            from_location=src,
            to_location=dest,
            reason=reason,
            reference_type=reference_type,
            reference_id=ref_id,
            unit_cost=cost,
            notes=notes,
            performed_by=performed_by,
            performed_at=when,
            unit_status=unit_status,
        )
        db.session.commit()
        return txn

    return run_with_retry(_op)


def add_serialized_units(
    inventory_id: int,
    serial_numbers,
    *,
    location: str | None = None,
    received_date=None,
    notes: str | None = None,
    performed_by: int | None = None,
) -> InventoryTransaction:
    """Receive new serialized units (posts a receipt)."""
    return add_transaction(
        inventory_id,
        transaction_type="receipt",
        serial_numbers=serial_numbers,
        to_location=location,
        notes=notes,
        performed_by=performed_by,
        performed_at=received_date,
    )


def update_serialized_unit(
    inventory_id: int,
    serial_number: str,
    payload: dict,
    *,
    performed_by: int | None = None,
) -> SerializedUnit:
    """
    Direct edit of one unit (status, assignment, location, notes).

    Status changes follow the lifecycle table. Retiring appends a write_off
    and relocating appends a transfer, so the history keeps folding to the
    cached quantities.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    unknown = sorted(set(payload) - UNIT_EDIT_FIELDS)
    if unknown:
        raise ValidationError(f"Field not allowed: {unknown[0]}")

    maintenance_date = payload.get("last_maintenance_date")
    if maintenance_date is not None:
        try:
            maintenance_date = to_utc_naive(maintenance_date)
        except ValueError:
            raise ValidationError("last_maintenance_date must be an ISO-8601 datetime")
    new_location = _clean_location(payload.get("location")) if "location" in payload else None

    def _op():
        record = lock_for_update(db.session.query(InventoryRecord).filter_by(id=inventory_id)).first()
        if record is None:
            raise NotFoundError("inventory record not found")
        if not record.is_serialized:
            raise ValidationError("inventory record is not serialized")
        unit = next((u for u in record.serialized_units if u.serial_number == serial_number), None)
        if unit is None:
            raise NotFoundError(f"serial number not found: {serial_number}")

        if unit.status == "retired":
            raise InvalidTransitionError(f"unit {serial_number} is retired")

        now = utcnow()

        # Relocate before any status change so a retire-and-move lands the
        # write_off at the new location.
        if new_location and new_location != unit.location:
            db.session.add(
                InventoryTransaction(
                    inventory_id=record.id,
                    type="transfer",
                    quantity=1.0,
                    serial_numbers=[serial_number],
                    from_location=unit.location,
                    to_location=new_location,
                    performed_by=performed_by,
                    performed_at=now,
                    notes="unit relocated",
                )
            )
            unit.location = new_location

        changed = False
        if "status" in payload:
            changed = transition(unit, payload["status"])

        if changed and unit.status == "maintenance":
            unit.last_maintenance_date = maintenance_date or now
        elif maintenance_date is not None:
            unit.last_maintenance_date = maintenance_date
        if changed and unit.status == "available":
            unit.assigned_to = None
            unit.assigned_to_task = None

        for key in ("assigned_to", "assigned_to_task", "notes"):
            if key in payload:
                value = payload[key]
                unit_value = str(value).strip() if value is not None else None
                setattr(unit, key, unit_value or None)

        if changed and unit.status == "retired":
            db.session.add(
                InventoryTransaction(
                    inventory_id=record.id,
                    type="write_off",
                    quantity=-1.0,
                    serial_numbers=[serial_number],
                    from_location=unit.location,
                    performed_by=performed_by,
                    performed_at=now,
                    notes=payload.get("notes") or "unit retired",
                )
            )

        _refresh_aggregates(record)
        record.last_updated_by = performed_by
        record.updated_at = now
        db.session.commit()
        return unit

    return run_with_retry(_op)


# ---------------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------------

def _reservation(inventory_id: int, quantity, performed_by: int | None, sign: int) -> InventoryRecord:
    qty = _number(quantity, "quantity")
    if qty <= 0:
        raise ValidationError("quantity must be > 0")

    def _op():
        record = lock_for_update(db.session.query(InventoryRecord).filter_by(id=inventory_id)).first()
        if record is None:
            raise NotFoundError("inventory record not found")
        if record.is_serialized:
            raise ValidationError("reservations apply to bulk inventory only")

        if sign > 0:
            if qty > (record.quantity_available or 0.0) + EPSILON:
                raise InsufficientQuantityError(
                    f"cannot reserve {qty:g}, only {record.quantity_available:g} available"
                )
            record.quantity_reserved = (record.quantity_reserved or 0.0) + qty
        else:
            if qty > (record.quantity_reserved or 0.0) + EPSILON:
                raise ValidationError(f"cannot release {qty:g}, only {record.quantity_reserved:g} reserved")
            record.quantity_reserved = max((record.quantity_reserved or 0.0) - qty, 0.0)

        _refresh_aggregates(record)
        record.last_updated_by = performed_by
        db.session.commit()
        return record

    return run_with_retry(_op)


def reserve_inventory(inventory_id: int, quantity, *, performed_by: int | None = None) -> InventoryRecord:
    return _reservation(inventory_id, quantity, performed_by, 1)


def release_reservation(inventory_id: int, quantity, *, performed_by: int | None = None) -> InventoryRecord:
    return _reservation(inventory_id, quantity, performed_by, -1)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def _fold(record: InventoryRecord, transactions: Iterable[InventoryTransaction]) -> dict:
    on_hand = 0.0
    locations: dict[str, float] = {}
    unit_locations: dict[str, str] = {}
    count = 0

    for t in transactions:
        count += 1
        if t.type != "transfer":
            on_hand += t.quantity or 0.0

        if record.is_serialized:
            serials = t.serial_numbers or []
            if t.type in ("receipt", "return", "transfer") or (t.type == "adjustment" and t.quantity > 0):
                for s in serials:
                    unit_locations[s] = t.to_location or ""
            elif t.type == "write_off" or (t.type == "adjustment" and t.quantity < 0):
                for s in serials:
                    unit_locations.pop(s, None)
            continue

        if t.type == "transfer":
            locations[t.from_location] = locations.get(t.from_location, 0.0) - t.quantity
            locations[t.to_location] = locations.get(t.to_location, 0.0) + t.quantity
        elif t.quantity > 0:
            locations[t.to_location] = locations.get(t.to_location, 0.0) + t.quantity
        else:
            locations[t.from_location] = locations.get(t.from_location, 0.0) + t.quantity

    if record.is_serialized:
        for loc in unit_locations.values():
            locations[loc] = locations.get(loc, 0.0) + 1.0

    return {
        "quantity_on_hand": on_hand,
        "locations": {k: v for k, v in locations.items() if abs(v) > EPSILON},
        "transactions": count,
    }


def replay_transactions(inventory_id: int) -> dict:
    """Fold the full transaction history into on-hand and per-location totals."""
    record = get_inventory(inventory_id)
    history = (
        db.session.query(InventoryTransaction)
        .filter_by(inventory_id=inventory_id)
        .order_by(InventoryTransaction.performed_at.asc(), InventoryTransaction.id.asc())
        .all()
    )
    return _fold(record, history)


def _locations_match(a: dict, b: dict) -> bool:
    keys = set(a) | set(b)
    return all(abs(a.get(k, 0.0) - b.get(k, 0.0)) <= EPSILON for k in keys)


def reconcile_inventory(inventory_id: int, *, repair: bool = False) -> dict:
    """
    Compare the cached aggregates with the replayed history.

    repair=True rewrites the bulk cache (on-hand and location rows) from the
    fold. Serialized records recompute their counts from their units.
    """
    replayed = replay_transactions(inventory_id)
    record = get_inventory(inventory_id)
    cached = {
        "quantity_on_hand": record.quantity_on_hand,
        "locations": {k: v for k, v in record.location_quantities().items() if abs(v) > EPSILON},
    }
    drift = abs(cached["quantity_on_hand"] - replayed["quantity_on_hand"]) > EPSILON or not _locations_match(
        cached["locations"], replayed["locations"]
    )

    report = {
        "inventory_id": inventory_id,
        "inventory_type": record.inventory_type,
        "cached": cached,
        "replayed": replayed,
        "drift": drift,
        "repaired": False,
    }
    if not drift:
        return report

    current_app.logger.warning(
        "Inventory %s drift: cached on-hand %s, replayed %s",
        inventory_id, cached["quantity_on_hand"], replayed["quantity_on_hand"],
    )
    if not repair:
        return report

    def _op():
        rec = lock_for_update(db.session.query(InventoryRecord).filter_by(id=inventory_id)).first()
        if rec.is_serialized:
            _refresh_aggregates(rec)
        else:
            rec.quantity_on_hand = replayed["quantity_on_hand"]
            wanted = replayed["locations"]
            for row in rec.locations:
                row.quantity = max(wanted.get(row.location, 0.0), 0.0)
            for loc, qty in wanted.items():
                if _location_row(rec, loc, create=False) is None:
                    _location_row(rec, loc, create=True).quantity = max(qty, 0.0)
            rec.quantity_available = rec.quantity_on_hand - rec.quantity_reserved
        rec.updated_at = utcnow()
        db.session.commit()

    run_with_retry(_op)
    current_app.logger.info("Inventory %s cache rewritten from history", inventory_id)
    report["repaired"] = True
    return report


def reconcile_all_inventory(*, repair: bool = False) -> list[dict]:
    ids = [i for (i,) in db.session.query(InventoryRecord.id).order_by(InventoryRecord.id.asc()).all()]
    return [reconcile_inventory(i, repair=repair) for i in ids]
