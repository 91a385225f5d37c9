"""
Inventory ledger tests for bulk records.

Every movement must leave the cached quantities equal to a replay of the
transaction history; failed movements must write nothing.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from materials import create_app
from materials.extensions import db
from materials.models import InventoryTransaction
from materials.services import catalog_service, inventory_service
from materials.services.concurrency import run_with_retry
from materials.services.inventory_service import (
    InsufficientQuantityAtLocationError,
    InsufficientQuantityError,
    NegativeQuantityError,
)
from materials.time_utils import utcnow
from materials.validation import NotFoundError, ValidationError


@pytest.fixture
def stocked(make_product, make_inventory):
    """Bulk record with 100 on hand at WH-A."""
    product = make_product("Fiberglass Batt R-13")
    return make_inventory(product, initial_quantity=100, location="WH-A", unit_cost=2.0)


def _txn_count(record_id):
    return db.session.query(InventoryTransaction).filter_by(inventory_id=record_id).count()


def _assert_no_drift(record_id):
    report = inventory_service.reconcile_inventory(record_id)
    assert report["drift"] is False, report


class TestRecords:

    def test_initial_quantity_posts_a_receipt(self, stocked):
        assert stocked.quantity_on_hand == 100
        assert stocked.quantity_available == 100
        assert stocked.primary_location == "WH-A"
        assert stocked.location_quantities() == {"WH-A": 100}

        txns = inventory_service.list_transactions(stocked.id)
        assert [(t.type, t.quantity, t.to_location) for t in txns] == [("receipt", 100, "WH-A")]
        _assert_no_drift(stocked.id)

    def test_default_location_from_config(self, make_product, make_inventory):
        record = make_inventory(make_product("No location"), initial_quantity=5)

        assert record.primary_location == "MAIN"
        assert record.location_quantities() == {"MAIN": 5}

    def test_upsert_updates_existing_record(self, stocked):
        record, created = inventory_service.create_or_update_inventory(
            {"product_id": stocked.product_id, "reorder_point": 20}
        )

        assert created is False
        assert record.id == stocked.id
        assert record.reorder_point == 20

    def test_inventory_type_is_fixed(self, stocked):
        with pytest.raises(ValidationError, match="cannot be changed"):
            inventory_service.create_or_update_inventory(
                {"product_id": stocked.product_id, "inventory_type": "serialized"}
            )

    def test_initial_quantity_only_on_create(self, stocked):
        with pytest.raises(ValidationError):
            inventory_service.create_or_update_inventory(
                {"product_id": stocked.product_id, "initial_quantity": 5}
            )

    def test_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            inventory_service.create_or_update_inventory({"product_id": 404})

    def test_variant_must_belong_to_product(self, pipe_insulation, make_product):
        other = make_product("Other")
        with pytest.raises(ValidationError, match="does not belong"):
            inventory_service.create_or_update_inventory(
                {"product_id": other.id, "variant_id": pipe_insulation.variants[0].id}
            )

    def test_record_per_variant(self, pipe_insulation, make_inventory):
        v1, v2 = pipe_insulation.variants
        r1 = make_inventory(pipe_insulation, variant_id=v1.id, initial_quantity=10)
        r2 = make_inventory(pipe_insulation, variant_id=v2.id, initial_quantity=4)

        assert r1.id != r2.id
        assert inventory_service.get_inventory_by_product(pipe_insulation.id, v2.id).quantity_on_hand == 4


class TestMovements:

    def test_issue_reduces_on_hand(self, stocked):
        txn = inventory_service.add_transaction(
            stocked.id, transaction_type="issue", quantity=30, from_location="WH-A",
            reference_type="work_order", reference_id=5521,
        )

        record = inventory_service.get_inventory(stocked.id)
        assert record.quantity_on_hand == 70
        assert record.quantity_available == 70
        assert txn.quantity == -30
        assert txn.reference_id == "5521"
        assert txn.unit_cost == 2.0
        assert txn.total_cost == 60.0
        _assert_no_drift(stocked.id)

    def test_negative_magnitude_issue_is_accepted(self, stocked):
        inventory_service.add_transaction(stocked.id, transaction_type="issue", quantity=-10)

        assert inventory_service.get_inventory(stocked.id).quantity_on_hand == 90

    def test_insufficient_issue_writes_nothing(self, stocked):
        with pytest.raises(InsufficientQuantityError):
            inventory_service.add_transaction(stocked.id, transaction_type="issue", quantity=200)

        record = inventory_service.get_inventory(stocked.id)
        assert record.quantity_on_hand == 100
        assert _txn_count(stocked.id) == 1

    def test_issue_from_empty_location(self, stocked):
        with pytest.raises(InsufficientQuantityAtLocationError):
            inventory_service.add_transaction(
                stocked.id, transaction_type="issue", quantity=5, from_location="WH-B"
            )

    def test_return_adds_stock(self, stocked):
        inventory_service.add_transaction(stocked.id, transaction_type="issue", quantity=30)
        inventory_service.add_transaction(stocked.id, transaction_type="return", quantity=10, to_location="WH-B")

        record = inventory_service.get_inventory(stocked.id)
        assert record.quantity_on_hand == 80
        assert record.location_quantities() == {"WH-A": 70, "WH-B": 10}
        _assert_no_drift(stocked.id)

    def test_transfer_moves_between_locations(self, stocked):
        txn = inventory_service.add_transaction(
            stocked.id, transaction_type="transfer", quantity=40, from_location="WH-A", to_location="WH-B"
        )

        record = inventory_service.get_inventory(stocked.id)
        assert record.quantity_on_hand == 100
        assert record.location_quantities() == {"WH-A": 60, "WH-B": 40}
        assert txn.quantity == 40
        _assert_no_drift(stocked.id)

    def test_transfer_needs_stock_at_source(self, stocked):
        with pytest.raises(InsufficientQuantityAtLocationError):
            inventory_service.add_transaction(
                stocked.id, transaction_type="transfer", quantity=150, from_location="WH-A", to_location="WH-B"
            )

    def test_transfer_needs_distinct_locations(self, stocked):
        with pytest.raises(ValidationError):
            inventory_service.add_transaction(
                stocked.id, transaction_type="transfer", quantity=1, from_location="WH-A", to_location="WH-A"
            )
        with pytest.raises(ValidationError):
            inventory_service.add_transaction(stocked.id, transaction_type="transfer", quantity=1)

    def test_adjustment_requires_reason(self, stocked):
        with pytest.raises(ValidationError, match="reason"):
            inventory_service.add_transaction(stocked.id, transaction_type="adjustment", quantity=-5)

    def test_adjustments_are_signed(self, stocked):
        inventory_service.add_transaction(
            stocked.id, transaction_type="adjustment", quantity=-10, reason="damage"
        )
        inventory_service.add_transaction(
            stocked.id, transaction_type="adjustment", quantity=3, reason="cycle_count"
        )

        assert inventory_service.get_inventory(stocked.id).quantity_on_hand == 93
        _assert_no_drift(stocked.id)

    def test_adjustment_cannot_go_negative(self, stocked):
        with pytest.raises(NegativeQuantityError):
            inventory_service.add_transaction(
                stocked.id, transaction_type="adjustment", quantity=-500, reason="correction"
            )

    def test_write_off(self, stocked):
        txn = inventory_service.add_transaction(
            stocked.id, transaction_type="write_off", quantity=4, reason="expired"
        )

        assert txn.quantity == -4
        assert inventory_service.get_inventory(stocked.id).quantity_on_hand == 96

    def test_receipt_updates_average_cost(self, stocked):
        inventory_service.add_transaction(stocked.id, transaction_type="receipt", quantity=100, unit_cost=4.0)

        assert inventory_service.get_inventory(stocked.id).average_cost == pytest.approx(3.0)

    def test_fractional_quantities(self, stocked):
        for _ in range(10):
            inventory_service.add_transaction(stocked.id, transaction_type="issue", quantity=0.1)

        assert inventory_service.get_inventory(stocked.id).quantity_on_hand == pytest.approx(99.0)
        _assert_no_drift(stocked.id)

    @pytest.mark.parametrize("fields", [
        {"transaction_type": "borrow", "quantity": 1},
        {"transaction_type": "receipt", "quantity": 0},
        {"transaction_type": "receipt", "quantity": "lots"},
        {"transaction_type": "receipt", "quantity": 1, "reference_type": "invoice"},
        {"transaction_type": "receipt", "quantity": 1, "serial_numbers": ["SN-1"]},
        {"transaction_type": "receipt", "quantity": 1, "unit_status": "in_use"},
    ])
    def test_bad_input_rejected(self, stocked, fields):
        with pytest.raises(ValidationError):
            inventory_service.add_transaction(stocked.id, **fields)
        assert _txn_count(stocked.id) == 1

    def test_future_timestamp_rejected(self, stocked):
        with pytest.raises(ValidationError, match="future"):
            inventory_service.add_transaction(
                stocked.id, transaction_type="receipt", quantity=1,
                performed_at=(utcnow() + timedelta(days=1)).isoformat() + "Z",
            )

    def test_backdated_transaction_allowed(self, stocked):
        txn = inventory_service.add_transaction(
            stocked.id, transaction_type="receipt", quantity=1, performed_at="2024-03-01T08:00:00Z"
        )

        assert txn.performed_at.year == 2024

    def test_inactive_record_rejects_movements(self, stocked):
        inventory_service.create_or_update_inventory({"product_id": stocked.product_id, "is_active": False})

        with pytest.raises(ValidationError, match="inactive"):
            inventory_service.add_transaction(stocked.id, transaction_type="receipt", quantity=1)

    def test_transactions_are_append_only(self, stocked):
        txn = db.session.query(InventoryTransaction).filter_by(inventory_id=stocked.id).first()
        txn.quantity = 1000

        with pytest.raises(ValueError, match="append-only"):
            db.session.commit()
        db.session.rollback()


class TestReservations:

    def test_reserve_and_release(self, stocked):
        record = inventory_service.reserve_inventory(stocked.id, 30)
        assert record.quantity_reserved == 30
        assert record.quantity_available == 70

        record = inventory_service.release_reservation(stocked.id, 30)
        assert record.quantity_reserved == 0
        assert record.quantity_available == 100

    def test_reserved_stock_cannot_be_issued(self, stocked):
        inventory_service.reserve_inventory(stocked.id, 30)

        with pytest.raises(InsufficientQuantityError):
            inventory_service.add_transaction(stocked.id, transaction_type="issue", quantity=80)

    def test_cannot_reserve_more_than_available(self, stocked):
        with pytest.raises(InsufficientQuantityError):
            inventory_service.reserve_inventory(stocked.id, 101)

    def test_cannot_release_more_than_reserved(self, stocked):
        inventory_service.reserve_inventory(stocked.id, 5)
        with pytest.raises(ValidationError):
            inventory_service.release_reservation(stocked.id, 6)

    def test_adjustment_cannot_undercut_reservations(self, stocked):
        inventory_service.reserve_inventory(stocked.id, 90)

        with pytest.raises(InsufficientQuantityError):
            inventory_service.add_transaction(
                stocked.id, transaction_type="adjustment", quantity=-20, reason="cycle_count"
            )

    def test_reservation_quantity_must_be_positive(self, stocked):
        with pytest.raises(ValidationError):
            inventory_service.reserve_inventory(stocked.id, 0)


class TestReconciliation:

    def test_drift_detected_and_repaired(self, stocked):
        inventory_service.add_transaction(
            stocked.id, transaction_type="transfer", quantity=25, from_location="WH-A", to_location="WH-B"
        )
        record = inventory_service.get_inventory(stocked.id)
        record.quantity_on_hand = 5
        record.locations[0].quantity = 1
        db.session.commit()

        report = inventory_service.reconcile_inventory(stocked.id)
        assert report["drift"] is True
        assert report["repaired"] is False
        assert report["replayed"]["quantity_on_hand"] == 100

        repaired = inventory_service.reconcile_inventory(stocked.id, repair=True)
        assert repaired["repaired"] is True

        record = inventory_service.get_inventory(stocked.id)
        assert record.quantity_on_hand == 100
        assert record.location_quantities() == {"WH-A": 75, "WH-B": 25}
        _assert_no_drift(stocked.id)

    def test_reconcile_all(self, stocked, make_product, make_inventory):
        make_inventory(make_product("Second"), initial_quantity=3)

        reports = inventory_service.reconcile_all_inventory()

        assert len(reports) == 2
        assert not any(r["drift"] for r in reports)

    def test_replay_counts_transactions(self, stocked):
        inventory_service.add_transaction(stocked.id, transaction_type="issue", quantity=1)

        replay = inventory_service.replay_transactions(stocked.id)
        assert replay["transactions"] == 2
        assert replay["quantity_on_hand"] == 99


class TestListing:

    def test_list_by_location_and_low_stock(self, stocked, make_product, make_inventory):
        low = make_inventory(make_product("Low"), initial_quantity=2, location="TRUCK-7", reorder_point=10)

        at_truck = inventory_service.list_inventory(location="TRUCK-7")
        assert [r.id for r in at_truck] == [low.id]

        assert [r.id for r in inventory_service.list_inventory(low_stock=True)] == [low.id]
        assert [r.id for r in inventory_service.list_inventory(low_stock=False)] == [stocked.id]

    def test_list_transactions_filter_by_type(self, stocked):
        inventory_service.add_transaction(stocked.id, transaction_type="issue", quantity=1)

        issues = inventory_service.list_transactions(stocked.id, transaction_type="issue")
        assert [t.type for t in issues] == ["issue"]


# ---------------------------------------------------------------------------
# Concurrent writers
# ---------------------------------------------------------------------------

@pytest.fixture
def ledger_app(tmp_path):
    """App on a file-backed database, so each app context gets its own connection."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'ledger.sqlite3'}",
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'CONCURRENCY_RETRY_BACKOFF': 0,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def interleave(ledger_app, monkeypatch):
    """
    Commit a competing ledger call from a second app context right after the
    caller has read its first location row, i.e. while its snapshot is stale.
    """
    def _arm(competing):
        original = inventory_service._location_row
        fired = []

        def _location_row(record, location, *, create):
            row = original(record, location, create=create)
            if not fired:
                fired.append(location)
                with ledger_app.app_context():
                    competing()
            return row

        monkeypatch.setattr(inventory_service, "_location_row", _location_row)
        return fired
    return _arm


def _bulk_record(quantities):
    product = catalog_service.create_product(
        {"name": "Mineral Wool Board", "suppliers": [{"distributor_id": 100}]}
    )
    (first_location, first_qty), *rest = quantities.items()
    record, _ = inventory_service.create_or_update_inventory(
        {"product_id": product.id, "initial_quantity": first_qty, "location": first_location}
    )
    for location, qty in rest:
        inventory_service.add_transaction(
            record.id, transaction_type="receipt", quantity=qty, to_location=location
        )
    return record.id


class TestConcurrentWriters:

    def test_interleaved_issues_cannot_overdraw(self, interleave):
        record_id = _bulk_record({"A": 5})
        fired = interleave(lambda: inventory_service.add_transaction(
            record_id, transaction_type="issue", quantity=4, from_location="A"
        ))

        with pytest.raises(InsufficientQuantityError):
            inventory_service.add_transaction(record_id, transaction_type="issue", quantity=4, from_location="A")

        assert fired == ["A"]
        record = inventory_service.get_inventory(record_id)
        assert record.quantity_on_hand == 1
        assert record.location_quantities() == {"A": 1}
        assert [t.type for t in inventory_service.list_transactions(record_id)] == ["issue", "receipt"]
        _assert_no_drift(record_id)

    def test_interleaved_transfers_cannot_overdraw_source(self, interleave):
        record_id = _bulk_record({"A": 5, "B": 1})
        interleave(lambda: inventory_service.add_transaction(
            record_id, transaction_type="transfer", quantity=4, from_location="A", to_location="B"
        ))

        with pytest.raises(InsufficientQuantityAtLocationError):
            inventory_service.add_transaction(
                record_id, transaction_type="transfer", quantity=4, from_location="A", to_location="B"
            )

        record = inventory_service.get_inventory(record_id)
        assert record.quantity_on_hand == 6
        assert record.location_quantities() == {"A": 1, "B": 5}
        assert len(inventory_service.list_transactions(record_id, transaction_type="transfer")) == 1
        _assert_no_drift(record_id)

    def test_stale_transfer_into_new_location_is_retried(self, interleave):
        record_id = _bulk_record({"A": 5})
        interleave(lambda: inventory_service.add_transaction(
            record_id, transaction_type="transfer", quantity=1, from_location="A", to_location="C"
        ))

        inventory_service.add_transaction(
            record_id, transaction_type="transfer", quantity=4, from_location="A", to_location="C"
        )

        record = inventory_service.get_inventory(record_id)
        assert record.quantity_on_hand == 5
        assert record.location_quantities() == {"C": 5}
        assert len(inventory_service.list_transactions(record_id, transaction_type="transfer")) == 2
        _assert_no_drift(record_id)


class TestRunWithRetry:

    @staticmethod
    def _flaky(error, failures):
        calls = []

        def _op():
            calls.append(1)
            if len(calls) <= failures:
                raise error
            return "saved"
        return _op, calls

    def test_stale_write_is_retried(self, db_session):
        op, calls = self._flaky(StaleDataError("version mismatch"), failures=1)

        assert run_with_retry(op) == "saved"
        assert len(calls) == 2

    def test_duplicate_insert_is_retried(self, db_session):
        error = IntegrityError("INSERT INTO inventory_locations", {}, Exception("UNIQUE constraint failed"))
        op, calls = self._flaky(error, failures=1)

        assert run_with_retry(op) == "saved"
        assert len(calls) == 2

    def test_gives_up_after_attempts(self, db_session):
        op, calls = self._flaky(StaleDataError("version mismatch"), failures=10)

        with pytest.raises(StaleDataError):
            run_with_retry(op, attempts=3)
        assert len(calls) == 3

    def test_business_errors_are_not_retried(self, db_session):
        op, calls = self._flaky(InsufficientQuantityError("only 1 available"), failures=10)

        with pytest.raises(InsufficientQuantityError):
            run_with_retry(op)
        assert len(calls) == 1
