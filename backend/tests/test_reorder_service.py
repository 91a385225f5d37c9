"""Low-stock detection and reorder suggestions."""

from materials.services import inventory_service
from materials.services.reorder_service import is_low_stock, list_low_stock, suggested_order_quantity


def test_below_reorder_point_is_low(make_product, make_inventory):
    record = make_inventory(make_product("Duct Tape"), initial_quantity=5, reorder_point=20, reorder_quantity=48)

    assert is_low_stock(record)
    assert suggested_order_quantity(record) == 48


def test_shortfall_when_no_reorder_quantity(make_product, make_inventory):
    record = make_inventory(make_product("Mastic"), initial_quantity=5, reorder_point=20)

    assert suggested_order_quantity(record) == 15


def test_at_reorder_point_is_not_low(make_product, make_inventory):
    record = make_inventory(make_product("Banding"), initial_quantity=20, reorder_point=20)

    assert not is_low_stock(record)


def test_no_reorder_point_is_never_low(make_product, make_inventory):
    record = make_inventory(make_product("Staples"), initial_quantity=0)

    assert not is_low_stock(record)


def test_serialized_records_are_never_low(make_product, make_inventory):
    record = make_inventory(make_product("Threader"), inventory_type="serialized", reorder_point=5)

    assert not is_low_stock(record)


def test_list_low_stock_tracks_movements(make_product, make_inventory):
    record = make_inventory(make_product("Adhesive"), initial_quantity=30, reorder_point=20)
    assert list_low_stock() == []

    inventory_service.add_transaction(record.id, transaction_type="issue", quantity=15)

    items = list_low_stock()
    assert [i["id"] for i in items] == [record.id]
    assert items[0]["suggested_order_quantity"] == 5
    assert items[0]["is_low_stock"] is True
