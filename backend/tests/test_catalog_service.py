"""
Catalog store tests: product invariants, property normalization, variant
sync, price history and the purchasing (supplier offer) contract.
"""

import pytest

from materials.extensions import db
from materials.models import PriceHistoryEvent
from materials.services import catalog_service
from materials.services.catalog_service import ProductQuery
from materials.validation import ConflictError, NotFoundError, ValidationError


class TestProductInvariants:

    def test_product_requires_a_supplier_offer(self, property_definitions):
        with pytest.raises(ValidationError, match="supplier offer"):
            catalog_service.create_product({"name": "No supplier"})

    def test_offer_requires_distributor(self, make_product):
        with pytest.raises(ValidationError):
            make_product("Bad offer", suppliers=[{"list_price": 4.0}])

    def test_unknown_property_rejected(self, make_product):
        with pytest.raises(ValidationError, match="Unknown property: flavor"):
            make_product("Odd", properties={"flavor": "mint"})

    def test_duplicate_variant_key_tuple_conflicts(self, make_product):
        with pytest.raises(ConflictError, match="diameter=1/2"):
            make_product(
                "Dupes",
                variant_keys=["diameter"],
                variants=[
                    {"sku": "A", "properties": {"diameter": "1/2"}},
                    {"sku": "B", "properties": {"diameter": "1/2"}},
                ],
            )

    def test_variant_missing_key_rejected(self, make_product):
        with pytest.raises(ValidationError, match="missing variant keys"):
            make_product(
                "Missing",
                variant_keys=["diameter", "thickness"],
                variants=[{"sku": "A", "properties": {"diameter": "1/2"}}],
            )

    def test_unknown_variant_key_rejected(self, make_product):
        with pytest.raises(ValidationError, match="Unknown variant keys"):
            make_product("Bad keys", variant_keys=["flavor"])

    def test_failed_create_writes_nothing(self, make_product):
        with pytest.raises(ConflictError):
            make_product(
                "Dupes",
                variant_keys=["diameter"],
                variants=[
                    {"sku": "A", "properties": {"diameter": "1"}},
                    {"sku": "B", "properties": {"diameter": "1"}},
                ],
            )

        assert catalog_service.list_products()["count"] == 0

    def test_negative_price_rejected(self, make_product):
        with pytest.raises(ValidationError):
            make_product("Negative", list_price=-1.0)


class TestProperties:

    def test_alias_resolves_to_canonical_key_with_normalized_value(self, make_product):
        product = make_product("Pipe", properties={"pipe_diameter": "1-1/2\"", "material": "Fiberglass"})

        data = product.to_dict()
        assert data["properties"] == {"diameter": "1-1/2\"", "material": "Fiberglass"}
        assert data["properties_normalized"]["diameter"] == pytest.approx(38.1)
        assert data["property_units"] == {"diameter": "in"}

    def test_definition_unit_applies_to_bare_numbers(self, make_product):
        product = make_product("Pipe", properties={"length": 3})

        row = product.property_rows[0]
        assert row.value_text == "3"
        assert row.normalized_value == pytest.approx(914.4)
        assert row.unit == "ft"

    def test_variant_keys_are_canonicalized(self, make_product):
        product = make_product(
            "Aliased keys",
            variant_keys=["pipe_size"],
            variants=[{"sku": "A", "properties": {"pipe_size": "2"}}],
        )

        assert product.variant_keys == ["diameter"]
        assert product.variants[0].properties == {"diameter": "2"}

    def test_seed_is_idempotent(self, property_definitions):
        assert property_definitions > 0
        assert catalog_service.seed_property_definitions() == 0

    def test_create_property_definition(self, property_definitions):
        definition = catalog_service.create_property_definition(
            {"key": "r_value", "label": "R-Value", "category": "performance", "aliases": ["rvalue"]}
        )

        assert definition.id is not None
        assert "r_value" in [d.key for d in catalog_service.list_property_definitions()]

    def test_duplicate_property_definition_conflicts(self, property_definitions):
        with pytest.raises(ConflictError):
            catalog_service.create_property_definition({"key": "diameter"})

    def test_property_definition_category_checked(self, property_definitions):
        with pytest.raises(ValidationError):
            catalog_service.create_property_definition({"key": "r_value", "category": "magic"})


class TestUpdates:

    def test_omitted_variants_are_deactivated(self, pipe_insulation):
        keep = pipe_insulation.variants[0]

        product = catalog_service.update_product(pipe_insulation.id, {"variants": [{"id": keep.id}]})

        assert [v.is_active for v in product.variants] == [True, False]

    def test_deactivated_variant_frees_its_key_tuple(self, pipe_insulation):
        keep = pipe_insulation.variants[0]
        catalog_service.update_product(pipe_insulation.id, {"variants": [{"id": keep.id}]})

        product = catalog_service.update_product(
            pipe_insulation.id,
            {"variants": [{"id": keep.id}, {"sku": "FGP-075B", "properties": {"diameter": "3/4"}}]},
        )

        assert len([v for v in product.variants if v.is_active]) == 2

    def test_unknown_variant_id_rejected(self, pipe_insulation):
        with pytest.raises(ValidationError, match="Unknown variant id"):
            catalog_service.update_product(pipe_insulation.id, {"variants": [{"id": 9999}]})

    def test_price_edit_records_history(self, pipe_insulation):
        before = len(catalog_service.list_price_history(pipe_insulation.id))
        offer = pipe_insulation.supplier_offers[0]

        catalog_service.update_product(
            pipe_insulation.id,
            {"suppliers": [{"id": offer.id, "list_price": 12.5}]},
            updated_by=4,
        )

        events = catalog_service.list_price_history(pipe_insulation.id)
        assert len(events) == before + 1
        assert events[0].notes == "catalog edit"
        assert events[0].applied_by == 4
        assert events[0].supplier_snapshots[0]["list_price"] == 12.5

    def test_non_price_edit_records_no_history(self, pipe_insulation):
        before = len(catalog_service.list_price_history(pipe_insulation.id))

        catalog_service.update_product(pipe_insulation.id, {"notes": "Reprinted page 12"})

        assert len(catalog_service.list_price_history(pipe_insulation.id)) == before

    def test_product_must_keep_an_offer(self, pipe_insulation):
        with pytest.raises(ValidationError):
            catalog_service.update_product(pipe_insulation.id, {"suppliers": []})

        assert len(catalog_service.get_product(pipe_insulation.id).supplier_offers) == 1

    def test_update_missing_product(self, property_definitions):
        with pytest.raises(NotFoundError):
            catalog_service.update_product(404, {"notes": "x"})

    def test_deactivate_is_soft(self, pipe_insulation):
        catalog_service.deactivate_product(pipe_insulation.id)

        assert catalog_service.get_product(pipe_insulation.id).is_active is False
        assert catalog_service.list_products()["count"] == 0
        assert catalog_service.list_products(ProductQuery(active_only=False))["count"] == 1

    def test_price_history_is_append_only(self, pipe_insulation):
        event = db.session.query(PriceHistoryEvent).filter_by(product_id=pipe_insulation.id).first()
        event.notes = "rewritten"

        with pytest.raises(ValueError, match="append-only"):
            db.session.commit()
        db.session.rollback()


class TestFindProducts:

    def test_filters(self, make_product):
        a = make_product("Elbow 90", category="Fittings", pricebook_group_code="FIT", manufacturer_id=3)
        b = make_product("Elbow 45", category="Fittings", properties={"categoryGroup": "PVC"})
        make_product("Pipe Wrap", category="Insulation")

        def names(**kw):
            return [p.name for p in catalog_service.find_products(ProductQuery(**kw))]

        assert names(category="Fittings") == ["Elbow 45", "Elbow 90"]
        assert names(category_group="PVC") == [b.name]
        assert names(pricebook_group_code="FIT") == [a.name]
        assert names(supplier_id=3) == [a.name]
        assert names(search="elbow") == ["Elbow 45", "Elbow 90"]
        assert names(ids=(a.id,)) == [a.name]


class TestSupplierOffers:

    @pytest.fixture
    def two_suppliers(self, make_product):
        return make_product(
            "Mineral Wool Board",
            suppliers=[
                {"distributor_id": 100, "list_price": 10.0, "net_price": 8.0},
                {"distributor_id": 200, "list_price": 9.0, "net_price": 7.5, "supplier_part_number": "MW-2"},
            ],
        )

    def test_cheapest_net_price_selected(self, two_suppliers):
        offer = catalog_service.select_offer(two_suppliers.id)
        assert offer.distributor_id == 200

    def test_preferred_offer_wins(self, make_product):
        product = make_product(
            "Preferred",
            suppliers=[
                {"distributor_id": 100, "net_price": 8.0, "is_preferred": True},
                {"distributor_id": 200, "net_price": 7.5},
            ],
        )

        assert catalog_service.select_offer(product.id).distributor_id == 100

    def test_variant_offers_override_product_offers(self, make_product):
        product = make_product(
            "Variant supplied",
            variants=[{"sku": "V1", "suppliers": [{"distributor_id": 300, "list_price": 2.0}]}, {"sku": "V2"}],
        )
        v1, v2 = product.variants

        assert [o.distributor_id for o in catalog_service.get_supplier_offers(product.id, v1.id)] == [300]
        assert [o.distributor_id for o in catalog_service.get_supplier_offers(product.id, v2.id)] == [100]

    def test_unknown_variant_not_found(self, two_suppliers):
        with pytest.raises(NotFoundError):
            catalog_service.get_supplier_offers(two_suppliers.id, 9999)

    def test_group_lines_by_supplier(self, two_suppliers, make_product):
        other = make_product("Jacketing", distributor_id=100, list_price=4.0)

        groups = catalog_service.group_lines_by_supplier([
            {"product_id": two_suppliers.id, "quantity": 10},
            {"product_id": other.id, "quantity": 3},
        ])

        assert [g["distributor_id"] for g in groups] == [100, 200]
        assert groups[0]["total"] == pytest.approx(12.0)
        assert groups[1]["lines"][0]["supplier_part_number"] == "MW-2"
        assert groups[1]["lines"][0]["extended_price"] == pytest.approx(75.0)

    def test_group_lines_validates_quantity(self, two_suppliers):
        with pytest.raises(ValidationError, match="quantity"):
            catalog_service.group_lines_by_supplier([{"product_id": two_suppliers.id, "quantity": 0}])
