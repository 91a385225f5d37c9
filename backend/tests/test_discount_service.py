"""
Discount engine tests.

Covers selector resolution per discount type, the net price formula,
idempotent re-runs, price history, and batch application.
"""

import pytest

from materials.extensions import db
from materials.models import Discount, PriceHistoryEvent
from materials.services import catalog_service, discount_service
from materials.services.discount_service import InvalidRuleError
from materials.validation import ConflictError, NotFoundError, ValidationError


def _history_count(product_id):
    return db.session.query(PriceHistoryEvent).filter_by(product_id=product_id).count()


class TestApplyDiscount:
    """Re-pricing products matched by one rule."""

    def test_category_group_discount_reprices_variants_and_offers(self, pipe_insulation, make_discount):
        discount, result = make_discount(
            name="FG pipe page 12",
            category_group="FG-PIPE",
            discount_percent=67.75,
        )

        assert result.status == "applied"
        assert result.products_updated == 1
        assert result.variants_updated == 2

        product = catalog_service.get_product(pipe_insulation.id)
        half_inch, three_quarter = product.variants
        assert half_inch.net_price == pytest.approx(1.190025)
        assert half_inch.discount_percent == 67.75
        assert three_quarter.net_price == pytest.approx(4.12 * 0.3225)
        assert product.supplier_offers[0].net_price == pytest.approx(3.225)
        assert product.discount_percent == 67.75
        assert product.discount_effective_date == discount.effective_date

    def test_rerun_is_idempotent(self, pipe_insulation, make_discount):
        discount, _ = make_discount(category_group="FG-PIPE", discount_percent=67.75)
        events_after_first = _history_count(pipe_insulation.id)
        net_after_first = catalog_service.get_product(pipe_insulation.id).variants[0].net_price

        result = discount_service.apply_discount(discount.id)

        assert result.status == "applied"
        assert result.products_updated == 0
        assert result.variants_updated == 2
        assert _history_count(pipe_insulation.id) == events_after_first
        assert catalog_service.get_product(pipe_insulation.id).variants[0].net_price == net_after_first

    def test_discounts_replace_rather_than_stack(self, pipe_insulation, make_discount):
        make_discount(category_group="FG-PIPE", discount_percent=40.0)
        make_discount(
            name="Job special",
            discount_type="product",
            product_id=pipe_insulation.id,
            discount_percent=50.0,
        )

        variant = catalog_service.get_product(pipe_insulation.id).variants[0]
        assert variant.net_price == pytest.approx(3.69 * 0.5)
        assert variant.discount_percent == 50.0

    def test_apply_records_price_history_with_snapshots(self, pipe_insulation, make_discount):
        discount, _ = make_discount(category_group="FG-PIPE", discount_percent=25.0)

        events = catalog_service.list_price_history(pipe_insulation.id)
        latest = events[0]
        assert latest.discount_id == discount.id
        assert latest.discount_percent == 25.0
        assert {s["sku"] for s in latest.variant_snapshots} == {"FGP-050", "FGP-075"}
        assert latest.supplier_snapshots[0]["net_price"] == pytest.approx(7.5)

    def test_bookkeeping_written_to_discount(self, pipe_insulation, make_discount):
        discount, _ = make_discount(category_group="FG-PIPE", discount_percent=25.0)

        refreshed = discount_service.get_discount(discount.id)
        assert refreshed.last_applied is not None
        assert refreshed.products_affected == 2
        assert refreshed.discount_percent == 25.0

    def test_inactive_products_are_not_repriced(self, pipe_insulation, make_discount):
        catalog_service.deactivate_product(pipe_insulation.id)

        _, result = make_discount(category_group="FG-PIPE", discount_percent=25.0)

        assert result.products_updated == 0
        assert catalog_service.get_product(pipe_insulation.id).variants[0].net_price is None

    def test_variants_without_list_price_are_skipped(self, make_product, make_discount):
        product = make_product(
            "Duct Wrap",
            category="Insulation",
            variants=[{"sku": "DW-1"}, {"sku": "DW-2", "pricing": {"list_price": 20.0}}],
        )

        _, result = make_discount(category="Insulation", discount_percent=10.0)

        assert result.variants_updated == 1
        unpriced, priced = catalog_service.get_product(product.id).variants
        assert unpriced.net_price is None
        assert priced.net_price == pytest.approx(18.0)

    def test_unknown_discount_raises_not_found(self, db_session):
        with pytest.raises(NotFoundError):
            discount_service.apply_discount(999)


class TestSelectors:
    """Each discount type resolves to the right products."""

    def test_category_and_group_selectors_combine(self, make_product, make_discount):
        match = make_product("FG Pipe", category="Insulation", properties={"categoryGroup": "FG-PIPE"})
        other_group = make_product("Board", category="Insulation", properties={"categoryGroup": "BOARD"})
        other_category = make_product("Jacketing", category="Jacketing", properties={"categoryGroup": "FG-PIPE"})

        make_discount(category="Insulation", category_group="FG-PIPE", discount_percent=20.0)

        assert catalog_service.get_product(match.id).discount_percent == 20.0
        assert catalog_service.get_product(other_group.id).discount_percent is None
        assert catalog_service.get_product(other_category.id).discount_percent is None

    def test_supplier_discount_matches_manufacturer_on_product_or_offer(self, make_product, make_discount):
        primary = make_product("Primary", manufacturer_id=7)
        via_offer = make_product(
            "Via offer", suppliers=[{"distributor_id": 100, "manufacturer_id": 7, "list_price": 5.0}]
        )
        unrelated = make_product("Unrelated", manufacturer_id=8)

        make_discount(discount_type="supplier", supplier_id=7, discount_percent=15.0)

        assert catalog_service.get_product(primary.id).discount_percent == 15.0
        assert catalog_service.get_product(via_offer.id).supplier_offers[0].net_price == pytest.approx(4.25)
        assert catalog_service.get_product(unrelated.id).discount_percent is None

    def test_group_discount_falls_back_to_code(self, make_product, make_discount):
        product = make_product("Grouped", pricebook_group_code="G-100")

        make_discount(discount_type="group", code="G-100", discount_percent=30.0)

        assert catalog_service.get_product(product.id).discount_percent == 30.0

    def test_universal_discount_matches_all_active_products(self, make_product, make_discount):
        a = make_product("A")
        b = make_product("B")

        _, result = make_discount(discount_type="universal", discount_percent=5.0)

        assert result.products_updated == 2
        assert catalog_service.get_product(a.id).discount_percent == 5.0
        assert catalog_service.get_product(b.id).discount_percent == 5.0

    @pytest.mark.parametrize("fields", [
        {"discount_type": "category"},
        {"discount_type": "product"},
        {"discount_type": "supplier"},
        {"discount_type": "group"},
        {"discount_type": "customer", "customer_id": 3},
    ])
    def test_missing_selector_raises_invalid_rule(self, make_discount, no_apply_on_save, fields):
        discount, result = make_discount(**fields)
        assert result is None

        with pytest.raises(InvalidRuleError):
            discount_service.apply_discount(discount.id)

    def test_staged_rule_saves_with_failed_apply_result(self, make_discount):
        discount, result = make_discount(discount_type="group")

        assert discount.id is not None
        assert result.status == "failed"
        assert "category_group or code" in result.error


class TestInactiveRules:
    """Inactive or out-of-window rules are reported, not applied."""

    def test_inactive_discount_reports_status(self, pipe_insulation, make_discount):
        discount, result = make_discount(category_group="FG-PIPE", is_active=False)

        assert result.status == "inactive"
        assert result.products_updated == 0
        assert catalog_service.get_product(pipe_insulation.id).discount_percent is None

    def test_future_discount_is_outside_window(self, pipe_insulation, make_discount):
        discount, result = make_discount(category_group="FG-PIPE", effective_date="2999-01-01")

        assert result.status == "inactive"
        assert not discount_service.get_discount(discount.id).is_in_effect()

    def test_expired_discount_is_outside_window(self, pipe_insulation, make_discount):
        discount, result = make_discount(
            category_group="FG-PIPE", effective_date="2020-01-01", expires_date="2020-12-31"
        )

        assert result.status == "inactive"

    def test_deactivate_keeps_prices(self, pipe_insulation, make_discount):
        discount, _ = make_discount(category_group="FG-PIPE", discount_percent=25.0)

        deactivated = discount_service.deactivate_discount(discount.id)

        assert deactivated.is_active is False
        assert db.session.get(Discount, discount.id) is not None
        assert discount.id not in [d.id for d in discount_service.find_active_discounts()]
        assert catalog_service.get_product(pipe_insulation.id).discount_percent == 25.0


class TestApplyAll:
    """Batch application over every active rule."""

    def test_oldest_effective_first_so_latest_wins(self, pipe_insulation, make_discount, no_apply_on_save):
        newer, _ = make_discount(
            name="Mid-year", discount_type="product", product_id=pipe_insulation.id,
            discount_percent=25.0, effective_date="2024-06-01",
        )
        older, _ = make_discount(
            name="Annual", category_group="FG-PIPE", discount_percent=40.0, effective_date="2024-01-01",
        )

        batch = discount_service.apply_all_discounts()

        assert [r.discount_id for r in batch.results] == [older.id, newer.id]
        assert batch.discounts_processed == 2
        assert catalog_service.get_product(pipe_insulation.id).discount_percent == 25.0

    def test_invalid_rule_does_not_stop_the_batch(self, pipe_insulation, make_discount, no_apply_on_save):
        broken, _ = make_discount(name="Broken", discount_type="group", effective_date="2024-01-01")
        good, _ = make_discount(category_group="FG-PIPE", discount_percent=10.0, effective_date="2024-02-01")

        batch = discount_service.apply_all_discounts()

        by_id = {r.discount_id: r for r in batch.results}
        assert by_id[broken.id].status == "failed"
        assert by_id[good.id].status == "applied"
        assert batch.total_products_updated == 1
        assert batch.total_variants_updated == 2

    def test_inactive_rules_are_not_processed(self, pipe_insulation, make_discount, no_apply_on_save):
        make_discount(category_group="FG-PIPE", is_active=False)

        batch = discount_service.apply_all_discounts()

        assert batch.discounts_processed == 0
        assert batch.to_dict()["results"] == []


class TestDiscountCrud:
    """Rule validation and edits."""

    def test_percent_out_of_range_rejected(self, make_discount):
        with pytest.raises(ValidationError):
            make_discount(category="Insulation", discount_percent=150)

    def test_unknown_type_rejected(self, make_discount):
        with pytest.raises(ValidationError):
            make_discount(discount_type="seasonal")

    def test_expires_before_effective_rejected(self, make_discount):
        with pytest.raises(ValidationError):
            make_discount(category="Insulation", effective_date="2024-06-01", expires_date="2024-01-01")

    def test_bookkeeping_fields_not_writable(self, make_discount):
        with pytest.raises(ValidationError):
            make_discount(category="Insulation", products_affected=12)

    def test_group_page_pair_is_unique(self, make_discount, no_apply_on_save):
        make_discount(category_group="FG-PIPE", pricebook_page_number="12")

        with pytest.raises(ConflictError):
            make_discount(category_group="FG-PIPE", pricebook_page_number="12")

    def test_update_reapplies_new_percent(self, pipe_insulation, make_discount):
        discount, _ = make_discount(category_group="FG-PIPE", discount_percent=25.0)

        updated, result = discount_service.update_discount(discount.id, {"discount_percent": 50.0})

        assert updated.discount_percent == 50.0
        assert result.products_updated == 1
        variant = catalog_service.get_product(pipe_insulation.id).variants[0]
        assert variant.net_price == pytest.approx(1.845)

    def test_update_checks_merged_window(self, make_discount, no_apply_on_save):
        discount, _ = make_discount(category="Insulation", effective_date="2024-06-01")

        with pytest.raises(ValidationError):
            discount_service.update_discount(discount.id, {"expires_date": "2024-01-01"})

    def test_list_filters(self, make_discount, no_apply_on_save):
        make_discount(name="Cat", category="Insulation")
        make_discount(name="Universal", discount_type="universal", is_active=False)

        assert [d.name for d in discount_service.list_discounts(discount_type="category")] == ["Cat"]
        assert [d.name for d in discount_service.list_discounts(is_active=False)] == ["Universal"]
        assert [d.name for d in discount_service.list_discounts(category="Insulation")] == ["Cat"]
