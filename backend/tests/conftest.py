"""
Pytest fixtures for materials backend tests.

Provides the app on an in-memory database, a per-test table wipe, and
factories for products, discounts and inventory records.
"""

import pytest

from materials import create_app
from materials.extensions import db
from materials.services import catalog_service, discount_service, inventory_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'CONCURRENCY_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def property_definitions(db_session):
    """Seed the default property definitions."""
    return catalog_service.seed_property_definitions()


@pytest.fixture(scope='function')
def no_apply_on_save(app, monkeypatch):
    """Stage discounts without re-pricing on create/update."""
    monkeypatch.setitem(app.config, 'DISCOUNTS_APPLY_ON_SAVE', False)


@pytest.fixture(scope='function')
def make_product(db_session, property_definitions):
    """Factory: product with one product-level supplier offer."""
    def _make(name="Fiberglass Pipe Insulation", *, list_price=10.0, distributor_id=100, **fields):
        payload = {
            "name": name,
            "suppliers": [{"distributor_id": distributor_id, "list_price": list_price}],
        }
        payload.update(fields)
        return catalog_service.create_product(payload)
    return _make


@pytest.fixture(scope='function')
def pipe_insulation(make_product):
    """Pricebook page: fiberglass pipe insulation in two diameters."""
    return make_product(
        "Fiberglass Pipe Insulation 1in Wall",
        category="Insulation",
        pricebook_group_code="FGP",
        properties={"categoryGroup": "FG-PIPE"},
        variant_keys=["diameter"],
        variants=[
            {"sku": "FGP-050", "name": "1/2\" ID", "properties": {"diameter": "1/2"},
             "pricing": {"list_price": 3.69}},
            {"sku": "FGP-075", "name": "3/4\" ID", "properties": {"diameter": "3/4"},
             "pricing": {"list_price": 4.12}},
        ],
    )


@pytest.fixture(scope='function')
def make_discount(db_session):
    """Factory: returns (discount, apply_result)."""
    def _make(**fields):
        payload = {
            "name": "Test discount",
            "discount_type": "category",
            "discount_percent": 10.0,
            "effective_date": "2024-01-01",
        }
        payload.update(fields)
        return discount_service.create_discount(payload)
    return _make


@pytest.fixture(scope='function')
def make_inventory(db_session):
    """Factory: inventory record for a product."""
    def _make(product, **fields):
        payload = {"product_id": product.id}
        payload.update(fields)
        record, _created = inventory_service.create_or_update_inventory(payload)
        return record
    return _make
