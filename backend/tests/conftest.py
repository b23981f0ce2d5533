"""
Pytest fixtures for TPV backend tests.

Provides test database setup, two tenants with plans and operators, an
activated terminal and back-office auth helpers.
"""

from datetime import datetime

import pytest
from tpvcore import create_app
from tpvcore.extensions import db
from tpvcore.models import (
    Organization, Subscription, SubscriptionAddOn, SubscriptionPlan, Warehouse,
)
from tpvcore.services import device_service, operator_service
from tpvcore.services.backoffice_auth_service import issue_backoffice_token

# Fixed clock for service-level tests
T0 = datetime(2026, 3, 2, 9, 0, 0)

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'BCRYPT_ROUNDS': 4,
    'SECRET_KEY': 'test-secret-key',
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

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
        # Clear all data but keep schema (Core deletes bypass the fiscal immutability hooks)
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        db.session.expunge_all()


def make_tenant(session, name, code, tax_id, plan, status="active"):
    """Create an organization subscribed to `plan`."""
    org = Organization(name=name, code=code, tax_id=tax_id, is_active=True)
    session.add(org)
    session.flush()
    session.add(Subscription(org_id=org.id, plan_id=plan.id, status=status, devices_in_use=0))
    session.commit()
    return org


def add_addon(session, org, kind, quantity):
    subscription = session.query(Subscription).filter_by(org_id=org.id).one()
    slug = "tpv-extra" if kind == "device" else "usuarios-extra"
    session.add(SubscriptionAddOn(subscription_id=subscription.id, slug=slug, kind=kind, quantity=quantity))
    session.commit()


@pytest.fixture(scope='function')
def basic_plan(db_session):
    """1 terminal, 3 concurrent operators."""
    plan = SubscriptionPlan(code="basic", name="Basic", max_devices=1, max_concurrent_sessions=3)
    db_session.add(plan)
    db_session.commit()
    return plan


@pytest.fixture(scope='function')
def unlimited_plan(db_session):
    plan = SubscriptionPlan(code="enterprise", name="Enterprise", max_devices=None, max_concurrent_sessions=None)
    db_session.add(plan)
    db_session.commit()
    return plan


@pytest.fixture(scope='function')
def org_a(db_session, unlimited_plan):
    """Create Organization A (first tenant)."""
    return make_tenant(db_session, "Org A - Bar Pepe", "PEPE", "B12345678", unlimited_plan)


@pytest.fixture(scope='function')
def org_b(db_session, unlimited_plan):
    """Create Organization B (second tenant)."""
    return make_tenant(db_session, "Org B - Cafe Luna", "LUNA", "B87654321", unlimited_plan)


@pytest.fixture(scope='function')
def warehouse_a(db_session, org_a):
    warehouse = Warehouse(org_id=org_a.id, name="Main", code="MAIN")
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


@pytest.fixture(scope='function')
def operator_a(db_session, org_a):
    return operator_service.create_operator(org_a.id, "Ana", "1234")


@pytest.fixture(scope='function')
def operator_a2(db_session, org_a):
    return operator_service.create_operator(org_a.id, "Luis", "5678")


@pytest.fixture(scope='function')
def operator_b(db_session, org_b):
    return operator_service.create_operator(org_b.id, "Marta", "1234")


def activate(org_id, name="Barra 1", now=T0, **kwargs):
    """Issue a token and activate a terminal with it; returns ActivationResult."""
    _, code = device_service.issue_activation_token(org_id, now=now)
    return device_service.activate_device(code, name, now=now, **kwargs)


@pytest.fixture(scope='function')
def device_a(db_session, org_a):
    """Activated terminal in Organization A (result carries the secret)."""
    return activate(org_a.id)


@pytest.fixture(scope='function')
def device_b(db_session, org_b):
    return activate(org_b.id, name="Terraza")


def backoffice_headers(org_id, user_id=1) -> dict:
    """Helper to create Authorization headers for back-office endpoints."""
    return {'Authorization': f'Bearer {issue_backoffice_token(org_id, user_id)}'}


def device_headers(device_id, secret) -> dict:
    return {'X-TPV-Id': device_id, 'X-TPV-Secret': secret}
