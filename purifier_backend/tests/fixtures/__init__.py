"""
Shared Test Fixtures
====================

Available Fixtures:
------------------
- mock_gateway: payment gateway endpoint mocked with ``responses``
- gateway / verifier: real clients pointed at the mocked gateway
- notifier: DatabaseNotifier recording intents as Notification rows
- rental_service / order_service: services wired with the above
- territory, customer, technician, owner, admin_user, product: domain objects
- principal: builds a Principal from a user
- freeze_time: time freezing utility

Usage:
-----
def test_example(order_service, customer, product):
    order = order_service.create(customer, product, "purchase")
"""

from datetime import datetime

import pytest
import responses as responses_lib
from freezegun import freeze_time as freezegun_freeze_time

from main.factories import (
    AdminFactory,
    CustomerFactory,
    ProductFactory,
    TechnicianFactory,
    TerritoryFactory,
    TerritoryOwnerFactory,
)
from main.gateway import PaymentGateway
from main.services.notifications import DatabaseNotifier
from main.services.order_service import OrderService
from main.services.payment_verifier import PaymentVerifier
from main.services.rental_service import RentalService
from tests.mocks.gateway import GatewayMock
from user.permissions import Principal


# ============================================================================
# EXTERNAL SERVICE MOCKS
# ============================================================================


@pytest.fixture
def responses():
    """Activated ``responses`` mock; unmatched requests raise ConnectionError."""
    with responses_lib.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


@pytest.fixture
def mock_gateway(responses):
    mock = GatewayMock()
    mock.register_responses(responses)
    return mock


# ============================================================================
# SERVICE FIXTURES
# ============================================================================


@pytest.fixture
def gateway(mock_gateway):
    return PaymentGateway(
        base_url=mock_gateway.api_url,
        key_id=mock_gateway.key_id,
        key_secret=mock_gateway.secret,
        timeout=5,
    )


@pytest.fixture
def verifier(mock_gateway):
    return PaymentVerifier(mock_gateway.secret)


@pytest.fixture
def notifier():
    return DatabaseNotifier()


@pytest.fixture
def rental_service(gateway, verifier, notifier):
    return RentalService(gateway=gateway, verifier=verifier, notifier=notifier)


@pytest.fixture
def order_service(gateway, verifier, notifier, rental_service):
    return OrderService(
        gateway=gateway,
        verifier=verifier,
        notifier=notifier,
        rental_service=rental_service,
    )


# ============================================================================
# DOMAIN FIXTURES
# ============================================================================


@pytest.fixture
def territory(db):
    return TerritoryFactory(name="Indiranagar")


@pytest.fixture
def customer(territory):
    return CustomerFactory(territory=territory)


@pytest.fixture
def technician(territory):
    return TechnicianFactory(territory=territory)


@pytest.fixture
def owner(territory):
    owner = TerritoryOwnerFactory(territory=territory)
    territory.owner = owner
    territory.save()
    return owner


@pytest.fixture
def admin_user(db):
    return AdminFactory()


@pytest.fixture
def product(db):
    return ProductFactory()


@pytest.fixture
def principal():
    return Principal.from_user


# ============================================================================
# TIME FIXTURES
# ============================================================================


@pytest.fixture
def freeze_time():
    """Freeze time utility"""

    def _freeze(time_to_freeze=None):
        if time_to_freeze is None:
            time_to_freeze = datetime.now()
        return freezegun_freeze_time(time_to_freeze)

    return _freeze


# ============================================================================
# CLEANUP FIXTURES
# ============================================================================


@pytest.fixture(autouse=True)
def clear_cache():
    """Clear Django cache around each test"""
    from django.core.cache import cache

    cache.clear()
    yield
    cache.clear()
