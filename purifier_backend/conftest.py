"""
conftest.py - Pytest Configuration
===================================

Django test settings and collection tweaks shared by every test module.
Shared fixtures live in tests/fixtures/__init__.py.

Markers:
-------
- unit: Fast, database-free tests
- integration: Service tests hitting the database
- e2e: Full order-to-rental flows

Running Tests:
-------------
pytest                          # Run all tests
pytest -m "not e2e"             # Skip end-to-end flows
pytest -k rental                # Run tests matching pattern
"""

import os
import sys
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "purifier_backend.settings")
os.environ.setdefault("TESTING", "True")

pytest_plugins = ["tests.fixtures"]


def pytest_configure(config):
    from django.conf import settings

    # Build tables straight from models
    settings.MIGRATION_MODULES = {
        "main": None,
        "territories": None,
    }

    settings.PASSWORD_HASHERS = [
        "django.contrib.auth.hashers.MD5PasswordHasher",
    ]

    settings.CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        }
    }

    settings.CELERY_TASK_ALWAYS_EAGER = True
    settings.CELERY_TASK_EAGER_PROPAGATES = True

    settings.PAYMENT_GATEWAY_URL = "https://api.gateway.test/v1"
    settings.PAYMENT_GATEWAY_KEY_ID = "rzp_test_key"
    settings.PAYMENT_GATEWAY_KEY_SECRET = "test-gateway-secret"


def pytest_collection_modifyitems(config, items):
    import pytest

    for item in items:
        path = str(item.fspath)
        if "e2e" in path:
            item.add_marker(pytest.mark.e2e)
        elif "db" in item.fixturenames or "transactional_db" in item.fixturenames:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


def pytest_report_header(config):
    return [
        "Purifier Backend - Test Suite",
        f"Python version: {sys.version.split()[0]}",
        "Django test environment configured",
    ]
