"""
Pytest configuration and shared fixtures.

Registers the ``integration`` marker and ``--run-integration`` option, and
provides temp databases, a fixed reference date and learning engines backed by
each repository implementation.
"""

import os
import tempfile
from datetime import date

import pytest

from invoice_engine.core.config import settings
from invoice_engine.services.learning import VendorLearningEngine
from invoice_engine.services.storage import (
    InMemoryVendorMappingRepository,
    SQLiteInvoiceStore,
    SQLiteVendorMappingRepository,
)

MIDJOURNEY_INVOICE = """Midjourney Inc
Invoice number ABC123
Date of issue November 5, 2024
Description Qty Unit price Tax Amount
Basic Plan
Nov 5 – Dec 5, 2024
1$10.0018%$10.00
Subtotal $10.00
Total $10.00
Amount due $10.00 USD"""


def pytest_addoption(parser):
    """Add custom command-line options"""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests against real Azure / LLM resources"
    )


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test requiring real Azure / LLM resources"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is specified"""
    if config.getoption("--run-integration"):
        return

    skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


def _temp_db():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    return path


@pytest.fixture
def db_path():
    """Create a temporary database file for testing"""
    path = _temp_db()
    yield path
    # Cleanup
    if os.path.exists(path):
        os.remove(path)


@pytest.fixture
def invoice_db_path():
    path = _temp_db()
    yield path
    if os.path.exists(path):
        os.remove(path)


@pytest.fixture
def today():
    """Fixed reference date so date-window checks are deterministic"""
    return date(2024, 12, 1)


@pytest.fixture
def midjourney_text():
    return MIDJOURNEY_INVOICE


@pytest.fixture
def no_external_services(monkeypatch):
    """Make sure nothing reaches a real LLM or Azure endpoint"""
    for name in ("llm_base_url", "llm_api_key", "llm_deployment", "az_di_endpoint", "az_di_api_key"):
        monkeypatch.setattr(settings, name, None)


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, db_path):
    """Each learning test runs against both repository implementations"""
    if request.param == "memory":
        return InMemoryVendorMappingRepository()
    return SQLiteVendorMappingRepository(db_path)


@pytest.fixture
def engine(repository):
    return VendorLearningEngine(repository, decay_factor=0.95)


@pytest.fixture
def invoice_store(invoice_db_path):
    return SQLiteInvoiceStore(invoice_db_path)
