"""
Shared pytest configuration and fixtures for all tests.
"""

import os
import sys
from pathlib import Path

import pytest

# Add project root to sys.path to enable importing project modules
# This allows tests to import from 'core', 'models', 'sql', etc. without installation
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

# Shared declarative models live next to this file
tests_root = Path(__file__).parent
if str(tests_root) not in sys.path:
    sys.path.insert(0, str(tests_root))

from models.mappings import MetadataCache  # noqa: E402
from sample_models import Base  # noqa: E402

TEST_DATABASE_URL_ENV = 'BULK_TEST_DATABASE_URL'


def pytest_configure(config):
    """Register custom markers for test categorization."""
    config.addinivalue_line("markers", "unit: Unit tests - isolated function-level tests")
    config.addinivalue_line("markers", "integration: Integration tests - component interactions")
    config.addinivalue_line("markers", "smoke: Smoke tests - basic functionality checks")
    config.addinivalue_line("markers", "edge_case: Edge case tests - boundary conditions")
    config.addinivalue_line("markers", "regression: Regression tests - previously fixed bugs")
    config.addinivalue_line("markers", "system: System tests - full system behavior tests")
    config.addinivalue_line("markers", "e2e: End-to-end tests - complete workflow tests")


@pytest.fixture(scope='session')
def metadata_cache():
    """Frozen metadata cache for the sample models."""
    cache = MetadataCache()
    cache.register(Base)
    cache.freeze()
    return cache


@pytest.fixture(scope='session')
def test_database_url():
    """PostgreSQL URL for database-backed tests; skips when unset."""
    url = os.getenv(TEST_DATABASE_URL_ENV)
    if not url:
        pytest.skip(f"{TEST_DATABASE_URL_ENV} is not set")
    return url
