"""
=====================================================
Pytest suite for core/config.py
=====================================================

Sections:
---------
1. Unit tests - Environment loading and defaults
2. Edge case tests - Malformed bulk settings

Available markers:
------------------
unit, edge_case

How to Execute:
---------------
All tests:          pytest tests/tests_core/test_config.py -v
"""

import os
from unittest.mock import patch

import pytest

from core.config import BulkConfig, Config, DatabaseConfig

ENV_KEYS = (
    'POSTGRES_HOST', 'POSTGRES_PORT', 'POSTGRES_USER', 'POSTGRES_PASSWORD', 'POSTGRES_DB',
    'BULK_COMMAND_TIMEOUT', 'BULK_TIMEOUTS', 'BULK_STAGING_PREFIX', 'BULK_COPY_NULL', 'BULK_LOG_LEVEL',
)


@pytest.fixture
def clean_env():
    """Environment without any variable Config reads."""
    env = {key: value for key, value in os.environ.items() if key not in ENV_KEYS}
    with patch.dict(os.environ, env, clear=True):
        yield


# ===============
# 1. UNIT TESTS
# ===============

@pytest.mark.unit
def test_defaults(clean_env):
    """
    Test the values used when nothing is configured.
    """
    cfg = Config()

    assert cfg.db == DatabaseConfig('localhost', 5432, 'postgres', '', 'postgres')
    assert cfg.bulk == BulkConfig()
    assert cfg.bulk.copy_null == '\\N'


@pytest.mark.unit
def test_environment_overrides(clean_env):
    """
    Test that environment variables populate both sections.
    """
    with patch.dict(os.environ, {
        'POSTGRES_HOST': 'db.internal',
        'POSTGRES_PORT': '6543',
        'POSTGRES_DB': 'inventory',
        'BULK_COMMAND_TIMEOUT': '90',
        'BULK_TIMEOUTS': 'Product=120, Base=45',
        'BULK_STAGING_PREFIX': '_load',
    }):
        cfg = Config()

    assert cfg.db_host == 'db.internal'
    assert cfg.db_port == 6543
    assert cfg.db_name == 'inventory'
    assert cfg.bulk.command_timeout == 90.0
    assert cfg.bulk.timeout_overrides == {'Product': 120.0, 'Base': 45.0}
    assert cfg.bulk.staging_prefix == '_load'


@pytest.mark.unit
def test_connection_string(clean_env):
    """
    Test the connection string and parameter dictionary.
    """
    with patch.dict(os.environ, {'POSTGRES_USER': 'etl', 'POSTGRES_PASSWORD': 'pw'}):
        cfg = Config()

    assert cfg.get_connection_string() == 'postgresql://etl:pw@localhost:5432/postgres'
    assert cfg.get_connection_params()['user'] == 'etl'


# ====================
# 2. EDGE CASE TESTS
# ====================

@pytest.mark.edge_case
def test_malformed_timeout_overrides(clean_env):
    """
    Test that a malformed BULK_TIMEOUTS fails at load time.
    """
    with patch.dict(os.environ, {'BULK_TIMEOUTS': 'Product'}):
        with pytest.raises(ValueError):
            Config()


@pytest.mark.edge_case
def test_non_numeric_timeout(clean_env):
    """
    Test that a non-numeric default timeout fails at load time.
    """
    with patch.dict(os.environ, {'BULK_COMMAND_TIMEOUT': 'soon'}):
        with pytest.raises(ValueError):
            Config()
