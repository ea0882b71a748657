"""
=====================================================
Pytest suite for models/timeouts.py and timeout config
=====================================================

Sections:
---------
1. Unit tests - Lookup order and config parsing
2. Edge case tests - Invalid timeouts

Available markers:
------------------
unit, edge_case

How to Execute:
---------------
All tests:          pytest tests/tests_models/test_timeouts.py -v
"""

import pytest

from core.config import BulkConfig, parse_timeout_overrides
from core.exceptions import ConfigurationError
from models.timeouts import TimeoutRegistry
from sample_models import Base, Category, Product


# ===============
# 1. UNIT TESTS
# ===============

@pytest.mark.unit
def test_default_applies_without_override():
    """
    Test that entities without an override get the default.
    """
    registry = TimeoutRegistry(default=45)

    assert registry.timeout_for(Product) == 45.0


@pytest.mark.unit
def test_entity_override_wins_over_context():
    """
    Test lookup order: entity, then context, then default.
    """
    registry = TimeoutRegistry(default=30, overrides={Product: 120, 'Base': 60})

    assert registry.timeout_for(Product, Base) == 120.0
    assert registry.timeout_for(Category, Base) == 60.0
    assert registry.timeout_for(Category) == 30.0


@pytest.mark.unit
def test_from_config():
    """
    Test building the registry from BulkConfig.
    """
    registry = TimeoutRegistry.from_config(
        BulkConfig(command_timeout=10, timeout_overrides={'Product': 90})
    )

    assert registry.default == 10.0
    assert registry.overrides == {'Product': 90.0}


@pytest.mark.unit
def test_parse_timeout_overrides():
    """
    Test parsing of the BULK_TIMEOUTS format.
    """
    assert parse_timeout_overrides('Product=120, Order=300,') == {'Product': 120.0, 'Order': 300.0}
    assert parse_timeout_overrides('') == {}
    assert parse_timeout_overrides(None) == {}


# ====================
# 2. EDGE CASE TESTS
# ====================

@pytest.mark.edge_case
@pytest.mark.parametrize('value', [0, -5, 'soon'])
def test_invalid_timeouts_are_rejected(value):
    """
    Test that non-positive or non-numeric timeouts fail at construction.
    """
    with pytest.raises(ConfigurationError):
        TimeoutRegistry(default=30, overrides={'Product': value})


@pytest.mark.edge_case
def test_malformed_override_string():
    """
    Test that an entry without '=' is rejected.
    """
    with pytest.raises(ValueError):
        parse_timeout_overrides('Product:120')


@pytest.mark.edge_case
def test_overrides_are_read_only():
    """
    Test that the registry cannot be changed after construction.
    """
    registry = TimeoutRegistry(overrides={'Product': 5})

    with pytest.raises(TypeError):
        registry.overrides['Product'] = 1
