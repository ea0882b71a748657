"""
==========================
Utility Functions Package.
==========================

Reusable helpers for reaching PostgreSQL from the bulk engine and CLI.

Modules:
    database_utils: PostgreSQL connectivity and health checks
"""

__version__ = "0.1.0"
__all__ = [
    'DatabaseConnectionError',
    'wait_for_database',
    'check_database_available',
    'get_connection_string',
    'get_server_version',
    'create_sqlalchemy_engine',
    'check_copy_support',
    'verify_connection'
]

from .database_utils import (
    DatabaseConnectionError,
    check_copy_support,
    check_database_available,
    create_sqlalchemy_engine,
    get_connection_string,
    get_server_version,
    verify_connection,
    wait_for_database,
)
