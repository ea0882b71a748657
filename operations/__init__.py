"""
===============================
Bulk Operations Package.
===============================

Operation surface for set-based work on SQLAlchemy mapped entities.

Modules:
    bulk_operations: BulkOperations (delete, update, add, truncate,
        select-and-add, select-and-update, count)
"""

__version__ = "0.1.0"
__all__ = [
    'BulkOperations',
]

from .bulk_operations import BulkOperations
