"""
===============================
Bulk Transfer Package.
===============================

Moves in-memory rows into PostgreSQL with COPY instead of per-row SQL.

Modules:
    staging: StagingBuffer, the columnar (pandas) form of a batch of rows
    bulk_copy: BulkTransferEngine, staged COPY + INSERT ... SELECT merge
"""

__version__ = "0.1.0"
__all__ = [
    'StagingBuffer',
    'BulkTransferEngine',
]

from .bulk_copy import BulkTransferEngine
from .staging import StagingBuffer
