"""
===============================
Session Coordination Package.
===============================

Owns the connection and transaction of one unit of work.

Modules:
    coordinator: Session, Transaction and the session_scope helper
"""

__version__ = "0.1.0"
__all__ = [
    'Session',
    'Transaction',
    'session_scope',
]

from .coordinator import Session, Transaction, session_scope
