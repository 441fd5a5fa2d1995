"""
Database Infrastructure Module

SQLAlchemy engine and session management for the storefront account-security
store.
"""

from .connection import ConnectionFactory, health_check, init_db, session_scope

__all__ = [
    "ConnectionFactory",
    "health_check",
    "init_db",
    "session_scope",
]
