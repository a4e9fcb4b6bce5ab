"""
Database package for CourtPay.

Exports database initialization, models, and session factory helpers.
"""
from .init_db import (
    initialize_database,
    create_tables,
    build_engine,
    build_session_factory,
)
from .models import Base, TransactionModel

__all__ = [
    "initialize_database",
    "create_tables",
    "build_engine",
    "build_session_factory",
    "Base",
    "TransactionModel",
]
