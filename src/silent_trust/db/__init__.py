"""
Persistence layer for Silent Trust.

The engines talk to ``PersistenceGateway`` only; the SQLAlchemy and
in-memory backends are interchangeable.
"""

from silent_trust.db.gateway import PersistenceError, PersistenceGateway
from silent_trust.db.memory import InMemoryGateway
from silent_trust.db.orm import Base
from silent_trust.db.repositories import SqlPersistenceGateway

__all__ = [
    "Base",
    "InMemoryGateway",
    "PersistenceError",
    "PersistenceGateway",
    "SqlPersistenceGateway",
]
