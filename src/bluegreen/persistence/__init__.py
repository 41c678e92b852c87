"""
Snapshot persistence for the deployment controller.

Provides the JSON snapshot manager, the schema migration chain and the
built-in sample state used when no trusted snapshot exists.
"""

from .manager import PersistenceManager
from .migrations import (
    CURRENT_SCHEMA_VERSION,
    MIGRATIONS,
    Migration,
    apply_migration,
    get_migration,
    pending_migrations,
    validate_document,
)
from .sample import build_sample_state

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "MIGRATIONS",
    "Migration",
    "PersistenceManager",
    "apply_migration",
    "build_sample_state",
    "get_migration",
    "pending_migrations",
    "validate_document",
]
