"""
case-forge — persistence

File: src/case_forge/persistence/__init__.py
Last updated: 2026-10-17

Purpose
- State DB, case store, usage repository and the asset mirror.
"""

from case_forge.persistence.case_store import CaseFileRecord, CaseRecord, CaseStore
from case_forge.persistence.mirror import LocalMirrorStore, MirrorStore, case_storage_path
from case_forge.persistence.repositories import TokenUsageRepo
from case_forge.persistence.state_db import (
    StateDB,
    StateDBError,
    StateDBMigrationError,
    StateDBMissingRelationError,
)

__all__ = [
    "CaseFileRecord",
    "CaseRecord",
    "CaseStore",
    "LocalMirrorStore",
    "MirrorStore",
    "StateDB",
    "StateDBError",
    "StateDBMigrationError",
    "StateDBMissingRelationError",
    "TokenUsageRepo",
    "case_storage_path",
]
