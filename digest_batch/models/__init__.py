"""
digest_batch.models -- ORM models for durable run state.

Architecture: digest_batch/models. Imports from digest_kernel.db.base only.
"""

from digest_batch.models.run_state import (
    DigestRunGroupModel,
    DigestRunModel,
    DigestRunRecordModel,
)

__all__ = [
    "DigestRunGroupModel",
    "DigestRunModel",
    "DigestRunRecordModel",
]
