"""Bulk Video Generation Orchestrator.

This package turns a set of user-submitted generation rows into a supervised,
resumable, billable job run: staged rollout, per-row retry, credit
reservation/settlement and stitching of completed outputs.
"""

from bulkgen.database import async_session_factory
from bulkgen.models import Base, Batch, BatchRow

__all__ = [
    "Base",
    "Batch",
    "BatchRow",
    "async_session_factory",
]
