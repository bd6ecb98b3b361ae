"""Database models for the workflow execution engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.batch import BatchExecutionModel, BatchRecordModel

__all__ = [
    "BatchRecordModel",
    "BatchExecutionModel",
]
