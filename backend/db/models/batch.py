"""Durable batch log: one row per batch, one row per workflow execution."""

from typing import Optional

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base, TimestampMixin


class BatchRecordModel(TimestampMixin, Base):
    """Batch record with its progress counters.

    Attributes:
        batch_id: Unique identifier (UUID string)
        status: queued, running, completed, failed, stopped
        total_workflows: Number of workflows submitted
        completed / running / queued / failed / stopped: progress counters
        workers: Per-batch concurrency limit
        priority: Higher runs first
        start_time / end_time: Epoch milliseconds
        error: Batch-level error message
    """

    __tablename__ = "batch_records"

    batch_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), default="queued", index=True)
    total_workflows: Mapped[int] = mapped_column(Integer, default=0)
    completed: Mapped[int] = mapped_column(Integer, default=0)
    running: Mapped[int] = mapped_column(Integer, default=0)
    queued: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    stopped: Mapped[int] = mapped_column(Integer, default=0)
    workers: Mapped[int] = mapped_column(Integer, default=1)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    start_time: Mapped[Optional[int]] = mapped_column(nullable=True)
    end_time: Mapped[Optional[int]] = mapped_column(nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    executions: Mapped[list["BatchExecutionModel"]] = relationship(
        "BatchExecutionModel",
        back_populates="batch",
        cascade="all, delete-orphan",
        lazy="noload",
    )


class BatchExecutionModel(TimestampMixin, Base):
    """One workflow execution inside a batch."""

    __tablename__ = "batch_executions"

    execution_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    batch_id: Mapped[str] = mapped_column(
        ForeignKey("batch_records.batch_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    workflow_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="queued", index=True)
    worker_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    start_time: Mapped[Optional[int]] = mapped_column(nullable=True)
    end_time: Mapped[Optional[int]] = mapped_column(nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, default=0)

    batch: Mapped["BatchRecordModel"] = relationship(
        "BatchRecordModel", back_populates="executions", lazy="select"
    )
