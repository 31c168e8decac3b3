"""SQLAlchemy models for incremental-learning samples and the batches built from them."""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .models_base import Base


class IncrementalSample(Base):
    """A labelled sample waiting to be claimed by a batch."""

    __tablename__ = "incremental_samples"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    model_id: Mapped[str] = mapped_column(
        ForeignKey("ml_models.id", ondelete="CASCADE"), nullable=False)
    prediction_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    sample: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    batch_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    __table_args__ = (Index("idx_incremental_pending", "model_id", "batch_id"),)


class IncrementalBatch(Base):
    """A batch of samples handed to the job queue as one incremental update."""

    __tablename__ = "incremental_batches"

    batch_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    model_id: Mapped[str] = mapped_column(
        ForeignKey("ml_models.id", ondelete="CASCADE"), nullable=False, index=True)
    job_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False)
    learning_rate: Mapped[float] = mapped_column(Float, nullable=False)
    epochs: Mapped[int] = mapped_column(Integer, nullable=False)
    forced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "batch_id": self.batch_id,
            "job_id": self.job_id,
            "sample_count": self.sample_count,
            "learning_rate": self.learning_rate,
            "epochs": self.epochs,
            "forced": self.forced,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
