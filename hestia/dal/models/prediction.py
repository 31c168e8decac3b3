"""SQLAlchemy models for served predictions and the per-model feedback log."""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .models_base import Base


class Prediction(Base):
    """One served inference. Immutable except for the attached feedback."""

    __tablename__ = "predictions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    model_id: Mapped[str] = mapped_column(
        ForeignKey("ml_models.id", ondelete="CASCADE"), nullable=False)
    version_used: Mapped[str] = mapped_column(String(64), nullable=False)
    input_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    output: Mapped[Any] = mapped_column(JSON, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    processing_time_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    ab_test_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    ab_arm: Mapped[str | None] = mapped_column(String(1), nullable=True)
    feedback: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    __table_args__ = (
        Index("idx_predictions_model_created", "model_id", "created_at"),
        Index("idx_predictions_model_version", "model_id", "version_used"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "model_id": self.model_id,
            "version_used": self.version_used,
            "input": self.input_data,
            "output": self.output,
            "confidence": self.confidence,
            "processing_time_ms": self.processing_time_ms,
            "ab_test_id": self.ab_test_id,
            "ab_arm": self.ab_arm,
            "feedback": self.feedback,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class FeedbackEntry(Base):
    """Append-only feedback log row for a model."""

    __tablename__ = "model_feedback"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    model_id: Mapped[str] = mapped_column(
        ForeignKey("ml_models.id", ondelete="CASCADE"), nullable=False, index=True)
    prediction_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    input_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    expected_output: Mapped[Any] = mapped_column(JSON, nullable=True)
    actual_output: Mapped[Any] = mapped_column(JSON, nullable=True)
    is_correct: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    provided_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
