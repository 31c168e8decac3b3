"""SQLAlchemy models for drift policies, reference baselines and detection events."""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .models_base import Base


class DriftPolicy(Base):
    """The single active drift policy of a model."""

    __tablename__ = "drift_policies"

    model_id: Mapped[str] = mapped_column(
        ForeignKey("ml_models.id", ondelete="CASCADE"), primary_key=True)
    threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.1)
    window_size: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)
    features: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    method: Mapped[str] = mapped_column(String(32), nullable=False, default="psi")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "model_id": self.model_id,
            "threshold": self.threshold,
            "window_size": self.window_size,
            "features": list(self.features or []),
            "method": self.method,
        }


class DriftBaseline(Base):
    """Reference feature values drift is measured against."""

    __tablename__ = "drift_baselines"

    model_id: Mapped[str] = mapped_column(
        ForeignKey("ml_models.id", ondelete="CASCADE"), primary_key=True)
    # feature name -> list of observed values
    samples: Mapped[dict[str, list[Any]]] = mapped_column(JSON, nullable=False)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="window")
    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))


class DriftDetectionEvent(Base):
    """Represents a drift detection run."""

    __tablename__ = "drift_detection_events"

    event_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    model_id: Mapped[str] = mapped_column(
        ForeignKey("ml_models.id", ondelete="CASCADE"), nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False)
    drift_score: Mapped[float] = mapped_column(Float, nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    is_drifting: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    __table_args__ = (
        Index("idx_drift_model_detected", "model_id", "detected_at"),
        Index("idx_drift_significant", "is_drifting"),
    )

    def __repr__(self) -> str:
        return (
            f"<DriftDetectionEvent(event_id={self.event_id}, model_id={self.model_id}, "
            f"method='{self.method}', is_drifting={self.is_drifting})>"
        )
