"""SQLAlchemy model for the 'model_versions' table."""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .models_base import Base


class ModelVersion(Base):
    """An immutable registered artifact of a model; only ``stage`` ever changes."""

    __tablename__ = "model_versions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    model_id: Mapped[str] = mapped_column(
        ForeignKey("ml_models.id", ondelete="CASCADE"), nullable=False, index=True)
    version: Mapped[str] = mapped_column(String(64), nullable=False)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default="development")
    artifact_ref: Mapped[str] = mapped_column(String(1024), nullable=False)
    # "metadata" is reserved on declarative classes
    version_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict)
    saved_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    __table_args__ = (
        UniqueConstraint("model_id", "version", name="uq_model_versions_model_version"),
        Index("idx_model_versions_saved", "model_id", "saved_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "model_id": self.model_id,
            "version": self.version,
            "stage": self.stage,
            "artifact_ref": self.artifact_ref,
            "metadata": self.version_metadata or {},
            "saved_at": self.saved_at.isoformat() if self.saved_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<ModelVersion(model_id={self.model_id}, version='{self.version}', "
            f"stage='{self.stage}')>"
        )
