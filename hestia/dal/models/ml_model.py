"""SQLAlchemy model for the 'ml_models' table."""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .models_base import Base


class MLModel(Base):
    """A tenant-owned model and its lifecycle pointers.

    ``revision`` is bumped by every conditional lifecycle write so concurrent
    promotions and rollbacks cannot overwrite each other.
    """

    __tablename__ = "ml_models"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    member_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(220), nullable=False)
    model_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="training", index=True)
    configuration: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    current_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    training_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("member_id", "slug", name="uq_ml_models_member_slug"),
    )

    @property
    def features(self) -> list[str]:
        """Feature names declared in the model configuration."""
        return list((self.configuration or {}).get("features", []))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "member_id": self.member_id,
            "name": self.name,
            "slug": self.slug,
            "model_type": self.model_type,
            "status": self.status,
            "configuration": self.configuration or {},
            "lifecycle": {"stage": self.stage, "current_version": self.current_version},
            "training_data": self.training_data,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<MLModel(id={self.id}, slug='{self.slug}', status='{self.status}', "
            f"current_version='{self.current_version}')>"
        )
