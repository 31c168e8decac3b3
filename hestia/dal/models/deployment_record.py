"""SQLAlchemy model for the 'deployment_records' table."""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .models_base import Base


class DeploymentRecord(Base):
    """Historical record of a rollout.

    Rollbacks revert the model's ``current_version`` pointer; this row keeps the
    full history including every health probe result.
    """

    __tablename__ = "deployment_records"

    deployment_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    model_id: Mapped[str] = mapped_column(
        ForeignKey("ml_models.id", ondelete="CASCADE"), nullable=False)
    version: Mapped[str] = mapped_column(String(64), nullable=False)
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    strategy: Mapped[str] = mapped_column(String(32), nullable=False)
    strategy_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", index=True)
    previous_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    traffic_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    health_checks: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    health_check_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    rollback_policy: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    rollback_attempts_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status_history: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_deployments_model_created", "model_id", "created_at"),)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "deployment_id": self.deployment_id,
            "model_id": self.model_id,
            "version": self.version,
            "stage": self.stage,
            "strategy": self.strategy,
            "strategy_config": self.strategy_config,
            "status": self.status,
            "status_history": list(self.status_history or []),
            "previous_version": self.previous_version,
            "traffic_percent": self.traffic_percent,
            "health_checks": list(self.health_checks or []),
            "rollback_policy": self.rollback_policy,
            "rollback_attempts_used": self.rollback_attempts_used,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<DeploymentRecord(deployment_id={self.deployment_id}, model_id={self.model_id}, "
            f"version='{self.version}', status='{self.status}')>"
        )
