"""SQLAlchemy models for A/B tests and their append-only sample rows."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .models_base import Base


class ABTest(Base):
    """Experiment routing traffic between two model versions."""

    __tablename__ = "ab_tests"

    test_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    model_a_id: Mapped[str] = mapped_column(String(36), nullable=False)
    version_a: Mapped[str] = mapped_column(String(64), nullable=False)
    model_b_id: Mapped[str] = mapped_column(String(36), nullable=False)
    version_b: Mapped[str] = mapped_column(String(64), nullable=False)
    traffic_split: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    min_samples: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    metric: Mapped[str] = mapped_column(String(64), nullable=False, default="confidence")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running", index=True)
    winner: Mapped[str | None] = mapped_column(String(1), nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    results: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    stopped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def arm_target(self, arm: str) -> tuple[str, str]:
        """Return the (model_id, version) pair served by ``arm``."""
        if arm == "A":
            return self.model_a_id, self.version_a
        return self.model_b_id, self.version_b

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "test_id": self.test_id,
            "model_a": f"{self.model_a_id}:{self.version_a}",
            "model_b": f"{self.model_b_id}:{self.version_b}",
            "traffic_split": self.traffic_split,
            "min_samples": self.min_samples,
            "metric": self.metric,
            "status": self.status,
            "winner": self.winner,
            "confidence": self.confidence,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<ABTest(test_id='{self.test_id}', status='{self.status}', "
            f"split={self.traffic_split}, winner={self.winner})>"
        )


class ABTestSample(Base):
    """One recorded outcome for an arm; rows are only ever inserted."""

    __tablename__ = "ab_test_samples"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    test_id: Mapped[str] = mapped_column(
        ForeignKey("ab_tests.test_id", ondelete="CASCADE"), nullable=False)
    arm: Mapped[str] = mapped_column(String(1), nullable=False)
    prediction_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    __table_args__ = (Index("idx_ab_samples_test_arm", "test_id", "arm"),)
