"""
Append-mostly audit trails: fraud evaluations and reconciliation findings.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from guidepay.database import Base


class FraudEvent(Base):
    """Write-once record of a fraud risk evaluation."""

    __tablename__ = "fraud_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    booking_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(16), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    signals: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class ReconciliationFinding(Base):
    __tablename__ = "payment_reconciliation_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    booking_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payment_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    provider_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # "<booking>:<payment>:<intent>" with "-" for absent refs; NULL-free so the
    # unique constraint holds on every dialect.
    entity_key: Mapped[str] = mapped_column(String(320), nullable=False)
    anomaly_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("run_id", "anomaly_type", "entity_key", name="uq_recon_run_entity"),
    )

    @staticmethod
    def build_entity_key(
        booking_id: Optional[int], payment_id: Optional[int], provider_intent_id: Optional[str]
    ) -> str:
        parts = [
            str(booking_id) if booking_id is not None else "-",
            str(payment_id) if payment_id is not None else "-",
            provider_intent_id or "-",
        ]
        return ":".join(parts)
