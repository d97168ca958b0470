"""Fraud scoring inputs and results."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import Field

from ._strict_base import StrictModel, StrictRequestModel


class FraudContext(StrictRequestModel):
    """
    Inputs for one risk evaluation.

    Only ``user_id`` and ``booking_amount`` are normally supplied; the other
    signal fields override the values read from the user's recent history.
    """

    user_id: Optional[int] = None
    booking_id: Optional[int] = None
    booking_amount: float = Field(default=0.0, ge=0)
    ip: Optional[str] = None
    ip_velocity: Optional[float] = Field(default=None, ge=0)

    booking_velocity: Optional[float] = Field(default=None, ge=0)
    payment_failure_ratio: Optional[float] = None
    recent_failures: Optional[float] = Field(default=None, ge=0)
    recent_attempts: Optional[float] = Field(default=None, ge=0)
    account_age_hours: Optional[float] = Field(default=None, ge=0)
    retry_burst: Optional[float] = Field(default=None, ge=0)
    user_baseline_amount: Optional[float] = Field(default=None, ge=0)


class RiskSnapshot(StrictModel):
    """Per-user aggregates read from bookings, payments and users."""

    booking_velocity: float = 0
    payment_failure_ratio: float = 0
    retry_burst: float = 0
    account_age_hours: float = 9999
    user_baseline_amount: float = 0
    ip_velocity: float = 0
    source: str = "default"


class FraudAssessment(StrictModel):
    user_id: Optional[int] = None
    booking_id: Optional[int] = None
    risk_score: int = Field(..., ge=0, le=100)
    risk_level: str
    event_type: str
    should_block: bool
    requires_review: bool
    action: str
    signals: Dict[str, Any] = Field(default_factory=dict)
    evaluated_at: datetime
