"""Reconciliation run summaries."""

from typing import Dict

from pydantic import Field

from ._strict_base import StrictModel


class ReconciliationRunResult(StrictModel):
    run_id: str
    processed_rows: int = 0
    anomaly_count: int = 0
    stripe_checks: int = 0
    duration_ms: int = 0
    last_payment_id: int = 0
    findings_by_type: Dict[str, int] = Field(default_factory=dict)
