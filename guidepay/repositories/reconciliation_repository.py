"""Idempotent persistence of reconciliation findings."""

from typing import Any, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from ..models.audit import ReconciliationFinding
from .base_repository import BaseRepository


class ReconciliationRepository(BaseRepository[ReconciliationFinding]):
    def __init__(self, db: Session):
        super().__init__(db, ReconciliationFinding)

    def upsert_finding(
        self,
        *,
        run_id: str,
        anomaly_type: str,
        severity: str,
        booking_id: Optional[int],
        payment_id: Optional[int],
        provider_intent_id: Optional[str],
        details: Dict[str, Any],
    ) -> None:
        """
        Write one finding. Re-reporting the same (run, anomaly, entity) within a
        run refreshes severity and details instead of adding a row.
        """
        entity_key = ReconciliationFinding.build_entity_key(booking_id, payment_id, provider_intent_id)
        values = {
            "run_id": run_id,
            "anomaly_type": anomaly_type,
            "entity_key": entity_key,
            "severity": severity,
            "booking_id": booking_id,
            "payment_id": payment_id,
            "provider_intent_id": provider_intent_id,
            "details": details,
        }
        insert = self._upsert_insert()
        if insert is not None:
            stmt = insert(ReconciliationFinding).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[
                    ReconciliationFinding.run_id,
                    ReconciliationFinding.anomaly_type,
                    ReconciliationFinding.entity_key,
                ],
                set_={"severity": stmt.excluded.severity, "details": stmt.excluded.details},
            )
            self.db.execute(stmt)
            return

        existing = (
            self.db.query(ReconciliationFinding)
            .filter(
                ReconciliationFinding.run_id == run_id,
                ReconciliationFinding.anomaly_type == anomaly_type,
                ReconciliationFinding.entity_key == entity_key,
            )
            .first()
        )
        if existing is None:
            self.create(**values)
            return
        existing.severity = severity
        existing.details = details
        self.db.flush()

    def list_for_run(self, run_id: str) -> List[ReconciliationFinding]:
        return (
            self.db.query(ReconciliationFinding)
            .filter(ReconciliationFinding.run_id == run_id)
            .order_by(ReconciliationFinding.id.asc())
            .all()
        )

    def payment_scoped_booking_ids(self, run_id: str, anomaly_type: str) -> Set[int]:
        """Booking ids already reported against a specific payment row in this run."""
        rows = (
            self.db.query(ReconciliationFinding.booking_id)
            .filter(
                ReconciliationFinding.run_id == run_id,
                ReconciliationFinding.anomaly_type == anomaly_type,
                ReconciliationFinding.payment_id.isnot(None),
                ReconciliationFinding.booking_id.isnot(None),
            )
            .distinct()
            .all()
        )
        return {row[0] for row in rows}
