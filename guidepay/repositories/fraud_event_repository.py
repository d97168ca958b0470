"""Write-once fraud evaluation records."""

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models.audit import FraudEvent
from .base_repository import BaseRepository


class FraudEventRepository(BaseRepository[FraudEvent]):
    def __init__(self, db: Session):
        super().__init__(db, FraudEvent)

    def record(
        self,
        *,
        user_id: int,
        booking_id: Optional[int],
        risk_score: int,
        risk_level: str,
        event_type: str,
        signals: Dict[str, Any],
    ) -> FraudEvent:
        return self.create(
            user_id=user_id,
            booking_id=booking_id,
            risk_score=risk_score,
            risk_level=risk_level,
            event_type=event_type[:64],
            signals=signals,
        )

    def list_for_user(self, user_id: int, limit: int = 50) -> List[FraudEvent]:
        return (
            self.db.query(FraudEvent)
            .filter(FraudEvent.user_id == user_id)
            .order_by(FraudEvent.id.desc())
            .limit(limit)
            .all()
        )
