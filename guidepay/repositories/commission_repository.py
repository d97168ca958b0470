"""Commission upserts keyed by booking."""

from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ..core.enums import CommissionStatus
from ..core.exceptions import RepositoryException
from ..core.time_utils import utc_now
from ..models.payment import Commission
from .base_repository import BaseRepository


class CommissionRepository(BaseRepository[Commission]):
    def __init__(self, db: Session):
        super().__init__(db, Commission)

    def get_by_booking(self, booking_id: int) -> Optional[Commission]:
        return self.db.query(Commission).filter(Commission.booking_id == booking_id).first()

    def upsert_settled(
        self,
        *,
        booking_id: int,
        guide_id: Optional[int],
        gross_amount: Decimal,
        platform_rate: Decimal,
        platform_amount: Decimal,
        guide_amount: Decimal,
    ) -> Commission:
        """
        Insert or refresh the commission for ``booking_id``.

        The row is matched on its unique booking id so a repeated call updates
        the same record in place and never creates a second one.
        """
        values = {
            "booking_id": booking_id,
            "guide_id": guide_id,
            "gross_amount": gross_amount,
            "platform_rate": platform_rate,
            "platform_amount": platform_amount,
            "guide_amount": guide_amount,
            "status": CommissionStatus.SETTLED.value,
        }
        insert = self._upsert_insert()
        if insert is not None:
            stmt = insert(Commission).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[Commission.booking_id],
                set_={
                    "gross_amount": stmt.excluded.gross_amount,
                    "platform_rate": stmt.excluded.platform_rate,
                    "platform_amount": stmt.excluded.platform_amount,
                    "guide_amount": stmt.excluded.guide_amount,
                    "status": stmt.excluded.status,
                    "updated_at": utc_now(),
                },
            )
            self.db.flush()
            self.db.execute(stmt)
            commission = (
                self.db.query(Commission)
                .filter(Commission.booking_id == booking_id)
                .populate_existing()
                .first()
            )
            if commission is None:
                raise RepositoryException(f"Commission upsert for booking {booking_id} returned no row")
            return commission

        commission = (
            self.db.query(Commission)
            .filter(Commission.booking_id == booking_id)
            .with_for_update()
            .first()
        )
        if commission is None:
            return self.create(**values)
        for key, value in values.items():
            setattr(commission, key, value)
        self.db.flush()
        return commission
