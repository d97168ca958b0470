"""Model registry; importing this module registers every table on ``Base.metadata``."""

from .audit import FraudEvent, ReconciliationFinding
from .booking import Booking
from .guide import Guide, GuidePerformanceStat, User
from .payment import Commission, Payment

__all__ = [
    "Booking",
    "Commission",
    "FraudEvent",
    "Guide",
    "GuidePerformanceStat",
    "Payment",
    "ReconciliationFinding",
    "User",
]
