"""Booking payment domain events."""
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

ACCEPTED = "accepted"
DECLINED = "declined"
CANCELLED = "cancelled"


@dataclass
class BookingPaymentEvent:
    """Fired after an accept, decline or cancel operation settles the booking's payment."""

    booking_id: str
    event_type: str  # accepted | declined | cancelled
    occurred_at: datetime
    refund_amount: Optional[Decimal] = None

    @property
    def name(self) -> str:
        return f"booking.{self.event_type}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "BookingPaymentEvent":
        occurred_at = payload.get("occurred_at")
        refund_amount = payload.get("refund_amount")
        return cls(
            booking_id=str(payload["booking_id"]),
            event_type=str(payload["event_type"]),
            occurred_at=(
                datetime.fromisoformat(occurred_at)
                if isinstance(occurred_at, str)
                else occurred_at
            ),
            refund_amount=Decimal(str(refund_amount)) if refund_amount is not None else None,
        )
