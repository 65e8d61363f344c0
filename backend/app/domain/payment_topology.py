"""Shapes a booking's gateway authorizations can take.

A booking is normally paid through one combined authorization. Bookings
accepted through the two-charge flow instead carry a platform fee charge
and a separate service amount charge; after a partial failure either leg
may still be missing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple, Union


@dataclass(frozen=True)
class SingleAuthorization:
    authorization_id: str

    def authorization_ids(self) -> List[str]:
        return [self.authorization_id]

    def refund_target(self) -> str:
        return self.authorization_id


@dataclass(frozen=True)
class DualAuthorization:
    fee_authorization_id: Optional[str] = None
    service_amount_authorization_id: Optional[str] = None
    # The combined authorization the two charges replaced, if known.
    original_authorization_id: Optional[str] = None

    def authorization_ids(self) -> List[str]:
        return [
            auth_id
            for auth_id in (self.fee_authorization_id, self.service_amount_authorization_id)
            if auth_id
        ]

    def legs(self) -> Tuple[Tuple[str, Optional[str]], Tuple[str, Optional[str]]]:
        return (
            ("fee", self.fee_authorization_id),
            ("service_amount", self.service_amount_authorization_id),
        )

    def refund_target(self) -> Optional[str]:
        return self.service_amount_authorization_id or self.original_authorization_id


PaymentTopology = Union[SingleAuthorization, DualAuthorization]
