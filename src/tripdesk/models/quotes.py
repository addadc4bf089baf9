from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel


class QuoteStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    EXPIRED = "expired"


OPEN_QUOTE_STATUSES = (QuoteStatus.SENT, QuoteStatus.VIEWED)


class InquiryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    QUOTED = "quoted"
    BOOKED = "booked"
    CANCELLED = "cancelled"


class Quote(BaseModel):
    id: str
    inquiry_id: str
    title: str | None = None
    amount: Decimal
    currency: str = "USD"
    status: QuoteStatus
    validity_days: int = 30
    sent_at: str | None = None
    expires_at: str | None = None
    accepted_at: str | None = None
    admin_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class Inquiry(BaseModel):
    id: str
    user_id: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None
    status: InquiryStatus = InquiryStatus.PENDING


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str | None = None
    email: str | None = None
    role: str | None = None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() in {"admin", "super_admin"}

    def owns(self, inquiry: Inquiry) -> bool:
        if self.user_id and inquiry.user_id and self.user_id == inquiry.user_id:
            return True
        if self.email and inquiry.customer_email:
            return self.email.strip().lower() == inquiry.customer_email.strip().lower()
        return False
