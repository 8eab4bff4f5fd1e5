"""
Data models for storage layer.

Defines the billed customer register and the invoice ledger entries.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple


class InvoiceStatus(Enum):
    """Lifecycle status of an invoice record."""
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class BillingCustomer:
    """A customer whose usage is re-billed with a markup.

    Usage queries are scoped by the customer's Retell agent ids and
    Twilio phone number.
    """
    id: str
    name: str
    email: str
    markup_percentage: Decimal = Decimal("0")
    retell_agent_ids: Tuple[str, ...] = ()
    phone_number: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        """Validate required fields and markup range."""
        if not self.id or not self.id.strip():
            raise ValueError("id is required and cannot be empty")
        if not self.name or not self.name.strip():
            raise ValueError("name is required and cannot be empty")
        if self.markup_percentage < 0:
            raise ValueError("markup_percentage must be >= 0")


@dataclass(frozen=True)
class InvoiceRecord:
    """Invoice issued for one customer and billing period.

    Amounts are CAD. The cost fields are a snapshot of the CostBreakdown
    the invoice was built from.
    """
    customer_id: str
    period_start: date
    period_end: date
    total_chats: int
    total_calls: int
    total_sms_segments: int
    total_call_minutes: int
    twilio_sms_cost_cad: Decimal
    twilio_voice_cost_cad: Decimal
    retell_chat_cost_cad: Decimal
    retell_voice_cost_cad: Decimal
    subtotal_cad: Decimal
    markup_amount_cad: Decimal
    total_cad: Decimal
    status: InvoiceStatus = InvoiceStatus.DRAFT
    due_date: Optional[date] = None
    created_at: datetime = field(default_factory=datetime.now)
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    id: Optional[int] = None
