"""
Order entity and its parts. JSON uses the storefront's camelCase field names (orderNumber, emailsSent, ...);
Python code uses snake_case.
"""
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PRODUCTION = "production"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class NotificationKind(str, Enum):
    CONFIRMATION = "confirmation"
    RECEIPT = "receipt"
    PRODUCTION = "production"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CardConfig(CamelModel):
    """Snapshot of the card configuration taken at checkout."""
    first_name: str = Field(..., min_length=1, max_length=25)
    last_name: str = Field(..., min_length=1, max_length=25)
    title: str | None = None
    company: str | None = None
    mobile: str | None = None
    whatsapp: str | None = None
    email: str | None = None
    website: str | None = None
    linkedin: str | None = None
    instagram: str | None = None
    twitter: str | None = None
    quantity: int = Field(default=1, ge=1)
    mobile_verified: bool = False


class Pricing(CamelModel):
    total: float = Field(..., ge=0)
    currency: str = "INR"


class OrderDraft(CamelModel):
    customer_name: str = Field(..., min_length=1)
    email: EmailStr
    card_config: CardConfig
    pricing: Pricing


class NotificationRecord(CamelModel):
    kind: NotificationKind
    sent_at: datetime
    success: bool
    recipient: str
    message_id: str | None = None
    error: str | None = None


class Order(CamelModel):
    id: str
    order_number: str
    status: OrderStatus
    customer_name: str
    email: str
    card_config: CardConfig
    pricing: Pricing
    created_at: datetime
    updated_at: datetime
    tracking_number: str | None = None
    # kind -> every send attempt for that kind, oldest first; never shrinks
    emails_sent: dict[NotificationKind, list[NotificationRecord]] = Field(default_factory=dict)


class SendResult(CamelModel):
    order_id: str
    order_number: str
    kind: NotificationKind
    success: bool
    sent_at: datetime
    message_id: str | None = None
