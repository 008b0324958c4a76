"""
Outbound email / SMS. The provider is external; this module only renders order messages and hands
them to a dispatcher. AWS (SES for email, SNS for SMS) when NOTIFICATION_BACKEND=aws, otherwise the
messages are written to the log.
"""
import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

import boto3

from cardshop.config import Settings
from cardshop.models import NotificationKind, Order

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchReceipt:
    message_id: str
    provider: str


class NotificationDispatcher(Protocol):
    async def send_email(self, to: str, subject: str, body: str) -> DispatchReceipt:
        ...

    async def send_sms(self, to: str, body: str) -> DispatchReceipt:
        ...


class LogDispatcher:
    """Development dispatcher: nothing leaves the process."""

    async def send_email(self, to: str, subject: str, body: str) -> DispatchReceipt:
        message_id = f"log-{uuid.uuid4().hex[:12]}"
        logger.info("MOCK email to %s: %s (%s)", to, subject, message_id)
        return DispatchReceipt(message_id=message_id, provider="log")

    async def send_sms(self, to: str, body: str) -> DispatchReceipt:
        message_id = f"log-{uuid.uuid4().hex[:12]}"
        logger.info("MOCK SMS to %s (%s)", to, message_id)
        return DispatchReceipt(message_id=message_id, provider="log")


def to_e164(phone: str) -> str:
    """'+91 99999-99999' -> '+919999999999'."""
    return "+" + re.sub(r"\D", "", phone)


class AwsDispatcher:
    """SES + SNS. boto3 is blocking, so calls run in a worker thread."""

    def __init__(self, settings: Settings):
        self._sender = settings.ses_sender
        self._ses = boto3.client("ses", region_name=settings.aws_region)
        self._sns = boto3.client("sns", region_name=settings.aws_region)

    async def send_email(self, to: str, subject: str, body: str) -> DispatchReceipt:
        resp: dict[str, Any] = await asyncio.to_thread(
            self._ses.send_email,
            Source=self._sender,
            Destination={"ToAddresses": [to]},
            Message={
                "Subject": {"Data": subject, "Charset": "UTF-8"},
                "Body": {"Text": {"Data": body, "Charset": "UTF-8"}},
            },
        )
        return DispatchReceipt(message_id=resp["MessageId"], provider="ses")

    async def send_sms(self, to: str, body: str) -> DispatchReceipt:
        resp: dict[str, Any] = await asyncio.to_thread(
            self._sns.publish,
            PhoneNumber=to_e164(to),
            Message=body,
            MessageAttributes={
                "AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": "Transactional"},
            },
        )
        return DispatchReceipt(message_id=resp["MessageId"], provider="sns")


def build_dispatcher(settings: Settings) -> NotificationDispatcher:
    if settings.notification_backend == "aws":
        return AwsDispatcher(settings)
    return LogDispatcher()


_SUBJECTS = {
    NotificationKind.CONFIRMATION: "Order {number} confirmed",
    NotificationKind.RECEIPT: "Receipt for order {number}",
    NotificationKind.PRODUCTION: "Your NFC cards for {number} are in production",
    NotificationKind.SHIPPED: "Order {number} has shipped",
    NotificationKind.DELIVERED: "Order {number} was delivered",
}


def render_order_email(order: Order, kind: NotificationKind, support_email: str) -> tuple[str, str]:
    """Return (subject, plain-text body) for one order notification."""
    subject = _SUBJECTS[kind].format(number=order.order_number)
    card = order.card_config
    lines = [
        f"Hi {order.customer_name},",
        "",
        f"Order: {order.order_number}",
        f"Card: {card.first_name} {card.last_name}" + (f", {card.title}" if card.title else ""),
        f"Quantity: {card.quantity}",
        f"Status: {order.status.value}",
    ]
    if kind == NotificationKind.RECEIPT:
        lines.append(f"Total paid: {order.pricing.total:.2f} {order.pricing.currency}")
    if kind == NotificationKind.SHIPPED and order.tracking_number:
        lines.append(f"Tracking number: {order.tracking_number}")
    lines += ["", f"Questions? Write to {support_email}."]
    return subject, "\n".join(lines)


def render_otp_sms(code: str, ttl_seconds: int) -> str:
    minutes = max(1, ttl_seconds // 60)
    return f"Your verification code is {code}. It expires in {minutes} minutes."
