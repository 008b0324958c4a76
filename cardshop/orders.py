"""
Order lifecycle: the only writer of Order entities.

Every operation takes the authenticated principal and checks its permission before touching the
store. Writes are read-modify-compare-and-swap against the entry version, so concurrent updates to
one order serialize in the store (last committed write wins, nothing is lost) and a reader sees
either the previous or the new order, never a mix.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

import pydantic

from cardshop.config import Settings
from cardshop.errors import ExternalServiceError, NotFoundError, ValidationError, service_boundary
from cardshop.metrics import notifications_sent_total, order_status_updates_total
from cardshop.models import (
    CardConfig,
    NotificationKind,
    NotificationRecord,
    Order,
    OrderDraft,
    OrderStatus,
    SendResult,
)
from cardshop.notifications import NotificationDispatcher, render_order_email
from cardshop.order_state import TransitionPolicy, policy_for
from cardshop.permissions import Permission, Principal, require_permission
from cardshop.store import KeyValueStore, Versioned
from cardshop.verification import VerificationState, VerificationWorkflow

logger = logging.getLogger(__name__)

ORDER_KEY_PREFIX = "order:"
ORDER_NUMBER_KEY_PREFIX = "order_number:"
ORDER_NUMBER_COUNTER = "counter:order_number"
MAX_TRACKING_NUMBER_LENGTH = 64


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_status(value: Any) -> OrderStatus:
    """Exact, case-sensitive match against the six status values."""
    if isinstance(value, OrderStatus):
        return value
    if isinstance(value, str):
        try:
            return OrderStatus(value)
        except ValueError:
            pass
    raise ValidationError("Invalid status provided")


def parse_kind(value: Any) -> NotificationKind:
    if isinstance(value, NotificationKind):
        return value
    if isinstance(value, str):
        try:
            return NotificationKind(value)
        except ValueError:
            pass
    raise ValidationError("Invalid email type provided")


def _dump(order: Order) -> dict[str, Any]:
    return order.model_dump(mode="json")


class OrderLifecycleManager:
    def __init__(
        self,
        store: KeyValueStore,
        dispatcher: NotificationDispatcher,
        settings: Settings,
        policy: TransitionPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
        verification: VerificationWorkflow | None = None,
    ):
        self._store = store
        self._verification = verification or VerificationWorkflow(store, dispatcher, settings)
        self._dispatcher = dispatcher
        self._settings = settings
        self._policy = policy or policy_for(settings.transition_policy)
        self._clock = clock

    async def _load(self, order_ref: str) -> Versioned:
        """Resolve an opaque id or a human order number (LNK-1001)."""
        if not isinstance(order_ref, str) or not order_ref.strip():
            raise NotFoundError("Order not found")
        ref = order_ref.strip()
        entry = await self._store.get(ORDER_KEY_PREFIX + ref)
        if entry is None:
            index = await self._store.get(ORDER_NUMBER_KEY_PREFIX + ref.upper())
            if index is not None:
                entry = await self._store.get(ORDER_KEY_PREFIX + index.value["id"])
        if entry is None:
            raise NotFoundError("Order not found")
        return entry

    async def _mutate(self, order_ref: str, change: Callable[[Order], Order]) -> Order:
        """
        Apply change to the latest stored order and commit it only if nobody wrote in between;
        on conflict re-read and re-apply. change may raise to abort without writing.
        """
        attempts = self._settings.order_cas_max_attempts
        for attempt in range(1, attempts + 1):
            entry = await self._load(order_ref)
            updated = change(Order.model_validate(entry.value))
            if await self._store.put_if_version(entry.key, _dump(updated), entry.version):
                return updated
            logger.info("Version conflict on %s (attempt %d/%d), re-reading", entry.key, attempt, attempts)
        logger.warning("Giving up on %s after %d conflicting writes", order_ref, attempts)
        raise ExternalServiceError("Order is being updated concurrently, please retry")

    async def _checked_card_config(self, card_config: CardConfig) -> CardConfig:
        """
        mobileVerified comes from the verification workflow, never from the client. With
        CHECKOUT_REQUIRES_VERIFIED_MOBILE an unverified number stops the order.
        """
        if not card_config.mobile:
            return card_config.model_copy(update={"mobile_verified": False})
        require = self._settings.checkout_requires_verified_mobile
        try:
            state = await self._verification.status(card_config.mobile)
        except ValidationError:
            if require:
                raise
            state = VerificationState.UNVERIFIED
        if require and state != VerificationState.VERIFIED:
            raise ValidationError("Mobile number is not verified")
        return card_config.model_copy(update={"mobile_verified": state == VerificationState.VERIFIED})

    @service_boundary
    async def list_orders(self, principal: Principal) -> list[Order]:
        require_permission(principal, Permission.VIEW_ORDERS)
        entries = await self._store.scan(ORDER_KEY_PREFIX)
        orders = [Order.model_validate(entry.value) for entry in entries]
        orders.sort(key=lambda order: order.created_at, reverse=True)
        return orders

    @service_boundary
    async def get_order(self, principal: Principal, order_ref: str) -> Order:
        require_permission(principal, Permission.VIEW_ORDERS)
        entry = await self._load(order_ref)
        return Order.model_validate(entry.value)

    @service_boundary
    async def create_order(self, principal: Principal, draft: OrderDraft | dict[str, Any]) -> Order:
        require_permission(principal, Permission.CREATE_ORDERS)
        if not isinstance(draft, OrderDraft):
            try:
                draft = OrderDraft.model_validate(draft)
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid order: {e.errors()[0]['msg']}") from None
        card_config = await self._checked_card_config(draft.card_config)

        sequence = await self._store.incr(ORDER_NUMBER_COUNTER)
        order_number = f"{self._settings.order_number_prefix}-{self._settings.order_number_start + sequence - 1}"
        now = self._clock()
        order = Order(
            id=uuid.uuid4().hex,
            order_number=order_number,
            status=OrderStatus.PENDING,
            customer_name=draft.customer_name,
            email=str(draft.email),
            card_config=card_config,
            pricing=draft.pricing,
            created_at=now,
            updated_at=now,
        )
        if not await self._store.put_if_version(ORDER_KEY_PREFIX + order.id, _dump(order), None):
            raise ExternalServiceError("Could not allocate order id, please retry")
        indexed = await self._store.put_if_version(
            ORDER_NUMBER_KEY_PREFIX + order_number.upper(), {"id": order.id}, None
        )
        if not indexed:
            # Still reachable by id; the number lookup needs the index entry restored by hand.
            logger.error("Order %s created but number index %s was not written", order.id, order_number)
        logger.info("Created order %s (%s)", order.order_number, order.id)
        return order

    @service_boundary
    async def update_status(self, principal: Principal, order_ref: str, new_status: Any) -> Order:
        require_permission(principal, Permission.UPDATE_ORDERS)
        status = parse_status(new_status)
        previous: list[OrderStatus] = []

        def change(order: Order) -> Order:
            if not self._policy(order.status, status):
                raise ValidationError(
                    f"Cannot move order from {order.status.value} to {status.value}"
                )
            previous.append(order.status)
            return order.model_copy(update={"status": status, "updated_at": self._clock()})

        updated = await self._mutate(order_ref, change)
        order_status_updates_total.labels(status=status.value).inc()
        logger.info("order=%s status %s -> %s", updated.order_number, previous[-1].value, status.value)
        return updated

    @service_boundary
    async def set_tracking_number(self, principal: Principal, order_ref: str, tracking_number: str | None) -> Order:
        require_permission(principal, Permission.UPDATE_ORDERS)
        value = (tracking_number or "").strip() or None
        if value is not None and len(value) > MAX_TRACKING_NUMBER_LENGTH:
            raise ValidationError("Tracking number too long")

        def change(order: Order) -> Order:
            return order.model_copy(update={"tracking_number": value, "updated_at": self._clock()})

        updated = await self._mutate(order_ref, change)
        logger.info("order=%s tracking number %s", updated.order_number, "set" if value else "cleared")
        return updated

    @service_boundary
    async def resend_notification(self, principal: Principal, order_ref: str, kind: Any) -> SendResult:
        """
        Send the kind email for an order again. Every call dispatches a new message and appends a new
        audit record, including failed sends (success=False), which are then raised as
        ExternalServiceError.
        """
        require_permission(principal, Permission.SEND_EMAILS)
        kind = parse_kind(kind)
        order = Order.model_validate((await self._load(order_ref)).value)
        subject, body = render_order_email(order, kind, self._settings.support_email)

        sent_at = self._clock()
        failure: Exception | None = None
        try:
            receipt = await self._dispatcher.send_email(order.email, subject, body)
            record = NotificationRecord(
                kind=kind, sent_at=sent_at, success=True, recipient=order.email,
                message_id=receipt.message_id,
            )
        except Exception as e:
            failure = e
            record = NotificationRecord(
                kind=kind, sent_at=sent_at, success=False, recipient=order.email,
                error=str(e) or type(e).__name__,
            )
        outcome = "success" if failure is None else "failure"
        notifications_sent_total.labels(kind=kind.value, outcome=outcome).inc()

        def append(current: Order) -> Order:
            history = {k: list(v) for k, v in current.emails_sent.items()}
            history.setdefault(kind, []).append(record)
            return current.model_copy(update={"emails_sent": history})

        try:
            await self._mutate(order.id, append)
        except Exception:
            logger.error(
                "Audit record lost: order=%s kind=%s success=%s message_id=%s sent_at=%s",
                order.id, kind.value, record.success, record.message_id, sent_at.isoformat(),
            )
            raise

        if failure is not None:
            logger.warning("order=%s %s email to %s failed: %s", order.order_number, kind.value, order.email, failure)
            raise ExternalServiceError(f"Failed to send {kind.value} email") from failure
        logger.info("order=%s %s email sent to %s (%s)", order.order_number, kind.value, order.email, record.message_id)
        return SendResult(
            order_id=order.id,
            order_number=order.order_number,
            kind=kind,
            success=True,
            sent_at=sent_at,
            message_id=record.message_id,
        )
