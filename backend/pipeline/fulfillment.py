"""
Fulfillment State Machine
=========================
Governs the two correlated axes of an order:

    status:         pending → processing → completed
                    pending | processing → declined
                    any non-terminal     → cancelled
    paymentStatus:  unpaid | failed → paid     (gateway or admin verification)
                    unpaid          → failed   (gateway failure, stays pending)

Rules:
- `completed`, `declined` and `cancelled` are terminal.
- `completed` requires `paymentStatus = paid`, and it is the only transition
  that writes `deliveredContent`.
- A rejected transition raises and mutates nothing. Accepted transitions are
  compare-and-set on `Order.version`; a lost race is re-read and re-validated.
"""

from enum import Enum
from typing import Optional

import structlog

from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    AuditEventType,
    AuditLogEntry,
    DeliveredContent,
    Order,
    OrderStatus,
    PaymentStatus,
    utcnow,
)
from .repositories import IAuditLog, IOrderRepository, InMemoryAuditLog, InMemoryOrderRepository


class FulfillmentEvent(str, Enum):
    CONFIRM_PAYMENT = "confirm_payment"
    FAIL_PAYMENT = "fail_payment"
    COMPLETE = "complete"
    DECLINE = "decline"
    CANCEL = "cancel"


AUDIT_EVENTS = {
    FulfillmentEvent.CONFIRM_PAYMENT: AuditEventType.PAYMENT_CONFIRMED,
    FulfillmentEvent.FAIL_PAYMENT: AuditEventType.PAYMENT_FAILED,
    FulfillmentEvent.COMPLETE: AuditEventType.ORDER_COMPLETED,
    FulfillmentEvent.DECLINE: AuditEventType.ORDER_DECLINED,
    FulfillmentEvent.CANCEL: AuditEventType.ORDER_CANCELLED,
}

# Admin verification target status -> event
ADMIN_TARGETS = {
    OrderStatus.PROCESSING: FulfillmentEvent.CONFIRM_PAYMENT,
    OrderStatus.COMPLETED: FulfillmentEvent.COMPLETE,
    OrderStatus.DECLINED: FulfillmentEvent.DECLINE,
}


def _reject(order: Order, event: FulfillmentEvent, reason: str) -> InvalidTransitionError:
    return InvalidTransitionError(
        f"Cannot {event.value.replace('_', ' ')} an order that is "
        f"{order.status.value}/{order.payment_status.value}",
        details={
            "orderId": order.order_id,
            "status": order.status.value,
            "paymentStatus": order.payment_status.value,
            "reason": reason,
        },
    )


def plan_transition(
    order: Order,
    event: FulfillmentEvent,
    delivered_content: Optional[DeliveredContent] = None,
) -> Order:
    """Compute the next order state for `event`, or raise without side effects."""
    if order.is_terminal:
        raise _reject(order, event, "terminal")

    now = utcnow()

    if event == FulfillmentEvent.CONFIRM_PAYMENT:
        if order.status != OrderStatus.PENDING or order.payment_status == PaymentStatus.PAID:
            raise _reject(order, event, "not_awaiting_payment")
        return order.transition_to(
            status=OrderStatus.PROCESSING,
            payment_status=PaymentStatus.PAID,
            paid_at=now,
        )

    if event == FulfillmentEvent.FAIL_PAYMENT:
        if order.status != OrderStatus.PENDING or order.payment_status == PaymentStatus.PAID:
            raise _reject(order, event, "not_awaiting_payment")
        return order.transition_to(payment_status=PaymentStatus.FAILED)

    if event == FulfillmentEvent.COMPLETE:
        if order.status != OrderStatus.PROCESSING or order.payment_status != PaymentStatus.PAID:
            raise _reject(order, event, "payment_not_confirmed")
        if delivered_content is None or delivered_content.is_empty:
            raise ValidationError(
                "Delivered content is required to complete an order",
                details={"field": "deliveredContent"},
            )
        return order.transition_to(
            status=OrderStatus.COMPLETED,
            delivered_content=delivered_content,
            completed_at=now,
        )

    if event == FulfillmentEvent.DECLINE:
        if order.status not in (OrderStatus.PENDING, OrderStatus.PROCESSING):
            raise _reject(order, event, "not_reviewable")
        return order.transition_to(status=OrderStatus.DECLINED)

    if event == FulfillmentEvent.CANCEL:
        return order.transition_to(status=OrderStatus.CANCELLED)

    raise _reject(order, event, "unknown_event")


class FulfillmentStateMachine:

    def __init__(
        self,
        orders: Optional[IOrderRepository] = None,
        audit_log: Optional[IAuditLog] = None,
        max_retries: int = 3,
    ):
        self.orders = orders or InMemoryOrderRepository()
        self.audit = audit_log or InMemoryAuditLog()
        self.max_retries = max_retries
        self._logger = structlog.get_logger().bind(component="fulfillment")

    async def apply(
        self,
        order_id: str,
        event: FulfillmentEvent,
        actor: str = "system",
        delivered_content: Optional[DeliveredContent] = None,
    ) -> Order:
        log = self._logger.bind(order_id=order_id, fulfillment_event=event.value, actor=actor)

        for _ in range(self.max_retries):
            current = await self.orders.get(order_id)
            if current is None:
                raise NotFoundError("Order not found", details={"orderId": order_id})

            try:
                updated = plan_transition(current, event, delivered_content)
            except (InvalidTransitionError, ValidationError) as e:
                log.info("transition_rejected", status=current.status.value, reason=e.message)
                raise

            if await self.orders.save_if_version(updated, current.version):
                await self._record(current, updated, event, actor)
                log.info(
                    "transition_applied",
                    transaction_id=updated.transaction_id,
                    status=updated.status.value,
                    payment_status=updated.payment_status.value,
                )
                return updated

            log.info("transition_retry", version=current.version)

        log.warning("transition_contended", retries=self.max_retries)
        raise InvalidTransitionError(
            "Order was modified concurrently, please retry",
            details={"orderId": order_id, "reason": "concurrent_update"},
        )

    async def _record(self, before: Order, after: Order, event: FulfillmentEvent, actor: str) -> None:
        await self.audit.append(AuditLogEntry(
            correlation_id=after.transaction_id,
            event_type=AUDIT_EVENTS[event],
            entity_id=after.order_id,
            previous_state={"status": before.status.value, "paymentStatus": before.payment_status.value},
            new_state={"status": after.status.value, "paymentStatus": after.payment_status.value},
            metadata={"version": after.version},
            actor=actor,
        ))

    # =========================================================================
    # NAMED TRANSITIONS
    # =========================================================================

    async def confirm_payment(self, order_id: str, actor: str = "gateway") -> Order:
        return await self.apply(order_id, FulfillmentEvent.CONFIRM_PAYMENT, actor)

    async def record_payment_failure(self, order_id: str, actor: str = "gateway") -> Order:
        return await self.apply(order_id, FulfillmentEvent.FAIL_PAYMENT, actor)

    async def complete(self, order_id: str, delivered_content: DeliveredContent, actor: str = "admin") -> Order:
        return await self.apply(order_id, FulfillmentEvent.COMPLETE, actor, delivered_content)

    async def decline(self, order_id: str, actor: str = "admin") -> Order:
        return await self.apply(order_id, FulfillmentEvent.DECLINE, actor)

    async def cancel(self, order_id: str, actor: str = "customer") -> Order:
        return await self.apply(order_id, FulfillmentEvent.CANCEL, actor)

    async def admin_verify(
        self,
        order_id: str,
        target: OrderStatus,
        delivered_content: Optional[DeliveredContent] = None,
        actor: str = "admin",
    ) -> Order:
        """Admin verification: `processing` (manual payment), `completed` or `declined`."""
        event = ADMIN_TARGETS.get(target)
        if event is None:
            raise ValidationError(
                f"Admins cannot move an order to '{target.value}'",
                details={"field": "status"},
            )
        if event != FulfillmentEvent.COMPLETE and delivered_content and not delivered_content.is_empty:
            # Delivered content is written by the completion edge only
            self._logger.info("delivered_content_ignored", order_id=order_id, target=target.value)
            delivered_content = None
        return await self.apply(order_id, event, actor, delivered_content)
