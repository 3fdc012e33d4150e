"""
Order Factory
=============
Expands a cart into one pending order per resolvable line item. All orders
from one call share a `transaction_id`, and every amount is recomputed from
the trusted product record.
"""

import asyncio
import secrets
import time
from typing import Optional, Union

import structlog
from pydantic import Field

from .errors import OrderCreationError, PersistenceError, StorefrontError, ValidationError
from .models import (
    AuditEventType,
    AuditLogEntry,
    CamelModel,
    CartItem,
    Order,
    OrderStatus,
    PaymentStatus,
    SkippedLineItem,
)
from .repositories import (
    IAuditLog,
    IOrderRepository,
    IProductRepository,
    InMemoryAuditLog,
    InMemoryOrderRepository,
    InMemoryProductRepository,
)


def generate_transaction_id() -> str:
    """Time-based id with a random suffix, e.g. TXN-1760861934123-9F2C41AB"""
    return f"TXN-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


class OrderBatch(CamelModel):
    """Result of one cart expansion"""
    transaction_id: str
    orders: list[Order]
    skipped: list[SkippedLineItem] = Field(default_factory=list)

    @property
    def primary_order(self) -> Order:
        """The order handed to the payment gateway."""
        return self.orders[0]


class OrderFactory:

    def __init__(
        self,
        products: Optional[IProductRepository] = None,
        orders: Optional[IOrderRepository] = None,
        audit_log: Optional[IAuditLog] = None,
    ):
        self.products = products or InMemoryProductRepository()
        self.orders = orders or InMemoryOrderRepository()
        self.audit = audit_log or InMemoryAuditLog()
        self._logger = structlog.get_logger().bind(component="order_factory")

    async def create_orders(
        self,
        account_id: str,
        cart_items: list[CartItem],
        payment_method: str = "Manual",
    ) -> OrderBatch:
        if not cart_items:
            raise ValidationError("empty cart", details={"field": "cartItems"})

        transaction_id = generate_transaction_id()
        log = self._logger.bind(transaction_id=transaction_id)

        # Line items are independent rows
        results = await asyncio.gather(*(
            self._create_line(account_id, item, transaction_id, payment_method or "Manual")
            for item in cart_items
        ), return_exceptions=True)

        orders = [r for r in results if isinstance(r, Order)]
        skipped = [r for r in results if isinstance(r, SkippedLineItem)]
        failures = [r for r in results if isinstance(r, BaseException)]

        if failures:
            orphaned = [o.order_id for o in orders]
            log.error(
                "order_batch_partially_failed",
                account_id=account_id,
                failed=len(failures),
                orphaned_orders=orphaned,
            )
            details = {"transactionId": transaction_id, "orphanedOrders": orphaned}
            error = failures[0]
            if not isinstance(error, StorefrontError):
                raise PersistenceError("Failed to create orders", details=details) from error
            error.details.update(details)
            raise error

        if not orders:
            log.warning("order_batch_rejected", skipped=len(skipped))
            raise OrderCreationError(
                "No cart item matched an available product",
                details={
                    "transactionId": transaction_id,
                    "skipped": [s.to_wire() for s in skipped],
                },
            )

        log.info(
            "order_batch_created",
            account_id=account_id,
            orders=len(orders),
            skipped=len(skipped),
            total=round(sum(o.amount for o in orders), 2),
        )
        return OrderBatch(transaction_id=transaction_id, orders=orders, skipped=skipped)

    async def _create_line(
        self,
        account_id: str,
        item: CartItem,
        transaction_id: str,
        payment_method: str,
    ) -> Union[Order, SkippedLineItem]:
        product = await self.products.get(item.product_id)
        if product is None:
            return self._skip(item, "product_not_found")
        if not product.is_available:
            return self._skip(item, "product_unavailable")

        unit_price = product.effective_price(item.variant_name)
        if unit_price is None:
            return self._skip(item, "unknown_variant")

        order = Order(
            account_id=account_id,
            product_id=product.product_id,
            transaction_id=transaction_id,
            payment_method=payment_method,
            quantity=item.quantity,
            variant_name=item.variant_name,
            amount=round(unit_price * item.quantity, 2),
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.UNPAID,
        )

        try:
            created = await self.orders.create(order)
        except PersistenceError:
            raise
        except Exception as e:
            self._logger.error("order_create_failed", error=str(e), product_id=product.product_id)
            raise PersistenceError("Failed to create order") from e

        await self.audit.append(AuditLogEntry(
            correlation_id=transaction_id,
            event_type=AuditEventType.ORDER_CREATED,
            entity_id=created.order_id,
            new_state={"status": created.status.value, "paymentStatus": created.payment_status.value},
            metadata={"productId": created.product_id, "amount": created.amount, "quantity": created.quantity},
            actor="customer",
        ))
        return created

    def _skip(self, item: CartItem, reason: str) -> SkippedLineItem:
        self._logger.info(
            "line_item_skipped",
            product_id=item.product_id,
            variant_name=item.variant_name,
            reason=reason,
        )
        return SkippedLineItem(product_id=item.product_id, variant_name=item.variant_name, reason=reason)
