"""
Storefront
==========
Request-level operations of the order lifecycle, composed from the engine
components. Every call takes the caller explicitly; nothing is read from
ambient session state.

    checkout        → IdentityResolver → OrderFactory
    initiate        → PaymentGatewayAdapter
    confirmation    → PaymentGatewayAdapter → FulfillmentStateMachine
    admin verify    → FulfillmentStateMachine
    reads           → Secret Field Gate
"""

from typing import Optional

import structlog
from pydantic import Field

from .credentials import PasswordHasher
from .errors import AuthenticationError, AuthorizationError, NotFoundError, ValidationError
from .fulfillment import FulfillmentStateMachine
from .identity_resolver import IdentityResolver
from .models import (
    Account,
    AuditEventType,
    AuditLogEntry,
    CamelModel,
    Caller,
    CartItem,
    DeliveredContent,
    Order,
    OrderStatus,
    Role,
    SkippedLineItem,
)
from .order_factory import OrderFactory
from .payment_gateway import (
    ConfirmationResult,
    IPaymentGatewayClient,
    PaymentConfirmation,
    PaymentGatewayAdapter,
)
from .repositories import (
    IAccountRepository,
    IAuditLog,
    IOrderRepository,
    IProductRepository,
    InMemoryAccountRepository,
    InMemoryAuditLog,
    InMemoryOrderRepository,
    InMemoryProductRepository,
)
from . import secret_gate


class CheckoutSubmission(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    payment_method: str = "Manual"
    cart_items: list[CartItem] = Field(default_factory=list)


class CheckoutResult(CamelModel):
    order_id: str
    transaction_id: str
    account_id: str
    orders: list[Order]
    skipped: list[SkippedLineItem] = Field(default_factory=list)


class Storefront:

    def __init__(
        self,
        gateway_client: IPaymentGatewayClient,
        accounts: Optional[IAccountRepository] = None,
        products: Optional[IProductRepository] = None,
        orders: Optional[IOrderRepository] = None,
        audit_log: Optional[IAuditLog] = None,
        hasher: Optional[PasswordHasher] = None,
        max_transition_retries: int = 3,
        default_payer_phone: str = "01700000000",
        frontend_url: Optional[str] = None,
    ):
        self.accounts = accounts or InMemoryAccountRepository()
        self.products = products or InMemoryProductRepository()
        self.orders = orders or InMemoryOrderRepository()
        self.audit = audit_log or InMemoryAuditLog()

        self.identity = IdentityResolver(self.accounts, hasher)
        self.factory = OrderFactory(self.products, self.orders, self.audit)
        self.fulfillment = FulfillmentStateMachine(self.orders, self.audit, max_transition_retries)
        self.gateway = PaymentGatewayAdapter(
            self.orders,
            self.accounts,
            gateway_client,
            self.fulfillment,
            audit_log=self.audit,
            default_phone=default_payer_phone,
            frontend_url=frontend_url,
        )
        self._logger = structlog.get_logger().bind(component="storefront")

    # =========================================================================
    # CHECKOUT & PAYMENT
    # =========================================================================

    async def checkout(self, submission: CheckoutSubmission) -> CheckoutResult:
        # Rejected before identity resolution so an empty cart never creates an account
        if not submission.cart_items:
            raise ValidationError("empty cart", details={"field": "cartItems"})
        account_id = await self.identity.resolve(submission.name, submission.email, submission.phone)
        batch = await self.factory.create_orders(account_id, submission.cart_items, submission.payment_method)
        return CheckoutResult(
            order_id=batch.primary_order.order_id,
            transaction_id=batch.transaction_id,
            account_id=account_id,
            orders=batch.orders,
            skipped=batch.skipped,
        )

    async def initiate_payment(self, order_id: str) -> str:
        return await self.gateway.initiate(order_id)

    async def confirm_payment(self, confirmation: PaymentConfirmation) -> ConfirmationResult:
        return await self.gateway.handle_confirmation(confirmation)

    async def authenticate(self, identifier: str, password: str) -> Account:
        return await self.identity.authenticate(identifier, password)

    # =========================================================================
    # READS (gated)
    # =========================================================================

    async def get_product(self, caller: Caller, product_id: str) -> dict:
        product = await self.products.get(product_id)
        if product is None:
            raise NotFoundError("Product not found", details={"productId": product_id})
        return secret_gate.project_product(product, caller)

    async def list_orders(self, caller: Caller) -> list[dict]:
        owner = secret_gate.listing_scope(caller)
        orders = await self.orders.list(account_id=owner)

        views = secret_gate.project_orders(orders, caller)
        products: dict[str, Optional[dict]] = {}
        accounts: dict[str, Optional[dict]] = {}
        for view in views:
            product_id = view["productId"]
            if product_id not in products:
                product = await self.products.get(product_id)
                products[product_id] = secret_gate.product_summary(product, caller) if product else None
            view["product"] = products[product_id]

            if caller.is_admin:
                account_id = view["accountId"]
                if account_id not in accounts:
                    account = await self.accounts.get(account_id)
                    accounts[account_id] = secret_gate.account_summary(account) if account else None
                view["account"] = accounts[account_id]
        return views

    async def get_order(self, caller: Caller, order_id: str) -> dict:
        return secret_gate.project_order(await self._load(order_id), caller)

    async def audit_trail(self, caller: Caller, transaction_id: str) -> list[dict]:
        self._require_admin(caller)
        entries = await self.audit.get_by_correlation_id(transaction_id)
        return [e.to_wire() for e in entries]

    # =========================================================================
    # STATE CHANGES
    # =========================================================================

    async def verify_order(
        self,
        caller: Caller,
        order_id: str,
        status: OrderStatus,
        delivered_content: Optional[DeliveredContent] = None,
    ) -> dict:
        self._require_admin(caller)
        order = await self.fulfillment.admin_verify(
            order_id, status, delivered_content, actor=f"admin:{caller.account_id}"
        )
        return secret_gate.project_order(order, caller)

    async def cancel_order(self, caller: Caller, order_id: str) -> dict:
        order = await self._load(order_id)
        secret_gate.ensure_can_read(order, caller)
        actor = "admin" if caller.is_admin else "customer"
        cancelled = await self.fulfillment.cancel(order_id, actor=f"{actor}:{caller.account_id}")
        return secret_gate.project_order(cancelled, caller)

    async def delete_order(self, caller: Caller, order_id: str) -> None:
        """Administrative delete, outside the state machine."""
        self._require_admin(caller)
        order = await self._load(order_id)
        await self.orders.delete(order_id)
        await self.audit.append(AuditLogEntry(
            correlation_id=order.transaction_id,
            event_type=AuditEventType.ORDER_DELETED,
            entity_id=order_id,
            previous_state={"status": order.status.value, "paymentStatus": order.payment_status.value},
            actor=f"admin:{caller.account_id}",
        ))
        self._logger.info("order_deleted", order_id=order_id, transaction_id=order.transaction_id)

    async def _load(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order not found", details={"orderId": order_id})
        return order

    @staticmethod
    def _require_admin(caller: Caller) -> None:
        if caller.is_anonymous:
            raise AuthenticationError("Sign in required")
        if caller.role != Role.ADMIN:
            raise AuthorizationError("Admins only")
