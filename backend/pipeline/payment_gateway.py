"""
Payment Gateway Adapter
=======================
Translates a checkout group into a payment-initiation request for the
external gateway and interprets the reply as a redirect URL or a typed
failure. Initiation never changes order state.

Gateway confirmations arrive separately (webhook). They are matched back to
the orders through `transactionId` and drive the fulfillment state machine.

    POST {GATEWAY_BASE_URL}/payment/initiate
        {amount, correlationId, payerName, payerPhone, successUrl, cancelUrl}
    -> {redirectUrl} | {payment_url} | {error}
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Any, Callable, Literal, Optional

import httpx
import structlog
from pydantic import Field

from .errors import (
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    StorefrontError,
    ValidationError,
)
from .fulfillment import FulfillmentStateMachine
from .models import AuditEventType, AuditLogEntry, CamelModel, Order
from .repositories import IAccountRepository, IAuditLog, IOrderRepository


# =============================================================================
# WIRE MODELS
# =============================================================================

class PaymentInitiationRequest(CamelModel):
    amount: float
    correlation_id: str
    payer_name: str
    payer_phone: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PaymentConfirmation(CamelModel):
    """Asynchronous gateway report for one correlation id"""
    transaction_id: str
    status: Literal["success", "failed"]
    amount: Optional[float] = None
    gateway_reference: Optional[str] = None


class ConfirmationResult(CamelModel):
    received: bool = True
    transaction_id: str
    status: str
    updated: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)


# =============================================================================
# GATEWAY CLIENT
# =============================================================================

class IPaymentGatewayClient(ABC):

    @abstractmethod
    async def initiate(self, request: PaymentInitiationRequest) -> str:
        """Return the gateway redirect URL or raise `GatewayError`."""
        pass

    async def close(self) -> None:
        pass


class HttpPaymentGatewayClient(IPaymentGatewayClient):
    """httpx client for the hosted-checkout gateway"""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            headers={"X-API-KEY": api_key} if api_key else {},
            transport=transport,
        )
        self._logger = structlog.get_logger().bind(component="gateway_client")

    async def initiate(self, request: PaymentInitiationRequest) -> str:
        try:
            response = await self._client.post(
                "/payment/initiate",
                json=request.to_wire(exclude_none=True),
            )
        except httpx.TimeoutException as e:
            self._logger.error("gateway_timeout", correlation_id=request.correlation_id)
            raise GatewayError("Payment gateway timed out") from e
        except httpx.HTTPError as e:
            self._logger.error("gateway_unreachable", correlation_id=request.correlation_id, error=str(e))
            raise GatewayError("Payment gateway unreachable") from e

        try:
            body: dict[str, Any] = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        redirect_url = body.get("redirectUrl") or body.get("payment_url")
        if response.is_error or body.get("error") or body.get("success") is False or not redirect_url:
            self._logger.warning(
                "gateway_rejected",
                correlation_id=request.correlation_id,
                http_status=response.status_code,
                gateway_error=body.get("error") or body.get("message"),
            )
            raise GatewayError(
                "Payment gateway rejected the request",
                details={"gatewayStatus": response.status_code},
            )
        return redirect_url

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# ADAPTER
# =============================================================================

ConfirmationHandler = Callable[[list[Order], PaymentConfirmation], Any]


class PaymentGatewayAdapter:
    """
    Example:
        adapter = PaymentGatewayAdapter(orders, accounts, client, fulfillment)
        url = await adapter.initiate(order_id)
        # Customer pays at url
        # Webhook: await adapter.handle_confirmation(confirmation)
    """

    def __init__(
        self,
        orders: IOrderRepository,
        accounts: IAccountRepository,
        client: IPaymentGatewayClient,
        fulfillment: FulfillmentStateMachine,
        audit_log: Optional[IAuditLog] = None,
        default_phone: str = "01700000000",
        frontend_url: Optional[str] = None,
    ):
        self.orders = orders
        self.accounts = accounts
        self.client = client
        self.fulfillment = fulfillment
        self.audit = audit_log or fulfillment.audit
        self.default_phone = default_phone
        self.frontend_url = frontend_url
        self._handlers: dict[str, ConfirmationHandler] = {}
        self._register_handlers()
        self._logger = structlog.get_logger().bind(component="payment_gateway")

    # =========================================================================
    # INITIATION
    # =========================================================================

    async def initiate(self, order_id: str) -> str:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order not found", details={"orderId": order_id})
        if not order.is_payable:
            raise InvalidTransitionError(
                "Order is not awaiting payment",
                details={"orderId": order_id, "status": order.status.value,
                         "paymentStatus": order.payment_status.value},
            )

        account = await self.accounts.get(order.account_id)
        if account is None:
            raise NotFoundError("Order owner not found", details={"orderId": order_id})

        # One correlation id pays the whole checkout group
        siblings = await self.orders.list_by_transaction(order.transaction_id)
        payable = [o for o in siblings if o.is_payable] or [order]
        amount = round(sum(o.amount for o in payable), 2)

        log = self._logger.bind(transaction_id=order.transaction_id, order_id=order_id)
        log.info("payment_initiating", amount=amount, orders=len(payable))

        redirect_url = await self.client.initiate(PaymentInitiationRequest(
            amount=amount,
            correlation_id=order.transaction_id,
            payer_name=account.name,
            payer_phone=account.phone or self.default_phone,
            success_url=self._frontend("/dashboard?payment=success"),
            cancel_url=self._frontend("/checkout?payment=cancelled"),
        ))

        await self.audit.append(AuditLogEntry(
            correlation_id=order.transaction_id,
            event_type=AuditEventType.PAYMENT_INITIATED,
            entity_type="payment",
            entity_id=order.transaction_id,
            metadata={"amount": amount, "orders": [o.order_id for o in payable]},
            actor="customer",
        ))
        log.info("payment_initiated")
        return redirect_url

    def _frontend(self, path: str) -> Optional[str]:
        if not self.frontend_url:
            return None
        return f"{self.frontend_url.rstrip('/')}{path}"

    # =========================================================================
    # CONFIRMATION
    # =========================================================================

    def register(self, status: str):
        """Decorator to register a handler for a confirmation status"""
        def decorator(handler: ConfirmationHandler):
            self._handlers[status] = handler
            return handler
        return decorator

    def _register_handlers(self):

        @self.register("success")
        async def handle_success(orders: list[Order], confirmation: PaymentConfirmation):
            return await self._on_success(orders, confirmation)

        @self.register("failed")
        async def handle_failure(orders: list[Order], confirmation: PaymentConfirmation):
            return await self._on_failure(orders, confirmation)

    async def handle_confirmation(self, confirmation: PaymentConfirmation) -> ConfirmationResult:
        log = self._logger.bind(transaction_id=confirmation.transaction_id)
        log.info("confirmation_received", status=confirmation.status,
                 gateway_reference=confirmation.gateway_reference)

        orders = await self.orders.list_by_transaction(confirmation.transaction_id)
        if not orders:
            log.warning("confirmation_unmatched")
            raise NotFoundError(
                "No orders for transaction",
                details={"transactionId": confirmation.transaction_id},
            )

        handler = self._handlers.get(confirmation.status)
        if handler is None:
            raise ValidationError("Unsupported confirmation status", details={"field": "status"})
        return await handler(orders, confirmation)

    async def _on_success(self, orders: list[Order], confirmation: PaymentConfirmation) -> ConfirmationResult:
        payable = [o for o in orders if o.is_payable]
        result = ConfirmationResult(transaction_id=confirmation.transaction_id, status="success")
        result.skipped = [o.order_id for o in orders if not o.is_payable]

        expected = round(sum(o.amount for o in payable), 2)
        if payable and confirmation.amount is not None and confirmation.amount + 0.005 < expected:
            self._logger.warning(
                "amount_mismatch",
                transaction_id=confirmation.transaction_id,
                expected=expected,
                received=confirmation.amount,
            )
            result.status = "amount_mismatch"
            result.skipped = [o.order_id for o in orders]
            return result

        return await self._transition_each(payable, result, self.fulfillment.confirm_payment)

    async def _on_failure(self, orders: list[Order], confirmation: PaymentConfirmation) -> ConfirmationResult:
        payable = [o for o in orders if o.is_payable]
        result = ConfirmationResult(transaction_id=confirmation.transaction_id, status="failed")
        result.skipped = [o.order_id for o in orders if not o.is_payable]
        return await self._transition_each(payable, result, self.fulfillment.record_payment_failure)

    async def _transition_each(self, orders: list[Order], result: ConfirmationResult, transition) -> ConfirmationResult:
        for order in orders:
            try:
                await transition(order.order_id, actor="gateway")
                result.updated.append(order.order_id)
            except StorefrontError as e:
                # Sibling moved on (admin decision or duplicate delivery)
                self._logger.info("confirmation_skipped_order", order_id=order.order_id, reason=e.message)
                result.skipped.append(order.order_id)
        return result


def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Hex HMAC-SHA256 of the raw body, compared in constant time."""
    if not signature:
        return False
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())
