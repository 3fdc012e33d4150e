import hashlib
import hmac
import json

import httpx
import pytest

from pipeline.errors import GatewayError, InvalidTransitionError, NotFoundError
from pipeline.models import AuditEventType, CartItem, OrderStatus, PaymentStatus
from pipeline.payment_gateway import (
    HttpPaymentGatewayClient,
    PaymentConfirmation,
    PaymentInitiationRequest,
    verify_signature,
)
from pipeline.storefront import CheckoutSubmission

REQUEST = PaymentInitiationRequest(
    amount=700,
    correlation_id="TXN-1-AAAA0000",
    payer_name="Rahim",
    payer_phone="01711111111",
)


def gateway(handler) -> HttpPaymentGatewayClient:
    return HttpPaymentGatewayClient(
        base_url="https://gateway.example.com/api",
        api_key="key-123",
        transport=httpx.MockTransport(handler),
    )


async def checkout(storefront, *items, phone="01711111111"):
    return await storefront.checkout(CheckoutSubmission(
        name="Rahim",
        email="rahim@example.com",
        phone=phone,
        cart_items=list(items),
    ))


# =============================================================================
# HTTP CLIENT
# =============================================================================

async def test_client_posts_camel_case_request():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["api_key"] = request.headers.get("X-API-KEY")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"redirectUrl": "https://pay.example.com/r/1"})

    client = gateway(handler)
    assert await client.initiate(REQUEST) == "https://pay.example.com/r/1"
    await client.close()

    assert seen["path"] == "/api/payment/initiate"
    assert seen["api_key"] == "key-123"
    assert seen["body"] == {
        "amount": 700,
        "correlationId": "TXN-1-AAAA0000",
        "payerName": "Rahim",
        "payerPhone": "01711111111",
    }


async def test_client_accepts_payment_url_reply():
    client = gateway(lambda request: httpx.Response(200, json={"status": True, "payment_url": "https://pay.example.com/r/2"}))
    assert await client.initiate(REQUEST) == "https://pay.example.com/r/2"


@pytest.mark.parametrize("response", [
    httpx.Response(200, json={"error": "invalid api key"}),
    httpx.Response(200, json={"success": False, "message": "amount too low"}),
    httpx.Response(200, json={"status": True}),
    httpx.Response(500, text="upstream exploded"),
    httpx.Response(400, json={"redirectUrl": "https://pay.example.com/r/3"}),
])
async def test_client_rejections_are_gateway_errors(response):
    client = gateway(lambda request: response)
    with pytest.raises(GatewayError):
        await client.initiate(REQUEST)


async def test_client_transport_failure_is_gateway_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError):
        await gateway(handler).initiate(REQUEST)


async def test_client_timeout_is_gateway_error():
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(GatewayError) as exc:
        await gateway(handler).initiate(REQUEST)
    assert exc.value.status_code == 502


# =============================================================================
# INITIATION
# =============================================================================

async def test_initiate_charges_the_whole_checkout_group(storefront, gateway_client, orders, audit_log):
    result = await checkout(
        storefront,
        CartItem(product_id="prod-netflix"),
        CartItem(product_id="prod-canva", quantity=2),
    )

    url = await storefront.initiate_payment(result.order_id)

    assert url == gateway_client.redirect_url
    sent = gateway_client.requests[0]
    assert sent.amount == 950
    assert sent.correlation_id == result.transaction_id
    assert sent.payer_name == "Rahim"
    assert sent.payer_phone == "01711111111"
    assert sent.success_url == "https://shop.example.com/dashboard?payment=success"

    # Initiation never moves an order
    for order in await orders.list_by_transaction(result.transaction_id):
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.UNPAID

    events = [e.event_type for e in await audit_log.get_by_correlation_id(result.transaction_id)]
    assert events[-1] == AuditEventType.PAYMENT_INITIATED


async def test_initiate_uses_default_phone(storefront, gateway_client):
    result = await checkout(storefront, CartItem(product_id="prod-canva"), phone=None)

    await storefront.initiate_payment(result.order_id)

    assert gateway_client.requests[0].payer_phone == "01700000000"


async def test_initiate_unknown_order(storefront):
    with pytest.raises(NotFoundError):
        await storefront.initiate_payment("missing")


async def test_initiate_rejects_paid_order(storefront):
    result = await checkout(storefront, CartItem(product_id="prod-canva"))
    await storefront.fulfillment.confirm_payment(result.order_id)

    with pytest.raises(InvalidTransitionError):
        await storefront.initiate_payment(result.order_id)


async def test_gateway_failure_leaves_order_untouched(storefront, gateway_client, gateway_down, orders):
    result = await checkout(storefront, CartItem(product_id="prod-canva"))
    gateway_client.fail_with = gateway_down

    with pytest.raises(GatewayError):
        await storefront.initiate_payment(result.order_id)

    order = await orders.get(result.order_id)
    assert order.status == OrderStatus.PENDING
    assert order.version == 1


# =============================================================================
# CONFIRMATION
# =============================================================================

async def test_success_pays_every_sibling(storefront, orders):
    result = await checkout(
        storefront,
        CartItem(product_id="prod-netflix"),
        CartItem(product_id="prod-canva"),
    )

    outcome = await storefront.confirm_payment(
        PaymentConfirmation(transaction_id=result.transaction_id, status="success", amount=700)
    )

    assert outcome.status == "success"
    assert sorted(outcome.updated) == sorted(o.order_id for o in result.orders)
    for order in await orders.list_by_transaction(result.transaction_id):
        assert order.status == OrderStatus.PROCESSING
        assert order.payment_status == PaymentStatus.PAID


async def test_duplicate_success_is_idempotent(storefront, orders):
    result = await checkout(storefront, CartItem(product_id="prod-canva"))
    confirmation = PaymentConfirmation(transaction_id=result.transaction_id, status="success")

    await storefront.confirm_payment(confirmation)
    again = await storefront.confirm_payment(confirmation)

    assert again.updated == []
    assert again.skipped == [result.order_id]
    assert (await orders.get(result.order_id)).version == 2


async def test_success_skips_orders_an_admin_already_decided(storefront, orders):
    result = await checkout(
        storefront,
        CartItem(product_id="prod-netflix"),
        CartItem(product_id="prod-canva"),
    )
    declined, kept = result.orders
    await storefront.fulfillment.decline(declined.order_id)

    outcome = await storefront.confirm_payment(
        PaymentConfirmation(transaction_id=result.transaction_id, status="success")
    )

    assert outcome.updated == [kept.order_id]
    assert outcome.skipped == [declined.order_id]
    assert (await orders.get(declined.order_id)).status == OrderStatus.DECLINED


async def test_underpayment_confirms_nothing(storefront, orders):
    result = await checkout(storefront, CartItem(product_id="prod-netflix"))

    outcome = await storefront.confirm_payment(
        PaymentConfirmation(transaction_id=result.transaction_id, status="success", amount=10)
    )

    assert outcome.status == "amount_mismatch"
    assert outcome.updated == []
    assert (await orders.get(result.order_id)).payment_status == PaymentStatus.UNPAID


async def test_failure_marks_payment_failed_and_allows_retry(storefront, orders):
    result = await checkout(storefront, CartItem(product_id="prod-canva"))
    tid = result.transaction_id

    await storefront.confirm_payment(PaymentConfirmation(transaction_id=tid, status="failed"))
    failed = await orders.get(result.order_id)
    assert failed.status == OrderStatus.PENDING
    assert failed.payment_status == PaymentStatus.FAILED

    await storefront.initiate_payment(result.order_id)
    await storefront.confirm_payment(PaymentConfirmation(transaction_id=tid, status="success"))
    assert (await orders.get(result.order_id)).payment_status == PaymentStatus.PAID


async def test_unknown_transaction(storefront):
    with pytest.raises(NotFoundError):
        await storefront.confirm_payment(PaymentConfirmation(transaction_id="TXN-0-NOPE", status="success"))


def test_signature_verification():
    body = b'{"transactionId":"TXN-1","status":"success"}'
    signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()

    assert verify_signature(body, signature, "whsec")
    assert verify_signature(body, signature.upper(), "whsec")
    assert not verify_signature(body, signature, "other")
    assert not verify_signature(body + b" ", signature, "whsec")
    assert not verify_signature(body, None, "whsec")
