import re

import pytest
import pydantic

from pipeline.errors import OrderCreationError, PersistenceError, ValidationError
from pipeline.models import AuditEventType, CartItem, OrderStatus, PaymentStatus
from pipeline.order_factory import OrderFactory, generate_transaction_id
from pipeline.repositories import InMemoryOrderRepository


class FailingOrderRepository(InMemoryOrderRepository):
    """Store that drops the connection for one product's rows."""

    def __init__(self, failing_product_id: str):
        super().__init__()
        self.failing_product_id = failing_product_id

    async def create(self, order):
        if order.product_id == self.failing_product_id:
            raise RuntimeError("connection reset")
        return await super().create(order)


@pytest.fixture
def factory(products, orders, audit_log):
    return OrderFactory(products, orders, audit_log)


def test_transaction_id_format():
    assert re.fullmatch(r"TXN-\d{13}-[0-9A-F]{8}", generate_transaction_id())
    assert generate_transaction_id() != generate_transaction_id()


async def test_one_pending_order_per_line_sharing_a_transaction(factory, orders):
    batch = await factory.create_orders("acct-1", [
        CartItem(product_id="prod-netflix", quantity=1),
        CartItem(product_id="prod-canva", quantity=2),
    ])

    assert len(batch.orders) == 2
    assert {o.transaction_id for o in batch.orders} == {batch.transaction_id}
    for order in batch.orders:
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.UNPAID
        assert order.account_id == "acct-1"
        assert order.delivered_content.is_empty

    stored = await orders.list_by_transaction(batch.transaction_id)
    assert {o.order_id for o in stored} == {o.order_id for o in batch.orders}


async def test_amount_comes_from_product_not_client(factory):
    item = CartItem.model_validate({"productId": "prod-canva", "quantity": 3, "price": 1, "amount": 1})

    batch = await factory.create_orders("acct-1", [item])

    assert batch.orders[0].amount == 750


async def test_variant_price_is_used(factory):
    batch = await factory.create_orders("acct-1", [
        CartItem(product_id="prod-netflix", quantity=2, variant_name="1 Year"),
    ])

    order = batch.primary_order
    assert order.variant_name == "1 Year"
    assert order.amount == 8400


async def test_unresolvable_lines_are_skipped(factory):
    batch = await factory.create_orders("acct-1", [
        CartItem(product_id="prod-netflix"),
        CartItem(product_id="prod-deleted"),
        CartItem(product_id="prod-retired"),
        CartItem(product_id="prod-netflix", variant_name="Lifetime"),
    ])

    assert [o.product_id for o in batch.orders] == ["prod-netflix"]
    assert sorted(s.reason for s in batch.skipped) == [
        "product_not_found",
        "product_unavailable",
        "unknown_variant",
    ]


async def test_empty_cart_is_rejected(factory, orders):
    with pytest.raises(ValidationError):
        await factory.create_orders("acct-1", [])
    assert await orders.list() == []


async def test_no_resolvable_line_creates_nothing(factory, orders):
    with pytest.raises(OrderCreationError) as exc:
        await factory.create_orders("acct-1", [
            CartItem(product_id="prod-deleted"),
            CartItem(product_id="prod-retired"),
        ])

    assert exc.value.status_code == 422
    assert len(exc.value.details["skipped"]) == 2
    assert await orders.list() == []


async def test_creation_is_audited(factory, audit_log):
    batch = await factory.create_orders("acct-1", [CartItem(product_id="prod-canva")])

    entries = await audit_log.get_by_correlation_id(batch.transaction_id)
    assert [e.event_type for e in entries] == [AuditEventType.ORDER_CREATED]
    assert entries[0].entity_id == batch.primary_order.order_id
    assert entries[0].metadata["amount"] == 250


def test_cart_quantity_is_bounded():
    with pytest.raises(pydantic.ValidationError):
        CartItem(product_id="prod-canva", quantity=0)


async def test_partial_store_failure_reports_created_siblings(products, audit_log):
    orders = FailingOrderRepository("prod-canva")
    factory = OrderFactory(products, orders, audit_log)

    with pytest.raises(PersistenceError) as exc:
        await factory.create_orders("acct-1", [
            CartItem(product_id="prod-netflix"),
            CartItem(product_id="prod-canva"),
        ])

    stored = await orders.list()
    assert [o.product_id for o in stored] == ["prod-netflix"]
    assert exc.value.details["orphanedOrders"] == [stored[0].order_id]
    assert exc.value.details["transactionId"] == stored[0].transaction_id
    assert exc.value.to_dict() == {"error": "Internal storage failure", "code": "persistence_error"}
