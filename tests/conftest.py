import pytest

from pipeline.credentials import PasswordHasher
from pipeline.errors import GatewayError
from pipeline.models import Product, Variant
from pipeline.payment_gateway import IPaymentGatewayClient, PaymentInitiationRequest
from pipeline.repositories import (
    InMemoryAccountRepository,
    InMemoryAuditLog,
    InMemoryOrderRepository,
    InMemoryProductRepository,
)
from pipeline.storefront import Storefront


class FakeGatewayClient(IPaymentGatewayClient):
    """Records initiation requests and answers with a fixed redirect."""

    def __init__(self, redirect_url: str = "https://pay.example.com/checkout/abc"):
        self.redirect_url = redirect_url
        self.requests: list[PaymentInitiationRequest] = []
        self.fail_with = None
        self.closed = False

    async def initiate(self, request: PaymentInitiationRequest) -> str:
        self.requests.append(request)
        if self.fail_with:
            raise self.fail_with
        return self.redirect_url

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def hasher():
    return PasswordHasher(rounds=4)


@pytest.fixture
def accounts():
    return InMemoryAccountRepository()


@pytest.fixture
def orders():
    return InMemoryOrderRepository()


@pytest.fixture
def audit_log():
    return InMemoryAuditLog()


@pytest.fixture
def netflix():
    return Product(
        product_id="prod-netflix",
        title="Netflix Premium",
        slug="netflix-premium",
        regular_price=600,
        sale_price=450,
        variants=[
            Variant(name="1 Month", validity="30 days", price=450),
            Variant(name="1 Year", validity="365 days", price=4200),
        ],
        access_link="https://vault.example.com/netflix",
        access_note="Shared profile 3",
    )


@pytest.fixture
def canva():
    return Product(
        product_id="prod-canva",
        title="Canva Pro",
        slug="canva-pro",
        regular_price=300,
        sale_price=250,
        access_link="https://vault.example.com/canva",
    )


@pytest.fixture
def retired():
    return Product(
        product_id="prod-retired",
        title="Retired Bundle",
        regular_price=100,
        sale_price=80,
        is_available=False,
    )


@pytest.fixture
def products(netflix, canva, retired):
    return InMemoryProductRepository([netflix, canva, retired])


@pytest.fixture
def gateway_client():
    return FakeGatewayClient()


@pytest.fixture
def storefront(gateway_client, accounts, products, orders, audit_log, hasher):
    return Storefront(
        gateway_client,
        accounts=accounts,
        products=products,
        orders=orders,
        audit_log=audit_log,
        hasher=hasher,
        frontend_url="https://shop.example.com",
    )


@pytest.fixture
def gateway_down():
    return GatewayError("Payment gateway unreachable")
